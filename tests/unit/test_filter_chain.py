"""
Unit tests for filter chains.

Tests ensure that:
1. A chain either returns a complete image or names the failing stage
2. Stages after a failure are never invoked
3. Parameters are clamped into their domains and angles wrap
"""

import pytest
import logging
import numpy as np
import sys
import os

# Add package root to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../../')))

from imgpipe.core.errors import ErrorKind, InvalidParameter
from imgpipe.core.filter_chain import (STAGE_SPECS, FilterChain, FilterStage, ParamDomain,
                                       build_stage, parse_stage_text)
from imgpipe.core.filter_provider import PillowFilterProvider
from imgpipe.core.image import Image


@pytest.fixture
def provider():
    return PillowFilterProvider()


@pytest.fixture
def image():
    rng = np.random.default_rng(7)
    return Image(rng.integers(0, 256, (24, 32, 3)))


class CountingStage:
    """Stage function that records how often it ran."""

    def __init__(self, result='pass'):
        self.calls = 0
        self.result = result

    def __call__(self, image):
        self.calls += 1
        if self.result == 'none':
            return None
        if self.result == 'raise':
            raise RuntimeError("kernel exploded")
        return image


class TestFilterChain:
    """Test chain execution."""

    def test_all_stages_succeed(self, image):
        """Test that a clean run returns the image and every stage name."""
        stages = [CountingStage() for _ in range(3)]
        chain = FilterChain([FilterStage(f"s{i}", {}, fn) for i, fn in enumerate(stages)])

        result = chain.run(image)

        assert result.ok
        assert result.image == image
        assert result.completed_stages == ("s0", "s1", "s2")
        assert [s.calls for s in stages] == [1, 1, 1]

    def test_short_circuit_on_none(self, image, caplog):
        """Test that stage 2 returning None stops the chain before stage 3."""
        first, second, third = CountingStage(), CountingStage('none'), CountingStage()
        chain = FilterChain([
            FilterStage("first", {}, first),
            FilterStage("second", {}, second),
            FilterStage("third", {}, third),
        ])

        with caplog.at_level(logging.WARNING):
            result = chain.run(image)

        assert result.image is None
        assert result.failed_stage == "second"
        assert result.error.kind is ErrorKind.FILTER_CHAIN_INCOMPLETE
        assert result.error.internal is False
        assert result.completed_stages == ("first",)
        assert third.calls == 0
        assert "second" in caplog.text

    def test_raising_stage_is_internal(self, image):
        """Test that an exception inside a stage becomes an internal failure."""
        chain = FilterChain([FilterStage("boom", {}, CountingStage('raise'))])

        result = chain.run(image)

        assert not result.ok
        assert result.failed_stage == "boom"
        assert result.error.internal is True
        assert "kernel exploded" in result.error.message

    def test_empty_chain(self, image):
        """Test that an empty chain returns its input."""
        result = FilterChain().run(image)

        assert result.ok
        assert result.image is image

    def test_to_result(self, image):
        """Test conversion to a plain Result."""
        failed = FilterChain([FilterStage("x", {}, CountingStage('none'))]).run(image)

        assert failed.to_result().error.stage_name == "x"
        assert FilterChain().run(image).to_result().value is image

    def test_real_chain(self, provider, image):
        """Test a chain of catalogue stages."""
        chain = FilterChain.from_names(provider, [
            ("sepia", {"intensity": 0.8}),
            ("vignette", {}),
            ("gaussian_blur", {"radius": 1.5}),
        ])

        result = chain.run(image)

        assert chain.names == ["sepia", "vignette", "gaussian_blur"]
        assert len(chain) == 3
        assert result.ok
        assert result.image.size == image.size

    def test_kernel_on_tiny_image_names_stage(self, provider):
        """Test that a kernel refusing a tiny image fails the chain at that stage."""
        tiny = Image(np.zeros((2, 2, 3), dtype=np.uint8))
        chain = FilterChain.from_names(provider, [("invert", {}), ("gaussian_blur", {})])

        result = chain.run(tiny)

        assert result.failed_stage == "gaussian_blur"
        assert result.completed_stages == ("invert",)


class TestParameters:
    """Test parameter domains and stage construction."""

    def test_clamp_to_bounds(self):
        """Test that values outside the range are clamped."""
        domain = ParamDomain(0.0, 2.0, 1.0)

        assert domain.clamp(5) == 2.0
        assert domain.clamp(-1) == 0.0
        assert domain.clamp("0.5") == 0.5

    def test_angle_wraps(self):
        """Test that angles wrap into [0, 360)."""
        domain = ParamDomain(0.0, 360.0, 0.0, wraps=True)

        assert domain.clamp(370) == pytest.approx(10.0)
        assert domain.clamp(-90) == pytest.approx(270.0)

    @pytest.mark.parametrize("value", ["abc", None, float("nan")])
    def test_non_numeric_rejected(self, value):
        """Test that non-numbers fail with InvalidParameter."""
        with pytest.raises(InvalidParameter):
            ParamDomain(0.0, 1.0, 0.5).clamp(value)

    def test_build_stage_clamps(self, provider, caplog):
        """Test that build_stage clamps and logs at DEBUG."""
        with caplog.at_level(logging.DEBUG, logger='imgpipe.core.filter_chain'):
            stage = build_stage("sepia", provider, intensity=4.0)

        assert stage.parameters["intensity"] == 1.0
        assert "clamped intensity" in caplog.text

    def test_defaults_applied(self, provider):
        """Test that missing parameters take their defaults."""
        stage = build_stage("unsharp_mask", provider)

        assert dict(stage.parameters) == {"radius": 2.5, "intensity": 0.5}

    def test_parameters_frozen(self, provider):
        """Test that stage parameters cannot be changed after construction."""
        stage = build_stage("sepia", provider)

        with pytest.raises(TypeError):
            stage.parameters["intensity"] = 0.1

    def test_unknown_stage(self, provider):
        """Test that unknown stage names are rejected."""
        with pytest.raises(InvalidParameter, match="unknown filter stage 'sparkle'"):
            build_stage("sparkle", provider)

    def test_unknown_parameter(self, provider):
        """Test that unknown parameter names are rejected."""
        with pytest.raises(InvalidParameter, match="has no parameter"):
            build_stage("sepia", provider, radius=3)

    def test_every_stage_builds(self, provider, image):
        """Test that each catalogue stage runs on an ordinary image."""
        for name in STAGE_SPECS:
            output = build_stage(name, provider).apply(image)
            assert output is not None, name
            assert output.size == image.size, name


class TestParseStageText:
    """Test the name:key=value syntax."""

    def test_name_only(self):
        assert parse_stage_text("comic") == ("comic", {})

    def test_with_parameters(self):
        """Test that parameters are parsed as floats."""
        assert parse_stage_text("motion_blur:radius=5, angle=45") == (
            "motion_blur", {"radius": 5.0, "angle": 45.0})

    def test_missing_equals(self):
        with pytest.raises(InvalidParameter, match="must be key=value"):
            parse_stage_text("sepia:intensity")

    def test_non_numeric_value(self):
        with pytest.raises(InvalidParameter, match="must be numeric"):
            parse_stage_text("sepia:intensity=lots")
