"""
Unit tests for the pipeline orchestrator.

Tests ensure that:
1. Edit runs walk DECODED -> TRANSFORMED -> FILTERED -> RENDERED -> SAVED
2. Any failure ends the run in FAILED with a typed error and no image
3. Analysis runs report observations against the input image
"""

import pytest
import asyncio
import numpy as np
from pathlib import Path
import struct
import zlib
import sys
import os
from PIL import ExifTags, Image as PILImage

# Add package root to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../../')))

from imgpipe.core.analysis import (AnalysisKind, AnalysisRequest, Detection, Label, Quad)
from imgpipe.core.errors import DecodeFailed, EncodeFailed, ErrorKind
from imgpipe.core.filter_chain import FilterChain, FilterStage
from imgpipe.core.geometry import Rect
from imgpipe.core.image import Image, PillowCodec
from imgpipe.core.orchestrator import PipelineOrchestrator, PipelineState
from imgpipe.core.transform_ops import Crop, Flip, Resize, Rotate
from imgpipe.utils.config import Config


class FailingEncodeCodec(PillowCodec):
    """Codec that decodes normally but cannot encode."""

    def encode(self, image, format, quality=None):
        raise EncodeFailed("disk encoder unavailable")


class FailingWriteCodec(PillowCodec):
    """Codec that encodes normally but cannot write files."""

    def write(self, data, path):
        raise EncodeFailed(f"no space left for {path}")


class ScriptedEngine:
    """Analysis engine returning fixed detections for every kind."""

    def __init__(self, detections):
        self.detections = detections

    def supports(self, kind):
        return True

    async def detect(self, kind, images, options):
        return list(self.detections)


def png_header(width, height):
    """A PNG holding only its IHDR and IEND chunks."""
    def chunk(tag, data):
        crc = zlib.crc32(tag + data) & 0xffffffff
        return struct.pack(">I", len(data)) + tag + data + struct.pack(">I", crc)

    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", ihdr) + chunk(b"IEND", b"")


@pytest.fixture
def source(tmp_path):
    """A 200x150 PNG on disk."""
    ys, xs = np.mgrid[0:150, 0:200]
    pixels = np.stack([xs % 256, ys % 256, np.full_like(xs, 90)], axis=2)
    return PillowCodec().save(Image(pixels), tmp_path / "source.png")


@pytest.fixture
def orchestrator():
    return PipelineOrchestrator(Config())


class TestEditRuns:
    """Test editing pipelines end to end."""

    def test_resize_rotate_save(self, orchestrator, source, tmp_path):
        """Test 200x150 -> width 100 -> 100x75 -> rotate 90 -> saved 75x100."""
        output = tmp_path / "out" / "result.png"

        outcome = orchestrator.run_edit(source, output, [Resize(width=100), Rotate(90)])

        assert outcome.ok
        assert outcome.output_path == output
        assert PillowCodec().decode(output).size == (75, 100)
        assert outcome.history == [
            PipelineState.DECODED,
            PipelineState.TRANSFORMED,
            PipelineState.TRANSFORMED,
            PipelineState.RENDERED,
            PipelineState.SAVED,
        ]

    def test_filters_recorded_per_stage(self, orchestrator, source, tmp_path):
        """Test that every completed filter stage adds a FILTERED state."""
        chain = FilterChain.from_names(orchestrator.provider, [("sepia", {}), ("vignette", {})])

        outcome = orchestrator.run_edit(source, tmp_path / "sepia.jpg", [Flip(horizontal=True)], chain)

        assert outcome.ok
        assert outcome.history.count(PipelineState.FILTERED) == 2
        assert outcome.state is PipelineState.SAVED

    def test_decode_failure(self, orchestrator, tmp_path):
        """Test that a missing input ends in FAILED with DecodeFailed."""
        outcome = orchestrator.run_edit(tmp_path / "missing.png", tmp_path / "out.png")

        assert outcome.history == [PipelineState.FAILED]
        assert isinstance(outcome.error, DecodeFailed)
        assert outcome.image is None
        assert not (tmp_path / "out.png").exists()

    def test_encode_failure(self, source, tmp_path):
        """Test that an encoder error ends in FAILED with EncodeFailed."""
        orchestrator = PipelineOrchestrator(Config(), codec=FailingEncodeCodec())

        outcome = orchestrator.run_edit(source, tmp_path / "out.png", [Resize(width=50)])

        assert outcome.state is PipelineState.FAILED
        assert outcome.error.kind is ErrorKind.ENCODE_FAILED
        assert PipelineState.RENDERED not in outcome.history

    def test_write_failure(self, source, tmp_path):
        """Test that a failed write after rendering ends in FAILED with EncodeFailed."""
        orchestrator = PipelineOrchestrator(Config(), codec=FailingWriteCodec())
        output = tmp_path / "out.png"

        outcome = orchestrator.run_edit(source, output, [Resize(width=50)])

        assert outcome.history[-2:] == [PipelineState.RENDERED, PipelineState.FAILED]
        assert outcome.error.kind is ErrorKind.ENCODE_FAILED
        assert "no space left" in str(outcome.error)
        assert outcome.output_path is None
        assert not output.exists()

    def test_oversized_header_fails_decode(self, orchestrator, tmp_path):
        """Test that a 15000x15000 header ends the run in FAILED with DecodeFailed."""
        path = tmp_path / "huge.png"
        path.write_bytes(png_header(15000, 15000))

        outcome = orchestrator.run_edit(path, tmp_path / "out.png")
        report = asyncio.run(orchestrator.run_analysis(path, AnalysisRequest("saliency")))

        assert outcome.history == [PipelineState.FAILED]
        assert outcome.error.kind is ErrorKind.DECODE_FAILED
        assert report.history == [PipelineState.FAILED]
        assert report.error.kind is ErrorKind.DECODE_FAILED

    def test_transform_failure(self, orchestrator, source, tmp_path):
        """Test that an empty crop stops the run before any filter."""
        outcome = orchestrator.run_edit(source, tmp_path / "out.png",
                                        [Crop(Rect.unit(500, 500, 10, 10)), Resize(width=10)])

        assert outcome.history == [PipelineState.DECODED, PipelineState.FAILED]
        assert outcome.error.kind is ErrorKind.EMPTY_REGION

    def test_filter_failure_names_stage(self, orchestrator, source, tmp_path):
        """Test that a failing filter stage is named and nothing is written."""
        chain = FilterChain([
            FilterStage("keep", {}, lambda image: image),
            FilterStage("broken", {}, lambda image: None),
        ])
        output = tmp_path / "out.png"

        outcome = orchestrator.run_edit(source, output, filters=chain)

        assert outcome.error.kind is ErrorKind.FILTER_CHAIN_INCOMPLETE
        assert outcome.error.stage_name == "broken"
        assert outcome.image is None
        assert outcome.history[-1] is PipelineState.FAILED
        assert not output.exists()

    def test_format_from_suffix(self, orchestrator, source, tmp_path):
        """Test that the output suffix picks the encoder."""
        output = tmp_path / "out.jpg"

        orchestrator.run_edit(source, output, quality=0.5)

        assert output.read_bytes()[:2] == b"\xff\xd8"

    def test_to_dict(self, orchestrator, source, tmp_path):
        outcome = orchestrator.run_edit(source, tmp_path / "out.png", [Resize(width=20)])

        data = outcome.to_dict()

        assert data['ok'] is True
        assert data['states'][-1] == "saved"
        assert (data['width'], data['height']) == (20, 15)

    def test_metrics_recorded(self, orchestrator, source, tmp_path):
        """Test that each state is timed."""
        orchestrator.run_edit(source, tmp_path / "out.png", [Resize(width=20)])

        operations = [op['operation'] for op in orchestrator.metrics.operations]
        assert operations == ["decoded", "transformed", "rendered", "saved"]


class TestEditImage:
    """Test in-memory editing."""

    def test_crop_then_resize(self, orchestrator):
        """Test chaining transforms on an in-memory image."""
        image = Image(np.zeros((150, 200, 3), dtype=np.uint8))
        history = []

        result = orchestrator.edit_image(image, [Crop(Rect.pixel(0, 0, 100, 100)), Resize(height=50)],
                                         history=history)

        assert result.ok
        assert result.value.size == (50, 50)
        assert history == [PipelineState.TRANSFORMED, PipelineState.TRANSFORMED]

    def test_non_finite_rotation(self, orchestrator):
        """Test that a NaN angle comes back as a failed Result, not an exception."""
        image = Image(np.zeros((10, 20, 3), dtype=np.uint8))
        history = []

        result = orchestrator.edit_image(image, [Rotate(float('nan'))], history=history)

        assert not result.ok
        assert result.error.kind is ErrorKind.INVALID_PARAMETER
        assert history == [PipelineState.FAILED]


class TestAnalysisRuns:
    """Test analysis pipelines."""

    def test_run_analysis(self, source):
        """Test that observations are ranked and reported against the input."""
        engine = ScriptedEngine([
            Detection(0.4, (0.0, 0.5, 0.5, 0.5), Label("sky")),
            Detection(0.9, (0.5, 0.0, 0.5, 0.5), Label("grass")),
            Detection(0.05, None, Label("noise")),
        ])
        orchestrator = PipelineOrchestrator(Config(), engine=engine)
        request = AnalysisRequest(AnalysisKind.CLASSIFY, orchestrator.default_options("classify"))

        report = asyncio.run(orchestrator.run_analysis(source, request))

        assert report.ok
        assert report.history == [PipelineState.DECODED, PipelineState.ANALYZED,
                                  PipelineState.RANKED, PipelineState.REPORTED]
        assert [o.payload.identifier for o in report.observations] == ["grass", "sky"]
        assert report.total_count == 2

        data = report.to_dict()
        # grass sits in the bottom-right quarter of a 200x150 image
        assert data['observations'][0]['pixel_region'] == {'x': 100, 'y': 75, 'width': 100, 'height': 75}
        assert data['image'] == {'width': 200, 'height': 150}

    def test_run_analysis_decode_failure(self, orchestrator, tmp_path):
        """Test that a missing input fails before analysis."""
        report = asyncio.run(orchestrator.run_analysis(tmp_path / "nope.png", AnalysisRequest("saliency")))

        assert report.history == [PipelineState.FAILED]
        assert report.error.kind is ErrorKind.DECODE_FAILED
        assert report.to_dict()['observations'] == []

    def test_pair_kind_needs_two_paths(self, orchestrator, source):
        """Test that a pair kind with one path is an invalid parameter."""
        report = asyncio.run(orchestrator.run_analysis(source, AnalysisRequest("optical_flow")))

        assert report.error.kind is ErrorKind.INVALID_PARAMETER

    def test_pair_kind_with_local_engine(self, orchestrator, source):
        """Test alignment of an image with itself through the default engine."""
        report = asyncio.run(orchestrator.run_analysis([source, source], AnalysisRequest("alignment")))

        assert report.ok
        assert report.observations[0].payload.magnitude == 0

    def test_unsupported_kind(self, orchestrator, source):
        """Test that the default engine reports unsupported kinds."""
        report = asyncio.run(orchestrator.run_analysis(source, AnalysisRequest("detect_faces")))

        assert report.history[-1] is PipelineState.FAILED
        assert report.error.kind is ErrorKind.ANALYSIS_UNSUPPORTED

    def test_run_analyses(self, orchestrator, source):
        """Test several requests over one decode, in request order."""
        requests = [AnalysisRequest("saliency"), AnalysisRequest("detect_text")]

        saliency, text = asyncio.run(orchestrator.run_analyses(source, requests))

        assert saliency.ok
        assert saliency.history[-1] is PipelineState.REPORTED
        assert text.error.kind is ErrorKind.ANALYSIS_UNSUPPORTED

    def test_run_analyses_decode_failure(self, orchestrator, tmp_path):
        """Test that a decode failure fails every report."""
        requests = [AnalysisRequest("saliency"), AnalysisRequest("classify")]

        reports = asyncio.run(orchestrator.run_analyses(tmp_path / "gone.png", requests))

        assert all(r.error.kind is ErrorKind.DECODE_FAILED for r in reports)


class TestDefaultOptions:
    """Test per-kind defaults from Config."""

    def test_classify_defaults(self, orchestrator):
        options = orchestrator.default_options("classify")

        assert options.threshold == 0.1
        assert options.limit == 20

    def test_pose_defaults(self, orchestrator):
        assert orchestrator.default_options("detect_hand_pose").threshold == 0.3

    def test_text_languages_from_config(self, orchestrator):
        """Test that detect_text gets the configured recognition languages."""
        assert orchestrator.default_options("detect_text").languages == ("zh-Hans", "en")
        assert orchestrator.default_options("classify").languages == ()

    def test_empty_languages_means_automatic(self):
        orchestrator = PipelineOrchestrator(Config(text_languages=""))

        assert orchestrator.default_options("detect_text").languages == ()

    def test_overrides(self, orchestrator):
        """Test that explicit values win and None is ignored."""
        options = orchestrator.default_options("classify", threshold=0.5, limit=None)

        assert options.threshold == 0.5
        assert options.limit == 20


class TestInfo:
    def test_info(self, orchestrator, source):
        info = orchestrator.info(source)

        assert (info.width, info.height) == (200, 150)


@pytest.fixture
def document(tmp_path):
    """A 200x150 PNG of a bright page over columns 40-159 and rows 30-119."""
    pixels = np.full((150, 200, 3), 20, dtype=np.uint8)
    pixels[30:120, 40:160] = 230
    return PillowCodec().save(Image(pixels), tmp_path / "document.png")


class TestScanRuns:
    """Test rectangle detection followed by perspective correction."""

    def test_scan_with_local_engine(self, orchestrator, document, tmp_path):
        """Test that the page is found and saved at its own size."""
        output = tmp_path / "scan.png"

        outcome = asyncio.run(orchestrator.run_scan(document, output))

        assert outcome.ok, outcome.error
        assert outcome.history == [
            PipelineState.DECODED,
            PipelineState.ANALYZED,
            PipelineState.TRANSFORMED,
            PipelineState.RENDERED,
            PipelineState.SAVED,
        ]
        scanned = PillowCodec().decode(output)
        assert scanned.size == (120, 90)
        assert abs(int(scanned.pixels[45, 60, 0]) - 230) <= 2

    def test_best_observation_wins(self, document, tmp_path):
        """Test that the most confident rectangle is corrected."""
        engine = ScriptedEngine([
            Detection(0.3, (0.0, 0.0, 1.0, 1.0), Label("frame")),
            Detection(0.8, (0.25, 0.25, 0.5, 0.5), Label("page")),
        ])
        orchestrator = PipelineOrchestrator(Config(), engine=engine)

        outcome = asyncio.run(orchestrator.run_scan(document, tmp_path / "scan.png"))

        assert outcome.ok
        # Region corners are used when the payload carries no quad
        assert outcome.image.size == (100, 75)

    def test_quad_payload(self, document, tmp_path):
        """Test that quad corners from the engine drive the correction."""
        quad = Quad((0.2, 0.8), (0.8, 0.8), (0.2, 0.2), (0.8, 0.2))
        orchestrator = PipelineOrchestrator(Config(), engine=ScriptedEngine([Detection(0.9, None, quad)]))

        outcome = asyncio.run(orchestrator.run_scan(document, tmp_path / "scan.jpg"))

        assert outcome.image.size == (120, 90)
        assert (tmp_path / "scan.jpg").read_bytes()[:2] == b"\xff\xd8"

    def test_no_rectangle(self, document, tmp_path):
        """Test that finding nothing fails with NO_RESULTS and writes nothing."""
        orchestrator = PipelineOrchestrator(Config(), engine=ScriptedEngine([]))
        output = tmp_path / "scan.png"

        outcome = asyncio.run(orchestrator.run_scan(document, output))

        assert outcome.history == [PipelineState.DECODED, PipelineState.FAILED]
        assert outcome.error.kind is ErrorKind.NO_RESULTS
        assert not output.exists()

    def test_degenerate_quad(self, document, tmp_path):
        """Test that a collapsed quad fails the transform step."""
        flat = Quad((0.2, 0.5), (0.8, 0.5), (0.2, 0.5), (0.8, 0.5))
        orchestrator = PipelineOrchestrator(Config(), engine=ScriptedEngine([Detection(0.9, None, flat)]))

        outcome = asyncio.run(orchestrator.run_scan(document, tmp_path / "scan.png"))

        assert outcome.history[-1] is PipelineState.FAILED
        assert outcome.error.kind is ErrorKind.DEGENERATE_QUAD


class TestMetadataRuns:
    """Test metadata editing runs."""

    @pytest.fixture
    def located(self, tmp_path):
        exif = PILImage.Exif()
        exif[ExifTags.Base.Make] = "Nikon"
        exif[ExifTags.IFD.GPSInfo] = {ExifTags.GPS.GPSLatitudeRef: "S"}
        path = tmp_path / "holiday.jpg"
        PILImage.new("RGB", (16, 16), color=(40, 80, 120)).save(path, exif=exif)
        return path

    def test_default_output_path(self, orchestrator, located):
        """Test that the copy lands next to the input with a _meta suffix."""
        outcome = orchestrator.update_metadata(located, clear_gps=True)

        assert outcome.ok
        assert outcome.output_path == located.with_name("holiday_meta.jpg")
        assert outcome.history == [PipelineState.SAVED]
        assert 'GPSInfo' not in orchestrator.info(outcome.output_path).metadata

    def test_comment(self, orchestrator, located, tmp_path):
        outcome = orchestrator.update_metadata(located, tmp_path / "out" / "note.jpg", comment="Lisbon")

        metadata = orchestrator.info(outcome.output_path).metadata
        assert metadata['Exif']['UserComment'] == "Lisbon"

    def test_missing_input(self, orchestrator, tmp_path):
        outcome = orchestrator.update_metadata(tmp_path / "gone.jpg", clear_all=True)

        assert outcome.history == [PipelineState.FAILED]
        assert outcome.error.kind is ErrorKind.DECODE_FAILED
