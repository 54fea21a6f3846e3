"""
Unit tests for coordinate conversion.

Covers the three conventions, round trips between them and the tagging
that stops a rect from being used in the wrong space.
"""

import pytest
from pathlib import Path
import sys
import os

# Add package root to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../../')))

from imgpipe.core.errors import CoordinateSpaceError, InvalidGeometry
from imgpipe.core.geometry import CoordinateSpace, CoordinateSystem, Point, Rect


class TestRect:
    """Test the tagged Rect value."""

    def test_constructors_tag_space(self):
        """Test that each constructor tags its coordinate space."""
        assert Rect.pixel(0, 0, 1, 1).space is CoordinateSpace.PIXEL_TOP_LEFT
        assert Rect.unit(0, 0, 1, 1).space is CoordinateSpace.UNIT_BOTTOM_LEFT
        assert Rect.normalized(0, 0, 1, 1).space is CoordinateSpace.NORMALIZED_BOTTOM_LEFT

    def test_require_rejects_other_space(self):
        """Test that a rect cannot be consumed in the wrong space."""
        rect = Rect.pixel(10, 10, 5, 5)

        assert rect.require(CoordinateSpace.PIXEL_TOP_LEFT) is rect
        with pytest.raises(CoordinateSpaceError, match="expected a unit_bottom_left rect"):
            rect.require(CoordinateSpace.UNIT_BOTTOM_LEFT)

    def test_intersection_overlap(self):
        """Test intersection of overlapping rects."""
        a = Rect.unit(0, 0, 100, 100)
        b = Rect.unit(50, 60, 100, 100)

        overlap = a.intersection(b)

        assert overlap.as_tuple() == (50, 60, 50, 40)
        assert not overlap.is_empty

    def test_intersection_disjoint_is_empty(self):
        """Test that disjoint rects intersect to an empty rect."""
        overlap = Rect.unit(0, 0, 10, 10).intersection(Rect.unit(20, 20, 5, 5))

        assert overlap.is_empty
        assert overlap.area == 0

    def test_intersection_requires_same_space(self):
        """Test that rects from different spaces cannot be intersected."""
        with pytest.raises(CoordinateSpaceError):
            Rect.unit(0, 0, 10, 10).intersection(Rect.pixel(0, 0, 10, 10))

    def test_rounded_snaps_edges(self):
        """Test that rounding snaps both edges, not the size."""
        rect = Rect.unit(0.6, 0.4, 10.2, 9.9).rounded()

        assert rect.as_tuple() == (1, 0, 10, 10)


class TestCoordinateSystem:
    """Test conversions between conventions."""

    def test_to_unit_flips_y(self):
        """Test y' = H - y - h."""
        unit = CoordinateSystem.to_unit(Rect.pixel(10, 20, 30, 40), 150)

        assert unit.space is CoordinateSpace.UNIT_BOTTOM_LEFT
        assert unit.as_tuple() == (10, 90, 30, 40)

    def test_to_unit_is_own_inverse(self):
        """Test that to_pixel_top_left undoes to_unit exactly."""
        rect = Rect.pixel(12, 7, 33, 21)

        back = CoordinateSystem.to_pixel_top_left(CoordinateSystem.to_unit(rect, 99), 99)

        assert back == rect

    def test_to_normalized(self):
        """Test that each axis is divided by its dimension."""
        normalized = CoordinateSystem.to_normalized(Rect.unit(50, 30, 100, 60), 200, 150)

        assert normalized.as_tuple() == pytest.approx((0.25, 0.2, 0.5, 0.4))

    def test_to_pixel_formula(self):
        """Test x = nx*W, y = (1 - ny - nh)*H."""
        pixel = CoordinateSystem.to_pixel(Rect.normalized(0.25, 0.2, 0.5, 0.4), 200, 150)

        assert pixel.space is CoordinateSpace.PIXEL_TOP_LEFT
        assert pixel.as_tuple() == pytest.approx((50, 60, 100, 60))

    @pytest.mark.parametrize("rect,width,height", [
        (Rect.pixel(0, 0, 200, 150), 200, 150),
        (Rect.pixel(10, 20, 30, 40), 200, 150),
        (Rect.pixel(199, 149, 1, 1), 200, 150),
        (Rect.pixel(3, 5, 7, 11), 17, 13),
        (Rect.pixel(100, 0, 924, 768), 1024, 768),
    ])
    def test_round_trips(self, rect, width, height):
        """Test pixel->unit->pixel and pixel->normalized->pixel within one pixel."""
        unit = CoordinateSystem.to_unit(rect, height)
        via_unit = CoordinateSystem.to_pixel_top_left(unit, height)
        via_normalized = CoordinateSystem.to_pixel(
            CoordinateSystem.to_normalized(unit, width, height), width, height)

        for result in (via_unit, via_normalized):
            assert result.space is CoordinateSpace.PIXEL_TOP_LEFT
            for got, expected in zip(result.rounded().as_tuple(), rect.as_tuple()):
                assert abs(got - expected) <= 1

    def test_pixel_to_normalized(self):
        """Test the direct pixel to normalized conversion."""
        normalized = CoordinateSystem.pixel_to_normalized(Rect.pixel(0, 0, 100, 75), 200, 150)

        # Top-left quarter: bottom-left origin puts it at y = 0.5
        assert normalized.as_tuple() == pytest.approx((0.0, 0.5, 0.5, 0.5))

    @pytest.mark.parametrize("target", list(CoordinateSpace))
    def test_convert_to_each_space(self, target):
        """Test that convert lands in the requested space and round-trips."""
        rect = Rect.pixel(20, 30, 40, 50)

        converted = CoordinateSystem.convert(rect, target, 200, 150)
        back = CoordinateSystem.convert(converted, CoordinateSpace.PIXEL_TOP_LEFT, 200, 150)

        assert converted.space is target
        assert back.as_tuple() == pytest.approx(rect.as_tuple())

    @pytest.mark.parametrize("width,height", [(0, 100), (100, 0), (-5, 100)])
    def test_degenerate_dimensions(self, width, height):
        """Test that non-positive image dimensions fail with InvalidGeometry."""
        with pytest.raises(InvalidGeometry):
            CoordinateSystem.to_pixel(Rect.normalized(0, 0, 1, 1), width, height)

    def test_degenerate_height_in_to_unit(self):
        """Test that to_unit rejects a zero height."""
        with pytest.raises(InvalidGeometry, match="image_height must be positive"):
            CoordinateSystem.to_unit(Rect.pixel(0, 0, 1, 1), 0)

    def test_wrong_space_is_rejected(self):
        """Test that a unit rect cannot be passed to to_unit."""
        with pytest.raises(CoordinateSpaceError):
            CoordinateSystem.to_unit(Rect.unit(0, 0, 1, 1), 100)


class TestPoints:
    """Test point conversions."""

    def test_normalized_point_to_unit(self):
        """Test scaling of normalized points."""
        point = CoordinateSystem.point_to_unit(Point.normalized(0.5, 0.25), 200, 100)

        assert point.space is CoordinateSpace.UNIT_BOTTOM_LEFT
        assert point.as_tuple() == (100, 25)

    def test_pixel_point_to_unit_flips(self):
        """Test that pixel points flip around the image height."""
        point = CoordinateSystem.point_to_unit(Point.pixel(10, 0), 200, 100)

        assert point.as_tuple() == (10, 100)

    def test_point_to_pixel(self):
        """Test unit point back to pixel/top-left."""
        point = CoordinateSystem.point_to_pixel(Point.unit(10, 100), 200, 100)

        assert point.space is CoordinateSpace.PIXEL_TOP_LEFT
        assert point.as_tuple() == (10, 0)
