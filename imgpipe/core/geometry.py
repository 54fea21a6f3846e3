"""
Rectangles, points and conversions between the three coordinate conventions.

- PIXEL_TOP_LEFT: pixel units, origin at the top-left corner (user-facing).
- UNIT_BOTTOM_LEFT: pixel units, origin at the bottom-left corner (editing).
- NORMALIZED_BOTTOM_LEFT: 0-1 units, origin at the bottom-left corner (analysis).

Every Rect and Point carries the space it was produced in, and operations
check it with ``require`` before using the numbers.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Tuple

from .errors import CoordinateSpaceError, InvalidGeometry


class CoordinateSpace(Enum):
    PIXEL_TOP_LEFT = "pixel_top_left"
    UNIT_BOTTOM_LEFT = "unit_bottom_left"
    NORMALIZED_BOTTOM_LEFT = "normalized_bottom_left"


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle tagged with its coordinate space."""

    x: float
    y: float
    width: float
    height: float
    space: CoordinateSpace

    @classmethod
    def pixel(cls, x: float, y: float, width: float, height: float) -> 'Rect':
        return cls(x, y, width, height, CoordinateSpace.PIXEL_TOP_LEFT)

    @classmethod
    def unit(cls, x: float, y: float, width: float, height: float) -> 'Rect':
        return cls(x, y, width, height, CoordinateSpace.UNIT_BOTTOM_LEFT)

    @classmethod
    def normalized(cls, x: float, y: float, width: float, height: float) -> 'Rect':
        return cls(x, y, width, height, CoordinateSpace.NORMALIZED_BOTTOM_LEFT)

    def require(self, space: CoordinateSpace) -> 'Rect':
        """Return self if it is in ``space``, otherwise raise CoordinateSpaceError."""
        if self.space is not space:
            raise CoordinateSpaceError(f"expected a {space.value} rect, got {self.space.value}")
        return self

    @property
    def max_x(self) -> float:
        return self.x + self.width

    @property
    def max_y(self) -> float:
        return self.y + self.height

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def intersection(self, other: 'Rect') -> 'Rect':
        """
        Intersect two rects of the same space.

        Disjoint rects produce an empty rect (zero width or height) positioned
        at the overlap origin, so callers test ``is_empty`` rather than None.
        """
        other.require(self.space)
        x0 = max(self.x, other.x)
        y0 = max(self.y, other.y)
        x1 = min(self.max_x, other.max_x)
        y1 = min(self.max_y, other.max_y)
        return Rect(x0, y0, max(0.0, x1 - x0), max(0.0, y1 - y0), self.space)

    def rounded(self) -> 'Rect':
        """Snap edges to whole units, keeping the space."""
        x0, y0 = round(self.x), round(self.y)
        x1, y1 = round(self.max_x), round(self.max_y)
        return Rect(x0, y0, x1 - x0, y1 - y0, self.space)

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.x, self.y, self.width, self.height)

    def to_dict(self):
        return {'x': self.x, 'y': self.y, 'width': self.width, 'height': self.height}


@dataclass(frozen=True)
class Point:
    """A point tagged with its coordinate space."""

    x: float
    y: float
    space: CoordinateSpace

    @classmethod
    def unit(cls, x: float, y: float) -> 'Point':
        return cls(x, y, CoordinateSpace.UNIT_BOTTOM_LEFT)

    @classmethod
    def normalized(cls, x: float, y: float) -> 'Point':
        return cls(x, y, CoordinateSpace.NORMALIZED_BOTTOM_LEFT)

    @classmethod
    def pixel(cls, x: float, y: float) -> 'Point':
        return cls(x, y, CoordinateSpace.PIXEL_TOP_LEFT)

    def require(self, space: CoordinateSpace) -> 'Point':
        if self.space is not space:
            raise CoordinateSpaceError(f"expected a {space.value} point, got {self.space.value}")
        return self

    def as_tuple(self) -> Tuple[float, float]:
        return (self.x, self.y)


def _check_dimension(name: str, value: float) -> None:
    if value is None or value <= 0:
        raise InvalidGeometry(f"{name} must be positive, got {value}")


class CoordinateSystem:
    """
    Stateless conversions between the three coordinate conventions.

    The vertical flip ``y' = H - y - h`` is its own inverse, so pixel/top-left
    and unit/bottom-left convert into each other with the same formula.
    """

    @staticmethod
    def to_unit(rect: Rect, image_height: float) -> Rect:
        """
        Convert a pixel/top-left rect to unit/bottom-left.

        Args:
            rect: Rect in PIXEL_TOP_LEFT
            image_height: Image height in pixels

        Returns:
            Rect in UNIT_BOTTOM_LEFT

        Raises:
            InvalidGeometry: If image_height is not positive
        """
        rect.require(CoordinateSpace.PIXEL_TOP_LEFT)
        _check_dimension('image_height', image_height)
        return Rect.unit(rect.x, image_height - rect.y - rect.height, rect.width, rect.height)

    @staticmethod
    def to_pixel_top_left(rect: Rect, image_height: float) -> Rect:
        """Convert a unit/bottom-left rect back to pixel/top-left."""
        rect.require(CoordinateSpace.UNIT_BOTTOM_LEFT)
        _check_dimension('image_height', image_height)
        return Rect.pixel(rect.x, image_height - rect.y - rect.height, rect.width, rect.height)

    @staticmethod
    def to_normalized(rect: Rect, image_width: float, image_height: float) -> Rect:
        """
        Convert a unit/bottom-left rect to normalized/bottom-left by dividing
        each axis by the matching image dimension.
        """
        rect.require(CoordinateSpace.UNIT_BOTTOM_LEFT)
        _check_dimension('image_width', image_width)
        _check_dimension('image_height', image_height)
        return Rect.normalized(rect.x / image_width, rect.y / image_height,
                               rect.width / image_width, rect.height / image_height)

    @staticmethod
    def from_normalized(rect: Rect, image_width: float, image_height: float) -> Rect:
        """Convert a normalized/bottom-left rect to unit/bottom-left."""
        rect.require(CoordinateSpace.NORMALIZED_BOTTOM_LEFT)
        _check_dimension('image_width', image_width)
        _check_dimension('image_height', image_height)
        return Rect.unit(rect.x * image_width, rect.y * image_height,
                         rect.width * image_width, rect.height * image_height)

    @staticmethod
    def to_pixel(rect: Rect, image_width: float, image_height: float) -> Rect:
        """
        Convert a normalized/bottom-left rect to pixel/top-left.

        ``x = nx*W``, ``y = (1 - ny - nh)*H``, ``w = nw*W``, ``h = nh*H``.
        """
        rect.require(CoordinateSpace.NORMALIZED_BOTTOM_LEFT)
        _check_dimension('image_width', image_width)
        _check_dimension('image_height', image_height)
        return Rect.pixel(rect.x * image_width,
                          (1.0 - rect.y - rect.height) * image_height,
                          rect.width * image_width,
                          rect.height * image_height)

    @staticmethod
    def pixel_to_normalized(rect: Rect, image_width: float, image_height: float) -> Rect:
        """Convert pixel/top-left straight to normalized/bottom-left."""
        unit = CoordinateSystem.to_unit(rect, image_height)
        return CoordinateSystem.to_normalized(unit, image_width, image_height)

    @staticmethod
    def convert(rect: Rect, target: CoordinateSpace, image_width: float, image_height: float) -> Rect:
        """Convert a rect from whatever space it is in to ``target``."""
        if rect.space is target:
            return rect

        if rect.space is CoordinateSpace.PIXEL_TOP_LEFT:
            unit = CoordinateSystem.to_unit(rect, image_height)
        elif rect.space is CoordinateSpace.NORMALIZED_BOTTOM_LEFT:
            unit = CoordinateSystem.from_normalized(rect, image_width, image_height)
        else:
            unit = rect

        if target is CoordinateSpace.UNIT_BOTTOM_LEFT:
            return unit
        if target is CoordinateSpace.PIXEL_TOP_LEFT:
            return CoordinateSystem.to_pixel_top_left(unit, image_height)
        return CoordinateSystem.to_normalized(unit, image_width, image_height)

    @staticmethod
    def point_to_unit(point: Point, image_width: float, image_height: float) -> Point:
        """Convert a point in any space to unit/bottom-left."""
        _check_dimension('image_width', image_width)
        _check_dimension('image_height', image_height)
        if point.space is CoordinateSpace.UNIT_BOTTOM_LEFT:
            return point
        if point.space is CoordinateSpace.NORMALIZED_BOTTOM_LEFT:
            return Point.unit(point.x * image_width, point.y * image_height)
        return Point.unit(point.x, image_height - point.y)

    @staticmethod
    def point_to_pixel(point: Point, image_width: float, image_height: float) -> Point:
        """Convert a point in any space to pixel/top-left."""
        unit = CoordinateSystem.point_to_unit(point, image_width, image_height)
        return Point.pixel(unit.x, image_height - unit.y)
