"""
Geometric transforms over immutable Images.

All operations take positions in unit/bottom-left coordinates and return a
new Image; the input is never modified. Resampling and warping are delegated
to the FilterProvider, exact cases (crop, flip, quarter turns) are done with
numpy slicing.
"""

import math
from dataclasses import dataclass
from typing import ClassVar, Optional, Tuple

import numpy as np

from .errors import (DegenerateQuad, EmptyRegion, InvalidParameter, MissingParameter,
                     PipelineError, RenderFailed, Result)
from .filter_provider import FilterProvider
from .geometry import CoordinateSpace, CoordinateSystem, Point, Rect
from .image import Image
from ..utils.logging import get_logger

logger = get_logger(__name__)

# Quads with less area than this (square pixels) cannot be corrected
MIN_QUAD_AREA = 1.0
COLLINEAR_TOLERANCE = 1e-6


def _triangle_area(a: Point, b: Point, c: Point) -> float:
    return abs((b.x - a.x) * (c.y - a.y) - (c.x - a.x) * (b.y - a.y)) / 2.0


def _require_finite(what: str, *values) -> None:
    if not all(math.isfinite(v) for v in values):
        raise InvalidParameter(f"{what} must be finite, got {values}")


def _polygon_area(points) -> float:
    """Shoelace area of a polygon given in order."""
    total = 0.0
    for i, p in enumerate(points):
        q = points[(i + 1) % len(points)]
        total += p.x * q.y - q.x * p.y
    return abs(total) / 2.0


class TransformOps:
    """
    Crop, resize, rotate, flip and perspective-correct Images.

    Args:
        provider: Supplies the Lanczos resampler, bicubic rotation and
            perspective warp kernels
    """

    def __init__(self, provider: FilterProvider):
        self.provider = provider

    def crop(self, image: Image, rect: Rect) -> Image:
        """
        Crop to the part of ``rect`` that lies inside the image.

        Args:
            image: Source image
            rect: Region in UNIT_BOTTOM_LEFT

        Returns:
            Image whose extent is the (pixel-rounded) intersection

        Raises:
            EmptyRegion: If rect does not overlap the image
        """
        rect.require(CoordinateSpace.UNIT_BOTTOM_LEFT)
        _require_finite("crop region", *rect.as_tuple())
        region = rect.intersection(image.extent).rounded()
        if region.is_empty:
            raise EmptyRegion(
                f"crop region {rect.as_tuple()} does not overlap image extent {image.width}x{image.height}"
            )

        x, y, w, h = (int(v) for v in region.as_tuple())
        top = image.height - (y + h)
        return image.with_pixels(image.pixels[top:top + h, x:x + w])

    @staticmethod
    def target_size(width: int, height: int, target_width: Optional[int] = None,
                    target_height: Optional[int] = None,
                    maintain_aspect_ratio: bool = True) -> Tuple[int, int]:
        """
        Work out the output size of a resize.

        With one target dimension the aspect ratio is always kept. With both
        and ``maintain_aspect_ratio`` the image is fitted inside the targets
        using the smaller scale factor.

        Raises:
            MissingParameter: If neither target is given
            InvalidParameter: If a target is not positive
        """
        if target_width is None and target_height is None:
            raise MissingParameter("resize needs a target width, height, or both")
        for name, value in (('width', target_width), ('height', target_height)):
            if value is not None and (not math.isfinite(value) or value <= 0):
                raise InvalidParameter(f"resize target {name} must be positive, got {value}")

        if target_height is None:
            scale = target_width / width
            return int(target_width), max(1, int(round(height * scale)))

        if target_width is None:
            scale = target_height / height
            return max(1, int(round(width * scale))), int(target_height)

        if not maintain_aspect_ratio:
            return int(target_width), int(target_height)

        scale = min(target_width / width, target_height / height)
        new_width = min(int(target_width), max(1, int(round(width * scale))))
        new_height = min(int(target_height), max(1, int(round(height * scale))))
        return new_width, new_height

    def resize(self, image: Image, width: Optional[int] = None, height: Optional[int] = None,
               maintain_aspect_ratio: bool = True) -> Image:
        """
        Resize with a Lanczos kernel.

        Raises:
            MissingParameter: If neither target dimension is given
            InvalidParameter: If a target dimension is not positive
            RenderFailed: If the provider produced no image
        """
        size = self.target_size(image.width, image.height, width, height, maintain_aspect_ratio)
        if size == image.size:
            return image

        resized = self.provider.resample(image, *size)
        if resized is None:
            raise RenderFailed(f"resample to {size[0]}x{size[1]} produced no image")
        return resized

    def rotate_around_center(self, image: Image, degrees: float) -> Image:
        """
        Rotate clockwise by ``degrees`` around the image centre.

        The output extent grows to the rotated bounding box. Multiples of 90
        degrees are exact pixel permutations; other angles are resampled.

        Raises:
            InvalidParameter: If degrees is NaN or infinite
            RenderFailed: If the provider produced no image
        """
        _require_finite("rotation angle", degrees)
        turns = degrees / 90.0
        if abs(turns - round(turns)) < 1e-9:
            quarter_turns = int(round(turns)) % 4
            if quarter_turns == 0:
                return image
            # np.rot90 turns counter-clockwise for positive k
            return image.with_pixels(np.rot90(image.pixels, k=-quarter_turns, axes=(0, 1)))

        rotated = self.provider.rotate(image, -degrees)
        if rotated is None:
            raise RenderFailed(f"rotation by {degrees} degrees produced no image")
        return rotated

    def flip(self, image: Image, horizontal: bool = False, vertical: bool = False) -> Image:
        """Mirror left-right and/or top-bottom."""
        pixels = image.pixels
        if horizontal:
            pixels = pixels[:, ::-1]
        if vertical:
            pixels = pixels[::-1, :]
        if pixels is image.pixels:
            return image
        return image.with_pixels(pixels)

    def perspective_correction(self, image: Image, top_left: Point, top_right: Point,
                               bottom_left: Point, bottom_right: Point) -> Image:
        """
        Map a quadrilateral onto its axis-aligned bounding rectangle.

        Args:
            image: Source image
            top_left, top_right, bottom_left, bottom_right: Quad corners in
                UNIT_BOTTOM_LEFT

        Returns:
            Image the size of the quad's bounding box with the quad rectified

        Raises:
            DegenerateQuad: If three corners are collinear or the quad has
                near-zero area
            InvalidParameter: If a corner is NaN or infinite
            RenderFailed: If the provider produced no image
        """
        corners = [p.require(CoordinateSpace.UNIT_BOTTOM_LEFT)
                   for p in (top_left, top_right, bottom_right, bottom_left)]
        _require_finite("quad corners", *(v for p in corners for v in p.as_tuple()))

        area = _polygon_area(corners)
        if area < MIN_QUAD_AREA:
            raise DegenerateQuad(f"quad area {area:.3f} is too small to correct")
        for i in range(4):
            a, b, c = corners[i], corners[(i + 1) % 4], corners[(i + 2) % 4]
            if _triangle_area(a, b, c) < COLLINEAR_TOLERANCE:
                raise DegenerateQuad("three quad corners are collinear")

        xs = [p.x for p in corners]
        ys = [p.y for p in corners]
        out_width = max(1, int(round(max(xs) - min(xs))))
        out_height = max(1, int(round(max(ys) - min(ys))))

        coefficients = self._perspective_coefficients(
            (out_width, out_height),
            [CoordinateSystem.point_to_pixel(p, image.width, image.height)
             for p in (top_left, top_right, bottom_left, bottom_right)],
        )

        warped = self.provider.warp_perspective(image, coefficients, (out_width, out_height))
        if warped is None:
            raise RenderFailed("perspective warp produced no image")
        return warped

    @staticmethod
    def _perspective_coefficients(size: Tuple[int, int], source_corners) -> Tuple[float, ...]:
        """
        Solve the homography from output pixel/top-left positions to source positions.

        ``source_corners`` are pixel/top-left points in the order top-left,
        top-right, bottom-left, bottom-right.
        """
        w, h = size
        targets = [(0.0, 0.0), (float(w), 0.0), (0.0, float(h)), (float(w), float(h))]

        matrix = []
        values = []
        for (u, v), point in zip(targets, source_corners):
            matrix.append([u, v, 1.0, 0.0, 0.0, 0.0, -u * point.x, -v * point.x])
            matrix.append([0.0, 0.0, 0.0, u, v, 1.0, -u * point.y, -v * point.y])
            values.extend([point.x, point.y])

        try:
            solution = np.linalg.solve(np.array(matrix), np.array(values))
        except np.linalg.LinAlgError as e:
            raise DegenerateQuad(f"quad has no perspective mapping: {e}") from e

        return tuple(float(c) for c in solution)

    def apply(self, image: Image, step: 'TransformStep') -> Result[Image]:
        """Run one transform step, returning failures as a Result."""
        try:
            return Result.success(step.apply(self, image))
        except PipelineError as e:
            logger.warning(f"{step.name} failed: {e}")
            return Result.failure(e)


class TransformStep:
    """Base for the transform step values accepted by the orchestrator."""

    name: ClassVar[str] = "transform"

    def apply(self, ops: TransformOps, image: Image) -> Image:
        raise NotImplementedError


@dataclass(frozen=True)
class Crop(TransformStep):
    """Crop to ``rect``, given in any coordinate space."""

    rect: Rect
    name: ClassVar[str] = "crop"

    def apply(self, ops: TransformOps, image: Image) -> Image:
        unit = CoordinateSystem.convert(self.rect, CoordinateSpace.UNIT_BOTTOM_LEFT,
                                        image.width, image.height)
        return ops.crop(image, unit)


@dataclass(frozen=True)
class Resize(TransformStep):
    width: Optional[int] = None
    height: Optional[int] = None
    maintain_aspect_ratio: bool = True
    name: ClassVar[str] = "resize"

    def apply(self, ops: TransformOps, image: Image) -> Image:
        return ops.resize(image, self.width, self.height, self.maintain_aspect_ratio)


@dataclass(frozen=True)
class Rotate(TransformStep):
    """Rotate clockwise by ``degrees``."""

    degrees: float
    name: ClassVar[str] = "rotate"

    def apply(self, ops: TransformOps, image: Image) -> Image:
        return ops.rotate_around_center(image, self.degrees)


@dataclass(frozen=True)
class Flip(TransformStep):
    horizontal: bool = False
    vertical: bool = False
    name: ClassVar[str] = "flip"

    def apply(self, ops: TransformOps, image: Image) -> Image:
        return ops.flip(image, self.horizontal, self.vertical)


@dataclass(frozen=True)
class PerspectiveCorrect(TransformStep):
    """Perspective-correct the quad given by four corner points in any space."""

    top_left: Point
    top_right: Point
    bottom_left: Point
    bottom_right: Point
    name: ClassVar[str] = "perspective"

    def apply(self, ops: TransformOps, image: Image) -> Image:
        corners = [CoordinateSystem.point_to_unit(p, image.width, image.height)
                   for p in (self.top_left, self.top_right, self.bottom_left, self.bottom_right)]
        return ops.perspective_correction(image, *corners)
