"""
Filter and resampling primitives backed by Pillow and numpy.

The pipeline never computes pixels itself; it clamps parameters and hands
them to a FilterProvider. Every provider method returns a new Image, or None
when the input cannot be processed (for example an extent smaller than the
kernel).
"""

import functools
from typing import Optional, Protocol, Sequence, Tuple

import numpy as np
from PIL import Image as PILImage, ImageEnhance, ImageFilter

from .image import Image
from ..utils.logging import get_logger

logger = get_logger(__name__)

# ITU-R BT.601 luma weights
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float32)

SEPIA_MATRIX = np.array([
    [0.393, 0.769, 0.189],
    [0.349, 0.686, 0.168],
    [0.272, 0.534, 0.131],
], dtype=np.float32)

# Colour-control settings for the preset photo effects
PHOTO_EFFECTS = {
    'mono': {'saturation': 0.0},
    'noir': {'saturation': 0.0, 'contrast': 1.6, 'brightness': -0.05},
    'chrome': {'saturation': 1.3, 'contrast': 1.15},
    'fade': {'saturation': 0.6, 'contrast': 0.8, 'brightness': 0.05},
    'instant': {'saturation': 0.8, 'contrast': 0.9, 'temperature': 800.0},
    'process': {'saturation': 0.9, 'contrast': 1.1, 'temperature': -800.0},
    'transfer': {'saturation': 0.9, 'brightness': 0.03, 'temperature': 500.0},
}

MIN_KERNEL_EXTENT = 3


class FilterProvider(Protocol):
    """Collaborator that supplies resampling, warping and filter kernels."""

    def resample(self, image: Image, width: int, height: int) -> Optional[Image]: ...

    def rotate(self, image: Image, degrees: float) -> Optional[Image]: ...

    def warp_perspective(self, image: Image, coefficients: Sequence[float],
                         size: Tuple[int, int]) -> Optional[Image]: ...

    def color_controls(self, image: Image, brightness: float, contrast: float,
                       saturation: float) -> Optional[Image]: ...

    def grayscale(self, image: Image) -> Optional[Image]: ...

    def exposure(self, image: Image, ev: float) -> Optional[Image]: ...

    def temperature_tint(self, image: Image, temperature: float, tint: float) -> Optional[Image]: ...

    def gaussian_blur(self, image: Image, radius: float) -> Optional[Image]: ...

    def motion_blur(self, image: Image, radius: float, angle: float) -> Optional[Image]: ...

    def zoom_blur(self, image: Image, amount: float) -> Optional[Image]: ...

    def sharpen(self, image: Image, sharpness: float) -> Optional[Image]: ...

    def unsharp_mask(self, image: Image, radius: float, intensity: float) -> Optional[Image]: ...

    def noise_reduction(self, image: Image, noise_level: float, sharpness: float) -> Optional[Image]: ...

    def invert(self, image: Image) -> Optional[Image]: ...

    def sepia(self, image: Image, intensity: float) -> Optional[Image]: ...

    def posterize(self, image: Image, levels: float) -> Optional[Image]: ...

    def threshold(self, image: Image, threshold: float) -> Optional[Image]: ...

    def pixellate(self, image: Image, scale: float) -> Optional[Image]: ...

    def vignette(self, image: Image, intensity: float, radius: float) -> Optional[Image]: ...

    def hue_adjust(self, image: Image, angle: float) -> Optional[Image]: ...

    def defringe(self, image: Image, amount: float) -> Optional[Image]: ...

    def edges(self, image: Image, intensity: float) -> Optional[Image]: ...

    def edge_work(self, image: Image, radius: float) -> Optional[Image]: ...

    def comic(self, image: Image) -> Optional[Image]: ...

    def halftone(self, image: Image, width: float, angle: float, sharpness: float) -> Optional[Image]: ...

    def photo_effect(self, image: Image, effect: str) -> Optional[Image]: ...


def _split(image: Image) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """Split an Image into float RGB and the untouched alpha channel."""
    pixels = image.pixels.astype(np.float32)
    if image.channels == 1:
        return np.repeat(pixels, 3, axis=2), None
    if image.channels == 4:
        return pixels[:, :, :3], image.pixels[:, :, 3:]
    return pixels, None


def _merge(image: Image, rgb: np.ndarray, alpha: Optional[np.ndarray]) -> Image:
    out = np.clip(np.rint(rgb), 0, 255).astype(np.uint8)
    if alpha is not None:
        out = np.concatenate([out, alpha], axis=2)
    return image.with_pixels(out)


def _to_pil(rgb: np.ndarray) -> PILImage.Image:
    return PILImage.fromarray(np.clip(np.rint(rgb), 0, 255).astype(np.uint8))


def _from_pil(pil_image: PILImage.Image) -> np.ndarray:
    return np.asarray(pil_image.convert('RGB'), dtype=np.float32)


def _luma(rgb: np.ndarray) -> np.ndarray:
    return rgb @ LUMA_WEIGHTS


def _needs_extent(minimum: int = MIN_KERNEL_EXTENT):
    """Return None instead of running a kernel on an image smaller than ``minimum``."""
    def decorator(method):
        @functools.wraps(method)
        def wrapper(self, image: Image, *args, **kwargs):
            if min(image.width, image.height) < minimum:
                logger.debug(f"{method.__name__}: extent {image.width}x{image.height} "
                             f"is below kernel minimum {minimum}")
                return None
            return method(self, image, *args, **kwargs)
        return wrapper
    return decorator


class PillowFilterProvider:
    """
    FilterProvider implementation using Pillow kernels and numpy colour math.

    Parameters arrive already clamped by the filter chain; this class does
    not validate them again.
    """

    # Geometry

    def resample(self, image: Image, width: int, height: int) -> Optional[Image]:
        """Resize to exactly ``width`` x ``height`` with a Lanczos kernel."""
        if width < 1 or height < 1:
            return None
        resized = image.to_pil().resize((int(width), int(height)), PILImage.LANCZOS)
        return Image.from_pil(resized, image.source)

    def rotate(self, image: Image, degrees: float) -> Optional[Image]:
        """
        Rotate counter-clockwise by ``degrees`` around the centre.

        The canvas expands to the rotated bounding box; uncovered corners are
        transparent for RGBA input and black otherwise.
        """
        rotated = image.to_pil().rotate(degrees, resample=PILImage.BICUBIC, expand=True)
        return Image.from_pil(rotated, image.source)

    def warp_perspective(self, image: Image, coefficients: Sequence[float],
                         size: Tuple[int, int]) -> Optional[Image]:
        """
        Apply a projective warp.

        ``coefficients`` are the eight Pillow PERSPECTIVE coefficients mapping
        output pixel/top-left positions to input positions.
        """
        if size[0] < 1 or size[1] < 1:
            return None
        warped = image.to_pil().transform(
            (int(size[0]), int(size[1])),
            PILImage.PERSPECTIVE,
            tuple(float(c) for c in coefficients),
            resample=PILImage.BICUBIC,
        )
        return Image.from_pil(warped, image.source)

    # Colour and tone

    def color_controls(self, image: Image, brightness: float, contrast: float,
                       saturation: float) -> Optional[Image]:
        """
        Adjust brightness (additive), contrast (around mean luma) and saturation.

        ``(0, 1, 1)`` leaves the image unchanged.
        """
        rgb, alpha = _split(image)
        rgb = rgb + brightness * 255.0
        mean = float(_luma(rgb).mean())
        rgb = (rgb - mean) * contrast + mean
        gray = _luma(rgb)[:, :, np.newaxis]
        rgb = gray + (rgb - gray) * saturation
        return _merge(image, rgb, alpha)

    def grayscale(self, image: Image) -> Optional[Image]:
        rgb, alpha = _split(image)
        return _merge(image, np.repeat(_luma(rgb)[:, :, np.newaxis], 3, axis=2), alpha)

    def exposure(self, image: Image, ev: float) -> Optional[Image]:
        """Scale intensities by ``2 ** ev``."""
        rgb, alpha = _split(image)
        return _merge(image, rgb * (2.0 ** ev), alpha)

    def temperature_tint(self, image: Image, temperature: float, tint: float) -> Optional[Image]:
        """
        Shift white balance.

        Positive ``temperature`` (Kelvin offset) warms the image, positive
        ``tint`` pushes towards magenta.
        """
        rgb, alpha = _split(image)
        warm = temperature / 5000.0
        magenta = tint / 100.0
        gains = np.array([1.0 + 0.2 * warm, 1.0 - 0.15 * magenta, 1.0 - 0.2 * warm], dtype=np.float32)
        return _merge(image, rgb * gains, alpha)

    def hue_adjust(self, image: Image, angle: float) -> Optional[Image]:
        """Rotate hue by ``angle`` degrees."""
        rgb, alpha = _split(image)
        hsv = np.asarray(_to_pil(rgb).convert('HSV')).copy()
        shift = int(round(angle / 360.0 * 256))
        hsv[:, :, 0] = ((hsv[:, :, 0].astype(np.int32) + shift) % 256).astype(np.uint8)
        rotated = PILImage.frombytes('HSV', (image.width, image.height), hsv.tobytes()).convert('RGB')
        return _merge(image, _from_pil(rotated), alpha)

    def invert(self, image: Image) -> Optional[Image]:
        rgb, alpha = _split(image)
        return _merge(image, 255.0 - rgb, alpha)

    def sepia(self, image: Image, intensity: float) -> Optional[Image]:
        """Blend towards a sepia tone; ``intensity`` 0 is a no-op."""
        rgb, alpha = _split(image)
        toned = rgb @ SEPIA_MATRIX.T
        return _merge(image, rgb * (1.0 - intensity) + toned * intensity, alpha)

    def posterize(self, image: Image, levels: float) -> Optional[Image]:
        rgb, alpha = _split(image)
        step = 255.0 / (max(2, int(round(levels))) - 1)
        return _merge(image, np.rint(rgb / step) * step, alpha)

    def threshold(self, image: Image, threshold: float) -> Optional[Image]:
        """Black and white at ``threshold`` (0-1) of full luma."""
        rgb, alpha = _split(image)
        mask = _luma(rgb) >= threshold * 255.0
        bw = np.where(mask, 255.0, 0.0)[:, :, np.newaxis]
        return _merge(image, np.repeat(bw, 3, axis=2), alpha)

    def vignette(self, image: Image, intensity: float, radius: float) -> Optional[Image]:
        """
        Darken towards the corners.

        ``radius`` is the fraction of the half-diagonal at which the falloff
        reaches full strength; ``intensity`` 2 turns that region black.
        """
        rgb, alpha = _split(image)
        h, w = image.height, image.width
        ys, xs = np.mgrid[0:h, 0:w].astype(np.float32)
        cx, cy = (w - 1) / 2.0, (h - 1) / 2.0
        distance = np.hypot(xs - cx, ys - cy) / max(float(np.hypot(cx, cy)), 1e-6)
        falloff = np.clip(distance / max(radius, 1e-6), 0.0, 1.0) ** 2
        factor = np.clip(1.0 - 0.5 * intensity * falloff, 0.0, 1.0)
        return _merge(image, rgb * factor[:, :, np.newaxis], alpha)

    def photo_effect(self, image: Image, effect: str) -> Optional[Image]:
        """Apply one of the preset looks in PHOTO_EFFECTS."""
        settings = PHOTO_EFFECTS.get(effect)
        if settings is None:
            return None

        result = self.color_controls(
            image,
            settings.get('brightness', 0.0),
            settings.get('contrast', 1.0),
            settings.get('saturation', 1.0),
        )
        if result is not None and 'temperature' in settings:
            result = self.temperature_tint(result, settings['temperature'], 0.0)
        return result

    def mono(self, image: Image) -> Optional[Image]:
        return self.photo_effect(image, 'mono')

    def noir(self, image: Image) -> Optional[Image]:
        return self.photo_effect(image, 'noir')

    def chrome(self, image: Image) -> Optional[Image]:
        return self.photo_effect(image, 'chrome')

    def fade(self, image: Image) -> Optional[Image]:
        return self.photo_effect(image, 'fade')

    def instant(self, image: Image) -> Optional[Image]:
        return self.photo_effect(image, 'instant')

    def process(self, image: Image) -> Optional[Image]:
        return self.photo_effect(image, 'process')

    def transfer(self, image: Image) -> Optional[Image]:
        return self.photo_effect(image, 'transfer')

    # Kernels

    @_needs_extent()
    def gaussian_blur(self, image: Image, radius: float) -> Optional[Image]:
        rgb, alpha = _split(image)
        if radius <= 0:
            return _merge(image, rgb, alpha)
        blurred = _to_pil(rgb).filter(ImageFilter.GaussianBlur(radius))
        return _merge(image, _from_pil(blurred), alpha)

    @_needs_extent()
    def motion_blur(self, image: Image, radius: float, angle: float) -> Optional[Image]:
        """Average samples along a line of length ``2 * radius`` at ``angle`` degrees."""
        rgb, alpha = _split(image)
        if radius <= 0:
            return _merge(image, rgb, alpha)

        pad = int(np.ceil(radius))
        theta = np.deg2rad(angle)
        h, w = image.height, image.width
        padded = np.pad(rgb, ((pad, pad), (pad, pad), (0, 0)), mode='edge')
        offsets = np.linspace(-radius, radius, 2 * pad + 1)

        accumulated = np.zeros_like(rgb)
        for t in offsets:
            dx = int(round(t * np.cos(theta)))
            # Rows grow downwards
            dy = int(round(-t * np.sin(theta)))
            accumulated += padded[pad + dy:pad + dy + h, pad + dx:pad + dx + w]

        return _merge(image, accumulated / len(offsets), alpha)

    @_needs_extent()
    def zoom_blur(self, image: Image, amount: float, steps: int = 8) -> Optional[Image]:
        """Average progressively enlarged, centre-cropped copies."""
        rgb, alpha = _split(image)
        if amount <= 0:
            return _merge(image, rgb, alpha)

        pil_image = _to_pil(rgb)
        w, h = image.width, image.height
        accumulated = np.zeros_like(rgb)
        for k in range(steps):
            scale = 1.0 + (amount / 100.0) * k / (steps - 1)
            sw, sh = max(w, int(round(w * scale))), max(h, int(round(h * scale)))
            zoomed = pil_image.resize((sw, sh), PILImage.BILINEAR)
            left, top = (sw - w) // 2, (sh - h) // 2
            accumulated += _from_pil(zoomed.crop((left, top, left + w, top + h)))

        return _merge(image, accumulated / steps, alpha)

    @_needs_extent()
    def sharpen(self, image: Image, sharpness: float) -> Optional[Image]:
        rgb, alpha = _split(image)
        sharpened = ImageEnhance.Sharpness(_to_pil(rgb)).enhance(1.0 + 2.0 * sharpness)
        return _merge(image, _from_pil(sharpened), alpha)

    @_needs_extent()
    def unsharp_mask(self, image: Image, radius: float, intensity: float) -> Optional[Image]:
        rgb, alpha = _split(image)
        mask = ImageFilter.UnsharpMask(radius=radius, percent=int(round(intensity * 100)), threshold=0)
        return _merge(image, _from_pil(_to_pil(rgb).filter(mask)), alpha)

    @_needs_extent()
    def noise_reduction(self, image: Image, noise_level: float, sharpness: float) -> Optional[Image]:
        """Blend with a median-filtered copy, then restore edges."""
        rgb, alpha = _split(image)
        pil_image = _to_pil(rgb)
        denoised = pil_image.filter(ImageFilter.MedianFilter(3))
        blended = PILImage.blend(pil_image, denoised, min(1.0, noise_level * 10.0))
        restored = ImageEnhance.Sharpness(blended).enhance(1.0 + sharpness)
        return _merge(image, _from_pil(restored), alpha)

    @_needs_extent()
    def pixellate(self, image: Image, scale: float) -> Optional[Image]:
        rgb, alpha = _split(image)
        block = int(round(scale))
        if block <= 1:
            return _merge(image, rgb, alpha)
        w, h = image.width, image.height
        small = _to_pil(rgb).resize((max(1, -(-w // block)), max(1, -(-h // block))), PILImage.BOX)
        return _merge(image, _from_pil(small.resize((w, h), PILImage.NEAREST)), alpha)

    @_needs_extent()
    def defringe(self, image: Image, amount: float) -> Optional[Image]:
        """Desaturate high-contrast edges where colour fringing appears."""
        rgb, alpha = _split(image)
        edges = np.asarray(_to_pil(rgb).convert('L').filter(ImageFilter.FIND_EDGES), dtype=np.float32)
        mask = (edges / 255.0)[:, :, np.newaxis] * amount
        gray = _luma(rgb)[:, :, np.newaxis]
        return _merge(image, rgb + (gray - rgb) * mask, alpha)

    @_needs_extent()
    def edges(self, image: Image, intensity: float) -> Optional[Image]:
        rgb, alpha = _split(image)
        found = _from_pil(_to_pil(rgb).filter(ImageFilter.FIND_EDGES))
        return _merge(image, found * intensity, alpha)

    @_needs_extent()
    def edge_work(self, image: Image, radius: float) -> Optional[Image]:
        """Dark line drawing on a white background."""
        rgb, alpha = _split(image)
        pil_image = _to_pil(rgb)
        if radius > 0:
            pil_image = pil_image.filter(ImageFilter.GaussianBlur(radius))
        lines = np.asarray(pil_image.convert('L').filter(ImageFilter.FIND_EDGES), dtype=np.float32)
        drawing = 255.0 - np.clip(lines * 4.0, 0, 255)
        return _merge(image, np.repeat(drawing[:, :, np.newaxis], 3, axis=2), alpha)

    @_needs_extent()
    def comic(self, image: Image) -> Optional[Image]:
        """Flattened colours with inked edges."""
        rgb, alpha = _split(image)
        smoothed = _from_pil(_to_pil(rgb).filter(ImageFilter.MedianFilter(3)))
        step = 255.0 / 5
        flat = np.rint(smoothed / step) * step
        edges = np.asarray(_to_pil(rgb).convert('L').filter(ImageFilter.FIND_EDGES), dtype=np.float32)
        inked = np.where((edges > 40.0)[:, :, np.newaxis], 0.0, flat)
        return _merge(image, inked, alpha)

    def halftone(self, image: Image, width: float, angle: float, sharpness: float) -> Optional[Image]:
        """
        Monochrome dot screen.

        ``width`` is the cell size in pixels, ``angle`` rotates the screen and
        ``sharpness`` 1 gives hard-edged dots.
        """
        rgb, alpha = _split(image)
        h, w = image.height, image.width
        ys, xs = np.mgrid[0:h, 0:w].astype(np.float32)
        theta = np.deg2rad(angle)
        u = xs * np.cos(theta) + ys * np.sin(theta)
        v = -xs * np.sin(theta) + ys * np.cos(theta)
        half = width / 2.0
        distance = np.hypot(np.mod(u, width) - half, np.mod(v, width) - half) / half

        darkness = 1.0 - _luma(rgb) / 255.0
        dot_radius = np.sqrt(darkness) * np.sqrt(2.0)
        softness = max(1e-3, 1.0 - sharpness)
        ink = np.clip((dot_radius - distance) / softness + 0.5, 0.0, 1.0)

        screen = (255.0 * (1.0 - ink))[:, :, np.newaxis]
        return _merge(image, np.repeat(screen, 3, axis=2), alpha)
