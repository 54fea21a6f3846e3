"""
A local analysis engine built on numpy FFTs, scipy.ndimage and block matching.

Covers the kinds that need no trained model: saliency (spectral residual),
rectangle detection (Otsu threshold plus connected components), alignment
(phase correlation) and optical flow (block matching). Every other kind is
reported as unsupported so the caller can show a capability message.
"""

import asyncio
from typing import List, Sequence, Tuple

import numpy as np
from PIL import Image as PILImage
from scipy.ndimage import find_objects, gaussian_filter, label, uniform_filter
from scipy.ndimage import maximum as label_maximum

from .analysis import (AnalysisAccuracy, AnalysisKind, AnalysisOptions, Alignment, Detection,
                       Flow, Quad, Saliency, SaliencyType)
from .errors import AnalysisUnsupported
from .image import Image
from ..utils.logging import get_logger

logger = get_logger(__name__)

# Long side of the grid the saliency map is computed on
SALIENCY_WORKING_SIZE = 64
# Long side of the grid rectangles are searched on
RECTANGLE_WORKING_SIZE = 256
# Smallest rectangle reported, as a fraction of the image area
MIN_RECTANGLE_AREA = 0.01

FLOW_BLOCK_SIZES = {
    AnalysisAccuracy.LOW: 32,
    AnalysisAccuracy.MEDIUM: 16,
    AnalysisAccuracy.HIGH: 8,
    AnalysisAccuracy.VERY_HIGH: 4,
}

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114])


def _gray(image: Image) -> np.ndarray:
    if image.channels == 1:
        return image.pixels[:, :, 0].astype(np.float64)
    return image.pixels[:, :, :3].astype(np.float64) @ LUMA_WEIGHTS


def _gray_resized(image: Image, size: Tuple[int, int]) -> np.ndarray:
    """Grayscale at ``size`` (width, height)."""
    if image.size == size:
        return _gray(image)
    resized = image.to_pil().convert('L').resize(size, PILImage.BILINEAR)
    return np.asarray(resized, dtype=np.float64)


def _working_size(image: Image, long_side: int) -> Tuple[int, int]:
    scale = min(1.0, long_side / max(image.width, image.height))
    return (max(1, int(round(image.width * scale))),
            max(1, int(round(image.height * scale))))


def _otsu_threshold(levels: np.ndarray) -> int:
    """Gray level (uint8) that best separates the histogram into two classes."""
    p = np.bincount(levels.ravel(), minlength=256).astype(np.float64) / levels.size
    omega = np.cumsum(p)
    mu = np.cumsum(p * np.arange(256))
    numerator = (mu[-1] * omega - mu) ** 2
    denominator = omega * (1.0 - omega)
    with np.errstate(divide='ignore', invalid='ignore'):
        between = np.where(denominator > 1e-12, numerator / denominator, 0.0)
    return int(np.argmax(between))


def _grid_bbox(row0: int, col0: int, row1: int, col1: int, h: int, w: int) -> Tuple[float, float, float, float]:
    """Grid cell bounds (row 0 at top) to a normalized bottom-left bbox."""
    return (col0 / w, 1.0 - (row1 + 1) / h, (col1 - col0 + 1) / w, (row1 - row0 + 1) / h)


class NumpyAnalysisEngine:
    """
    AnalysisEngine for saliency, rectangles, alignment and optical flow.

    The numeric work runs in a worker thread so concurrent requests do not
    block the event loop.
    """

    SUPPORTED = frozenset({AnalysisKind.SALIENCY, AnalysisKind.DETECT_RECTANGLES,
                           AnalysisKind.ALIGNMENT, AnalysisKind.OPTICAL_FLOW})

    def supports(self, kind: AnalysisKind) -> bool:
        return kind in self.SUPPORTED

    async def detect(self, kind: AnalysisKind, images: Sequence[Image],
                     options: AnalysisOptions) -> Sequence[Detection]:
        if kind is AnalysisKind.SALIENCY:
            return await asyncio.to_thread(self.saliency, images[0], options.saliency_type)
        if kind is AnalysisKind.DETECT_RECTANGLES:
            return await asyncio.to_thread(self.rectangles, images[0])
        if kind is AnalysisKind.ALIGNMENT:
            return await asyncio.to_thread(self.alignment, images[0], images[1])
        if kind is AnalysisKind.OPTICAL_FLOW:
            return await asyncio.to_thread(self.optical_flow, images[0], images[1], options.accuracy)
        raise AnalysisUnsupported(f"{kind.value} is not available in the local engine")

    def saliency_map(self, image: Image) -> np.ndarray:
        """
        Spectral-residual saliency on a small working grid.

        Returns:
            Heat map in [0, 1], row 0 at the top
        """
        size = _working_size(image, SALIENCY_WORKING_SIZE)
        gray = _gray_resized(image, size)
        if float(gray.std()) < 1e-6:
            return np.zeros_like(gray)

        spectrum = np.fft.fft2(gray)
        log_amplitude = np.log(np.abs(spectrum) + 1e-8)
        phase = np.angle(spectrum)
        residual = log_amplitude - uniform_filter(log_amplitude, size=3, mode='nearest')
        heat = np.abs(np.fft.ifft2(np.exp(residual + 1j * phase))) ** 2
        heat = gaussian_filter(heat, sigma=max(1.0, min(size) / 32.0), mode='nearest')

        low, high = float(heat.min()), float(heat.max())
        if high - low < 1e-12:
            return np.zeros_like(heat)
        return (heat - low) / (high - low)

    def saliency(self, image: Image, saliency_type: SaliencyType) -> List[Detection]:
        """
        Salient regions.

        Attention saliency reports one region around everything above the
        mean-plus-one-sigma level. Objectness reports each connected salient
        blob separately, scored by its peak heat.
        """
        heat = self.saliency_map(image)
        h, w = heat.shape
        payload = Saliency(w, h, heat)

        if not heat.any():
            return []

        mask = heat >= heat.mean() + heat.std()
        if saliency_type is SaliencyType.ATTENTION:
            rows, cols = np.nonzero(mask)
            if rows.size == 0:
                return []
            bbox = _grid_bbox(rows.min(), cols.min(), rows.max(), cols.max(), h, w)
            return [Detection(float(heat[mask].mean()), bbox, payload)]

        labels, count = label(mask)
        if count == 0:
            return []
        peaks = label_maximum(heat, labels, index=np.arange(1, count + 1))
        detections = []
        for (rows, cols), peak in zip(find_objects(labels), peaks):
            bbox = _grid_bbox(rows.start, cols.start, rows.stop - 1, cols.stop - 1, h, w)
            detections.append(Detection(float(peak), bbox, payload))
        return detections

    def rectangles(self, image: Image) -> List[Detection]:
        """
        The largest rectangular region that stands out from the background.

        The image is split at its Otsu threshold, with the class that covers
        most of the border taken as background. The biggest connected blob of
        the other class gives the quad; its corners are the blob points
        nearest each image corner. Confidence is how much of the quad the blob
        fills, so a clean rectangle scores 1.

        Returns:
            At most one Detection with a Quad payload
        """
        size = _working_size(image, RECTANGLE_WORKING_SIZE)
        gray = _gray_resized(image, size)
        if float(gray.std()) < 1e-6:
            return []

        levels = np.clip(np.rint(gray), 0, 255).astype(np.uint8)
        mask = levels > _otsu_threshold(levels)
        border = np.concatenate([mask[0], mask[-1], mask[:, 0], mask[:, -1]])
        if border.mean() > 0.5:
            mask = ~mask

        labels, count = label(mask)
        if count == 0:
            return []
        areas = np.bincount(labels.ravel())[1:]
        largest = int(np.argmax(areas)) + 1
        if areas[largest - 1] < MIN_RECTANGLE_AREA * mask.size:
            return []

        rows, cols = np.nonzero(labels == largest)
        h, w = mask.shape
        # Cell corners in pixel/top-left grid units
        i = np.argmin(cols + rows)
        top_left = (cols[i], rows[i])
        i = np.argmax(cols - rows)
        top_right = (cols[i] + 1, rows[i])
        i = np.argmin(cols - rows)
        bottom_left = (cols[i], rows[i] + 1)
        i = np.argmax(cols + rows)
        bottom_right = (cols[i] + 1, rows[i] + 1)

        corners = [(float(x) / w, 1.0 - float(y) / h)
                   for x, y in (top_left, top_right, bottom_left, bottom_right)]
        quad = Quad(*corners)

        ring = (top_left, top_right, bottom_right, bottom_left)
        quad_area = abs(sum(a[0] * b[1] - b[0] * a[1]
                            for a, b in zip(ring, ring[1:] + ring[:1]))) / 2.0
        confidence = min(1.0, float(areas[largest - 1]) / quad_area) if quad_area > 0 else 0.0

        xs = [x for x, _ in corners]
        ys = [y for _, y in corners]
        bbox = (min(xs), min(ys), max(xs) - min(xs), max(ys) - min(ys))
        logger.debug(f"Rectangle candidate covering {areas[largest - 1]} of {mask.size} cells, "
                     f"fill {confidence:.3f}")
        return [Detection(confidence, bbox, quad)]

    def alignment(self, reference: Image, moving: Image) -> List[Detection]:
        """
        Translational registration by phase correlation.

        The moving image is resampled to the reference size first. The result
        is the translation (bottom-left, pixels) that maps the moving image
        onto the reference; its confidence is the correlation peak.
        """
        a = _gray(reference)
        b = _gray_resized(moving, reference.size)
        h, w = a.shape

        cross_power = np.fft.fft2(a) * np.conj(np.fft.fft2(b))
        cross_power /= np.abs(cross_power) + 1e-12
        correlation = np.abs(np.fft.ifft2(cross_power))

        row, col = np.unravel_index(int(np.argmax(correlation)), correlation.shape)
        dy = row - h if row > h // 2 else row
        dx = col - w if col > w // 2 else col

        confidence = float(np.clip(correlation[row, col], 0.0, 1.0))
        logger.debug(f"Phase correlation peak {confidence:.3f} at dx={dx}, dy={dy}")
        # Rows grow downwards; report y upwards
        return [Detection(confidence, None, Alignment(tx=float(dx), ty=float(-dy)))]

    def optical_flow(self, first: Image, second: Image,
                     accuracy: AnalysisAccuracy = AnalysisAccuracy.MEDIUM) -> List[Detection]:
        """
        Dense block-matching flow from ``first`` to ``second``.

        Block size follows the accuracy tier (32, 16, 8 or 4 pixels); each
        block searches half a block in every direction and ties prefer the
        smallest motion. The field holds (dx, dy) per block with dy upwards.
        """
        a = _gray(first)
        b = _gray_resized(second, first.size)
        h, w = a.shape

        block = max(1, min(FLOW_BLOCK_SIZES[accuracy], h, w))
        rows, cols = h // block, w // block
        search = max(1, block // 2)
        a = a[:rows * block, :cols * block]
        padded = np.pad(b, search, mode='edge')

        displacements = sorted(
            ((dx, dy) for dy in range(-search, search + 1) for dx in range(-search, search + 1)),
            key=lambda d: (abs(d[0]) + abs(d[1]), d[1], d[0]),
        )
        costs = np.empty((len(displacements), rows, cols))
        for i, (dx, dy) in enumerate(displacements):
            shifted = padded[search + dy:search + dy + rows * block, search + dx:search + dx + cols * block]
            costs[i] = np.abs(a - shifted).reshape(rows, block, cols, block).sum(axis=(1, 3))

        best = costs.argmin(axis=0)
        moves = np.array(displacements, dtype=np.float64)[best]
        field = np.stack([moves[..., 0], -moves[..., 1]], axis=-1)

        best_cost = np.take_along_axis(costs, best[np.newaxis], axis=0)[0]
        confidence = float(np.clip(1.0 - best_cost.mean() / (255.0 * block * block), 0.0, 1.0))
        logger.debug(f"Block matching with {block}px blocks over {cols}x{rows} grid")
        return [Detection(confidence, None, Flow(cols, rows, field))]
