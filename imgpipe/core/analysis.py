"""
Asynchronous content-analysis requests.

An AnalysisRequest hands decoded images and options to an AnalysisEngine,
interprets the raw Detections it reports into Observations (normalized,
bottom-left regions) and ranks them with the shared ranking policy.

Failures never escape ``perform`` as exceptions; they come back inside the
AnalysisResult so concurrent requests stay independent of each other.
"""

import asyncio
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Protocol, Sequence, Tuple, Type, TypeVar

import numpy as np

from .errors import (AnalysisFailed, AnalysisUnsupported, Cancelled, InvalidParameter,
                     PipelineError)
from .geometry import CoordinateSpace, CoordinateSystem, Point, Rect
from .image import Image
from .ranking import rank_observations
from ..utils.logging import get_logger

logger = get_logger(__name__)

E = TypeVar('E', bound=Enum)


def _parse_tier(enum_cls: Type[E], value, default: E) -> E:
    """Parse a tier name case-insensitively, falling back to ``default`` with a warning."""
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip().lower().replace('_', '').replace('-', '')
    for member in enum_cls:
        if member.value == text:
            return member
    logger.warning(f"Unknown {enum_cls.__name__} '{value}', using {default.value}")
    return default


class AnalysisKind(Enum):
    CLASSIFY = "classify"
    DETECT_RECTANGLES = "detect_rectangles"
    DETECT_FACES = "detect_faces"
    DETECT_TEXT = "detect_text"
    DETECT_BARCODES = "detect_barcodes"
    RECOGNIZE_ANIMALS = "recognize_animals"
    DETECT_HUMAN_POSE = "detect_human_pose"
    DETECT_HUMAN_POSE_3D = "detect_human_pose_3d"
    DETECT_HAND_POSE = "detect_hand_pose"
    DETECT_ANIMAL_POSE = "detect_animal_pose"
    SEGMENT_PERSON = "segment_person"
    SALIENCY = "saliency"
    SENSITIVE_CONTENT = "sensitive_content"
    OPTICAL_FLOW = "optical_flow"
    ALIGNMENT = "alignment"

    @property
    def is_pair(self) -> bool:
        """Pair kinds compare two images."""
        return self in (AnalysisKind.OPTICAL_FLOW, AnalysisKind.ALIGNMENT)

    @property
    def image_count(self) -> int:
        return 2 if self.is_pair else 1

    @property
    def is_pose(self) -> bool:
        return self in (AnalysisKind.DETECT_HUMAN_POSE, AnalysisKind.DETECT_HUMAN_POSE_3D,
                        AnalysisKind.DETECT_HAND_POSE, AnalysisKind.DETECT_ANIMAL_POSE)

    @classmethod
    def parse(cls, value) -> 'AnalysisKind':
        """
        Parse an analysis kind name.

        Raises:
            InvalidParameter: If the name is not a known kind
        """
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower().replace('-', '_')
        try:
            return cls(text)
        except ValueError as e:
            names = ', '.join(kind.value for kind in cls)
            raise InvalidParameter(f"unknown analysis kind '{value}' (expected one of {names})") from e


class AnalysisAccuracy(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "veryhigh"

    @classmethod
    def parse(cls, value) -> 'AnalysisAccuracy':
        return _parse_tier(cls, value, cls.MEDIUM)


class SegmentationQuality(Enum):
    FAST = "fast"
    BALANCED = "balanced"
    ACCURATE = "accurate"

    @classmethod
    def parse(cls, value) -> 'SegmentationQuality':
        return _parse_tier(cls, value, cls.BALANCED)


class SaliencyType(Enum):
    ATTENTION = "attention"
    OBJECTNESS = "objectness"

    @classmethod
    def parse(cls, value) -> 'SaliencyType':
        return _parse_tier(cls, value, cls.ATTENTION)


class BarcodeSymbology(Enum):
    QR = "qr"
    AZTEC = "aztec"
    CODE128 = "code128"
    CODE39 = "code39"
    EAN8 = "ean8"
    EAN13 = "ean13"
    PDF417 = "pdf417"
    DATAMATRIX = "datamatrix"
    ITF14 = "itf14"
    UPCE = "upce"

    @classmethod
    def parse(cls, value) -> 'BarcodeSymbology':
        """
        Parse a symbology name strictly.

        Raises:
            InvalidParameter: If the name is not a supported symbology
        """
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower().replace('-', '').replace('_', '')
        try:
            return cls(text)
        except ValueError as e:
            names = ', '.join(s.value for s in cls)
            raise InvalidParameter(f"unknown barcode symbology '{value}' (expected one of {names})") from e

    @classmethod
    def parse_list(cls, text: str) -> FrozenSet['BarcodeSymbology']:
        """Parse a comma-separated symbology list."""
        return frozenset(cls.parse(part) for part in text.split(',') if part.strip())


@dataclass(frozen=True)
class AnalysisOptions:
    """
    Options shared by every analysis kind.

    ``threshold`` drops observations below it before ranking; 0 keeps
    zero-confidence results. ``limit`` caps the ranked list by count.
    """

    threshold: float = 0.0
    limit: Optional[int] = None
    accuracy: AnalysisAccuracy = AnalysisAccuracy.MEDIUM
    quality: SegmentationQuality = SegmentationQuality.BALANCED
    saliency_type: SaliencyType = SaliencyType.ATTENTION
    symbologies: Optional[FrozenSet[BarcodeSymbology]] = None
    landmarks: bool = False
    languages: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.threshold is None or not 0.0 <= self.threshold <= 1.0:
            raise InvalidParameter(f"threshold must be in [0, 1], got {self.threshold}")
        if self.limit is not None and self.limit < 0:
            raise InvalidParameter(f"limit must be >= 0, got {self.limit}")

        object.__setattr__(self, 'accuracy', AnalysisAccuracy.parse(self.accuracy))
        object.__setattr__(self, 'quality', SegmentationQuality.parse(self.quality))
        object.__setattr__(self, 'saliency_type', SaliencyType.parse(self.saliency_type))
        if self.symbologies is not None:
            object.__setattr__(self, 'symbologies',
                               frozenset(BarcodeSymbology.parse(s) for s in self.symbologies))
        object.__setattr__(self, 'languages', tuple(self.languages))


# Payloads


def _array_summary(array: np.ndarray) -> Dict[str, Any]:
    return {
        'mean': round(float(array.mean()), 4) if array.size else 0.0,
        'max': round(float(array.max()), 4) if array.size else 0.0,
    }


@dataclass(frozen=True)
class Label:
    identifier: str

    def to_dict(self):
        return {'label': self.identifier}


@dataclass(frozen=True)
class Text:
    text: str
    candidates: Tuple[str, ...] = ()

    def to_dict(self):
        return {'text': self.text, 'candidates': list(self.candidates)}


@dataclass(frozen=True)
class Barcode:
    symbology: BarcodeSymbology
    payload: str

    def to_dict(self):
        return {'symbology': self.symbology.value, 'payload': self.payload}


@dataclass(frozen=True)
class Face:
    """Face landmarks as normalized (x, y) pairs plus head angles in degrees."""

    landmarks: Tuple[Tuple[float, float], ...] = ()
    roll: Optional[float] = None
    yaw: Optional[float] = None
    pitch: Optional[float] = None

    def to_dict(self):
        return {
            'landmark_count': len(self.landmarks),
            'roll': self.roll,
            'yaw': self.yaw,
            'pitch': self.pitch,
        }


@dataclass(frozen=True)
class Keypoint:
    """A named joint in normalized bottom-left coordinates; ``z`` is set for 3D poses."""

    name: str
    x: float
    y: float
    confidence: float
    z: Optional[float] = None

    def to_dict(self):
        data = {'name': self.name, 'x': self.x, 'y': self.y, 'confidence': self.confidence}
        if self.z is not None:
            data['z'] = self.z
        return data


@dataclass(frozen=True)
class Pose:
    keypoints: Tuple[Keypoint, ...] = ()

    def to_dict(self):
        return {'keypoints': [k.to_dict() for k in self.keypoints]}


@dataclass(frozen=True, eq=False)
class Mask:
    """Segmentation mask, values in [0, 1], row 0 at the top."""

    width: int
    height: int
    pixels: np.ndarray

    def to_dict(self):
        return {'width': self.width, 'height': self.height, 'coverage': _array_summary(self.pixels)['mean']}


@dataclass(frozen=True, eq=False)
class Saliency:
    """Saliency heat map, values in [0, 1], row 0 at the top."""

    width: int
    height: int
    heatmap: np.ndarray

    def to_dict(self):
        return {'width': self.width, 'height': self.height, **_array_summary(self.heatmap)}


@dataclass(frozen=True, eq=False)
class Flow:
    """Optical flow field of shape (height, width, 2) holding (dx, dy) in pixels."""

    width: int
    height: int
    field: np.ndarray

    def to_dict(self):
        magnitude = np.hypot(self.field[..., 0], self.field[..., 1]) if self.field.size else self.field
        return {'width': self.width, 'height': self.height,
                'mean_magnitude': _array_summary(magnitude)['mean'],
                'max_magnitude': _array_summary(magnitude)['max']}


@dataclass(frozen=True)
class Alignment:
    """Affine transform ``[[a, b, tx], [c, d, ty]]`` registering the second image onto the first."""

    a: float = 1.0
    b: float = 0.0
    c: float = 0.0
    d: float = 1.0
    tx: float = 0.0
    ty: float = 0.0

    @property
    def translation_x(self) -> float:
        return self.tx

    @property
    def translation_y(self) -> float:
        return self.ty

    @property
    def magnitude(self) -> float:
        return math.hypot(self.tx, self.ty)

    def to_dict(self):
        return {
            'transform': [[self.a, self.b, self.tx], [self.c, self.d, self.ty]],
            'translation_x': self.translation_x,
            'translation_y': self.translation_y,
            'magnitude': self.magnitude,
        }


@dataclass(frozen=True)
class Quad:
    """Corners of a detected rectangle as normalized bottom-left (x, y) pairs."""

    top_left: Tuple[float, float]
    top_right: Tuple[float, float]
    bottom_left: Tuple[float, float]
    bottom_right: Tuple[float, float]

    @classmethod
    def from_rect(cls, rect: Rect) -> 'Quad':
        """The corners of an axis-aligned normalized rect."""
        rect.require(CoordinateSpace.NORMALIZED_BOTTOM_LEFT)
        return cls((rect.x, rect.max_y), (rect.max_x, rect.max_y), (rect.x, rect.y), (rect.max_x, rect.y))

    def points(self) -> Tuple[Point, Point, Point, Point]:
        return tuple(Point.normalized(x, y) for x, y in
                     (self.top_left, self.top_right, self.bottom_left, self.bottom_right))

    def to_dict(self):
        return {
            'top_left': list(self.top_left),
            'top_right': list(self.top_right),
            'bottom_left': list(self.bottom_left),
            'bottom_right': list(self.bottom_right),
        }


@dataclass(frozen=True)
class SensitiveContent:
    is_sensitive: bool

    def to_dict(self):
        return {'is_sensitive': self.is_sensitive}


# Engine contract


@dataclass(frozen=True)
class Detection:
    """
    A raw finding reported by an analysis engine.

    ``bbox`` is normalized bottom-left ``(x, y, width, height)``; None means
    the whole image.
    """

    confidence: float
    bbox: Optional[Tuple[float, float, float, float]] = None
    payload: Any = None


@dataclass(frozen=True)
class Observation:
    """An interpreted, immutable analysis result."""

    kind: AnalysisKind
    confidence: float
    region: Rect
    payload: Any = None

    def __post_init__(self):
        self.region.require(CoordinateSpace.NORMALIZED_BOTTOM_LEFT)

    def pixel_region(self, image_width: int, image_height: int) -> Rect:
        return CoordinateSystem.to_pixel(self.region, image_width, image_height)

    def to_dict(self, image_width: Optional[int] = None, image_height: Optional[int] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'confidence': round(self.confidence, 4),
            'region': self.region.to_dict(),
        }
        if image_width and image_height:
            data['pixel_region'] = self.pixel_region(image_width, image_height).rounded().to_dict()
        if self.payload is not None and hasattr(self.payload, 'to_dict'):
            data.update(self.payload.to_dict())
        return data


class AnalysisEngine(Protocol):
    """Collaborator that performs the actual inference."""

    def supports(self, kind: AnalysisKind) -> bool: ...

    async def detect(self, kind: AnalysisKind, images: Sequence[Image],
                     options: AnalysisOptions) -> Sequence[Detection]: ...


@dataclass(frozen=True)
class AnalysisResult:
    """
    Outcome of one request: ranked observations, or an error.

    ``total_count`` counts observations that passed the threshold before the
    limit was applied.
    """

    request: 'AnalysisRequest'
    observations: Tuple[Observation, ...] = ()
    total_count: int = 0
    error: Optional[PipelineError] = None

    @classmethod
    def failed(cls, request: 'AnalysisRequest', error: PipelineError) -> 'AnalysisResult':
        return cls(request=request, error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def displayed_count(self) -> int:
        return len(self.observations)

    def to_dict(self, image_width: Optional[int] = None, image_height: Optional[int] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'kind': self.request.kind.value,
            'total_count': self.total_count,
            'displayed_count': self.displayed_count,
            'observations': [o.to_dict(image_width, image_height) for o in self.observations],
        }
        if self.error is not None:
            data['error'] = self.error.to_dict()
        return data


@dataclass(frozen=True)
class AnalysisRequest:
    """A single analysis kind plus its options."""

    kind: AnalysisKind
    options: AnalysisOptions = field(default_factory=AnalysisOptions)

    def __post_init__(self):
        object.__setattr__(self, 'kind', AnalysisKind.parse(self.kind))

    async def perform(self, images: Sequence[Image], engine: AnalysisEngine) -> AnalysisResult:
        """
        Run the request against ``engine``.

        Args:
            images: Decoded inputs; exactly two for pair kinds, one otherwise
            engine: Analysis engine

        Returns:
            AnalysisResult with ranked observations, or with an error of kind
            INVALID_PARAMETER, ANALYSIS_UNSUPPORTED, ANALYSIS_FAILED or
            CANCELLED. Finding nothing is a successful empty result.
        """
        expected = self.kind.image_count
        if len(images) != expected:
            return AnalysisResult.failed(self, InvalidParameter(
                f"{self.kind.value} needs {expected} image(s), got {len(images)}"))

        if not engine.supports(self.kind):
            return AnalysisResult.failed(self, AnalysisUnsupported(
                f"{self.kind.value} is not available with {type(engine).__name__}"))

        try:
            detections = await engine.detect(self.kind, tuple(images), self.options)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            logger.info(f"{self.kind.value} request was cancelled")
            return AnalysisResult.failed(self, Cancelled(f"{self.kind.value} request was cancelled"))
        except PipelineError as e:
            return AnalysisResult.failed(self, e)
        except Exception as e:
            logger.exception(f"Analysis engine failed on {self.kind.value}")
            return AnalysisResult.failed(self, AnalysisFailed(f"{self.kind.value} failed: {e}"))

        try:
            observations = self.interpret(detections)
        except (TypeError, ValueError) as e:
            return AnalysisResult.failed(self, AnalysisFailed(
                f"{self.kind.value} returned a malformed detection: {e}"))

        ranked = rank_observations(observations, self.options.threshold, self.options.limit)
        logger.debug(f"{self.kind.value}: {len(observations)} detections, "
                     f"{ranked.total_count} above threshold, {ranked.displayed_count} kept")
        return AnalysisResult(self, ranked.observations, ranked.total_count)

    def interpret(self, detections: Iterable[Detection]) -> List[Observation]:
        """Turn raw detections into Observations in engine order."""
        observations = []
        for detection in detections:
            payload = detection.payload
            if self.kind is AnalysisKind.DETECT_BARCODES and self.options.symbologies is not None:
                if not isinstance(payload, Barcode) or payload.symbology not in self.options.symbologies:
                    continue
            if self.kind.is_pose and isinstance(payload, Pose):
                payload = Pose(tuple(k for k in payload.keypoints if k.confidence >= self.options.threshold))

            bbox = detection.bbox if detection.bbox is not None else (0.0, 0.0, 1.0, 1.0)
            if len(bbox) != 4:
                raise ValueError(f"bbox must have 4 values, got {len(bbox)}")
            observations.append(Observation(
                kind=self.kind,
                confidence=_clamp_confidence(detection.confidence),
                region=Rect.normalized(*(float(v) for v in bbox)),
                payload=payload,
            ))
        return observations


def _clamp_confidence(value) -> float:
    confidence = float(value)
    if math.isnan(confidence):
        return 0.0
    return min(1.0, max(0.0, confidence))


async def perform_concurrently(requests: Sequence[AnalysisRequest], images: Sequence[Image],
                               engine: AnalysisEngine, max_concurrency: int = 4) -> List[AnalysisResult]:
    """
    Run independent requests over the same decoded images.

    Single-image requests use ``images[0]``, pair requests ``images[:2]``.
    At most ``max_concurrency`` requests run at once; results come back in
    request order whatever order they finish in.
    """
    semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def run(request: AnalysisRequest) -> AnalysisResult:
        async with semaphore:
            return await request.perform(images[:request.kind.image_count], engine)

    return list(await asyncio.gather(*(run(request) for request in requests)))
