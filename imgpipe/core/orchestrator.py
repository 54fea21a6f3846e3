"""
Top-level entry point for editing and analysis runs.

Editing:  DECODED -> TRANSFORMED* -> FILTERED* -> RENDERED -> SAVED
Analysis: DECODED -> ANALYZED -> RANKED -> REPORTED
Scanning: DECODED -> ANALYZED -> TRANSFORMED -> RENDERED -> SAVED

Any failure ends the run in FAILED with the error attached. Each run keeps
its own state history, so one orchestrator can serve concurrent runs over
independent images.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .analysis import (AnalysisAccuracy, AnalysisKind, AnalysisOptions, AnalysisRequest,
                       AnalysisResult, Quad, SaliencyType, SegmentationQuality, perform_concurrently)
from .errors import InvalidParameter, NoResultsFound, PipelineError, Result
from .filter_chain import FilterChain, FilterStage
from .filter_provider import FilterProvider, PillowFilterProvider
from .image import Image, ImageCodec, ImageInfo, PillowCodec
from .numpy_engine import NumpyAnalysisEngine
from .transform_ops import PerspectiveCorrect, TransformOps, TransformStep
from ..utils.config import Config, parse_languages
from ..utils.logging import OperationMetrics, get_logger, image_identifier, log_pipeline_step

logger = get_logger(__name__)

PathLike = Union[str, Path]


class PipelineState(Enum):
    DECODED = "decoded"
    TRANSFORMED = "transformed"
    FILTERED = "filtered"
    RENDERED = "rendered"
    SAVED = "saved"
    ANALYZED = "analyzed"
    RANKED = "ranked"
    REPORTED = "reported"
    FAILED = "failed"


@dataclass
class EditResult:
    """Outcome of an editing run."""

    history: List[PipelineState] = field(default_factory=list)
    image: Optional[Image] = None
    output_path: Optional[Path] = None
    error: Optional[PipelineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def state(self) -> Optional[PipelineState]:
        return self.history[-1] if self.history else None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'ok': self.ok,
            'states': [s.value for s in self.history],
        }
        if self.image is not None:
            data['width'] = self.image.width
            data['height'] = self.image.height
        if self.output_path is not None:
            data['output'] = self.output_path.as_posix()
        if self.error is not None:
            data['error'] = self.error.to_dict()
        return data


@dataclass
class AnalysisReport:
    """
    Outcome of an analysis run.

    Regions are reported back in pixel/top-left terms against the first
    input image.
    """

    request: AnalysisRequest
    history: List[PipelineState] = field(default_factory=list)
    result: Optional[AnalysisResult] = None
    image_size: Optional[Tuple[int, int]] = None
    error: Optional[PipelineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def observations(self):
        return self.result.observations if self.result else ()

    @property
    def total_count(self) -> int:
        return self.result.total_count if self.result else 0

    @property
    def displayed_count(self) -> int:
        return self.result.displayed_count if self.result else 0

    def to_dict(self) -> Dict[str, Any]:
        if self.result is not None:
            width, height = self.image_size or (None, None)
            data = self.result.to_dict(width, height)
        else:
            data = {'kind': self.request.kind.value, 'total_count': 0,
                    'displayed_count': 0, 'observations': []}
        if self.image_size is not None:
            data['image'] = {'width': self.image_size[0], 'height': self.image_size[1]}
        if self.error is not None:
            data['error'] = self.error.to_dict()
        return data


FilterInput = Union[FilterChain, Sequence[FilterStage], None]


class PipelineOrchestrator:
    """
    Runs editing and analysis pipelines over decoded images.

    Collaborators are injected so tests can replace the codec, filter
    provider or analysis engine with fakes.

    Args:
        config: Run configuration. If None, uses defaults.
        codec: Decoder/encoder. Defaults to PillowCodec.
        provider: Filter/transform kernels. Defaults to PillowFilterProvider.
        engine: Analysis engine. Defaults to NumpyAnalysisEngine.
    """

    def __init__(self,
                 config: Optional[Config] = None,
                 codec: Optional[ImageCodec] = None,
                 provider: Optional[FilterProvider] = None,
                 engine=None):
        self.config = config or Config()
        self.codec = codec or PillowCodec(self.config.max_image_dimension)
        self.provider = provider or PillowFilterProvider()
        self.engine = engine or NumpyAnalysisEngine()
        self.transforms = TransformOps(self.provider)
        self.metrics = OperationMetrics(logger)

        logger.debug(f"PipelineOrchestrator initialized with engine={type(self.engine).__name__}")

    def _record(self, history: List[PipelineState], state: PipelineState, start_time: float,
                details: Optional[Dict[str, Any]] = None) -> None:
        history.append(state)
        self.metrics.log_operation(state.value, (time.time() - start_time) * 1000,
                                   success=state is not PipelineState.FAILED, details=details)

    def _fail(self, history: List[PipelineState], error: PipelineError, start_time: float) -> None:
        if error.kind.aborts_pipeline:
            logger.error(f"Pipeline aborted: {error}")
        else:
            logger.warning(f"Pipeline step failed ({error.kind.value}): {error}")
        self._record(history, PipelineState.FAILED, start_time, {'kind': error.kind.value})

    # Editing

    def edit_image(self, image: Image, transforms: Sequence[TransformStep] = (),
                   filters: FilterInput = None,
                   history: Optional[List[PipelineState]] = None) -> Result[Image]:
        """
        Apply transforms then filters to an in-memory image.

        Stops at the first failing transform or filter stage and returns its
        error; a partly edited image is never returned.
        """
        history = history if history is not None else []

        for step in transforms:
            start_time = time.time()
            result = self.transforms.apply(image, step)
            if not result.ok:
                self._fail(history, result.error, start_time)
                return result
            image = result.value
            self._record(history, PipelineState.TRANSFORMED, start_time,
                         {'step': step.name, 'width': image.width, 'height': image.height})

        if filters:
            chain = filters if isinstance(filters, FilterChain) else FilterChain(filters)
            start_time = time.time()
            chain_result = chain.run(image)
            for stage_name in chain_result.completed_stages:
                self._record(history, PipelineState.FILTERED, start_time, {'stage': stage_name})
            if not chain_result.ok:
                self._fail(history, chain_result.error, start_time)
                return chain_result.to_result()
            image = chain_result.image

        return Result.success(image)

    def _decode_into(self, outcome: EditResult, input_path: PathLike) -> Optional[Image]:
        start_time = time.time()
        try:
            image = self.codec.decode(input_path)
        except PipelineError as e:
            self._fail(outcome.history, e, start_time)
            outcome.error = e
            return None
        self._record(outcome.history, PipelineState.DECODED, start_time,
                     {'width': image.width, 'height': image.height})
        log_pipeline_step(logger, input_path, PipelineState.DECODED.value,
                          {'width': image.width, 'height': image.height, 'channels': image.channels})
        return image

    def _render_and_save(self, outcome: EditResult, image: Image, output_path: Path,
                         format: Optional[str], quality: Optional[float]) -> EditResult:
        history = outcome.history
        outcome.image = image
        output_format = format or output_path.suffix.lstrip('.') or self.config.output_format
        output_quality = quality if quality is not None else self.config.output_quality

        start_time = time.time()
        try:
            data = self.codec.encode(image, output_format, output_quality)
        except PipelineError as e:
            self._fail(history, e, start_time)
            outcome.error = e
            return outcome
        self._record(history, PipelineState.RENDERED, start_time, {'format': output_format, 'bytes': len(data)})

        start_time = time.time()
        try:
            outcome.output_path = self.codec.write(data, output_path)
        except PipelineError as e:
            self._fail(history, e, start_time)
            outcome.error = e
            return outcome
        self._record(history, PipelineState.SAVED, start_time)

        logger.info(f"Saved image_{image_identifier(output_path)} ({image.width}x{image.height} {output_format})")
        return outcome

    def run_edit(self, input_path: PathLike, output_path: PathLike,
                 transforms: Sequence[TransformStep] = (), filters: FilterInput = None,
                 format: Optional[str] = None, quality: Optional[float] = None) -> EditResult:
        """
        Decode, edit, encode and write one image.

        Args:
            input_path: Source image
            output_path: Destination; parent directories are created
            transforms: Transform steps applied in order
            filters: FilterChain (or stages) applied after the transforms
            format: Output format; defaults to the output suffix, then config
            quality: Lossy quality in [0, 1]; defaults to config

        Returns:
            EditResult whose history ends in SAVED or FAILED
        """
        outcome = EditResult()
        image = self._decode_into(outcome, input_path)
        if image is None:
            return outcome

        result = self.edit_image(image, transforms, filters, outcome.history)
        if not result.ok:
            outcome.error = result.error
            return outcome

        return self._render_and_save(outcome, result.value, Path(output_path), format, quality)

    async def run_scan(self, input_path: PathLike, output_path: PathLike,
                       format: Optional[str] = None, quality: Optional[float] = None,
                       request: Optional[AnalysisRequest] = None) -> EditResult:
        """
        Find the most confident document rectangle and save it flattened.

        Scanning: DECODED -> ANALYZED -> TRANSFORMED -> RENDERED -> SAVED

        Args:
            input_path: Photo of a document
            output_path: Destination for the corrected image
            format: Output format; defaults to the output suffix, then config
            quality: Lossy quality in [0, 1]; defaults to config
            request: detect_rectangles request; defaults to the configured options

        Returns:
            EditResult; NO_RESULTS when no rectangle was found
        """
        outcome = EditResult()
        history = outcome.history
        image = self._decode_into(outcome, input_path)
        if image is None:
            return outcome

        request = request or AnalysisRequest(AnalysisKind.DETECT_RECTANGLES,
                                             self.default_options(AnalysisKind.DETECT_RECTANGLES))
        start_time = time.time()
        result = await request.perform([image], self.engine)
        error = result.error
        if error is None and not result.observations:
            error = NoResultsFound("no document rectangle found")
        if error is not None:
            self._fail(history, error, start_time)
            outcome.error = error
            return outcome

        best = result.observations[0]
        self._record(history, PipelineState.ANALYZED, start_time,
                     {'kind': request.kind.value, 'confidence': round(best.confidence, 4)})

        quad = best.payload if isinstance(best.payload, Quad) else Quad.from_rect(best.region)
        edited = self.edit_image(image, [PerspectiveCorrect(*quad.points())], history=history)
        if not edited.ok:
            outcome.error = edited.error
            return outcome

        return self._render_and_save(outcome, edited.value, Path(output_path), format, quality)

    def update_metadata(self, input_path: PathLike, output_path: Optional[PathLike] = None,
                        comment: Optional[str] = None, clear_gps: bool = False,
                        clear_all: bool = False) -> EditResult:
        """
        Write a copy of the image with edited EXIF metadata.

        The output defaults to ``<stem>_meta<suffix>`` next to the input.
        Pixels are copied, not decoded and re-rendered, so the history holds
        only SAVED or FAILED.
        """
        input_path = Path(input_path)
        if output_path is None:
            output_path = input_path.with_name(f"{input_path.stem}_meta{input_path.suffix}")
        outcome = EditResult()

        start_time = time.time()
        try:
            outcome.output_path = self.codec.write_metadata(input_path, output_path, comment=comment,
                                                            clear_gps=clear_gps, clear_all=clear_all)
        except PipelineError as e:
            self._fail(outcome.history, e, start_time)
            outcome.error = e
            return outcome
        self._record(outcome.history, PipelineState.SAVED, start_time,
                     {'comment': comment is not None, 'clear_gps': clear_gps, 'clear_all': clear_all})
        return outcome

    # Analysis

    def default_options(self, kind: AnalysisKind, **overrides) -> AnalysisOptions:
        """
        Options for ``kind`` using the configured thresholds and tiers.

        Keyword overrides with a value of None are ignored.
        """
        kind = AnalysisKind.parse(kind)
        threshold = self.config.default_threshold
        limit = None
        if kind is AnalysisKind.CLASSIFY:
            threshold, limit = self.config.classify_threshold, self.config.classify_limit
        elif kind is AnalysisKind.DETECT_FACES:
            threshold = self.config.face_threshold
        elif kind.is_pose:
            threshold = self.config.pose_threshold

        values: Dict[str, Any] = {
            'threshold': threshold,
            'limit': limit,
            'accuracy': AnalysisAccuracy.parse(self.config.default_accuracy),
            'quality': SegmentationQuality.parse(self.config.default_segmentation_quality),
            'saliency_type': SaliencyType.parse(self.config.default_saliency_type),
        }
        if kind is AnalysisKind.DETECT_TEXT:
            values['languages'] = parse_languages(self.config.text_languages)
        values.update({key: value for key, value in overrides.items() if value is not None})
        return AnalysisOptions(**values)

    def _decode_inputs(self, input_paths) -> List[Image]:
        if isinstance(input_paths, (str, Path)):
            input_paths = [input_paths]
        return [self.codec.decode(path) for path in input_paths]

    async def run_analysis(self, input_paths: Union[PathLike, Sequence[PathLike]],
                           request: AnalysisRequest) -> AnalysisReport:
        """
        Decode the input(s), run one request and rank its observations.

        Pair kinds decode both images before the request starts. A decode
        failure ends the run before any analysis; finding nothing is a
        successful empty report.
        """
        report = AnalysisReport(request)
        history = report.history

        start_time = time.time()
        try:
            images = self._decode_inputs(input_paths)
        except PipelineError as e:
            self._fail(history, e, start_time)
            report.error = e
            return report
        if len(images) != request.kind.image_count:
            error = InvalidParameter(f"{request.kind.value} needs {request.kind.image_count} image(s), "
                                     f"got {len(images)}")
            self._fail(history, error, start_time)
            report.error = error
            return report
        self._record(history, PipelineState.DECODED, start_time, {'count': len(images)})
        report.image_size = images[0].size

        await self._perform(report, images)
        return report

    async def run_analyses(self, input_paths: Union[PathLike, Sequence[PathLike]],
                           requests: Sequence[AnalysisRequest]) -> List[AnalysisReport]:
        """
        Decode once and run several independent requests concurrently.

        Reports come back in request order. A decode failure fails every
        report; any other failure stays local to its own request.
        """
        reports = [AnalysisReport(request) for request in requests]

        start_time = time.time()
        try:
            images = self._decode_inputs(input_paths)
        except PipelineError as e:
            for report in reports:
                self._fail(report.history, e, start_time)
                report.error = e
            return reports

        for report in reports:
            self._record(report.history, PipelineState.DECODED, start_time, {'count': len(images)})
            report.image_size = images[0].size

        start_time = time.time()
        results = await perform_concurrently(requests, images, self.engine,
                                             self.config.max_concurrent_requests)
        for report, result in zip(reports, results):
            self._finish(report, result, start_time)
        return reports

    async def _perform(self, report: AnalysisReport, images: Sequence[Image]) -> None:
        start_time = time.time()
        result = await report.request.perform(images, self.engine)
        self._finish(report, result, start_time)

    def _finish(self, report: AnalysisReport, result: AnalysisResult, start_time: float) -> None:
        report.result = result
        if not result.ok:
            self._fail(report.history, result.error, start_time)
            report.error = result.error
            return

        kind = report.request.kind.value
        self._record(report.history, PipelineState.ANALYZED, start_time, {'kind': kind})
        self._record(report.history, PipelineState.RANKED, start_time,
                     {'total_count': result.total_count, 'displayed_count': result.displayed_count})
        self._record(report.history, PipelineState.REPORTED, start_time)
        logger.info(f"{kind}: {result.displayed_count} of {result.total_count} observations reported")

    def info(self, path: PathLike) -> ImageInfo:
        """Header information for an image file."""
        return self.codec.read_info(path)
