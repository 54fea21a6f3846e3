"""
Error taxonomy for the image pipeline.

Synchronous operations raise these exceptions; anything the orchestrator
receives across a stage or request boundary arrives as a typed result
(``Result``, ``ChainResult`` or ``AnalysisResult``) carrying one of them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar('T')


class ErrorKind(Enum):
    """Kinds of pipeline failure."""

    DECODE_FAILED = "decode_failed"
    ENCODE_FAILED = "encode_failed"
    INVALID_GEOMETRY = "invalid_geometry"
    EMPTY_REGION = "empty_region"
    DEGENERATE_QUAD = "degenerate_quad"
    MISSING_PARAMETER = "missing_parameter"
    INVALID_PARAMETER = "invalid_parameter"
    RENDER_FAILED = "render_failed"
    FILTER_CHAIN_INCOMPLETE = "filter_chain_incomplete"
    ANALYSIS_UNSUPPORTED = "analysis_unsupported"
    ANALYSIS_FAILED = "analysis_failed"
    NO_RESULTS = "no_results"
    CANCELLED = "cancelled"

    @property
    def aborts_pipeline(self) -> bool:
        """Whether this kind ends a multi-step pipeline outright."""
        return self in (ErrorKind.DECODE_FAILED, ErrorKind.ENCODE_FAILED, ErrorKind.INVALID_GEOMETRY)

    @property
    def is_parameter_error(self) -> bool:
        return self in (ErrorKind.EMPTY_REGION, ErrorKind.DEGENERATE_QUAD,
                        ErrorKind.MISSING_PARAMETER, ErrorKind.INVALID_PARAMETER)


class PipelineError(Exception):
    """Base class for every failure the pipeline reports."""

    kind: ErrorKind = ErrorKind.RENDER_FAILED

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind.value.replace('_', ' '))
        self.message = str(self)

    def to_dict(self):
        return {'kind': self.kind.value, 'message': self.message}


class DecodeFailed(PipelineError):
    kind = ErrorKind.DECODE_FAILED


class EncodeFailed(PipelineError):
    kind = ErrorKind.ENCODE_FAILED


class InvalidGeometry(PipelineError):
    kind = ErrorKind.INVALID_GEOMETRY


class EmptyRegion(PipelineError):
    kind = ErrorKind.EMPTY_REGION


class DegenerateQuad(PipelineError):
    kind = ErrorKind.DEGENERATE_QUAD


class MissingParameter(PipelineError):
    kind = ErrorKind.MISSING_PARAMETER


class InvalidParameter(PipelineError):
    kind = ErrorKind.INVALID_PARAMETER


class RenderFailed(PipelineError):
    kind = ErrorKind.RENDER_FAILED


class FilterChainIncomplete(PipelineError):
    """A filter stage produced no result; names the stage that failed."""

    kind = ErrorKind.FILTER_CHAIN_INCOMPLETE

    def __init__(self, stage_name: str, message: str = "", internal: bool = False):
        super().__init__(message or f"filter stage '{stage_name}' produced no result")
        self.stage_name = stage_name
        # True when the stage raised instead of yielding no result
        self.internal = internal

    def to_dict(self):
        data = super().to_dict()
        data['stage'] = self.stage_name
        return data


class AnalysisUnsupported(PipelineError):
    kind = ErrorKind.ANALYSIS_UNSUPPORTED


class AnalysisFailed(PipelineError):
    kind = ErrorKind.ANALYSIS_FAILED


class NoResultsFound(PipelineError):
    """A step needed at least one observation and the analysis found none."""

    kind = ErrorKind.NO_RESULTS


class Cancelled(PipelineError):
    kind = ErrorKind.CANCELLED


class CoordinateSpaceError(TypeError):
    """A Rect or Point was handed to code expecting another coordinate space."""


@dataclass(frozen=True)
class Result(Generic[T]):
    """Value-or-error outcome of a pipeline operation."""

    value: Optional[T] = None
    error: Optional[PipelineError] = None

    @classmethod
    def success(cls, value: T) -> 'Result[T]':
        return cls(value=value)

    @classmethod
    def failure(cls, error: PipelineError) -> 'Result[Any]':
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, raising the stored error if there is one."""
        if self.error is not None:
            raise self.error
        return self.value
