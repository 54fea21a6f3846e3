"""
Core pipeline modules.

Contains coordinate conversion, image transforms, filter chains, analysis
requests, result ranking and the orchestrator that combines them.
"""

from .errors import ErrorKind, PipelineError, Result
from .geometry import CoordinateSpace, CoordinateSystem, Point, Rect
from .image import Image, ImageInfo, PillowCodec
from .filter_chain import FilterChain, build_stage
from .transform_ops import Crop, Flip, PerspectiveCorrect, Resize, Rotate, TransformOps
from .analysis import AnalysisKind, AnalysisOptions, AnalysisRequest, Observation
from .ranking import rank
from .orchestrator import PipelineOrchestrator, PipelineState

__all__ = [
    'ErrorKind', 'PipelineError', 'Result',
    'CoordinateSpace', 'CoordinateSystem', 'Point', 'Rect',
    'Image', 'ImageInfo', 'PillowCodec',
    'FilterChain', 'build_stage',
    'Crop', 'Flip', 'PerspectiveCorrect', 'Resize', 'Rotate', 'TransformOps',
    'AnalysisKind', 'AnalysisOptions', 'AnalysisRequest', 'Observation',
    'rank',
    'PipelineOrchestrator', 'PipelineState',
]
