"""
Ordered filter chains with all-or-nothing results.

A chain runs its stages in order. The first stage that yields no image stops
the chain, and the chain reports no image at all together with the name of
the stage that failed. A partly filtered image is never returned.

Stage parameters are aesthetic knobs: values outside a stage's documented
domain are clamped (angles wrap) rather than rejected. The domains in
STAGE_SPECS are the contract.
"""

import functools
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import FilterChainIncomplete, InvalidParameter, Result
from .filter_provider import FilterProvider
from .image import Image
from ..utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ParamDomain:
    """Closed numeric range with a default; ``wraps`` domains are angles in [0, 360)."""

    minimum: float
    maximum: float
    default: float
    wraps: bool = False

    def clamp(self, value) -> float:
        """
        Bring ``value`` into the domain.

        Raises:
            InvalidParameter: If value is not a number
        """
        try:
            number = float(value)
        except (TypeError, ValueError) as e:
            raise InvalidParameter(f"expected a number, got {value!r}") from e
        if math.isnan(number):
            raise InvalidParameter("parameter must not be NaN")

        if self.wraps:
            if math.isinf(number):
                raise InvalidParameter("angle must be finite")
            return number % 360.0
        return min(self.maximum, max(self.minimum, number))

    def describe(self) -> str:
        if self.wraps:
            return f"angle, wraps [0, 360) ({self.default:g})"
        return f"[{self.minimum:g}, {self.maximum:g}] ({self.default:g})"


def _angle(default: float = 0.0) -> ParamDomain:
    return ParamDomain(0.0, 360.0, default, wraps=True)


@dataclass(frozen=True)
class StageSpec:
    """
    Catalogue entry for a named stage.

    ``method`` is the FilterProvider method that implements the stage;
    ``fixed`` holds arguments the stage always passes unchanged.
    """

    name: str
    method: str
    params: Mapping[str, ParamDomain] = field(default_factory=dict)
    fixed: Mapping[str, object] = field(default_factory=dict)
    description: str = ""


_BRIGHTNESS = ParamDomain(-1.0, 1.0, 0.0)
_CONTRAST = ParamDomain(0.25, 4.0, 1.0)
_SATURATION = ParamDomain(0.0, 2.0, 1.0)

STAGE_SPECS: Dict[str, StageSpec] = {spec.name: spec for spec in [
    StageSpec('brightness', 'color_controls', {'brightness': _BRIGHTNESS},
              {'contrast': 1.0, 'saturation': 1.0}, "Additive brightness"),
    StageSpec('contrast', 'color_controls', {'contrast': _CONTRAST},
              {'brightness': 0.0, 'saturation': 1.0}, "Contrast around mean luma"),
    StageSpec('saturation', 'color_controls', {'saturation': _SATURATION},
              {'brightness': 0.0, 'contrast': 1.0}, "Colour saturation"),
    StageSpec('color', 'color_controls',
              {'brightness': _BRIGHTNESS, 'contrast': _CONTRAST, 'saturation': _SATURATION},
              description="Brightness, contrast and saturation together"),
    StageSpec('grayscale', 'grayscale', description="Luma only"),
    StageSpec('exposure', 'exposure', {'ev': ParamDomain(-10.0, 10.0, 0.0)},
              description="Exposure in stops"),
    StageSpec('temperature', 'temperature_tint',
              {'temperature': ParamDomain(-5000.0, 5000.0, 0.0), 'tint': ParamDomain(-100.0, 100.0, 0.0)},
              description="White balance shift"),
    StageSpec('gaussian_blur', 'gaussian_blur', {'radius': ParamDomain(0.0, 100.0, 10.0)},
              description="Gaussian blur"),
    StageSpec('motion_blur', 'motion_blur',
              {'radius': ParamDomain(0.0, 100.0, 10.0), 'angle': _angle()},
              description="Directional blur"),
    StageSpec('zoom_blur', 'zoom_blur', {'amount': ParamDomain(0.0, 100.0, 10.0)},
              description="Radial zoom blur"),
    StageSpec('sharpen', 'sharpen', {'sharpness': ParamDomain(0.0, 2.0, 0.5)},
              description="Luminance sharpening"),
    StageSpec('unsharp_mask', 'unsharp_mask',
              {'radius': ParamDomain(0.0, 100.0, 2.5), 'intensity': ParamDomain(0.0, 5.0, 0.5)},
              description="Unsharp mask"),
    StageSpec('noise_reduction', 'noise_reduction',
              {'noise_level': ParamDomain(0.0, 1.0, 0.02), 'sharpness': ParamDomain(0.0, 2.0, 0.4)},
              description="Median denoise with edge restore"),
    StageSpec('invert', 'invert', description="Invert colours"),
    StageSpec('sepia', 'sepia', {'intensity': ParamDomain(0.0, 1.0, 1.0)}, description="Sepia tone"),
    StageSpec('posterize', 'posterize', {'levels': ParamDomain(2.0, 30.0, 6.0)},
              description="Quantize each channel"),
    StageSpec('threshold', 'threshold', {'threshold': ParamDomain(0.0, 1.0, 0.5)},
              description="Black and white at a luma threshold"),
    StageSpec('pixellate', 'pixellate', {'scale': ParamDomain(1.0, 100.0, 8.0)},
              description="Square pixel blocks"),
    StageSpec('vignette', 'vignette',
              {'intensity': ParamDomain(0.0, 2.0, 1.0), 'radius': ParamDomain(0.0, 1.0, 1.0)},
              description="Darken towards the corners"),
    StageSpec('hue', 'hue_adjust', {'angle': _angle()}, description="Rotate hue"),
    StageSpec('defringe', 'defringe', {'amount': ParamDomain(0.0, 1.0, 0.5)},
              description="Suppress colour fringes at edges"),
    StageSpec('edges', 'edges', {'intensity': ParamDomain(0.0, 10.0, 1.0)}, description="Edge detection"),
    StageSpec('edge_work', 'edge_work', {'radius': ParamDomain(0.0, 20.0, 3.0)},
              description="Line drawing"),
    StageSpec('comic', 'comic', description="Comic book look"),
    StageSpec('halftone', 'halftone',
              {'width': ParamDomain(1.0, 100.0, 6.0), 'angle': _angle(),
               'sharpness': ParamDomain(0.0, 1.0, 0.7)},
              description="Dot screen"),
    StageSpec('mono', 'mono', description="Photo effect: mono"),
    StageSpec('noir', 'noir', description="Photo effect: noir"),
    StageSpec('chrome', 'chrome', description="Photo effect: chrome"),
    StageSpec('fade', 'fade', description="Photo effect: fade"),
    StageSpec('instant', 'instant', description="Photo effect: instant"),
    StageSpec('process', 'process', description="Photo effect: process"),
    StageSpec('transfer', 'transfer', description="Photo effect: transfer"),
]}


@dataclass(frozen=True)
class FilterStage:
    """
    One named step of a chain.

    ``apply`` returns the filtered image, or None when the stage cannot
    produce one. Parameters are frozen at construction.
    """

    name: str
    parameters: Mapping[str, float]
    apply: Callable[[Image], Optional[Image]]

    def __post_init__(self):
        object.__setattr__(self, 'parameters', MappingProxyType(dict(self.parameters)))


def build_stage(name: str, provider: FilterProvider, **params) -> FilterStage:
    """
    Build a catalogue stage bound to ``provider``.

    Missing parameters take their defaults; out-of-domain values are clamped
    and the clamp is logged at DEBUG.

    Raises:
        InvalidParameter: If the stage or a parameter name is unknown, or a
            value is not a number
    """
    spec = STAGE_SPECS.get(name)
    if spec is None:
        raise InvalidParameter(f"unknown filter stage '{name}'")

    unknown = sorted(set(params) - set(spec.params))
    if unknown:
        raise InvalidParameter(f"filter stage '{name}' has no parameter(s) {', '.join(unknown)}")

    values: Dict[str, float] = {}
    for param_name, domain in spec.params.items():
        raw = params.get(param_name, domain.default)
        value = domain.clamp(raw)
        if param_name in params and value != float(raw):
            logger.debug(f"{name}: clamped {param_name} from {raw} to {value}")
        values[param_name] = value

    method = getattr(provider, spec.method)
    apply = functools.partial(method, **spec.fixed, **values)
    return FilterStage(name, values, apply)


def parse_stage_text(text: str) -> Tuple[str, Dict[str, float]]:
    """
    Parse ``name`` or ``name:key=value,key=value`` into a name and parameters.

    Raises:
        InvalidParameter: If a parameter is not ``key=value`` or not numeric
    """
    name, _, rest = text.partition(':')
    params: Dict[str, float] = {}
    for item in filter(None, (part.strip() for part in rest.split(','))):
        key, sep, raw = item.partition('=')
        if not sep or not key.strip():
            raise InvalidParameter(f"filter parameter '{item}' must be key=value")
        try:
            params[key.strip()] = float(raw)
        except ValueError as e:
            raise InvalidParameter(f"filter parameter '{key.strip()}' must be numeric, got '{raw}'") from e
    return name.strip(), params


@dataclass(frozen=True)
class ChainResult:
    """Outcome of running a FilterChain: a complete image or an error, never both."""

    image: Optional[Image] = None
    error: Optional[FilterChainIncomplete] = None
    completed_stages: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def failed_stage(self) -> Optional[str]:
        return self.error.stage_name if self.error else None

    def to_result(self) -> Result[Image]:
        if self.error is not None:
            return Result.failure(self.error)
        return Result.success(self.image)


class FilterChain:
    """
    An immutable ordered sequence of FilterStages.

    Example:
        >>> provider = PillowFilterProvider()
        >>> chain = FilterChain([build_stage('sepia', provider),
        ...                      build_stage('vignette', provider, intensity=0.5)])
        >>> result = chain.run(image)
    """

    def __init__(self, stages: Sequence[FilterStage] = ()):
        self.stages: Tuple[FilterStage, ...] = tuple(stages)

    @classmethod
    def from_names(cls, provider: FilterProvider,
                   stages: Sequence[Tuple[str, Mapping[str, float]]]) -> 'FilterChain':
        return cls([build_stage(name, provider, **dict(params)) for name, params in stages])

    @property
    def names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    def __len__(self):
        return len(self.stages)

    def run(self, image: Image) -> ChainResult:
        """
        Run every stage in order.

        Stops at the first stage that yields None (logged as a warning) or
        raises (logged with the traceback and flagged ``internal``). Either
        way the result carries no image.
        """
        current = image
        completed: List[str] = []

        for index, stage in enumerate(self.stages):
            try:
                output = stage.apply(current)
            except Exception as e:
                logger.exception(f"Filter stage '{stage.name}' ({index + 1}/{len(self.stages)}) raised")
                error = FilterChainIncomplete(stage.name, f"filter stage '{stage.name}' failed: {e}",
                                              internal=True)
                return ChainResult(error=error, completed_stages=tuple(completed))

            if output is None:
                logger.warning(f"Filter stage '{stage.name}' ({index + 1}/{len(self.stages)}) produced no result")
                return ChainResult(error=FilterChainIncomplete(stage.name), completed_stages=tuple(completed))

            completed.append(stage.name)
            current = output

        return ChainResult(image=current, completed_stages=tuple(completed))
