"""
Configuration for pipeline runs.

A Config instance is built once by the caller and passed explicitly into the
orchestrator; nothing in the package reads process-wide settings.
"""

import json
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, Dict, Any, Tuple, Union

from .logging import get_logger

logger = get_logger(__name__)

SUPPORTED_OUTPUT_FORMATS = ("png", "jpg", "jpeg", "tiff", "tif", "bmp", "webp", "gif")
ACCURACY_TIERS = ("low", "medium", "high", "veryhigh")
SEGMENTATION_TIERS = ("fast", "balanced", "accurate")
SALIENCY_TYPES = ("attention", "objectness")


@dataclass
class Config:
    """
    Configuration settings for the image pipeline.

    Thresholds and limits are the per-command defaults used when the caller
    does not supply its own.
    """

    # Output settings
    output_format: str = "png"
    output_quality: float = 1.0  # Lossy compression quality (0-1)

    # Geometry settings
    max_image_dimension: int = 16384
    maintain_aspect_ratio: bool = True

    # Analysis defaults
    default_threshold: float = 0.0
    classify_threshold: float = 0.1
    classify_limit: int = 20
    face_threshold: float = 0.0
    pose_threshold: float = 0.3
    default_accuracy: str = "medium"
    default_segmentation_quality: str = "balanced"
    default_saliency_type: str = "attention"
    max_concurrent_requests: int = 4
    text_languages: str = "zh-Hans,en"  # Comma-separated; empty lets the engine detect

    # Presentation settings
    verbose: bool = False

    # Logging settings
    redact_paths: bool = False
    log_file: Optional[Path] = None

    def __post_init__(self):
        """Validate configuration after initialization."""
        for name in ('default_threshold', 'classify_threshold', 'face_threshold', 'pose_threshold'):
            value = getattr(self, name)
            if not 0 <= value <= 1:
                raise ValueError(f"{name} must be in [0, 1], got {value}")

        if not 0 <= self.output_quality <= 1:
            raise ValueError(f"output_quality must be in [0, 1], got {self.output_quality}")

        if self.output_format.lower() not in SUPPORTED_OUTPUT_FORMATS:
            raise ValueError(f"output_format must be one of {SUPPORTED_OUTPUT_FORMATS}, got {self.output_format}")
        self.output_format = self.output_format.lower()

        if self.max_image_dimension < 1:
            raise ValueError(f"max_image_dimension must be >= 1, got {self.max_image_dimension}")

        if self.classify_limit < 0:
            raise ValueError(f"classify_limit must be >= 0, got {self.classify_limit}")

        if self.max_concurrent_requests < 1:
            raise ValueError(f"max_concurrent_requests must be >= 1, got {self.max_concurrent_requests}")

        if self.default_accuracy.lower() not in ACCURACY_TIERS:
            raise ValueError(f"default_accuracy must be one of {ACCURACY_TIERS}, got {self.default_accuracy}")

        if self.default_segmentation_quality.lower() not in SEGMENTATION_TIERS:
            raise ValueError(
                f"default_segmentation_quality must be one of {SEGMENTATION_TIERS}, "
                f"got {self.default_segmentation_quality}"
            )

        if self.default_saliency_type.lower() not in SALIENCY_TYPES:
            raise ValueError(f"default_saliency_type must be one of {SALIENCY_TYPES}, got {self.default_saliency_type}")

        if not isinstance(self.text_languages, str):
            self.text_languages = ",".join(self.text_languages)

        if self.log_file and not isinstance(self.log_file, Path):
            self.log_file = Path(self.log_file)

        logger.debug(f"Configuration initialized with output_format={self.output_format}")

    def save(self, path: Union[str, Path]) -> None:
        """
        Save configuration to JSON file.

        Args:
            path: Path to save configuration

        Example:
            >>> config = Config(output_format="jpg")
            >>> config.save("config.json")
        """
        path = Path(path)

        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info(f"Configuration saved to {path}")

    @classmethod
    def load(cls, path: Union[str, Path]) -> 'Config':
        """
        Load configuration from JSON file.

        Args:
            path: Path to configuration file

        Returns:
            Config instance
        """
        path = Path(path)

        with open(path, 'r') as f:
            config_dict = json.load(f)

        if config_dict.get('log_file'):
            config_dict['log_file'] = Path(config_dict['log_file'])

        config = cls(**config_dict)
        logger.info(f"Configuration loaded from {path}")

        return config

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert configuration to dictionary.

        Returns:
            Configuration as dictionary with paths as forward-slash strings
        """
        config_dict = asdict(self)

        for key, value in config_dict.items():
            if isinstance(value, Path):
                config_dict[key] = value.as_posix()

        return config_dict

    def update(self, **kwargs) -> None:
        """
        Update configuration parameters.

        Args:
            **kwargs: Parameters to update

        Example:
            >>> config = Config()
            >>> config.update(classify_limit=10, verbose=True)
        """
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
                logger.debug(f"Updated {key} = {value}")
            else:
                logger.warning(f"Unknown configuration parameter: {key}")

        # Re-validate
        self.__post_init__()


def get_default_config() -> Config:
    """
    Get the default configuration.

    Example:
        >>> get_default_config().classify_limit
        20
    """
    return Config()


def parse_languages(text: str) -> Tuple[str, ...]:
    """
    Split a comma-separated language list.

    Example:
        >>> parse_languages("zh-Hans, en")
        ('zh-Hans', 'en')
    """
    return tuple(part.strip() for part in text.split(',') if part.strip())
