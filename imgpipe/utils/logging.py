"""
Logging utilities for the image pipeline.

This module provides a consistent logger factory, an optional path-redacting
formatter for logs that leave the machine, short hash identifiers for images,
and per-operation timing metrics for pipeline runs.
"""

import logging
import os
import hashlib
import re
import sys
from pathlib import Path
from typing import Optional, Union, Dict, Any, List
from datetime import datetime
import json

# Matches full paths (C:/dir/file.ext or /dir/file.ext) and bare filenames (file.ext)
_IMAGE_PATH_PATTERN = re.compile(
    r'(?:[A-Za-z]:)?(?:[\\\/]?[^\\\/\s]+[\\\/])*[^\\\/\s]+\.(?:jpe?g|png|tiff?|bmp|gif|webp|heic)\b',
    flags=re.IGNORECASE,
)


class PipelineFormatter(logging.Formatter):
    """Formatter with optional redaction of image file paths."""

    def __init__(self, include_timestamp: bool = True, redact_paths: bool = False):
        """
        Initialize the formatter.

        Args:
            include_timestamp: Whether to include timestamps in log messages
            redact_paths: Replace image paths with hashed identifiers
        """
        if include_timestamp:
            format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            date_fmt = "%Y-%m-%d %H:%M:%S"
        else:
            format_str = "%(name)s - %(levelname)s - %(message)s"
            date_fmt = None

        super().__init__(format_str, datefmt=date_fmt)
        self.redact_paths = redact_paths

    def format(self, record: logging.LogRecord) -> str:
        if self.redact_paths:
            record.msg = self._redact(record.getMessage())
            record.args = None
        return super().format(record)

    @staticmethod
    def _redact(message: str) -> str:
        """
        Replace every image path in a message with ``image_<hash>.<ext>``.

        Args:
            message: Original message

        Returns:
            Message with paths replaced
        """
        def replace_path(match):
            full_path = match.group(0)
            ext = full_path.rsplit('.', 1)[-1]
            return f"image_{image_identifier(full_path)[:8]}.{ext}"

        return _IMAGE_PATH_PATTERN.sub(replace_path, message)


def image_identifier(path: Union[str, Path]) -> str:
    """
    Generate a short, stable identifier for an image path.

    Uses SHA-256 so the same path always maps to the same identifier
    without exposing the directory layout in log output.

    Args:
        path: Image path

    Returns:
        Hexadecimal hash string (first 16 characters)

    Example:
        >>> len(image_identifier("holiday/beach.jpg"))
        16
    """
    if isinstance(path, Path):
        path = str(path)

    return hashlib.sha256(path.encode('utf-8')).hexdigest()[:16]


class OperationMetrics:
    """Timing and outcome record for the operations of one pipeline run."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.metrics: Dict[str, Any] = {
            'start_time': datetime.now().isoformat(),
            'operations': [],
        }

    @property
    def operations(self) -> List[Dict[str, Any]]:
        return self.metrics['operations']

    def log_operation(self,
                      operation: str,
                      duration_ms: float,
                      success: bool = True,
                      details: Optional[Dict[str, Any]] = None) -> None:
        """
        Record an operation with timing and success status.

        Args:
            operation: Name of the operation (usually a pipeline state)
            duration_ms: Duration in milliseconds
            success: Whether operation succeeded
            details: Additional JSON-serializable details
        """
        op_data = {
            'operation': operation,
            'duration_ms': duration_ms,
            'success': success,
            'timestamp': datetime.now().isoformat()
        }
        if details:
            op_data['details'] = dict(details)

        self.metrics['operations'].append(op_data)

        status = "completed" if success else "failed"
        self.logger.debug(f"Operation '{operation}' {status} in {duration_ms:.2f}ms")

    def total_duration_ms(self) -> float:
        return sum(op['duration_ms'] for op in self.operations)

    def save_metrics(self, output_path: Path) -> None:
        """Save metrics to a JSON file."""
        self.metrics['end_time'] = datetime.now().isoformat()

        with open(output_path, 'w') as f:
            json.dump(self.metrics, f, indent=2, default=str)

        self.logger.info(f"Metrics saved to {output_path}")


def get_logger(name: str,
               level: Union[str, int] = logging.INFO,
               log_file: Optional[Path] = None,
               include_timestamp: bool = True,
               redact_paths: bool = False) -> logging.Logger:
    """
    Get a configured logger.

    Args:
        name: Logger name (typically __name__)
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path for logging
        include_timestamp: Whether to include timestamps
        redact_paths: Whether to hash image paths in messages

    Returns:
        Configured logger instance

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Pipeline started")
        2024-01-01 12:00:00 - __main__ - INFO - Pipeline started
    """
    logger = logging.getLogger(name)

    # Only configure if not already configured
    if not logger.handlers:
        logger.setLevel(level)

        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(PipelineFormatter(include_timestamp, redact_paths))
        logger.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(PipelineFormatter(include_timestamp, redact_paths))
            logger.addHandler(file_handler)

    return logger


def configure_package_logging(level: Union[str, int] = logging.INFO,
                              log_file: Optional[Path] = None,
                              redact_paths: bool = False) -> None:
    """
    Apply a level and redaction setting to every imgpipe logger.

    The log file gets a single handler on the ``imgpipe`` parent logger,
    which every package logger propagates to. Calling again with another
    file (or none) closes the previous handler.

    Loggers created later through get_logger keep their own defaults; call
    this once at startup after the modules are imported.
    """
    for name, existing in logging.Logger.manager.loggerDict.items():
        if not name.startswith('imgpipe.') or not isinstance(existing, logging.Logger):
            continue
        existing.setLevel(level)
        for handler in existing.handlers:
            if isinstance(handler.formatter, PipelineFormatter):
                handler.formatter.redact_paths = redact_paths

    package_logger = logging.getLogger('imgpipe')
    target = os.path.abspath(log_file) if log_file else None
    for handler in list(package_logger.handlers):
        if not isinstance(handler, logging.FileHandler):
            continue
        if handler.baseFilename == target:
            handler.setLevel(level)
            handler.setFormatter(PipelineFormatter(True, redact_paths))
        else:
            package_logger.removeHandler(handler)
            handler.close()

    if target and not any(isinstance(h, logging.FileHandler) for h in package_logger.handlers):
        file_handler = logging.FileHandler(target)
        file_handler.setLevel(level)
        file_handler.setFormatter(PipelineFormatter(True, redact_paths))
        package_logger.addHandler(file_handler)


def log_pipeline_step(logger: logging.Logger,
                      image_path: Union[str, Path],
                      step: str,
                      metadata: Optional[Dict[str, Any]] = None) -> None:
    """
    Log a pipeline step for an image, keeping only the well-known metadata keys.

    Args:
        logger: Logger instance
        image_path: Path to image (hashed in the message)
        step: Pipeline step or state name
        metadata: Optional metadata; only dimension/format/count keys are kept

    Example:
        >>> log_pipeline_step(logger, "photo.jpg", "decoded", {"width": 200, "height": 150})
        INFO - decoded image_a3f5c8d2b1e4f6a9 - metadata: {'width': 200, 'height': 150}
    """
    safe_metadata = {}
    if metadata:
        for key, value in metadata.items():
            if key in ['width', 'height', 'channels', 'format', 'count', 'stage', 'kind']:
                safe_metadata[key] = value

    log_msg = f"{step} image_{image_identifier(image_path)}"
    if safe_metadata:
        log_msg += f" - metadata: {safe_metadata}"

    logger.info(log_msg)
