"""
Utility modules for the image pipeline.

Contains logging helpers and configuration management.
"""

from .logging import get_logger, image_identifier
from .config import Config, get_default_config

__all__ = ['get_logger', 'image_identifier', 'Config', 'get_default_config']
