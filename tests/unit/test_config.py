"""
Unit tests for pipeline configuration.

Tests ensure that:
1. Defaults match the per-command analysis defaults
2. Configuration can be saved/loaded
3. Parameter validation works correctly
"""

import pytest
import json
import tempfile
from pathlib import Path
import sys
import os

# Add package root to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../../')))

from imgpipe.utils.config import Config, get_default_config, parse_languages


class TestConfig:
    """Test configuration dataclass."""

    def test_default_config(self):
        """Test default configuration creation."""
        config = get_default_config()

        assert isinstance(config, Config)
        assert config.output_format == "png"
        assert config.classify_threshold == 0.1
        assert config.classify_limit == 20
        assert config.pose_threshold == 0.3
        assert config.default_accuracy == "medium"
        assert config.max_concurrent_requests == 4

    def test_config_validation(self):
        """Test configuration parameter validation."""
        with pytest.raises(ValueError, match="classify_threshold must be in"):
            Config(classify_threshold=1.5)

        with pytest.raises(ValueError, match="face_threshold must be in"):
            Config(face_threshold=-0.1)

        with pytest.raises(ValueError, match="output_quality must be in"):
            Config(output_quality=2.0)

        with pytest.raises(ValueError, match="max_concurrent_requests must be >= 1"):
            Config(max_concurrent_requests=0)

        with pytest.raises(ValueError, match="output_format must be one of"):
            Config(output_format="heic2")

        with pytest.raises(ValueError, match="default_accuracy must be one of"):
            Config(default_accuracy="extreme")

    def test_output_format_is_normalized(self):
        """Test that output format is stored lower-case."""
        config = Config(output_format="JPG")

        assert config.output_format == "jpg"

    def test_config_update(self):
        """Test configuration update functionality."""
        config = Config()

        config.update(classify_limit=5, verbose=True)

        assert config.classify_limit == 5
        assert config.verbose is True

        # Unknown parameters only log a warning
        config.update(invalid_param=999)
        assert not hasattr(config, 'invalid_param')

    def test_config_update_revalidates(self):
        """Test that update rejects values that fail validation."""
        config = Config()

        with pytest.raises(ValueError, match="pose_threshold must be in"):
            config.update(pose_threshold=3)

    def test_config_save_load(self):
        """Test saving and loading configuration."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = Path(tmpdir) / "test_config.json"

            config = Config(classify_limit=7, output_format="webp")
            config.log_file = Path("/tmp/imgpipe.log")
            config.save(config_path)

            assert config_path.exists()

            loaded_config = Config.load(config_path)

            assert loaded_config.classify_limit == 7
            assert loaded_config.output_format == "webp"
            assert loaded_config.log_file == Path("/tmp/imgpipe.log")

    def test_config_to_dict(self):
        """Test configuration dictionary conversion."""
        config = Config(log_file="/var/log/imgpipe.log")

        config_dict = config.to_dict()

        assert isinstance(config_dict, dict)
        assert config_dict['log_file'] == "/var/log/imgpipe.log"  # Path converted to string
        json.dumps(config_dict)

    def test_path_handling(self):
        """Test that log_file strings become Path objects."""
        config = Config(log_file="logs/run.log")

        assert isinstance(config.log_file, Path)

    def test_text_languages(self):
        """Test that a language list is stored in its comma-separated form."""
        assert Config().text_languages == "zh-Hans,en"
        assert Config(text_languages=["ja", "ko"]).text_languages == "ja,ko"


class TestParseLanguages:
    def test_split_and_strip(self):
        assert parse_languages(" zh-Hans , en,") == ("zh-Hans", "en")

    def test_empty(self):
        """Test that an empty list means automatic detection."""
        assert parse_languages("") == ()
