"""Test configuration loading and validation"""

import pytest
import yaml

from trackmaster.core.config import load_config, parse_config
from trackmaster.core.exceptions import ConfigError


class TestLoadConfig:
    """Test reading config.yaml"""

    def test_load(self, temp_dir, raw_config):
        """A valid file is parsed into frozen dataclasses"""
        path = temp_dir / "config.yaml"
        path.write_text(yaml.safe_dump(raw_config), encoding="utf-8")

        config = load_config(path)

        assert config.output.directory == (temp_dir / "output").resolve()
        assert config.output.work_directory == config.output.directory / "work"
        assert config.storage.type == "local"
        assert config.process.concurrency == 1

    def test_missing_file(self, temp_dir):
        with pytest.raises(ConfigError):
            load_config(temp_dir / "missing.yaml")

    def test_invalid_yaml(self, temp_dir):
        path = temp_dir / "config.yaml"
        path.write_text("output: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_not_a_dictionary(self, temp_dir):
        path = temp_dir / "config.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)


class TestParseConfig:
    """Test section validation"""

    def test_defaults(self, config, temp_dir):
        """Missing sections fall back to defaults"""
        assert config.database.path == config.output.directory / "jobs.db"
        assert config.process.page_size == 100
        assert config.process.error_threshold == 10
        assert config.tools.ffmpeg == "ffmpeg"
        assert config.tools.loudness == -9.0
        assert not config.tools.use_aubio_quiet

    def test_output_is_required(self, raw_config):
        del raw_config["output"]
        with pytest.raises(ConfigError):
            parse_config(raw_config)

    def test_storage_is_required(self, raw_config):
        del raw_config["storage"]
        with pytest.raises(ConfigError):
            parse_config(raw_config)

    def test_unknown_storage_type(self, raw_config):
        raw_config["storage"] = {"type": "s3"}
        with pytest.raises(ConfigError):
            parse_config(raw_config)

    def test_telegram_storage(self, raw_config):
        raw_config["storage"] = {"type": "telegram", "telegram_token": "123:abc", "telegram_chat": -100}
        config = parse_config(raw_config)
        assert config.storage.telegram_chat == -100
        assert config.storage.telegram_token == "123:abc"

    def test_telegram_chat_must_be_integer(self, raw_config):
        raw_config["storage"] = {"type": "telegram", "telegram_token": "123:abc", "telegram_chat": "chat"}
        with pytest.raises(ConfigError) as exc_info:
            parse_config(raw_config)
        assert exc_info.value.details["field"] == "storage.telegram_chat"

    def test_process_values(self, raw_config):
        raw_config["process"] = {"concurrency": 4, "limit": 0, "timeout": 3600, "error_threshold": 0}
        process = parse_config(raw_config).process
        assert process.concurrency == 4
        assert process.timeout == 3600.0
        assert process.error_threshold == 0

    def test_concurrency_must_be_positive(self, raw_config):
        raw_config["process"] = {"concurrency": 0}
        with pytest.raises(ConfigError):
            parse_config(raw_config)

    def test_fade_order_checked_on_load(self, raw_config):
        """A short fade longer than the long fade is rejected at load time"""
        raw_config["process"] = {"short_fade_out": 6, "long_fade_out": 5}
        with pytest.raises(ConfigError) as exc_info:
            parse_config(raw_config)
        assert exc_info.value.details == {"short_fade_out": 6.0, "long_fade_out": 5.0}

    def test_fade_must_be_positive(self, raw_config):
        raw_config["process"] = {"short_fade_out": 0}
        with pytest.raises(ConfigError) as exc_info:
            parse_config(raw_config)
        assert exc_info.value.details["field"] == "process.short_fade_out"

    def test_section_must_be_dictionary(self, raw_config):
        raw_config["process"] = [1, 2]
        with pytest.raises(ConfigError):
            parse_config(raw_config)

    def test_tools_types(self, raw_config):
        raw_config["tools"] = {"bass_preservation": "yes"}
        with pytest.raises(ConfigError):
            parse_config(raw_config)

        raw_config["tools"] = {"phase_limiter": "/opt/pl/bin/phase_limiter", "loudness": -8}
        tools = parse_config(raw_config).tools
        assert tools.phase_limiter == "/opt/pl/bin/phase_limiter"
        assert tools.loudness == -8.0
