"""Tests for the YAML configuration parser."""

import pytest

from stackpilot.config import Config, ConfigValidationError, EngineSettings


@pytest.fixture
def config_file(tmp_path):
    def _write(text):
        path = tmp_path / 'stackpilot.yaml'
        path.write_text(text)
        return Config(str(path))
    return _write


class TestConfig:
    """Test loading and validating stackpilot.yaml."""

    def test_load_valid_file(self, config_file):
        """Test a complete configuration."""
        config = config_file(
            "concurrency: 8\n"
            "log_level: DEBUG\n"
            "refresh: true\n"
            "retry:\n"
            "  max_attempts: 2\n"
            "  base_delay: 0.5\n"
            "variables:\n"
            "  Env: prod\n"
            "aws:\n"
            "  region: eu-west-1\n"
        ).load()

        settings = config.settings
        assert settings.concurrency == 8
        assert settings.log_level == 'debug'
        assert settings.refresh is True
        assert settings.retry.max_attempts == 2
        assert settings.retry.max_delay == 30.0
        assert settings.variables == {'Env': 'prod'}
        assert settings.aws.region == 'eu-west-1'
        assert config.to_dict()['state_path'] == '.stackpilot/state.json'

    def test_empty_file_uses_defaults(self, config_file):
        assert config_file("").load().settings == EngineSettings()

    def test_missing_file(self, tmp_path):
        """Test explicit load versus load_or_default."""
        config = Config(str(tmp_path / 'missing.yaml'))

        with pytest.raises(FileNotFoundError):
            config.load()
        assert config.load_or_default().settings.concurrency == 4

    def test_validation_errors_are_collected(self, config_file):
        """Test that every problem is reported at once."""
        config = config_file(
            "concurrency: 0\n"
            "log_level: loud\n"
            "unknown_key: 1\n"
            "aws:\n"
            "  region: mars\n"
        )

        with pytest.raises(ConfigValidationError) as exc_info:
            config.load()

        locations = [tuple(error['loc']) for error in exc_info.value.errors]
        assert ('concurrency',) in locations
        assert ('log_level',) in locations
        assert ('unknown_key',) in locations
        assert ('aws', 'region') in locations
        assert 'aws -> region' in str(exc_info.value)

    def test_retry_delays_must_be_ordered(self, config_file):
        with pytest.raises(ConfigValidationError):
            config_file("retry:\n  base_delay: 10\n  max_delay: 1\n").load()

    def test_invalid_yaml(self, config_file):
        with pytest.raises(ConfigValidationError):
            config_file("concurrency: [1\n").load()

    def test_top_level_must_be_mapping(self, config_file):
        with pytest.raises(ConfigValidationError):
            config_file("- 1\n- 2\n").load()
