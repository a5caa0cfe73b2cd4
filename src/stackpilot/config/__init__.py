"""Configuration management for stackpilot."""

from .models import AWSSettings, EngineSettings, RetrySettings
from .parser import DEFAULT_CONFIG_FILE, Config, ConfigValidationError

__all__ = [
    "AWSSettings",
    "EngineSettings",
    "RetrySettings",
    "DEFAULT_CONFIG_FILE",
    "Config",
    "ConfigValidationError",
]
