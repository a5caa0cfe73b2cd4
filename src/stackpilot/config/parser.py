"""YAML configuration parser for stackpilot."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from .models import EngineSettings

DEFAULT_CONFIG_FILE = "stackpilot.yaml"


class ConfigValidationError(Exception):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


class Config:
    """Configuration manager for stackpilot."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_FILE):
        """Initialize configuration manager.

        Args:
            config_path: Path to stackpilot.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.data: Dict[str, Any] = {}
        self.settings: EngineSettings = EngineSettings()

    def exists(self) -> bool:
        return self.config_path.exists()

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
            FileNotFoundError: If configuration file doesn't exist
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        if not isinstance(self.data, dict):
            raise ConfigValidationError(
                "Configuration validation failed with 1 error(s)",
                [{"loc": [], "msg": "Top level of the configuration must be a mapping"}],
            )

        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self.settings = EngineSettings(**self.data)
        return self

    def load_or_default(self) -> "Config":
        """Load the file when it exists, otherwise keep default settings."""
        if self.exists():
            return self.load()
        return self

    def validate(self) -> List[Dict]:
        """Validate configuration against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        try:
            EngineSettings(**self.data)
        except ValidationError as e:
            for error in e.errors():
                errors.append(
                    {
                        "loc": list(error["loc"]),
                        "msg": error["msg"],
                    }
                )
        return errors

    def to_dict(self) -> Dict:
        """Convert configuration to dictionary.

        Returns:
            Dictionary representation of configuration
        """
        return self.settings.model_dump()
