"""Pydantic models for configuration schema."""

from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class RetrySettings(BaseModel):
    """Retry policy for transient driver failures."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(4, ge=1, le=20, description="Attempts per step, including the first")
    base_delay: float = Field(1.0, ge=0, description="Delay in seconds before the first retry")
    max_delay: float = Field(30.0, ge=0, description="Upper bound on any single delay")
    exponential_base: float = Field(2.0, ge=1)
    jitter: bool = True

    @model_validator(mode="after")
    def validate_delays(self):
        """Validate that the delay ceiling is not below the base delay."""
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be greater than or equal to base_delay")
        return self


class AWSSettings(BaseModel):
    """AWS session used by the built-in drivers."""

    model_config = ConfigDict(extra="forbid")

    region: Optional[str] = Field(None, description="AWS region (e.g., us-east-1)")
    profile: Optional[str] = Field(None, description="Named profile from the AWS config")

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: Optional[str]) -> Optional[str]:
        """Validate AWS region format."""
        if v is None:
            return v
        parts = v.split("-")
        if len(parts) < 3 or not parts[-1].isdigit():
            raise ValueError(f"Invalid AWS region format: {v}")
        return v


class EngineSettings(BaseModel):
    """Engine settings loaded from stackpilot.yaml."""

    model_config = ConfigDict(extra="forbid")

    concurrency: int = Field(4, ge=1, le=64, description="Maximum provider calls in flight")
    retry: RetrySettings = Field(default_factory=RetrySettings)
    state_path: str = Field(".stackpilot/state.json", description="Path to the JSON state file")
    log_level: str = Field("info", pattern="^(debug|info|warning|error)$")
    log_dir: Optional[str] = Field(None, description="Directory for JSON-lines log files")
    refresh: bool = Field(False, description="Read recorded resources back from drivers before planning")
    variables: Dict[str, Any] = Field(
        default_factory=dict, description="Default variables for every document"
    )
    aws: AWSSettings = Field(default_factory=AWSSettings)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Accept log levels in any case."""
        return v.lower() if isinstance(v, str) else v

    @field_validator("variables")
    @classmethod
    def validate_variables(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        """Validate variable names."""
        for name in v:
            if not name:
                raise ValueError("Variable names must be non-empty")
        return v
