"""State file data models."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from stackpilot.drivers.base import ProviderResult

STATE_FORMAT_VERSION = "1"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateRecord(BaseModel):
    """Last-known-applied state of one resource."""

    identifier: str = Field(..., description="Resource identifier from the document")
    type: str = Field(..., description="Resource type tag (e.g., AWS::S3::Bucket)")
    external_id: str = Field(..., description="Provider-assigned identifier")
    properties: Dict[str, Any] = Field(
        default_factory=dict,
        description="Declared properties in canonical form, references unresolved; used for diffing"
    )
    resolved_properties: Dict[str, Any] = Field(
        default_factory=dict, description="Properties as last sent to the driver"
    )
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="Output attributes reported by the driver"
    )
    dependencies: List[str] = Field(
        default_factory=list, description="Resource identifiers this resource depended on"
    )
    last_applied_at: datetime = Field(default_factory=utcnow)
    last_status: str = Field("succeeded", description="Status of the last apply")

    def to_provider_result(self) -> ProviderResult:
        """Outputs of this resource as dependents see them."""
        return ProviderResult(external_id=self.external_id, attributes=dict(self.attributes))


class PendingOperation(BaseModel):
    """Journal entry written before a provider call and cleared by the state write after it.

    An entry that survives a run marks a provider call whose outcome was
    never recorded.
    """

    identifier: str
    type: str
    action: str
    external_id: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)
    resolved_properties: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)


class StateDocument(BaseModel):
    """Represents the complete persisted state."""

    version: str = Field(STATE_FORMAT_VERSION, description="State file format version")
    serial: int = Field(0, description="Incremented on every committed write")
    updated_at: datetime = Field(default_factory=utcnow, description="Last update timestamp")
    records: Dict[str, StateRecord] = Field(
        default_factory=dict, description="Records keyed by resource identifier"
    )
    pending: Dict[str, PendingOperation] = Field(
        default_factory=dict, description="Interrupted or in-flight provider calls"
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateDocument":
        """Create StateDocument from dictionary."""
        return cls.model_validate(data)
