"""
Configuration models for synchronizations.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Any:
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


class DeletePolicy(str, Enum):
    """What happens to contracts whose origin object was not seen in a run."""
    KEEP = "keep"      # Leave the contract and the target object alone
    MARK = "mark"      # Record a delete action on the contract, keep the target object
    DELETE = "delete"  # Delete the target object and remove the contract


class ServiceConnection(BaseModel):
    """Configuration for connecting to a source or target service."""
    model_config = ConfigDict(extra="allow")  # Allow additional service-specific config

    service_type: str = Field("rest", description="Connector registry key")
    base_url: Optional[str] = Field(None, description="Base URL for the service API")
    endpoint: str = Field("", description="Collection endpoint, relative to base_url")
    headers: Dict[str, str] = Field(default_factory=dict)
    credentials: Dict[str, str] = Field(default_factory=dict, description="Service authentication credentials")
    params: Dict[str, Any] = Field(default_factory=dict, description="Query parameters sent with every fetch")
    timeout: Optional[float] = Field(None, description="Request timeout in seconds")

    results_position: Optional[str] = Field(None, description="Dot-path of the object list in a response body")
    id_position: str = Field("id", description="Dot-path of an object's identifier")
    next_position: Optional[str] = Field(None, description="Dot-path of the next-page link")


class Synchronization(BaseModel):
    """
    Configuration for keeping a target consistent with a source.
    This is stored in Firestore.
    """
    # Identity
    id: str = Field(..., description="Unique identifier for this synchronization")
    name: str = Field("", description="Human-readable name")
    slug: Optional[str] = Field(None, description="URL friendly identifier")
    description: Optional[str] = Field(None, description="Optional description")

    # Service configuration
    source: ServiceConnection = Field(..., description="Source service configuration")
    target: ServiceConnection = Field(..., description="Target service configuration")

    # Mappings
    source_target_mapping: Optional[str] = Field(None, description="Mapping id used to build the target payload")
    source_hash_mapping: Optional[str] = Field(None, description="Mapping id used to reduce objects before hashing")
    target_source_mapping: Optional[str] = Field(
        None, description="Mapping id reserved for conflict resolution; checked to exist but not applied during runs"
    )

    # Filtering, chaining and hooks
    conditions: Any = Field(None, description="JSON Logic expression deciding if an object is in scope")
    follow_ups: List[str] = Field(default_factory=list, description="Synchronizations triggered after a successful run")
    actions: List[str] = Field(default_factory=list, description="Names of pre/post run hooks")
    delete_policy: DeletePolicy = Field(DeletePolicy.KEEP)

    # Status and metadata
    active: bool = Field(True, description="Whether this synchronization may run")
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    last_run_at: Optional[datetime] = Field(None, description="When the last run finished")

    def to_firestore(self) -> Dict[str, Any]:
        """Convert to Firestore document format."""
        data = self.model_dump(mode="json")
        return data

    @classmethod
    def from_firestore(cls, doc_id: str, data: Dict[str, Any]) -> "Synchronization":
        """Create instance from Firestore document."""
        data = dict(data)
        for key in ("created_at", "updated_at", "last_run_at"):
            if data.get(key):
                data[key] = _parse_timestamp(data[key])
        data["id"] = doc_id
        return cls(**data)
