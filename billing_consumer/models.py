"""Pydantic models for inbound billing version events.

``VersionDifferenceEvent`` is the Python view of the JSON published when a
bill's version differs between the local copy and the upstream source. The
consumer only needs it to name files; the raw payload is what gets stored.
"""
from __future__ import annotations

import datetime as _dt
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


EVENT_TYPE = "billing.version.difference"


class VersionChangeType(str, Enum):
    """Kind of version change detected for a bill."""
    NO_CHANGE = "NoChange"
    VERSION_UPDATED = "VersionUpdated"
    NEW_VERSION = "NewVersion"
    VERSION_REMOVED = "VersionRemoved"

    @classmethod
    def parse(cls, value: Any) -> "VersionChangeType":
        """Accept a member, its name in any case, or its ordinal (0..3).

        Example:
            >>> VersionChangeType.parse("versionUpdated")
            <VersionChangeType.VERSION_UPDATED: 'VersionUpdated'>
            >>> VersionChangeType.parse(2)
            <VersionChangeType.NEW_VERSION: 'NewVersion'>
        """
        if isinstance(value, cls):
            return value
        members = list(cls)
        if isinstance(value, int) and not isinstance(value, bool):
            if 0 <= value < len(members):
                return members[value]
            raise ValueError(f"unknown change type ordinal: {value}")
        if isinstance(value, str):
            key = value.strip().replace("_", "").lower()
            for member in members:
                if member.value.lower() == key:
                    return member
        raise ValueError(f"unknown change type: {value!r}")


class VersionDifferenceEvent(BaseModel):
    """A detected difference between two versions of a medical-organisation bill."""
    # Unknown fields are tolerated; producers may add context over time
    model_config = ConfigDict(extra="allow", populate_by_name=True, alias_generator=to_camel)

    event_type: ClassVar[str] = EVENT_TYPE

    bill_id: str = Field(min_length=1)
    period: str = Field(min_length=1)
    mo_id: Optional[str] = None
    # Version tokens look like "17246554" (CHAR(8)); kept opaque
    previous_version: Optional[str] = None
    current_version: str = Field(min_length=1)
    difference_detected_at: Optional[_dt.datetime] = None
    change_type: Optional[VersionChangeType] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("change_type", mode="before")
    @classmethod
    def _coerce_change_type(cls, value: Any) -> Any:
        if value is None:
            return None
        return VersionChangeType.parse(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _default_metadata(cls, value: Any) -> Any:
        return {} if value is None else value


def parse_event(raw: str | bytes) -> VersionDifferenceEvent:
    """Parse and validate a raw JSON payload.

    Raises a ``pydantic.ValidationError`` if the payload is not JSON or misses
    a naming field.
    """
    return VersionDifferenceEvent.model_validate_json(raw)
