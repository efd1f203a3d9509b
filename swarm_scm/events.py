"""Inbound event payload contract."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator


class CheckoutStatus(StrEnum):
    """Change status reported by a Swarm event."""

    SUBMITTED = "submitted"
    COMMITTED = "committed"
    SHELVED = "shelved"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str) -> CheckoutStatus:
        """Parse a status case-insensitively; unknown values map to OTHER."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.OTHER


class CheckoutEvent(BaseModel):
    """Flat key/value payload delivered by a Swarm or Perforce trigger."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    change: str | None = None
    project: str | None = None
    branch: str | None = None
    path: str | None = None
    status: str | None = None

    @field_validator("change", "project", "branch", "path", "status", mode="before")
    @classmethod
    def coerce_scalar(cls, value: Any) -> str | None:
        """Accept JSON numbers and booleans as their string form; blank is absent."""
        if value is None:
            return None
        if isinstance(value, str):
            return value if value.strip() else None
        if isinstance(value, bool):
            return str(value).lower()
        if isinstance(value, int | float):
            return str(value)
        raise ValueError(f"Expected a scalar event value, got {type(value).__name__}.")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> CheckoutEvent:
        """Build an event from a raw payload mapping."""
        return cls.model_validate(dict(payload))

    @property
    def checkout_status(self) -> CheckoutStatus | None:
        if self.status is None:
            return None
        return CheckoutStatus.parse(self.status)
