"""Pydantic v2 schemas for store rows, change events and API payloads."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from riderescue.domain.enums import (
    ChangeType,
    EmergencyStatus,
    OfferStatus,
    ServiceCategory,
)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _UtcModel(BaseModel):
    """Base that normalizes every datetime field to tz-aware UTC."""

    @field_validator("*", mode="after")
    @classmethod
    def _normalize_datetimes(cls, value):
        if isinstance(value, datetime):
            return as_utc(value)
        return value


# ---------------------------------------------------------------------------
# Store rows
# ---------------------------------------------------------------------------


class EmergencyRow(_UtcModel):
    """An emergency request as stored remotely.

    Only ``emergency_id`` is required so that change events carrying a partial
    row can still be parsed; fields absent from the payload stay unset and are
    excluded from merges.
    """

    model_config = ConfigDict(from_attributes=True)

    emergency_id: str
    user_id: Optional[str] = None
    vehicle_type: Optional[str] = None
    breakdown_cause: Optional[str] = None
    attachments: list[str] = Field(default_factory=list)
    service_category: ServiceCategory = ServiceCategory.REPAIR
    emergency_status: EmergencyStatus = EmergencyStatus.WAITING
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: Optional[datetime] = None
    accepted_by: Optional[str] = None
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    canceled_reason: Optional[str] = None
    updated_at: Optional[datetime] = None

    @field_validator("attachments", mode="before")
    @classmethod
    def _drop_empty_attachments(cls, value):
        if value is None:
            return []
        return [a for a in value if a]


class EmergencyCreate(BaseModel):
    """Payload a reporter submits when stranded."""

    user_id: str
    vehicle_type: str
    breakdown_cause: Optional[str] = None
    attachments: list[str] = Field(default_factory=list)
    service_category: ServiceCategory = ServiceCategory.REPAIR
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class OfferRow(_UtcModel):
    """A provider's claim against an emergency."""

    model_config = ConfigDict(from_attributes=True)

    offer_id: str
    emergency_id: str
    provider_id: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    status: OfferStatus = OfferStatus.PENDING
    requested_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    hidden: bool = False
    distance_km: Optional[float] = None
    distance_fee_cents: Optional[int] = None
    labor_cost_cents: Optional[int] = None
    note: Optional[str] = None
    updated_at: Optional[datetime] = None


class ProfileRow(BaseModel):
    """Reporter display profile used to enrich visible emergencies."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    full_name: Optional[str] = None
    photo_url: Optional[str] = None


# ---------------------------------------------------------------------------
# Change stream
# ---------------------------------------------------------------------------


class ChangeEvent(_UtcModel):
    """Row-level change notification scoped to one table.

    ``new`` carries the row after an insert/update, ``old`` the row (or at
    least its key) before a delete.
    """

    type: ChangeType
    table: str
    new: Optional[dict[str, Any]] = None
    old: Optional[dict[str, Any]] = None
    commit_timestamp: Optional[datetime] = None

    @property
    def row(self) -> Optional[dict[str, Any]]:
        return self.old if self.type == ChangeType.DELETE else self.new


# ---------------------------------------------------------------------------
# Visible-set projection
# ---------------------------------------------------------------------------

AVATAR_PLACEHOLDER = (
    "https://images.unsplash.com/photo-1527980965255-d3b416303d12"
    "?q=80&w=256&auto=format&fit=crop"
)


class EmergencyProjection(_UtcModel):
    """Locally materialized view of one visible emergency."""

    emergency_id: str
    user_id: Optional[str] = None
    vehicle_type: Optional[str] = None
    breakdown_cause: Optional[str] = None
    attachments: list[str] = Field(default_factory=list)
    service_category: ServiceCategory = ServiceCategory.REPAIR
    emergency_status: EmergencyStatus = EmergencyStatus.WAITING
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Derived from the observer's position
    distance_km: Optional[float] = None

    # Out-of-band enrichment
    landmark: Optional[str] = None
    reporter_name: str = "Customer"
    reporter_avatar: str = AVATAR_PLACEHOLDER
    enrichment_pending: bool = False


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class LocationUpdate(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    accuracy_m: Optional[float] = None


class OfferRequest(BaseModel):
    labor_cost: Optional[Decimal] = None
    note: Optional[str] = None


class ExtraItemPayload(BaseModel):
    name: str
    unit_price: Decimal
    quantity: int = 1


class InvoiceRequest(BaseModel):
    labor_cost: Decimal
    extra_items: list[ExtraItemPayload] = Field(default_factory=list)


class CancelRequest(BaseModel):
    option: Optional[str] = None
    reason: Optional[str] = None
    zero_fee_reason: Optional[str] = None


class SettlementResponse(BaseModel):
    emergency_id: str
    provider_id: str
    status: str
    distance_km: float
    distance_fee: Decimal
    labor_cost: Decimal
    labor_cost_base: Decimal
    extras_total: Decimal
    total: Decimal
    cancel_option: Optional[str] = None
    reason: Optional[str] = None
