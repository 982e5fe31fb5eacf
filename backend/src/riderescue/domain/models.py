"""SQLAlchemy ORM models for RideRescue dispatch.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- Integer minor units (cents) for money
- DateTime for timestamps (naive UTC on SQLite)
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from riderescue.infra.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class AppUser(Base):
    """Display profile for reporters and providers."""

    __tablename__ = "app_users"

    user_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    full_name = Column(String(255), nullable=True)
    photo_url = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=_utcnow)


# ---------------------------------------------------------------------------
# Emergencies
# ---------------------------------------------------------------------------


class Emergency(Base):
    """A reported breakdown awaiting or under service."""

    __tablename__ = "emergencies"

    emergency_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False, index=True)
    vehicle_type = Column(String(100), nullable=False)
    breakdown_cause = Column(Text, nullable=True)
    attachments = Column(JSON, default=list)
    service_category = Column(String(20), nullable=False, default="repair")  # repair, vulcanize, gas
    emergency_status = Column(String(20), nullable=False, default="waiting", index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    accepted_by = Column(String(36), nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    canceled_reason = Column(Text, nullable=True)
    # Bumped on every write; the reconciler orders change events by it
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    offers = relationship("Offer", back_populates="emergency")
    settlement = relationship("Settlement", back_populates="emergency", uselist=False)


class Offer(Base):
    """A provider's claim (pending/accepted/rejected/canceled) on an emergency."""

    __tablename__ = "offers"
    __table_args__ = (UniqueConstraint("emergency_id", "provider_id", name="uq_offer_emergency_provider"),)

    offer_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    emergency_id = Column(String(36), ForeignKey("emergencies.emergency_id"), nullable=False, index=True)
    provider_id = Column(String(36), nullable=False, index=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    requested_at = Column(DateTime, default=_utcnow)
    accepted_at = Column(DateTime, nullable=True)
    responded_at = Column(DateTime, nullable=True)
    hidden = Column(Boolean, default=False, nullable=False)
    distance_km = Column(Float, nullable=True)
    distance_fee_cents = Column(Integer, nullable=True)
    labor_cost_cents = Column(Integer, nullable=True)
    note = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    emergency = relationship("Emergency", back_populates="offers")


class Settlement(Base):
    """Frozen distance fee plus adjustable labor and extras for one accepted job."""

    __tablename__ = "settlements"

    settlement_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    emergency_id = Column(
        String(36), ForeignKey("emergencies.emergency_id"), nullable=False, unique=True,
    )
    provider_id = Column(String(36), nullable=False, index=True)
    service_category = Column(String(20), nullable=False, default="repair")
    distance_km = Column(Float, nullable=False, default=0.0)
    distance_fee_cents = Column(Integer, nullable=False, default=0)
    labor_cost_cents = Column(Integer, nullable=False, default=0)
    labor_cost_base_cents = Column(Integer, nullable=False, default=0)
    extra_items = Column(JSON, default=list)  # [{"name", "quantity", "unit_price_cents"}]
    total_cents = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending")  # pending, to_pay, paid, canceled
    cancel_option = Column(String(20), nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    invoiced_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    emergency = relationship("Emergency", back_populates="settlement")
