"""Visibility gate: which waiting emergencies a provider may see.

A fresh request is first offered to providers close to it; once it has aged
past the release threshold it becomes visible to everyone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from riderescue.domain.enums import EmergencyStatus
from riderescue.domain.schemas import as_utc
from riderescue.services.geo import Coordinates, distance_km


class GatedRecord(Protocol):
    latitude: Optional[float]
    longitude: Optional[float]
    created_at: Optional[datetime]


def is_visible(
    record: GatedRecord,
    observer: Optional[Coordinates],
    now: datetime,
    age_threshold_minutes: float,
    distance_threshold_km: float,
) -> bool:
    """Return True if *record* should be exposed to *observer* at *now*.

    Visible when the record is older than ``age_threshold_minutes`` (strictly)
    or when the observer is within ``distance_threshold_km`` (inclusive).
    An unknown observer position fails closed. Status is not checked here;
    see :meth:`VisibilityPolicy.admits`.
    """
    created_at = as_utc(record.created_at)
    if created_at is not None:
        age_minutes = (as_utc(now) - created_at).total_seconds() / 60.0
        if age_minutes > age_threshold_minutes:
            return True

    if observer is None or record.latitude is None or record.longitude is None:
        return False

    dist = distance_km(observer, Coordinates(record.latitude, record.longitude))
    return dist <= distance_threshold_km


@dataclass(frozen=True)
class VisibilityPolicy:
    """Configured thresholds plus the lifecycle filter applied before the gate."""

    age_threshold_minutes: float = 10.0
    distance_threshold_km: float = 2.0

    @classmethod
    def from_settings(cls, settings) -> "VisibilityPolicy":
        return cls(
            age_threshold_minutes=settings.visibility_age_threshold_minutes,
            distance_threshold_km=settings.visibility_distance_threshold_km,
        )

    def admits(
        self,
        record,
        observer: Optional[Coordinates],
        now: datetime,
    ) -> bool:
        """Status must still be waiting, then the age-or-distance gate decides."""
        status = getattr(record, "emergency_status", None)
        if status is not None and EmergencyStatus(status) != EmergencyStatus.WAITING:
            return False
        return is_visible(
            record,
            observer,
            now,
            self.age_threshold_minutes,
            self.distance_threshold_km,
        )
