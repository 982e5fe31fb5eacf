"""Observer location resolution.

A denied permission is a normal state, not an error: the observer simply has
no coordinates and the visibility gate fails closed for fresh requests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from riderescue.domain.enums import AccuracyTier, LocationPermission
from riderescue.domain.schemas import as_utc
from riderescue.services.geo import Coordinates

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Position:
    """A position fix reported by the device."""

    lat: float
    lon: float
    timestamp: datetime
    accuracy_m: Optional[float] = None

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(self.lat, self.lon)


class LocationProvider(Protocol):
    async def get_permission(self) -> LocationPermission: ...

    async def request_permission(self) -> LocationPermission: ...

    async def last_known_position(self, max_age_seconds: float) -> Optional[Position]: ...

    async def current_position(self, accuracy: AccuracyTier) -> Optional[Position]: ...


class FixedLocationProvider:
    """LocationProvider fed by explicit position reports (HTTP clients, tests)."""

    def __init__(
        self,
        permission: LocationPermission = LocationPermission.GRANTED,
        position: Optional[Position] = None,
    ):
        self.permission = permission
        self.position = position

    def report(self, lat: float, lon: float, accuracy_m: Optional[float] = None) -> Position:
        self.permission = LocationPermission.GRANTED
        self.position = Position(lat, lon, datetime.now(timezone.utc), accuracy_m)
        return self.position

    async def get_permission(self) -> LocationPermission:
        return self.permission

    async def request_permission(self) -> LocationPermission:
        return self.permission

    async def last_known_position(self, max_age_seconds: float) -> Optional[Position]:
        if self.position is None:
            return None
        age = datetime.now(timezone.utc) - as_utc(self.position.timestamp)
        if age > timedelta(seconds=max_age_seconds):
            return None
        return self.position

    async def current_position(self, accuracy: AccuracyTier) -> Optional[Position]:
        return self.position


async def resolve_observer(
    provider: LocationProvider,
    max_age_seconds: float = 60.0,
    accuracy: AccuracyTier = AccuracyTier.BALANCED,
) -> tuple[LocationPermission, Optional[Coordinates]]:
    """Ask for permission if needed, then prefer a recent fix over a fresh one."""
    permission = await provider.get_permission()
    if permission == LocationPermission.UNKNOWN:
        permission = await provider.request_permission()
    if permission != LocationPermission.GRANTED:
        logger.info("Location permission %s; observer has no coordinates", permission.value)
        return permission, None

    position = await provider.last_known_position(max_age_seconds)
    if position is None:
        position = await provider.current_position(accuracy)
    if position is None:
        return permission, None
    return permission, position.coordinates
