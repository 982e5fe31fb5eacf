"""Dispatch API endpoints.

Reporter endpoints create emergencies and accept offers; provider endpoints
drive one ``DispatchCoordinator`` per provider id, created on first use and
kept until it idles out or the app shuts down.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from riderescue.app.config import get_settings
from riderescue.domain.enums import LocationPermission
from riderescue.domain.schemas import (
    CancelRequest,
    EmergencyCreate,
    EmergencyProjection,
    EmergencyRow,
    InvoiceRequest,
    LocationUpdate,
    OfferRequest,
    OfferRow,
    SettlementResponse,
)
from riderescue.infra.change_feed import ChangeFeed
from riderescue.infra.database import async_session
from riderescue.infra.store import Persistence, SqlPersistence
from riderescue.services.dispatch_coordinator import DispatchCoordinator, accept_offer
from riderescue.services.errors import (
    ConflictError,
    DispatchError,
    NotFoundError,
    TransientIOError,
    ValidationError,
)
from riderescue.services.geocoding_service import GeocodingService
from riderescue.services.location_service import FixedLocationProvider
from riderescue.services.settlement_calculator import (
    SettlementCalculator,
    SettlementSnapshot,
    from_cents,
)
from riderescue.services.visibility_gate import VisibilityPolicy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["dispatch"])


# ---------------------------------------------------------------------------
# Coordinator registry
# ---------------------------------------------------------------------------


class CoordinatorRegistry:
    """One started coordinator per provider id.

    Coordinators unused for ``idle_seconds`` are stopped on the next lookup,
    and at most ``max_coordinators`` are kept, least recently used first out.
    """

    def __init__(
        self,
        store: Persistence,
        geocoder: Optional[GeocodingService] = None,
        auto_refresh: bool = True,
        max_coordinators: Optional[int] = None,
        idle_seconds: Optional[float] = None,
        clock=time.monotonic,
    ):
        settings = get_settings()
        self.store = store
        self.geocoder = geocoder or GeocodingService(settings.google_maps_api_key)
        self.auto_refresh = auto_refresh
        self.max_coordinators = max_coordinators or settings.max_coordinators
        self.idle_seconds = idle_seconds if idle_seconds is not None else settings.coordinator_idle_seconds
        self._clock = clock
        self.coordinators: OrderedDict[str, DispatchCoordinator] = OrderedDict()
        self._last_used: dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def get(self, provider_id: str) -> DispatchCoordinator:
        async with self._lock:
            now = self._clock()
            await self._evict_idle(now, keep=provider_id)
            coordinator = self.coordinators.get(provider_id)
            if coordinator is None:
                coordinator = DispatchCoordinator(
                    provider_id,
                    self.store,
                    geocoder=self.geocoder,
                    location=FixedLocationProvider(permission=LocationPermission.UNKNOWN),
                )
                await coordinator.start(auto_refresh=self.auto_refresh)
                self.coordinators[provider_id] = coordinator
            self.coordinators.move_to_end(provider_id)
            self._last_used[provider_id] = now
            while len(self.coordinators) > self.max_coordinators:
                oldest = next(iter(self.coordinators))
                await self._evict(oldest, "capacity")
            return coordinator

    async def _evict_idle(self, now: float, keep: str) -> None:
        if self.idle_seconds <= 0:
            return
        for provider_id, last_used in list(self._last_used.items()):
            if provider_id != keep and now - last_used >= self.idle_seconds:
                await self._evict(provider_id, "idle")

    async def _evict(self, provider_id: str, why: str) -> None:
        coordinator = self.coordinators.pop(provider_id)
        self._last_used.pop(provider_id, None)
        await coordinator.stop()
        logger.info("Evicted coordinator for %s (%s)", provider_id, why)

    async def shutdown(self) -> None:
        async with self._lock:
            for coordinator in self.coordinators.values():
                await coordinator.stop()
            self.coordinators.clear()
            self._last_used.clear()


@lru_cache
def get_persistence() -> Persistence:
    """FastAPI dependency: the process-wide store."""
    settings = get_settings()
    return SqlPersistence(async_session, ChangeFeed(), VisibilityPolicy.from_settings(settings))


@lru_cache
def get_registry() -> CoordinatorRegistry:
    """FastAPI dependency: the process-wide coordinator registry."""
    return CoordinatorRegistry(get_persistence())


def get_calculator() -> SettlementCalculator:
    return SettlementCalculator.from_settings(get_settings())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_http(exc: DispatchError) -> HTTPException:
    if isinstance(exc, ValidationError):
        detail = {"message": str(exc), "field": exc.field, "item_index": exc.item_index}
        return HTTPException(status_code=422, detail=detail)
    if isinstance(exc, ConflictError):
        return HTTPException(
            status_code=409, detail={"message": str(exc), "current_status": exc.current_status},
        )
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, TransientIOError):
        return HTTPException(status_code=503, detail=str(exc))
    logger.error("Unmapped dispatch error: %s", exc)
    return HTTPException(status_code=500, detail=str(exc))


def _settlement_response(snapshot: SettlementSnapshot) -> SettlementResponse:
    return SettlementResponse(
        emergency_id=snapshot.emergency_id,
        provider_id=snapshot.provider_id,
        status=snapshot.status.value,
        distance_km=snapshot.distance_km,
        distance_fee=from_cents(snapshot.distance_fee_cents),
        labor_cost=from_cents(snapshot.labor_cost_cents),
        labor_cost_base=from_cents(snapshot.labor_cost_base_cents),
        extras_total=from_cents(snapshot.extras_total_cents),
        total=from_cents(snapshot.total_cents),
        cancel_option=snapshot.cancel_option.value if snapshot.cancel_option else None,
        reason=snapshot.reason,
    )


# ---------------------------------------------------------------------------
# Reporter endpoints
# ---------------------------------------------------------------------------


@router.post("/emergencies", response_model=EmergencyRow, status_code=201)
async def create_emergency(
    body: EmergencyCreate,
    store: Persistence = Depends(get_persistence),
):
    """Report a breakdown; it starts out waiting."""
    try:
        return await store.create_emergency(body)
    except DispatchError as e:
        raise _to_http(e)


@router.post("/offers/{offer_id}/accept", response_model=EmergencyRow)
async def accept_provider_offer(
    offer_id: str,
    reporter_id: Optional[str] = None,
    store: Persistence = Depends(get_persistence),
    calculator: SettlementCalculator = Depends(get_calculator),
):
    try:
        return await accept_offer(store, calculator, offer_id, reporter_id)
    except DispatchError as e:
        raise _to_http(e)


# ---------------------------------------------------------------------------
# Provider endpoints
# ---------------------------------------------------------------------------


@router.post("/providers/{provider_id}/location", response_model=list[EmergencyProjection])
async def update_location(
    provider_id: str,
    body: LocationUpdate,
    registry: CoordinatorRegistry = Depends(get_registry),
):
    """Report the provider's position and return the re-gated board."""
    coordinator = await registry.get(provider_id)
    coordinator.location.report(body.lat, body.lon, body.accuracy_m)
    try:
        await coordinator.sync_location()
    except DispatchError as e:
        raise _to_http(e)
    return coordinator.visible()


@router.get("/providers/{provider_id}/emergencies", response_model=list[EmergencyProjection])
async def list_visible(
    provider_id: str,
    registry: CoordinatorRegistry = Depends(get_registry),
):
    coordinator = await registry.get(provider_id)
    return coordinator.visible()


@router.post("/providers/{provider_id}/refresh", response_model=list[EmergencyProjection])
async def refresh_visible(
    provider_id: str,
    registry: CoordinatorRegistry = Depends(get_registry),
):
    coordinator = await registry.get(provider_id)
    try:
        return await coordinator.refresh()
    except DispatchError as e:
        raise _to_http(e)


@router.post("/providers/{provider_id}/emergencies/{emergency_id}/offer", response_model=OfferRow)
async def send_offer(
    provider_id: str,
    emergency_id: str,
    body: OfferRequest,
    registry: CoordinatorRegistry = Depends(get_registry),
):
    coordinator = await registry.get(provider_id)
    try:
        return await coordinator.send_offer(emergency_id, body.labor_cost, body.note)
    except DispatchError as e:
        raise _to_http(e)


@router.delete("/providers/{provider_id}/emergencies/{emergency_id}/offer", response_model=OfferRow)
async def withdraw_offer(
    provider_id: str,
    emergency_id: str,
    registry: CoordinatorRegistry = Depends(get_registry),
):
    coordinator = await registry.get(provider_id)
    try:
        return await coordinator.withdraw_offer(emergency_id)
    except DispatchError as e:
        raise _to_http(e)


@router.post("/providers/{provider_id}/emergencies/{emergency_id}/hide")
async def hide_emergency(
    provider_id: str,
    emergency_id: str,
    registry: CoordinatorRegistry = Depends(get_registry),
):
    coordinator = await registry.get(provider_id)
    try:
        await coordinator.hide(emergency_id)
    except DispatchError as e:
        raise _to_http(e)
    return {"emergency_id": emergency_id, "hidden": True}


@router.post("/providers/{provider_id}/emergencies/{emergency_id}/accept", response_model=EmergencyRow)
async def accept_emergency(
    provider_id: str,
    emergency_id: str,
    body: Optional[OfferRequest] = None,
    registry: CoordinatorRegistry = Depends(get_registry),
):
    """Claim a waiting emergency; 409 when another provider got there first."""
    coordinator = await registry.get(provider_id)
    try:
        return await coordinator.accept(emergency_id, body.labor_cost if body else None)
    except DispatchError as e:
        raise _to_http(e)


@router.post(
    "/providers/{provider_id}/emergencies/{emergency_id}/complete",
    response_model=SettlementResponse,
)
async def complete_emergency(
    provider_id: str,
    emergency_id: str,
    body: InvoiceRequest,
    registry: CoordinatorRegistry = Depends(get_registry),
):
    coordinator = await registry.get(provider_id)
    try:
        snapshot = await coordinator.complete(
            emergency_id,
            body.labor_cost,
            [item.model_dump() for item in body.extra_items],
        )
    except DispatchError as e:
        raise _to_http(e)
    return _settlement_response(snapshot)


@router.post(
    "/providers/{provider_id}/emergencies/{emergency_id}/confirm-payment",
    response_model=EmergencyRow,
)
async def confirm_payment(
    provider_id: str,
    emergency_id: str,
    registry: CoordinatorRegistry = Depends(get_registry),
):
    coordinator = await registry.get(provider_id)
    try:
        return await coordinator.confirm_payment(emergency_id)
    except DispatchError as e:
        raise _to_http(e)


@router.post(
    "/providers/{provider_id}/emergencies/{emergency_id}/cancel",
    response_model=SettlementResponse,
)
async def cancel_emergency(
    provider_id: str,
    emergency_id: str,
    body: CancelRequest,
    registry: CoordinatorRegistry = Depends(get_registry),
):
    coordinator = await registry.get(provider_id)
    try:
        snapshot = await coordinator.cancel_by_provider(
            emergency_id, body.option, body.reason, body.zero_fee_reason,
        )
    except DispatchError as e:
        raise _to_http(e)
    return _settlement_response(snapshot)
