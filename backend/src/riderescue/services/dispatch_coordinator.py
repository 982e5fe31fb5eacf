"""Dispatch coordinator: a provider's view of the emergency board.

Owns the provider's ``ChangeStreamReconciler``, feeds it from the store's
change stream and the periodic refresh, and runs every lifecycle mutation
(offer, accept, invoice, payment, cancel) against the store. Mutations are
validated locally first; the store's conditional writes are the final word.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional, Union

from riderescue.app.config import Settings, get_settings
from riderescue.domain.enums import Actor, EmergencyStatus, OfferStatus, SettlementStatus
from riderescue.domain.schemas import (
    AVATAR_PLACEHOLDER,
    EmergencyProjection,
    EmergencyRow,
    OfferRow,
)
from riderescue.infra.change_feed import Subscription
from riderescue.infra.store import EMERGENCIES, Persistence
from riderescue.services.change_stream_reconciler import (
    ChangeStreamReconciler,
    FullRefresh,
    HideEmergency,
    ObserverMoved,
    OptimisticRemoval,
)
from riderescue.services.errors import (
    ConflictError,
    NotFoundError,
    ProcedureUnavailableError,
    TransientIOError,
    ValidationError,
)
from riderescue.services.geo import Coordinates, distance_km
from riderescue.services.geocoding_service import GeocodingService
from riderescue.services.lifecycle_state_machine import LifecycleStateMachine
from riderescue.services.location_service import LocationProvider, resolve_observer
from riderescue.services.refresh_scheduler import RefreshScheduler
from riderescue.services.settlement_calculator import (
    ExtraItem,
    SettlementCalculator,
    SettlementSnapshot,
    from_cents,
)
from riderescue.services.visibility_gate import VisibilityPolicy

logger = logging.getLogger(__name__)

DEFAULT_REPORTER_NAME = "Customer"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Reporter-side acceptance
# ---------------------------------------------------------------------------


async def accept_offer(
    store: Persistence,
    calculator: SettlementCalculator,
    offer_id: str,
    reporter_id: Optional[str] = None,
    state_machine: Optional[LifecycleStateMachine] = None,
) -> EmergencyRow:
    """Reporter accepts a provider's pending offer.

    Same conditional waiting -> in_process write as a direct accept; the
    offer's quote becomes the settlement base and competing pending offers
    are rejected in the same transaction.
    """
    state_machine = state_machine or calculator.state_machine
    offer = await store.get_offer_by_id(offer_id)
    emergency = await store.get_emergency(offer.emergency_id)
    if reporter_id is not None and emergency.user_id != reporter_id:
        raise ConflictError(f"Emergency {emergency.emergency_id} belongs to another reporter")

    state_machine.validate_offer_transition(offer.status, OfferStatus.ACCEPTED, Actor.REPORTER)
    state_machine.validate_emergency_transition(
        emergency.emergency_status, EmergencyStatus.IN_PROCESS, Actor.REPORTER,
    )

    labor_cents = offer.labor_cost_cents
    snapshot = calculator.provisional(
        emergency.emergency_id,
        offer.provider_id,
        offer.distance_km,
        from_cents(labor_cents) if labor_cents is not None else get_settings().default_labor_cost,
        emergency.service_category,
        distance_fee_cents=offer.distance_fee_cents,
    )
    return await store.accept_emergency(
        emergency.emergency_id, offer.provider_id, snapshot, offer_id=offer_id,
    )


# ---------------------------------------------------------------------------
# Provider coordinator
# ---------------------------------------------------------------------------


class DispatchCoordinator:
    """Visible set plus lifecycle mutations for one provider."""

    def __init__(
        self,
        provider_id: str,
        store: Persistence,
        geocoder: Optional[GeocodingService] = None,
        location: Optional[LocationProvider] = None,
        settings: Optional[Settings] = None,
        calculator: Optional[SettlementCalculator] = None,
        policy: Optional[VisibilityPolicy] = None,
        state_machine: Optional[LifecycleStateMachine] = None,
        now=_utcnow,
    ):
        self.provider_id = provider_id
        self.store = store
        self.geocoder = geocoder or GeocodingService(None)
        self.location = location
        self.settings = settings or get_settings()
        self.state_machine = state_machine or LifecycleStateMachine()
        self.calculator = calculator or SettlementCalculator.from_settings(self.settings)
        self.policy = policy or VisibilityPolicy.from_settings(self.settings)
        self._now = now
        self.reconciler = ChangeStreamReconciler(self.policy, enricher=self._enrich, now=now)
        self.scheduler = RefreshScheduler(
            self.refresh, self.settings.refresh_interval_seconds, name=f"refresh[{provider_id}]",
        )
        self._subscription: Optional[Subscription] = None
        self._consumer: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle of the coordinator itself
    # ------------------------------------------------------------------

    async def start(self, auto_refresh: bool = True) -> None:
        """Subscribe to the change stream, resolve location, do a first refresh."""
        if self._consumer is not None:
            return
        self._subscription = self.store.subscribe(EMERGENCIES)
        self._consumer = asyncio.create_task(self._consume(self._subscription))
        if self.location is not None:
            await self.sync_location(refresh=False)
        try:
            await self.refresh()
        except TransientIOError as e:
            logger.warning("Initial refresh for %s failed, will retry: %s", self.provider_id, e)
        if auto_refresh:
            self.scheduler.start()
        logger.info("Coordinator started for provider %s", self.provider_id)

    async def stop(self) -> None:
        await self.scheduler.stop()
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        await self.reconciler.aclose()
        logger.info("Coordinator stopped for provider %s", self.provider_id)

    async def _consume(self, subscription: Subscription) -> None:
        async for event in subscription:
            try:
                await self.reconciler.apply(event)
            except Exception as e:
                logger.error("Change event for %s not applied: %s", self.provider_id, e)

    # ------------------------------------------------------------------
    # Observer position and visible set
    # ------------------------------------------------------------------

    async def sync_location(
        self,
        coordinates: Optional[Coordinates] = None,
        refresh: bool = True,
    ) -> Optional[Coordinates]:
        """Update the observer position, from an explicit fix or the location provider."""
        if coordinates is None and self.location is not None:
            _, coordinates = await resolve_observer(
                self.location, self.settings.location_max_age_seconds,
            )
        await self.reconciler.apply(ObserverMoved(coordinates))
        if refresh:
            await self.refresh()
        return coordinates

    async def refresh(self) -> list[EmergencyProjection]:
        """Replace the visible set with what the store says right now."""
        observer = self.reconciler.observer
        offers = await self.store.list_offers_for_provider(self.provider_id)
        hidden_ids = frozenset(o.emergency_id for o in offers if o.hidden)

        rows: Optional[list[EmergencyRow]] = None
        if observer is not None:
            try:
                rows = await self.store.visible_emergencies(observer.lat, observer.lon)
            except ProcedureUnavailableError:
                logger.info("Visibility procedure unavailable; gating locally")
        if rows is None:
            waiting = await self.store.list_waiting_emergencies()
            now = self._now()
            rows = [row for row in waiting if self.policy.admits(row, observer, now)]

        await self.reconciler.apply(FullRefresh(rows, hidden_ids))
        return self.visible()

    def visible(self) -> list[EmergencyProjection]:
        return self.reconciler.visible()

    async def _enrich(self, projection: EmergencyProjection) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        if projection.latitude is not None and projection.longitude is not None:
            fields["landmark"] = await self.geocoder.reverse_geocode(
                projection.latitude, projection.longitude,
            )
        if projection.user_id:
            try:
                profile = await self.store.get_profile(projection.user_id)
            except TransientIOError as e:
                logger.warning("Profile lookup failed for %s: %s", projection.user_id, e)
                profile = None
            if profile is not None:
                fields["reporter_name"] = profile.full_name or DEFAULT_REPORTER_NAME
                fields["reporter_avatar"] = profile.photo_url or AVATAR_PLACEHOLDER
        return fields

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    def _require_visible(self, emergency: EmergencyRow) -> None:
        """Providers may only bid on or claim requests the gate shows them."""
        if not self.policy.admits(emergency, self.reconciler.observer, self._now()):
            raise ConflictError(
                f"Emergency {emergency.emergency_id} is not available to provider {self.provider_id} yet",
                current_status=emergency.emergency_status.value,
            )

    def _quote_distance(self, emergency: EmergencyRow) -> Optional[float]:
        observer = self.reconciler.observer
        if observer is None or emergency.latitude is None or emergency.longitude is None:
            return None
        return distance_km(observer, Coordinates(emergency.latitude, emergency.longitude))

    async def send_offer(
        self,
        emergency_id: str,
        labor_cost=None,
        note: Optional[str] = None,
    ) -> OfferRow:
        note = (note or "").strip() or None
        if note is not None and len(note) > self.settings.max_note_length:
            raise ValidationError(
                f"Note is limited to {self.settings.max_note_length} characters", field="note",
            )
        labor_cents = self.calculator.labor_cost_cents(
            labor_cost if labor_cost is not None else self.settings.default_labor_cost,
        )

        emergency = await self.store.get_emergency(emergency_id)
        self._require_visible(emergency)
        existing = await self.store.get_offer(emergency_id, self.provider_id)
        if existing is not None and existing.status != OfferStatus.PENDING:
            self.state_machine.validate_offer_transition(existing.status, OfferStatus.PENDING, Actor.PROVIDER)

        dist = self._quote_distance(emergency)
        observer = self.reconciler.observer
        return await self.store.upsert_pending_offer(
            emergency_id,
            self.provider_id,
            latitude=observer.lat if observer else None,
            longitude=observer.lon if observer else None,
            distance_km=round(self.calculator.billable_km(dist), 2),
            distance_fee_cents=self.calculator.distance_fee_cents(dist),
            labor_cost_cents=labor_cents,
            note=note,
        )

    async def withdraw_offer(self, emergency_id: str) -> OfferRow:
        offer = await self.store.get_offer(emergency_id, self.provider_id)
        if offer is None:
            raise NotFoundError(f"No offer from {self.provider_id} on {emergency_id}")
        self.state_machine.validate_offer_transition(offer.status, OfferStatus.CANCELED, Actor.PROVIDER)
        if offer.status != OfferStatus.PENDING:
            raise ConflictError(
                f"Only pending offers can be withdrawn; this one is {offer.status.value}",
                current_status=offer.status.value,
            )
        return await self.store.transition_offer(offer.offer_id, OfferStatus.PENDING, OfferStatus.CANCELED)

    async def hide(self, emergency_id: str) -> None:
        """Dismiss an emergency from this provider's board only.

        The dismissal is persisted on the provider's offer first; a failed
        write leaves the board untouched.
        """
        await self.store.set_offer_hidden(emergency_id, self.provider_id, True)
        await self.reconciler.apply(HideEmergency(emergency_id))

    # ------------------------------------------------------------------
    # Lifecycle mutations
    # ------------------------------------------------------------------

    async def accept(self, emergency_id: str, labor_cost=None) -> EmergencyRow:
        """Claim a waiting emergency; exactly one concurrent caller wins."""
        projection = self.reconciler.get(emergency_id)
        emergency = (
            EmergencyRow.model_validate(projection.model_dump(include=set(EmergencyRow.model_fields)))
            if projection is not None
            else await self.store.get_emergency(emergency_id)
        )
        self.state_machine.validate_emergency_transition(
            emergency.emergency_status, EmergencyStatus.IN_PROCESS, Actor.PROVIDER,
        )
        self._require_visible(emergency)

        offer = await self.store.get_offer(emergency_id, self.provider_id)
        if labor_cost is None and offer is not None and offer.labor_cost_cents is not None:
            labor_cost = from_cents(offer.labor_cost_cents)
        if labor_cost is None:
            labor_cost = self.settings.default_labor_cost
        fee_cents = offer.distance_fee_cents if offer is not None and offer.status == OfferStatus.PENDING else None
        snapshot = self.calculator.provisional(
            emergency_id,
            self.provider_id,
            offer.distance_km if fee_cents is not None else self._quote_distance(emergency),
            labor_cost,
            emergency.service_category,
            distance_fee_cents=fee_cents,
        )

        await self.reconciler.apply(OptimisticRemoval(emergency_id))
        try:
            return await self.store.accept_emergency(emergency_id, self.provider_id, snapshot)
        except ConflictError:
            logger.info("Provider %s lost the race for %s", self.provider_id, emergency_id)
            raise
        except TransientIOError:
            logger.warning("Accept of %s failed; it returns on the next refresh", emergency_id)
            raise

    async def accept_offer(self, offer_id: str, reporter_id: Optional[str] = None) -> EmergencyRow:
        return await accept_offer(self.store, self.calculator, offer_id, reporter_id, self.state_machine)

    async def _assigned_emergency(self, emergency_id: str, target: EmergencyStatus) -> EmergencyRow:
        emergency = await self.store.get_emergency(emergency_id)
        self.state_machine.validate_emergency_transition(
            emergency.emergency_status, target, Actor.PROVIDER, emergency, self.provider_id,
        )
        return emergency

    async def complete(
        self,
        emergency_id: str,
        labor_cost,
        extra_items: Iterable[Union[ExtraItem, Mapping[str, Any]]] = (),
    ) -> SettlementSnapshot:
        """Issue (or correct) the completion invoice; the job awaits payment."""
        emergency = await self.store.get_emergency(emergency_id)
        self.state_machine.require_settleable(emergency.emergency_status)
        self.state_machine.require_assigned_provider(emergency, self.provider_id)
        current = await self.store.get_settlement(emergency_id)
        invoiced = self.calculator.complete(current, emergency.emergency_status, labor_cost, extra_items)
        return await self.store.record_invoice(invoiced, expected_status=current.status)

    async def confirm_payment(self, emergency_id: str) -> EmergencyRow:
        await self._assigned_emergency(emergency_id, EmergencyStatus.COMPLETED)
        settlement = await self.store.get_settlement(emergency_id)
        self.state_machine.validate_settlement_transition(
            settlement.status, SettlementStatus.PAID, Actor.PROVIDER,
        )
        return await self.store.confirm_payment(emergency_id, self.provider_id)

    async def cancel_by_provider(
        self,
        emergency_id: str,
        option=None,
        reason: Optional[str] = None,
        zero_fee_reason=None,
    ) -> SettlementSnapshot:
        """Cancel an in-process job and finalize the cancellation fee."""
        emergency = await self._assigned_emergency(emergency_id, EmergencyStatus.CANCELED)
        current = await self.store.get_settlement(emergency_id)
        canceled = self.calculator.cancel(
            current, emergency.emergency_status, option, reason, zero_fee_reason,
        )
        await self.store.cancel_emergency(emergency_id, self.provider_id, canceled)
        return canceled
