"""Persistence boundary for the dispatch core.

``Persistence`` is the contract the coordinator depends on; ``SqlPersistence``
implements it on the async SQLAlchemy session factory. Every composite write
(accept, invoice, payment, cancel) runs in one transaction, and the lifecycle
guard is a conditional UPDATE whose rowcount decides the race. After commit,
each written row is published on the ``ChangeFeed``.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from riderescue.domain.enums import (
    CancelOption,
    ChangeType,
    EmergencyStatus,
    OfferStatus,
    ServiceCategory,
    SettlementStatus,
)
from riderescue.domain.models import AppUser, Emergency, Offer, Settlement
from riderescue.domain.schemas import (
    ChangeEvent,
    EmergencyCreate,
    EmergencyRow,
    OfferRow,
    ProfileRow,
)
from riderescue.infra.change_feed import ChangeFeed, Subscription
from riderescue.services.errors import (
    ConflictError,
    NotFoundError,
    ProcedureUnavailableError,
    TransientIOError,
)
from riderescue.services.geo import Coordinates
from riderescue.services.settlement_calculator import ExtraItem, SettlementSnapshot
from riderescue.services.visibility_gate import VisibilityPolicy

logger = logging.getLogger(__name__)

EMERGENCIES = "emergencies"
OFFERS = "offers"
SETTLEMENTS = "settlements"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Persistence(Protocol):
    """Remote store operations used by the dispatch coordinator."""

    async def list_waiting_emergencies(self) -> list[EmergencyRow]: ...

    async def visible_emergencies(self, lat: float, lon: float) -> list[EmergencyRow]: ...

    async def get_emergency(self, emergency_id: str) -> EmergencyRow: ...

    async def create_emergency(self, payload: EmergencyCreate) -> EmergencyRow: ...

    async def get_profile(self, user_id: str) -> Optional[ProfileRow]: ...

    async def get_offer(self, emergency_id: str, provider_id: str) -> Optional[OfferRow]: ...

    async def get_offer_by_id(self, offer_id: str) -> OfferRow: ...

    async def list_offers_for_provider(self, provider_id: str) -> list[OfferRow]: ...

    async def upsert_pending_offer(self, emergency_id: str, provider_id: str, **quote) -> OfferRow: ...

    async def transition_offer(
        self, offer_id: str, expected: OfferStatus, target: OfferStatus,
    ) -> OfferRow: ...

    async def set_offer_hidden(
        self, emergency_id: str, provider_id: str, hidden: bool = True,
    ) -> Optional[OfferRow]: ...

    async def accept_emergency(
        self,
        emergency_id: str,
        provider_id: str,
        snapshot: SettlementSnapshot,
        offer_id: Optional[str] = None,
    ) -> EmergencyRow: ...

    async def get_settlement(self, emergency_id: str) -> SettlementSnapshot: ...

    async def record_invoice(
        self, snapshot: SettlementSnapshot, expected_status: SettlementStatus,
    ) -> SettlementSnapshot: ...

    async def confirm_payment(self, emergency_id: str, provider_id: str) -> EmergencyRow: ...

    async def cancel_emergency(
        self, emergency_id: str, provider_id: str, snapshot: SettlementSnapshot,
    ) -> EmergencyRow: ...

    def subscribe(self, table: str) -> Subscription: ...


# ---------------------------------------------------------------------------
# Row converters
# ---------------------------------------------------------------------------


def _settlement_snapshot(row: Settlement) -> SettlementSnapshot:
    return SettlementSnapshot(
        emergency_id=row.emergency_id,
        provider_id=row.provider_id,
        service_category=ServiceCategory(row.service_category),
        distance_km=row.distance_km,
        distance_fee_cents=row.distance_fee_cents,
        labor_cost_base_cents=row.labor_cost_base_cents,
        labor_cost_cents=row.labor_cost_cents,
        extra_items=tuple(ExtraItem.from_dict(i) for i in (row.extra_items or [])),
        total_cents=row.total_cents,
        status=SettlementStatus(row.status),
        cancel_option=CancelOption(row.cancel_option) if row.cancel_option else None,
        reason=row.reason,
    )


def _settlement_event_row(row: Settlement) -> dict:
    return {
        "emergency_id": row.emergency_id,
        "provider_id": row.provider_id,
        "status": row.status,
        "total_cents": row.total_cents,
        "updated_at": row.updated_at,
    }


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------


class SqlPersistence:
    """``Persistence`` over an async SQLAlchemy session factory.

    ``policy`` backs the ``visible_emergencies`` procedure; without one the
    procedure reports itself unavailable and callers fall back to the
    waiting list plus a local gate.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: Optional[ChangeFeed] = None,
        policy: Optional[VisibilityPolicy] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self.feed = feed or ChangeFeed()
        self.policy = policy
        self._now = now

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except IntegrityError as exc:
            raise ConflictError(f"Write rejected by a store constraint: {exc.orig}") from exc
        except DBAPIError as exc:
            logger.warning("Store unavailable: %s", exc)
            raise TransientIOError(f"Store unavailable: {exc.orig}") from exc

    def subscribe(self, table: str) -> Subscription:
        return self.feed.subscribe(table)

    def _publish(self, change: ChangeType, table: str, row: dict) -> None:
        self.feed.publish(
            ChangeEvent(
                type=change,
                table=table,
                new=row if change != ChangeType.DELETE else None,
                old=row if change == ChangeType.DELETE else None,
                commit_timestamp=row.get("updated_at"),
            )
        )

    def _publish_emergency(self, row: EmergencyRow, change: ChangeType = ChangeType.UPDATE) -> None:
        self._publish(change, EMERGENCIES, row.model_dump())

    def _publish_offer(self, row: OfferRow, change: ChangeType = ChangeType.UPDATE) -> None:
        self._publish(change, OFFERS, row.model_dump())

    async def _load_emergency(self, session: AsyncSession, emergency_id: str) -> Emergency:
        emergency = await session.get(Emergency, emergency_id, populate_existing=True)
        if emergency is None:
            raise NotFoundError(f"Emergency {emergency_id} not found")
        return emergency

    async def _load_settlement(self, session: AsyncSession, emergency_id: str) -> Settlement:
        result = await session.execute(
            select(Settlement)
            .where(Settlement.emergency_id == emergency_id)
            .execution_options(populate_existing=True)
        )
        settlement = result.scalar_one_or_none()
        if settlement is None:
            raise NotFoundError(f"No settlement for emergency {emergency_id}")
        return settlement

    async def _lost_emergency_race(self, session: AsyncSession, emergency_id: str, action: str):
        emergency = await self._load_emergency(session, emergency_id)
        return ConflictError(
            f"Cannot {action} emergency {emergency_id}: it is {emergency.emergency_status}",
            current_status=emergency.emergency_status,
        )

    # ------------------------------------------------------------------
    # Emergencies
    # ------------------------------------------------------------------

    async def list_waiting_emergencies(self) -> list[EmergencyRow]:
        async with self._session() as session:
            result = await session.execute(
                select(Emergency)
                .where(Emergency.emergency_status == EmergencyStatus.WAITING.value)
                .order_by(Emergency.created_at.desc())
            )
            return [EmergencyRow.model_validate(e) for e in result.scalars().all()]

    async def visible_emergencies(self, lat: float, lon: float) -> list[EmergencyRow]:
        """Server-side visibility procedure: waiting rows that pass the gate."""
        if self.policy is None:
            raise ProcedureUnavailableError("visible_emergencies procedure is not installed")
        rows = await self.list_waiting_emergencies()
        observer = Coordinates(lat, lon)
        now = self._now()
        return [row for row in rows if self.policy.admits(row, observer, now)]

    async def get_emergency(self, emergency_id: str) -> EmergencyRow:
        async with self._session() as session:
            return EmergencyRow.model_validate(await self._load_emergency(session, emergency_id))

    async def create_emergency(self, payload: EmergencyCreate) -> EmergencyRow:
        now = self._now()
        async with self._session() as session:
            emergency = Emergency(
                emergency_id=str(uuid.uuid4()),
                user_id=payload.user_id,
                vehicle_type=payload.vehicle_type,
                breakdown_cause=payload.breakdown_cause,
                attachments=[a for a in payload.attachments if a],
                service_category=payload.service_category.value,
                emergency_status=EmergencyStatus.WAITING.value,
                latitude=payload.latitude,
                longitude=payload.longitude,
                created_at=now,
                updated_at=now,
            )
            session.add(emergency)
            await session.commit()
            row = EmergencyRow.model_validate(emergency)

        logger.info("Emergency created: %s (%s)", row.emergency_id, row.service_category.value)
        self._publish_emergency(row, ChangeType.INSERT)
        return row

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def get_profile(self, user_id: str) -> Optional[ProfileRow]:
        async with self._session() as session:
            user = await session.get(AppUser, user_id)
            return ProfileRow.model_validate(user) if user else None

    async def save_profile(self, profile: ProfileRow) -> ProfileRow:
        async with self._session() as session:
            user = await session.get(AppUser, profile.user_id)
            if user is None:
                user = AppUser(user_id=profile.user_id)
                session.add(user)
            user.full_name = profile.full_name
            user.photo_url = profile.photo_url
            await session.commit()
            return ProfileRow.model_validate(user)

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    async def get_offer(self, emergency_id: str, provider_id: str) -> Optional[OfferRow]:
        async with self._session() as session:
            result = await session.execute(
                select(Offer).where(
                    Offer.emergency_id == emergency_id,
                    Offer.provider_id == provider_id,
                )
            )
            offer = result.scalar_one_or_none()
            return OfferRow.model_validate(offer) if offer else None

    async def get_offer_by_id(self, offer_id: str) -> OfferRow:
        async with self._session() as session:
            offer = await session.get(Offer, offer_id)
            if offer is None:
                raise NotFoundError(f"Offer {offer_id} not found")
            return OfferRow.model_validate(offer)

    async def list_offers_for_provider(self, provider_id: str) -> list[OfferRow]:
        async with self._session() as session:
            result = await session.execute(
                select(Offer).where(Offer.provider_id == provider_id)
            )
            return [OfferRow.model_validate(o) for o in result.scalars().all()]

    async def upsert_pending_offer(
        self,
        emergency_id: str,
        provider_id: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        distance_km: Optional[float] = None,
        distance_fee_cents: Optional[int] = None,
        labor_cost_cents: Optional[int] = None,
        note: Optional[str] = None,
    ) -> OfferRow:
        """Create a pending offer, refresh a pending one, or revive a canceled one."""
        now = self._now()
        async with self._session() as session:
            emergency = await self._load_emergency(session, emergency_id)
            if emergency.emergency_status != EmergencyStatus.WAITING.value:
                raise ConflictError(
                    f"Emergency {emergency_id} is {emergency.emergency_status}; offers are closed",
                    current_status=emergency.emergency_status,
                )

            result = await session.execute(
                select(Offer).where(
                    Offer.emergency_id == emergency_id,
                    Offer.provider_id == provider_id,
                )
            )
            offer = result.scalar_one_or_none()
            change = ChangeType.UPDATE
            if offer is None:
                offer = Offer(
                    offer_id=str(uuid.uuid4()),
                    emergency_id=emergency_id,
                    provider_id=provider_id,
                )
                session.add(offer)
                change = ChangeType.INSERT
            elif offer.status not in (OfferStatus.PENDING.value, OfferStatus.CANCELED.value):
                raise ConflictError(
                    f"Offer on {emergency_id} is already {offer.status}",
                    current_status=offer.status,
                )

            offer.status = OfferStatus.PENDING.value
            offer.latitude = latitude
            offer.longitude = longitude
            offer.distance_km = distance_km
            offer.distance_fee_cents = distance_fee_cents
            offer.labor_cost_cents = labor_cost_cents
            offer.note = note
            offer.requested_at = now
            offer.responded_at = None
            offer.updated_at = now
            await session.commit()
            row = OfferRow.model_validate(offer)

        logger.info("Offer %s: emergency=%s provider=%s", change.value, emergency_id, provider_id)
        self._publish_offer(row, change)
        return row

    async def transition_offer(
        self,
        offer_id: str,
        expected: OfferStatus,
        target: OfferStatus,
    ) -> OfferRow:
        now = self._now()
        async with self._session() as session:
            result = await session.execute(
                update(Offer)
                .where(Offer.offer_id == offer_id, Offer.status == OfferStatus(expected).value)
                .values(status=OfferStatus(target).value, responded_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                offer = await session.get(Offer, offer_id)
                if offer is None:
                    raise NotFoundError(f"Offer {offer_id} not found")
                raise ConflictError(
                    f"Offer {offer_id} is {offer.status}, expected {OfferStatus(expected).value}",
                    current_status=offer.status,
                )
            await session.commit()
            row = OfferRow.model_validate(await session.get(Offer, offer_id, populate_existing=True))

        self._publish_offer(row)
        return row

    async def set_offer_hidden(
        self,
        emergency_id: str,
        provider_id: str,
        hidden: bool = True,
    ) -> Optional[OfferRow]:
        """Persist a provider's dismissal on their offer; no offer, nothing to persist."""
        async with self._session() as session:
            result = await session.execute(
                select(Offer).where(
                    Offer.emergency_id == emergency_id,
                    Offer.provider_id == provider_id,
                )
            )
            offer = result.scalar_one_or_none()
            if offer is None:
                return None
            offer.hidden = hidden
            offer.updated_at = self._now()
            await session.commit()
            row = OfferRow.model_validate(offer)

        self._publish_offer(row)
        return row

    # ------------------------------------------------------------------
    # Composite lifecycle writes
    # ------------------------------------------------------------------

    async def accept_emergency(
        self,
        emergency_id: str,
        provider_id: str,
        snapshot: SettlementSnapshot,
        offer_id: Optional[str] = None,
    ) -> EmergencyRow:
        """waiting -> in_process, the accepted offer, and the provisional settlement.

        The status-conditioned UPDATE is the mutual exclusion: exactly one
        concurrent caller sees rowcount 1; the others get ``ConflictError``.
        """
        now = self._now()
        offer_rows: list[tuple[ChangeType, OfferRow]] = []
        async with self._session() as session:
            result = await session.execute(
                update(Emergency)
                .where(
                    Emergency.emergency_id == emergency_id,
                    Emergency.emergency_status == EmergencyStatus.WAITING.value,
                )
                .values(
                    emergency_status=EmergencyStatus.IN_PROCESS.value,
                    accepted_by=provider_id,
                    accepted_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise await self._lost_emergency_race(session, emergency_id, "accept")

            offers = (
                await session.execute(select(Offer).where(Offer.emergency_id == emergency_id))
            ).scalars().all()
            winner = None
            for offer in offers:
                if offer_id is not None and offer.offer_id == offer_id:
                    winner = offer
                elif offer_id is None and offer.provider_id == provider_id:
                    winner = offer
                elif offer.status == OfferStatus.PENDING.value:
                    offer.status = OfferStatus.REJECTED.value
                    offer.responded_at = now
                    offer.updated_at = now
                    offer_rows.append((ChangeType.UPDATE, offer))

            if offer_id is not None and (winner is None or winner.status != OfferStatus.PENDING.value):
                raise ConflictError(
                    f"Offer {offer_id} is no longer pending",
                    current_status=winner.status if winner else None,
                )

            change = ChangeType.UPDATE
            if winner is None:
                # Direct accept without a prior offer
                winner = Offer(
                    offer_id=str(uuid.uuid4()),
                    emergency_id=emergency_id,
                    provider_id=provider_id,
                    requested_at=now,
                )
                session.add(winner)
                change = ChangeType.INSERT
            winner.status = OfferStatus.ACCEPTED.value
            winner.accepted_at = now
            winner.responded_at = now
            winner.distance_km = snapshot.distance_km
            winner.distance_fee_cents = snapshot.distance_fee_cents
            winner.labor_cost_cents = snapshot.labor_cost_base_cents
            winner.updated_at = now
            offer_rows.append((change, winner))

            session.add(
                Settlement(
                    settlement_id=str(uuid.uuid4()),
                    emergency_id=emergency_id,
                    provider_id=provider_id,
                    service_category=snapshot.service_category.value,
                    distance_km=snapshot.distance_km,
                    distance_fee_cents=snapshot.distance_fee_cents,
                    labor_cost_cents=snapshot.labor_cost_cents,
                    labor_cost_base_cents=snapshot.labor_cost_base_cents,
                    extra_items=[],
                    total_cents=snapshot.total_cents,
                    status=SettlementStatus.PENDING.value,
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.commit()

            emergency = await session.get(Emergency, emergency_id, populate_existing=True)
            row = EmergencyRow.model_validate(emergency)
            published_offers = [(c, OfferRow.model_validate(o)) for c, o in offer_rows]

        logger.info("Emergency accepted: %s by provider %s", emergency_id, provider_id)
        self._publish_emergency(row)
        for change, offer_row in published_offers:
            self._publish_offer(offer_row, change)
        return row

    async def get_settlement(self, emergency_id: str) -> SettlementSnapshot:
        async with self._session() as session:
            return _settlement_snapshot(await self._load_settlement(session, emergency_id))

    async def record_invoice(
        self,
        snapshot: SettlementSnapshot,
        expected_status: SettlementStatus,
    ) -> SettlementSnapshot:
        """Write the completion invoice if the settlement is still *expected_status*."""
        now = self._now()
        async with self._session() as session:
            result = await session.execute(
                update(Settlement)
                .where(
                    Settlement.emergency_id == snapshot.emergency_id,
                    Settlement.provider_id == snapshot.provider_id,
                    Settlement.status == SettlementStatus(expected_status).value,
                )
                .values(
                    labor_cost_cents=snapshot.labor_cost_cents,
                    extra_items=[i.to_dict() for i in snapshot.extra_items],
                    total_cents=snapshot.total_cents,
                    status=snapshot.status.value,
                    invoiced_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = await self._load_settlement(session, snapshot.emergency_id)
                raise ConflictError(
                    f"Settlement for {snapshot.emergency_id} is {current.status}",
                    current_status=current.status,
                )
            await session.commit()
            settlement = await self._load_settlement(session, snapshot.emergency_id)
            saved = _settlement_snapshot(settlement)
            event_row = _settlement_event_row(settlement)

        logger.info(
            "Invoice recorded: emergency=%s total_cents=%d", saved.emergency_id, saved.total_cents,
        )
        self._publish(ChangeType.UPDATE, SETTLEMENTS, event_row)
        return saved

    async def confirm_payment(self, emergency_id: str, provider_id: str) -> EmergencyRow:
        """Settlement to_pay -> paid and emergency in_process -> completed, atomically."""
        now = self._now()
        async with self._session() as session:
            result = await session.execute(
                update(Settlement)
                .where(
                    Settlement.emergency_id == emergency_id,
                    Settlement.provider_id == provider_id,
                    Settlement.status == SettlementStatus.TO_PAY.value,
                )
                .values(status=SettlementStatus.PAID.value, paid_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = await self._load_settlement(session, emergency_id)
                raise ConflictError(
                    f"Settlement for {emergency_id} is {current.status}; nothing to confirm",
                    current_status=current.status,
                )

            result = await session.execute(
                update(Emergency)
                .where(
                    Emergency.emergency_id == emergency_id,
                    Emergency.accepted_by == provider_id,
                    Emergency.emergency_status == EmergencyStatus.IN_PROCESS.value,
                )
                .values(
                    emergency_status=EmergencyStatus.COMPLETED.value,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise await self._lost_emergency_race(session, emergency_id, "complete")
            await session.commit()

            row = EmergencyRow.model_validate(await self._load_emergency(session, emergency_id))
            settlement = await self._load_settlement(session, emergency_id)
            event_row = _settlement_event_row(settlement)

        logger.info("Payment confirmed: emergency=%s provider=%s", emergency_id, provider_id)
        self._publish_emergency(row)
        self._publish(ChangeType.UPDATE, SETTLEMENTS, event_row)
        return row

    async def cancel_emergency(
        self,
        emergency_id: str,
        provider_id: str,
        snapshot: SettlementSnapshot,
    ) -> EmergencyRow:
        """in_process -> canceled with the settlement finalized in cancellation mode."""
        now = self._now()
        async with self._session() as session:
            result = await session.execute(
                update(Emergency)
                .where(
                    Emergency.emergency_id == emergency_id,
                    Emergency.accepted_by == provider_id,
                    Emergency.emergency_status == EmergencyStatus.IN_PROCESS.value,
                )
                .values(
                    emergency_status=EmergencyStatus.CANCELED.value,
                    canceled_at=now,
                    canceled_reason=snapshot.reason,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise await self._lost_emergency_race(session, emergency_id, "cancel")

            result = await session.execute(
                update(Settlement)
                .where(
                    Settlement.emergency_id == emergency_id,
                    Settlement.status.in_([SettlementStatus.PENDING.value, SettlementStatus.TO_PAY.value]),
                )
                .values(
                    status=SettlementStatus.CANCELED.value,
                    total_cents=snapshot.total_cents,
                    cancel_option=snapshot.cancel_option.value if snapshot.cancel_option else None,
                    reason=snapshot.reason,
                    canceled_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = await self._load_settlement(session, emergency_id)
                raise ConflictError(
                    f"Settlement for {emergency_id} is already {current.status}",
                    current_status=current.status,
                )

            offer = (
                await session.execute(
                    select(Offer).where(
                        Offer.emergency_id == emergency_id,
                        Offer.provider_id == provider_id,
                        Offer.status == OfferStatus.ACCEPTED.value,
                    )
                )
            ).scalar_one_or_none()
            if offer is not None:
                offer.status = OfferStatus.CANCELED.value
                offer.responded_at = now
                offer.updated_at = now
            await session.commit()

            row = EmergencyRow.model_validate(await self._load_emergency(session, emergency_id))
            settlement = await self._load_settlement(session, emergency_id)
            event_row = _settlement_event_row(settlement)
            offer_row = OfferRow.model_validate(offer) if offer is not None else None

        logger.info(
            "Emergency canceled: %s by provider %s (fee_cents=%d)",
            emergency_id, provider_id, snapshot.total_cents,
        )
        self._publish_emergency(row)
        self._publish(ChangeType.UPDATE, SETTLEMENTS, event_row)
        if offer_row is not None:
            self._publish_offer(offer_row)
        return row
