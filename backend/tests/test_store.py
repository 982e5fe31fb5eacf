"""Tests for SqlPersistence: conditional writes, composite transactions, change feed."""

import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from riderescue.domain.enums import (
    CancelOption,
    ChangeType,
    EmergencyStatus,
    OfferStatus,
    ServiceCategory,
    SettlementStatus,
)
from riderescue.domain.schemas import EmergencyCreate
from riderescue.infra.change_feed import ChangeFeed
from riderescue.infra.store import SqlPersistence
from riderescue.services.errors import (
    ConflictError,
    NotFoundError,
    ProcedureUnavailableError,
    TransientIOError,
)
from riderescue.services.settlement_calculator import SettlementCalculator

from conftest import BASE, north_of

calc = SettlementCalculator()


def _snapshot(emergency, provider_id="provider-1", km=10.0, labor="300.00"):
    return calc.provisional(
        emergency.emergency_id, provider_id, km, labor, emergency.service_category,
    )


def _drain(subscription):
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


# ---------------------------------------------------------------------------
# Emergencies and the visibility procedure
# ---------------------------------------------------------------------------


class TestEmergencies:
    async def test_create_publishes_insert(self, store):
        subscription = store.subscribe("emergencies")
        row = await store.create_emergency(
            EmergencyCreate(
                user_id="reporter-1",
                vehicle_type="Sedan",
                breakdown_cause="Overheating",
                attachments=["photo-1.jpg", ""],
                latitude=BASE.lat,
                longitude=BASE.lon,
            )
        )
        assert row.emergency_status == EmergencyStatus.WAITING
        assert row.accepted_by is None
        assert row.attachments == ["photo-1.jpg"]

        events = _drain(subscription)
        assert [e.type for e in events] == [ChangeType.INSERT]
        assert events[0].new["emergency_id"] == row.emergency_id
        assert events[0].commit_timestamp == row.updated_at

    async def test_offer_subscribers_do_not_see_emergency_events(self, store):
        subscription = store.subscribe("offers")
        await store.create_emergency(
            EmergencyCreate(user_id="r", vehicle_type="Sedan", latitude=BASE.lat, longitude=BASE.lon)
        )
        assert _drain(subscription) == []

    async def test_get_unknown_emergency(self, store):
        with pytest.raises(NotFoundError):
            await store.get_emergency("missing")

    async def test_list_waiting_excludes_accepted(self, store, make_emergency):
        waiting = await make_emergency()
        await make_emergency(status=EmergencyStatus.IN_PROCESS, accepted_by="provider-9")
        rows = await store.list_waiting_emergencies()
        assert [r.emergency_id for r in rows] == [waiting.emergency_id]

    async def test_visible_procedure_applies_gate(self, store, make_emergency):
        near = await make_emergency(at=north_of(BASE, 1.0), minutes_ago=2)
        await make_emergency(at=north_of(BASE, 8.0), minutes_ago=2)
        aged = await make_emergency(at=north_of(BASE, 8.0), minutes_ago=30)

        rows = await store.visible_emergencies(BASE.lat, BASE.lon)
        assert {r.emergency_id for r in rows} == {near.emergency_id, aged.emergency_id}

    async def test_visible_procedure_unavailable_without_policy(self, session_factory):
        store = SqlPersistence(session_factory)
        with pytest.raises(ProcedureUnavailableError):
            await store.visible_emergencies(BASE.lat, BASE.lon)

    async def test_unreachable_store_is_transient(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nowhere.db'}")
        store = SqlPersistence(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
        with pytest.raises(TransientIOError):
            await store.list_waiting_emergencies()
        await engine.dispose()


# ---------------------------------------------------------------------------
# Offers
# ---------------------------------------------------------------------------


class TestOffers:
    async def test_send_withdraw_and_revive(self, store, make_emergency):
        emergency = await make_emergency()
        offer = await store.upsert_pending_offer(
            emergency.emergency_id, "provider-1", labor_cost_cents=5000, note="On my way",
        )
        assert offer.status == OfferStatus.PENDING

        canceled = await store.transition_offer(offer.offer_id, OfferStatus.PENDING, OfferStatus.CANCELED)
        assert canceled.status == OfferStatus.CANCELED
        assert canceled.responded_at is not None

        revived = await store.upsert_pending_offer(emergency.emergency_id, "provider-1", labor_cost_cents=4500)
        assert revived.offer_id == offer.offer_id
        assert revived.status == OfferStatus.PENDING
        assert revived.labor_cost_cents == 4500

    async def test_offer_on_taken_emergency_conflicts(self, store, make_emergency):
        emergency = await make_emergency(status=EmergencyStatus.IN_PROCESS, accepted_by="provider-9")
        with pytest.raises(ConflictError):
            await store.upsert_pending_offer(emergency.emergency_id, "provider-1")

    async def test_transition_requires_expected_status(self, store, make_emergency):
        emergency = await make_emergency()
        offer = await store.upsert_pending_offer(emergency.emergency_id, "provider-1")
        with pytest.raises(ConflictError) as exc_info:
            await store.transition_offer(offer.offer_id, OfferStatus.ACCEPTED, OfferStatus.CANCELED)
        assert exc_info.value.current_status == "pending"

        with pytest.raises(NotFoundError):
            await store.transition_offer("missing", OfferStatus.PENDING, OfferStatus.CANCELED)

    async def test_hidden_flag_is_per_provider(self, store, make_emergency):
        emergency = await make_emergency()
        assert await store.set_offer_hidden(emergency.emergency_id, "provider-1") is None

        await store.upsert_pending_offer(emergency.emergency_id, "provider-1")
        await store.upsert_pending_offer(emergency.emergency_id, "provider-2")
        hidden = await store.set_offer_hidden(emergency.emergency_id, "provider-1")
        assert hidden.hidden is True

        other = await store.get_offer(emergency.emergency_id, "provider-2")
        assert other.hidden is False
        assert [o.hidden for o in await store.list_offers_for_provider("provider-1")] == [True]


# ---------------------------------------------------------------------------
# Acceptance
# ---------------------------------------------------------------------------


class TestAcceptance:
    async def test_accept_creates_settlement_and_shadow_offer(self, store, make_emergency):
        emergency = await make_emergency()
        subscription = store.subscribe("emergencies")

        row = await store.accept_emergency(emergency.emergency_id, "provider-1", _snapshot(emergency))
        assert row.emergency_status == EmergencyStatus.IN_PROCESS
        assert row.accepted_by == "provider-1"
        assert row.accepted_at is not None

        settlement = await store.get_settlement(emergency.emergency_id)
        assert settlement.status == SettlementStatus.PENDING
        assert settlement.distance_fee_cents == 15000
        assert settlement.labor_cost_base_cents == 30000

        offer = await store.get_offer(emergency.emergency_id, "provider-1")
        assert offer.status == OfferStatus.ACCEPTED

        events = _drain(subscription)
        assert events[-1].new["emergency_status"] == EmergencyStatus.IN_PROCESS

    async def test_second_accept_conflicts(self, store, make_emergency):
        emergency = await make_emergency()
        await store.accept_emergency(emergency.emergency_id, "provider-1", _snapshot(emergency))
        with pytest.raises(ConflictError) as exc_info:
            await store.accept_emergency(
                emergency.emergency_id, "provider-2", _snapshot(emergency, "provider-2"),
            )
        assert exc_info.value.current_status == "in_process"
        assert (await store.get_emergency(emergency.emergency_id)).accepted_by == "provider-1"

    async def test_accept_unknown_emergency(self, store, make_emergency):
        emergency = await make_emergency()
        snapshot = _snapshot(emergency)
        with pytest.raises(NotFoundError):
            await store.accept_emergency("missing", "provider-1", snapshot)

    async def test_concurrent_accepts_have_one_winner(self, store, make_emergency):
        emergency = await make_emergency()
        results = await asyncio.gather(
            store.accept_emergency(emergency.emergency_id, "provider-1", _snapshot(emergency, "provider-1")),
            store.accept_emergency(emergency.emergency_id, "provider-2", _snapshot(emergency, "provider-2")),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, ConflictError)]
        assert len(winners) == 1
        assert len(losers) == 1

        stored = await store.get_emergency(emergency.emergency_id)
        assert stored.accepted_by == winners[0].accepted_by
        settlement = await store.get_settlement(emergency.emergency_id)
        assert settlement.provider_id == stored.accepted_by

    async def test_accepting_an_offer_rejects_competitors(self, store, make_emergency):
        emergency = await make_emergency()
        mine = await store.upsert_pending_offer(emergency.emergency_id, "provider-1", distance_fee_cents=3000)
        theirs = await store.upsert_pending_offer(emergency.emergency_id, "provider-2")

        await store.accept_emergency(
            emergency.emergency_id, "provider-1", _snapshot(emergency), offer_id=mine.offer_id,
        )
        assert (await store.get_offer_by_id(mine.offer_id)).status == OfferStatus.ACCEPTED
        assert (await store.get_offer_by_id(theirs.offer_id)).status == OfferStatus.REJECTED

    async def test_accepting_withdrawn_offer_rolls_back(self, store, make_emergency):
        emergency = await make_emergency()
        offer = await store.upsert_pending_offer(emergency.emergency_id, "provider-1")
        await store.transition_offer(offer.offer_id, OfferStatus.PENDING, OfferStatus.CANCELED)

        with pytest.raises(ConflictError):
            await store.accept_emergency(
                emergency.emergency_id, "provider-1", _snapshot(emergency), offer_id=offer.offer_id,
            )
        assert (await store.get_emergency(emergency.emergency_id)).emergency_status == EmergencyStatus.WAITING
        with pytest.raises(NotFoundError):
            await store.get_settlement(emergency.emergency_id)


# ---------------------------------------------------------------------------
# Invoice, payment, cancellation
# ---------------------------------------------------------------------------


class TestSettlementWrites:
    @pytest.fixture
    async def accepted(self, store, make_emergency):
        emergency = await make_emergency()
        await store.accept_emergency(emergency.emergency_id, "provider-1", _snapshot(emergency))
        return emergency

    async def test_invoice_then_payment(self, store, accepted):
        current = await store.get_settlement(accepted.emergency_id)
        invoiced = calc.complete(
            current, EmergencyStatus.IN_PROCESS, "300.00",
            [{"name": "Inner tube", "quantity": 2, "unit_price": "50.00"}],
        )
        saved = await store.record_invoice(invoiced, expected_status=current.status)
        assert saved.status == SettlementStatus.TO_PAY
        assert saved.total_cents == 15000 + 30000 + 10000
        assert saved.extra_items[0].name == "Inner tube"

        row = await store.confirm_payment(accepted.emergency_id, "provider-1")
        assert row.emergency_status == EmergencyStatus.COMPLETED
        assert row.completed_at is not None
        assert (await store.get_settlement(accepted.emergency_id)).status == SettlementStatus.PAID

    async def test_stale_invoice_conflicts(self, store, accepted):
        current = await store.get_settlement(accepted.emergency_id)
        invoiced = calc.complete(current, EmergencyStatus.IN_PROCESS, "300.00")
        with pytest.raises(ConflictError):
            await store.record_invoice(invoiced, expected_status=SettlementStatus.TO_PAY)

    async def test_payment_before_invoice_conflicts(self, store, accepted):
        with pytest.raises(ConflictError) as exc_info:
            await store.confirm_payment(accepted.emergency_id, "provider-1")
        assert exc_info.value.current_status == "pending"

    async def test_cancel_finalizes_settlement(self, store, accepted):
        current = await store.get_settlement(accepted.emergency_id)
        canceled = calc.cancel(current, EmergencyStatus.IN_PROCESS, CancelOption.INCOMPLETE, "Customer left")

        row = await store.cancel_emergency(accepted.emergency_id, "provider-1", canceled)
        assert row.emergency_status == EmergencyStatus.CANCELED
        assert row.canceled_reason == "Customer left"

        settlement = await store.get_settlement(accepted.emergency_id)
        assert settlement.status == SettlementStatus.CANCELED
        assert settlement.total_cents == 30000
        assert settlement.cancel_option == CancelOption.INCOMPLETE
        offer = await store.get_offer(accepted.emergency_id, "provider-1")
        assert offer.status == OfferStatus.CANCELED

    async def test_only_accepting_provider_may_cancel(self, store, accepted):
        current = await store.get_settlement(accepted.emergency_id)
        canceled = calc.cancel(current, EmergencyStatus.IN_PROCESS, CancelOption.DIAGNOSE_ONLY)
        with pytest.raises(ConflictError):
            await store.cancel_emergency(accepted.emergency_id, "provider-2", canceled)
        assert (await store.get_emergency(accepted.emergency_id)).emergency_status == EmergencyStatus.IN_PROCESS

    async def test_zero_fee_category_settlement(self, store, make_emergency):
        emergency = await make_emergency(category=ServiceCategory.GAS)
        await store.accept_emergency(emergency.emergency_id, "provider-1", _snapshot(emergency))
        current = await store.get_settlement(emergency.emergency_id)
        canceled = calc.cancel(current, EmergencyStatus.IN_PROCESS, zero_fee_reason="cannot_deliver")
        await store.cancel_emergency(emergency.emergency_id, "provider-1", canceled)

        settlement = await store.get_settlement(emergency.emergency_id)
        assert settlement.total_cents == 0
        assert settlement.service_category == ServiceCategory.GAS


class TestChangeFeed:
    async def test_closed_subscription_stops_receiving(self):
        feed = ChangeFeed()
        subscription = feed.subscribe("emergencies")
        subscription.close()
        assert feed.subscribers["emergencies"] == set()
        with pytest.raises(StopAsyncIteration):
            await subscription.__anext__()
