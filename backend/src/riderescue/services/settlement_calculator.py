"""Settlement calculator: completion invoices and cancellation fees.

This is NOT persistence logic. It is pure money math over a settlement
snapshot. All arithmetic runs in integer cents; Decimal appears only where
amounts enter or leave (``to_cents`` / ``from_cents``), rounded half-up.

Completion:   total = distance_fee + labor_cost + sum(qty * unit_price)
Cancellation: zero-fee category -> 0
              incomplete        -> distance_fee + 50% of the acceptance-time labor estimate
              diagnose_only     -> distance_fee
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional, Union

from riderescue.domain.enums import (
    Actor,
    CancelOption,
    EmergencyStatus,
    ServiceCategory,
    SettlementStatus,
    ZeroFeeCancelReason,
)
from riderescue.services.errors import ValidationError
from riderescue.services.lifecycle_state_machine import LifecycleStateMachine

logger = logging.getLogger(__name__)

Amount = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
CANNOT_DELIVER_REASON = "Cannot deliver gas right now"


# ---------------------------------------------------------------------------
# Boundary conversion
# ---------------------------------------------------------------------------


def _parse_decimal(value: Amount, field_name: str, item_index: Optional[int] = None) -> Decimal:
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(
            f"{field_name} must be a number, got {value!r}",
            field=field_name,
            item_index=item_index,
        ) from exc
    if not parsed.is_finite():
        raise ValidationError(
            f"{field_name} must be a finite number, got {value!r}",
            field=field_name,
            item_index=item_index,
        )
    return parsed


def to_cents(amount: Amount, field_name: str = "amount", item_index: Optional[int] = None) -> int:
    """Convert a decimal major-unit amount into integer cents, half-up."""
    quantized = _parse_decimal(amount, field_name, item_index).quantize(CENT, rounding=ROUND_HALF_UP)
    return int(quantized * 100)


def from_cents(cents: int) -> Decimal:
    """Present integer cents as a 2-digit Decimal."""
    return (Decimal(cents) / 100).quantize(CENT, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Snapshot types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExtraItem:
    """An itemized extra charge on a completion invoice."""

    name: str
    unit_price_cents: int
    quantity: int = 1

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.unit_price_cents

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExtraItem":
        return cls(
            name=data["name"],
            unit_price_cents=int(data["unit_price_cents"]),
            quantity=int(data.get("quantity", 1)),
        )


@dataclass(frozen=True)
class SettlementSnapshot:
    """Frozen distance fee plus the adjustable parts of one job's charge."""

    emergency_id: str
    provider_id: str
    service_category: ServiceCategory
    distance_km: float
    distance_fee_cents: int
    labor_cost_base_cents: int
    labor_cost_cents: int
    extra_items: tuple[ExtraItem, ...] = field(default_factory=tuple)
    total_cents: int = 0
    status: SettlementStatus = SettlementStatus.PENDING
    cancel_option: Optional[CancelOption] = None
    reason: Optional[str] = None

    @property
    def extras_total_cents(self) -> int:
        return sum(item.line_total_cents for item in self.extra_items)

    @property
    def total(self) -> Decimal:
        return from_cents(self.total_cents)

    @property
    def distance_fee(self) -> Decimal:
        return from_cents(self.distance_fee_cents)


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------


class SettlementCalculator:
    """Computes provisional, completion and cancellation totals."""

    def __init__(
        self,
        rate_per_km: Amount = Decimal("15.00"),
        minimum_billable_km: float = 1.0,
        zero_fee_categories: Iterable[str] = ("gas",),
        max_extra_items: int = 10,
        max_labor_cost: Amount = Decimal("999999"),
        state_machine: Optional[LifecycleStateMachine] = None,
    ):
        self.rate_per_km_cents = to_cents(rate_per_km, "rate_per_km")
        self.minimum_billable_km = minimum_billable_km
        self.zero_fee_categories = frozenset(str(getattr(c, "value", c)).lower() for c in zero_fee_categories)
        self.max_extra_items = max_extra_items
        self.max_labor_cost_cents = to_cents(max_labor_cost, "max_labor_cost")
        self.state_machine = state_machine or LifecycleStateMachine()

    @classmethod
    def from_settings(cls, settings) -> "SettlementCalculator":
        return cls(
            rate_per_km=settings.rate_per_km,
            minimum_billable_km=settings.minimum_billable_km,
            zero_fee_categories=settings.zero_fee_category_set,
            max_extra_items=settings.max_extra_items,
            max_labor_cost=settings.max_labor_cost,
        )

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def is_zero_fee(self, category: Union[ServiceCategory, str]) -> bool:
        return str(getattr(category, "value", category)).lower() in self.zero_fee_categories

    def billable_km(self, distance_km: Optional[float]) -> float:
        """Distance billed for a quote; unknown distances bill the minimum."""
        if distance_km is None or math.isnan(distance_km):
            return self.minimum_billable_km
        return max(distance_km, self.minimum_billable_km)

    def distance_fee_cents(self, distance_km: Optional[float]) -> int:
        billable = Decimal(str(self.billable_km(distance_km)))
        return int((billable * self.rate_per_km_cents).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def labor_cost_cents(self, labor_cost: Amount, field_name: str = "labor_cost") -> int:
        cents = to_cents(labor_cost, field_name)
        if cents < 0:
            raise ValidationError(f"{field_name} cannot be negative", field=field_name)
        if cents > self.max_labor_cost_cents:
            raise ValidationError(
                f"{field_name} exceeds the maximum of {from_cents(self.max_labor_cost_cents)}",
                field=field_name,
            )
        return cents

    def validate_extra_items(
        self,
        items: Iterable[Union[ExtraItem, Mapping[str, Any]]],
    ) -> tuple[ExtraItem, ...]:
        """Normalize extra items, rejecting the first invalid one by index."""
        validated: list[ExtraItem] = []
        for index, raw in enumerate(items or ()):
            if isinstance(raw, ExtraItem):
                name, price, quantity = raw.name, from_cents(raw.unit_price_cents), raw.quantity
            else:
                name = raw.get("name")
                price = raw.get("unit_price")
                if price is None and "unit_price_cents" in raw:
                    price = from_cents(int(raw["unit_price_cents"]))
                quantity = raw.get("quantity")

            label = f"extra item #{index + 1}"
            if not isinstance(name, str) or not name.strip():
                raise ValidationError(f"{label} needs a name", field="name", item_index=index)
            if price is None:
                raise ValidationError(
                    f"{label} ({name.strip()}) needs a unit price", field="unit_price", item_index=index,
                )
            price_cents = to_cents(price, "unit_price", item_index=index)
            if price_cents < 0:
                raise ValidationError(
                    f"{label} ({name.strip()}) has a negative unit price",
                    field="unit_price",
                    item_index=index,
                )
            if quantity is None:
                quantity = 1
            qty = _parse_decimal(quantity, "quantity", index)
            if qty != qty.to_integral_value() or qty < 1:
                raise ValidationError(
                    f"{label} ({name.strip()}) needs a whole quantity of at least 1",
                    field="quantity",
                    item_index=index,
                )
            validated.append(ExtraItem(name=name.strip(), unit_price_cents=price_cents, quantity=int(qty)))

        if len(validated) > self.max_extra_items:
            raise ValidationError(
                f"At most {self.max_extra_items} extra items are allowed",
                field="extra_items",
            )
        return tuple(validated)

    # ------------------------------------------------------------------
    # Totals
    # ------------------------------------------------------------------

    @staticmethod
    def completion_total_cents(
        distance_fee_cents: int,
        labor_cost_cents: int,
        extra_items: Iterable[ExtraItem] = (),
    ) -> int:
        return distance_fee_cents + labor_cost_cents + sum(i.line_total_cents for i in extra_items)

    def cancellation_total_cents(
        self,
        snapshot: SettlementSnapshot,
        option: Optional[CancelOption],
    ) -> int:
        if self.is_zero_fee(snapshot.service_category):
            return 0
        if option == CancelOption.INCOMPLETE:
            # Half of the base, rounded half-up on the final total
            return snapshot.distance_fee_cents + (snapshot.labor_cost_base_cents + 1) // 2
        if option == CancelOption.DIAGNOSE_ONLY:
            return snapshot.distance_fee_cents
        raise ValidationError("A cancellation option is required", field="option")

    # ------------------------------------------------------------------
    # Lifecycle entry points
    # ------------------------------------------------------------------

    def provisional(
        self,
        emergency_id: str,
        provider_id: str,
        distance_km: Optional[float],
        labor_cost_base: Amount,
        service_category: Union[ServiceCategory, str] = ServiceCategory.REPAIR,
        distance_fee_cents: Optional[int] = None,
    ) -> SettlementSnapshot:
        """Snapshot created at acceptance; the distance fee is frozen here."""
        labor_cents = self.labor_cost_cents(labor_cost_base, "labor_cost_base")
        if distance_fee_cents is None:
            distance_fee_cents = self.distance_fee_cents(distance_km)
        return SettlementSnapshot(
            emergency_id=emergency_id,
            provider_id=provider_id,
            service_category=ServiceCategory(service_category),
            distance_km=round(self.billable_km(distance_km), 2),
            distance_fee_cents=distance_fee_cents,
            labor_cost_base_cents=labor_cents,
            labor_cost_cents=labor_cents,
            total_cents=distance_fee_cents + labor_cents,
            status=SettlementStatus.PENDING,
        )

    def complete(
        self,
        snapshot: SettlementSnapshot,
        emergency_status: EmergencyStatus,
        labor_cost: Amount,
        extra_items: Iterable[Union[ExtraItem, Mapping[str, Any]]] = (),
    ) -> SettlementSnapshot:
        """Issue the completion invoice and move the snapshot to to_pay."""
        self.state_machine.require_settleable(emergency_status)
        self.state_machine.validate_settlement_transition(
            snapshot.status, SettlementStatus.TO_PAY, Actor.PROVIDER,
        )
        labor_cents = self.labor_cost_cents(labor_cost)
        items = self.validate_extra_items(extra_items)
        if items and self.is_zero_fee(snapshot.service_category):
            raise ValidationError(
                f"{snapshot.service_category.value} jobs do not take extra items",
                field="extra_items",
            )

        total = self.completion_total_cents(snapshot.distance_fee_cents, labor_cents, items)
        logger.debug(
            "Completion invoice: emergency=%s distance=%d labor=%d extras=%d total=%d",
            snapshot.emergency_id, snapshot.distance_fee_cents, labor_cents,
            total - snapshot.distance_fee_cents - labor_cents, total,
        )
        return replace(
            snapshot,
            labor_cost_cents=labor_cents,
            extra_items=items,
            total_cents=total,
            status=SettlementStatus.TO_PAY,
        )

    def cancel(
        self,
        snapshot: SettlementSnapshot,
        emergency_status: EmergencyStatus,
        option: Optional[Union[CancelOption, str]] = None,
        reason: Optional[str] = None,
        zero_fee_reason: Optional[Union[ZeroFeeCancelReason, str]] = None,
    ) -> SettlementSnapshot:
        """Finalize the snapshot in cancellation mode."""
        self.state_machine.require_settleable(emergency_status)
        self.state_machine.validate_settlement_transition(
            snapshot.status, SettlementStatus.CANCELED, Actor.PROVIDER,
        )
        reason = (reason or "").strip() or None

        if self.is_zero_fee(snapshot.service_category):
            reason = self._zero_fee_reason(zero_fee_reason, reason)
            parsed_option = None
        else:
            parsed_option = self._parse_option(option)

        total = self.cancellation_total_cents(snapshot, parsed_option)
        return replace(
            snapshot,
            total_cents=total,
            status=SettlementStatus.CANCELED,
            cancel_option=parsed_option,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_option(option) -> CancelOption:
        if option is None or option == "":
            raise ValidationError("A cancellation option is required", field="option")
        try:
            return CancelOption(option)
        except ValueError as exc:
            allowed = ", ".join(o.value for o in CancelOption)
            raise ValidationError(
                f"Unknown cancellation option {option!r} (expected one of: {allowed})",
                field="option",
            ) from exc

    @staticmethod
    def _zero_fee_reason(preset, reason: Optional[str]) -> str:
        if preset is not None and preset != "":
            try:
                preset = ZeroFeeCancelReason(preset)
            except ValueError as exc:
                raise ValidationError(f"Unknown cancellation reason {preset!r}", field="zero_fee_reason") from exc
            if preset == ZeroFeeCancelReason.CANNOT_DELIVER:
                return CANNOT_DELIVER_REASON
        if not reason:
            raise ValidationError("Please provide the reason for canceling", field="reason")
        return reason
