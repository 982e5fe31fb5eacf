"""Lifecycle state machine for emergencies, offers and settlements.

Transition maps are plain data so route handlers, the coordinator and the
tests all read the same rules. Guards that need the record itself (who
accepted the job) take it as an optional argument.
"""

from typing import Optional

from riderescue.domain.enums import (
    Actor,
    EmergencyStatus,
    OfferStatus,
    SettlementStatus,
)
from riderescue.services.errors import ConflictError


class InvalidTransitionError(ConflictError):
    """Raised when a lifecycle state transition is not allowed."""

    def __init__(self, entity: str, current_status, target_status, reason: str):
        self.entity = entity
        self.target_status = target_status
        self.reason = reason
        super().__init__(
            f"Invalid {entity} transition from {_value(current_status)} "
            f"to {_value(target_status)}: {reason}",
            current_status=_value(current_status),
        )


def _value(status) -> str:
    return getattr(status, "value", status)


# ---------------------------------------------------------------------------
# Transition maps: from_status -> {to_status: set_of_allowed_actors}
# ---------------------------------------------------------------------------

E = EmergencyStatus
OF = OfferStatus
P = SettlementStatus
A = Actor

EMERGENCY_TRANSITIONS: dict[EmergencyStatus, dict[EmergencyStatus, set[Actor]]] = {
    E.WAITING: {
        # Provider accepts directly, or the reporter accepts a provider's offer
        E.IN_PROCESS: {A.PROVIDER, A.REPORTER},
    },
    E.IN_PROCESS: {
        # Reached only through payment confirmation
        E.COMPLETED: {A.PROVIDER, A.SYSTEM},
        E.CANCELED: {A.PROVIDER},
    },
}

EMERGENCY_TERMINAL_STATES: set[EmergencyStatus] = {E.COMPLETED, E.CANCELED}

OFFER_TRANSITIONS: dict[OfferStatus, dict[OfferStatus, set[Actor]]] = {
    OF.PENDING: {
        OF.ACCEPTED: {A.REPORTER, A.PROVIDER, A.SYSTEM},
        OF.REJECTED: {A.REPORTER, A.SYSTEM},
        OF.CANCELED: {A.PROVIDER, A.SYSTEM},
    },
    OF.ACCEPTED: {
        OF.CANCELED: {A.PROVIDER, A.SYSTEM},
    },
    OF.CANCELED: {
        # A provider who withdrew may send a fresh offer
        OF.PENDING: {A.PROVIDER},
    },
}

OFFER_TERMINAL_STATES: set[OfferStatus] = {OF.REJECTED}

SETTLEMENT_TRANSITIONS: dict[SettlementStatus, dict[SettlementStatus, set[Actor]]] = {
    P.PENDING: {
        P.TO_PAY: {A.PROVIDER},
        P.CANCELED: {A.PROVIDER, A.SYSTEM},
    },
    P.TO_PAY: {
        P.TO_PAY: {A.PROVIDER},  # invoice corrected before payment
        P.PAID: {A.PROVIDER, A.SYSTEM},
        P.CANCELED: {A.PROVIDER, A.SYSTEM},
    },
}

SETTLEMENT_TERMINAL_STATES: set[SettlementStatus] = {P.PAID, P.CANCELED}

# Emergencies a provider is working on and may still invoice or cancel
SETTLEABLE_EMERGENCY_STATES: set[EmergencyStatus] = {E.IN_PROCESS}


def _check(
    entity: str,
    transitions: dict,
    current,
    target,
    actor: Actor,
) -> None:
    allowed_targets = transitions.get(current)
    if allowed_targets is None:
        raise InvalidTransitionError(
            entity, current, target, f"No transitions allowed from {_value(current)}",
        )
    if target not in allowed_targets:
        raise InvalidTransitionError(
            entity,
            current,
            target,
            f"Transition from {_value(current)} to {_value(target)} is not allowed",
        )
    allowed_actors = allowed_targets[target]
    if actor not in allowed_actors:
        raise InvalidTransitionError(
            entity,
            current,
            target,
            f"Actor {actor.value} is not permitted for this transition "
            f"(allowed: {', '.join(sorted(a.value for a in allowed_actors))})",
        )


class LifecycleStateMachine:
    """Validates emergency, offer and settlement transitions."""

    def validate_emergency_transition(
        self,
        current_status: EmergencyStatus,
        target_status: EmergencyStatus,
        actor: Actor,
        emergency=None,
        caller_id: Optional[str] = None,
    ) -> bool:
        """Return True if the transition is valid. Raise InvalidTransitionError if not.

        When *emergency* and *caller_id* are given, transitions out of
        in_process also require the caller to be the provider that accepted.
        """
        current_status = EmergencyStatus(current_status)
        target_status = EmergencyStatus(target_status)
        _check("emergency", EMERGENCY_TRANSITIONS, current_status, target_status, actor)

        if (
            current_status == E.IN_PROCESS
            and actor == A.PROVIDER
            and emergency is not None
            and caller_id is not None
        ):
            self.require_assigned_provider(emergency, caller_id)
        return True

    def require_assigned_provider(self, emergency, caller_id: str) -> None:
        accepted_by = getattr(emergency, "accepted_by", None)
        if accepted_by != caller_id:
            raise InvalidTransitionError(
                "emergency",
                getattr(emergency, "emergency_status", None),
                getattr(emergency, "emergency_status", None),
                f"Provider {caller_id} did not accept this emergency",
            )

    def validate_offer_transition(
        self,
        current_status: OfferStatus,
        target_status: OfferStatus,
        actor: Actor,
    ) -> bool:
        _check("offer", OFFER_TRANSITIONS, OfferStatus(current_status), OfferStatus(target_status), actor)
        return True

    def validate_settlement_transition(
        self,
        current_status: SettlementStatus,
        target_status: SettlementStatus,
        actor: Actor,
    ) -> bool:
        _check(
            "settlement",
            SETTLEMENT_TRANSITIONS,
            SettlementStatus(current_status),
            SettlementStatus(target_status),
            actor,
        )
        return True

    def require_settleable(self, emergency_status: EmergencyStatus) -> None:
        """Settlement math only runs for jobs that are still in process."""
        status = EmergencyStatus(emergency_status)
        if status not in SETTLEABLE_EMERGENCY_STATES:
            raise ConflictError(
                f"Emergency is {status.value}; only in_process jobs can be settled",
                current_status=status.value,
            )

    def get_allowed_emergency_transitions(
        self,
        current_status: EmergencyStatus,
        actor: Actor,
    ) -> list[EmergencyStatus]:
        """Return list of valid next states for the given actor from the current status."""
        allowed_targets = EMERGENCY_TRANSITIONS.get(EmergencyStatus(current_status), {})
        return [target for target, actors in allowed_targets.items() if actor in actors]

    def is_terminal(self, status: EmergencyStatus) -> bool:
        return EmergencyStatus(status) in EMERGENCY_TERMINAL_STATES

    def phase(
        self,
        emergency_status: EmergencyStatus,
        settlement_status: Optional[SettlementStatus] = None,
    ) -> str:
        """Display phase; in_process splits on the settlement sub-state."""
        emergency_status = EmergencyStatus(emergency_status)
        if emergency_status == E.IN_PROCESS and settlement_status is not None:
            if SettlementStatus(settlement_status) == P.TO_PAY:
                return "awaiting_payment"
        return emergency_status.value
