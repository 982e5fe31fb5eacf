"""Domain enumerations for RideRescue dispatch.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class EmergencyStatus(str, Enum):
    """Lifecycle of a reported breakdown."""

    WAITING = "waiting"
    IN_PROCESS = "in_process"
    COMPLETED = "completed"
    CANCELED = "canceled"


class OfferStatus(str, Enum):
    """Status of a provider's claim against an emergency."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELED = "canceled"


class SettlementStatus(str, Enum):
    """Status of the settlement snapshot for an accepted emergency.

    PENDING is the provisional state created at acceptance; TO_PAY means an
    invoice has been issued and the emergency waits for payment confirmation.
    """

    PENDING = "pending"
    TO_PAY = "to_pay"
    PAID = "paid"
    CANCELED = "canceled"


class ServiceCategory(str, Enum):
    """Kind of roadside service requested."""

    REPAIR = "repair"
    VULCANIZE = "vulcanize"
    GAS = "gas"


class CancelOption(str, Enum):
    """How far the work went before a provider canceled."""

    INCOMPLETE = "incomplete"
    DIAGNOSE_ONLY = "diagnose_only"


class ZeroFeeCancelReason(str, Enum):
    """Preset reasons for canceling a zero-fee (fuel delivery) job."""

    CANNOT_DELIVER = "cannot_deliver"
    OTHER_REASON = "other_reason"


class Actor(str, Enum):
    """Who triggers a lifecycle transition."""

    PROVIDER = "provider"
    REPORTER = "reporter"
    SYSTEM = "system"


class ChangeType(str, Enum):
    """Row-level change notification kinds emitted by the store."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class LocationPermission(str, Enum):
    """Foreground location permission state of the observing provider."""

    UNKNOWN = "unknown"
    GRANTED = "granted"
    DENIED = "denied"


class AccuracyTier(str, Enum):
    """Requested accuracy for a current-position fix."""

    LOW = "low"
    BALANCED = "balanced"
    HIGH = "high"
