"""Error taxonomy shared by the dispatch services.

ValidationError   malformed caller input; nothing was persisted.
ConflictError     lost the acceptance race or wrong lifecycle state; refresh, do not retry.
TransientIOError  store unavailable; retried by the periodic refresh or by the user.
"""

from typing import Optional


class DispatchError(Exception):
    """Base class for all dispatch-core errors."""


class ValidationError(DispatchError):
    """Raised when caller input fails validation before any write happens."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        item_index: Optional[int] = None,
    ):
        self.field = field
        self.item_index = item_index
        super().__init__(message)


class ConflictError(DispatchError):
    """Raised when a transition is attempted from the wrong state."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message)


class TransientIOError(DispatchError):
    """Raised when the remote store cannot be reached or times out."""


class NotFoundError(DispatchError):
    """Raised when an emergency, offer or settlement does not exist."""


class ProcedureUnavailableError(DispatchError):
    """Raised when the server-side visibility procedure is not available."""
