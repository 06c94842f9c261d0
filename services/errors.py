class AutomationError(Exception):
    """Base class for automation engine errors."""


class TransportError(AutomationError):
    """A send attempt failed and may succeed if retried."""


class PermanentTransportError(TransportError):
    """A send attempt failed for a reason retrying cannot fix (bad recipient, opt-out)."""


class InvalidTransition(AutomationError):
    """A ledger or campaign record was asked to move to a status it cannot reach."""
