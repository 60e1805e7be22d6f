"""Error taxonomy for the dispatch engine."""


class DispatchError(Exception):
    """Base class for every error an engine operation can raise."""


class NotFound(DispatchError):
    """A referenced record does not exist."""


class CustomerNotFound(NotFound):
    pass


class DriverNotFound(NotFound):
    pass


class OrderNotFound(NotFound):
    pass


class OfferNotFound(NotFound):
    pass


class RequestNotFound(NotFound):
    pass


class InvalidTransition(DispatchError):
    """Raised when a status change violates a state machine."""


class OfferAlreadyResolved(DispatchError):
    """The offer lost a dispatch race or is no longer acceptable."""


class DriverMismatch(DispatchError):
    """The calling identity does not own the target order or offer."""


class StoreError(DispatchError):
    """Persistence-layer failure.  Retryable by the caller."""


class RecordMissing(StoreError):
    """``update`` targeted a record that does not exist."""
