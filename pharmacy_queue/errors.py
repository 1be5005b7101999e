class PharmacyError(Exception):
    """Base class for failures surfaced by the queue and reservation engines."""

    code = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(PharmacyError):
    """Missing or invalid input, raised before the store is touched."""

    code = "validation_error"


class NotFound(PharmacyError):
    """
    Branch, token, ticket or reservation does not match the expected state.

    For claims this deliberately does not say whether the token never existed
    or was already claimed.
    """

    code = "not_found"


class Expired(PharmacyError):
    """Reservation was past its expiry when a claim was attempted."""

    code = "expired"


class StoreUnavailable(PharmacyError):
    """The store could not commit within its retry budget."""

    code = "store_unavailable"


class QueueUnavailable(StoreUnavailable):
    code = "queue_unavailable"


class IntegrityViolation(ValidationError):
    """A write broke a database constraint that retrying cannot fix."""

    code = "integrity_violation"


class TransactionConflict(Exception):
    """
    Raised inside a store transaction when a concurrent writer got there
    first. The store rolls back and runs the transaction again.
    """
