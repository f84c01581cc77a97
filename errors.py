class LedgerError(Exception):
    """Base class for failures surfaced by ledger operations."""


class NotFound(LedgerError, LookupError):
    pass


class Unauthorized(LedgerError):
    pass


class InvalidArgument(LedgerError, ValueError):
    pass


class ConflictExceeded(LedgerError):
    """Optimistic retries ran out while other writers kept winning."""


class StoreUnavailable(LedgerError):
    """The database could not be reached; nothing was committed."""


class CategorizerUnavailable(LedgerError):
    """The external classifier failed or answered with something unusable."""
