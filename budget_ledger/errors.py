from __future__ import annotations


class LedgerError(Exception):
    """Base class for errors raised by the budget ledger."""


class ValidationError(LedgerError, ValueError):
    """Raised when user-supplied data fails validation."""


class NotFoundError(LedgerError, LookupError):
    """Raised when an entry or category id does not resolve."""


class StorageError(LedgerError, RuntimeError):
    """Raised when the persistence adapter cannot load or save a key."""
