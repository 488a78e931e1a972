"""Exception hierarchy for the songstore persistence layer."""

from __future__ import annotations


class PersistenceError(Exception):
    """Base class for every error raised at a store boundary."""


class StoreOpenError(PersistenceError):
    """The dataset could not be opened or created."""


class SaveError(PersistenceError):
    """A commit or batch delete failed and was rolled back."""


class FetchError(PersistenceError):
    """A query against the store failed."""
