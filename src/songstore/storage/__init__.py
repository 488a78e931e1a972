"""songstore storage layer: entity models, fetch requests and the SQLite store."""

from songstore.storage.models import ObjectID, Song, User
from songstore.storage.query import AndPredicate, FetchRequest, Predicate, SortDescriptor
from songstore.storage.store import BatchDeleteResult, Store

__all__ = [
    "AndPredicate",
    "BatchDeleteResult",
    "FetchRequest",
    "ObjectID",
    "Predicate",
    "Song",
    "SortDescriptor",
    "Store",
    "User",
]
