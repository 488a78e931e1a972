"""Contexts, live results and cross-context change merging."""

from songstore.persistence.container import PersistentContainer
from songstore.persistence.context import ManagedObjectContext
from songstore.persistence.merge import ChangeNotification, MergeCoordinator
from songstore.persistence.policy import MergePolicy
from songstore.persistence.results import FetchedResults

__all__ = [
    "ChangeNotification",
    "FetchedResults",
    "ManagedObjectContext",
    "MergeCoordinator",
    "MergePolicy",
    "PersistentContainer",
]
