"""Live, auto-updating fetch results."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Sequence
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from songstore.persistence.context import ManagedObjectContext
    from songstore.storage.models import ManagedObject, ObjectID
    from songstore.storage.query import FetchRequest

log = structlog.get_logger(__name__)

Listener = Callable[[Sequence["ManagedObject"]], None]


class FetchedResults:
    """A fetch request kept in sync with its context's cache.

    After :meth:`perform_fetch`, every save or merge in the context
    re-evaluates the request against the cached objects of its entity, so
    the sequence drops deleted objects and picks up inserted or changed ones
    without refetching from the store.  Subscribers are called with the new
    sequence whenever membership, order, or a member's attributes change.
    """

    def __init__(self, context: ManagedObjectContext, request: FetchRequest) -> None:
        self.context = context
        self.request = request
        self._objects: list[ManagedObject] = []
        self._listeners: list[Listener] = []

    @property
    def objects(self) -> list[ManagedObject]:
        return list(self._objects)

    def __len__(self) -> int:
        return len(self._objects)

    def __iter__(self) -> Iterator[ManagedObject]:
        return iter(list(self._objects))

    def __getitem__(self, index: int) -> ManagedObject:
        return self._objects[index]

    async def perform_fetch(self) -> None:
        self._objects = await self.context.fetch(self.request)
        self.context.attach_results(self)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; return a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def close(self) -> None:
        self.context.detach_results(self)
        self._listeners.clear()

    def context_did_change(self, changed: Iterable[ManagedObject], deleted: set[ObjectID]) -> None:
        """Re-evaluate after the context saved, merged, rolled back or was reset.

        Pending inserts that match the request stay in the sequence, the
        same as in :meth:`ManagedObjectContext.fetch`.
        """
        changed = list(changed)
        if not changed and not deleted:
            return
        candidates = [*self.context.live_objects(self.request.entity), *self.context.inserted_objects]
        current = self.request.sort(obj for obj in candidates if self.request.matches(obj))
        same_order = len(current) == len(self._objects) and all(
            new is old for new, old in zip(current, self._objects, strict=True)
        )
        if same_order and not any(obj in self._objects for obj in changed):
            return
        self._objects = current
        for listener in list(self._listeners):
            try:
                listener(self.objects)
            except Exception as exc:
                log.warning("results_listener_failed", entity=self.request.entity.entity_name, error=str(exc))
