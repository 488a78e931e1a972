"""Managed object contexts: identity-mapped caches over the shared store."""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from songstore.persistence.merge import ChangeNotification
from songstore.persistence.policy import MergePolicy
from songstore.storage.models import ManagedObject, ObjectID, entity_for_name
from songstore.storage.query import FetchRequest, Predicate
from songstore.storage.store import BatchDeleteResult, ChangeSet

if TYPE_CHECKING:
    from songstore.persistence.results import FetchedResults
    from songstore.storage.store import Store

log = structlog.get_logger(__name__)

T = TypeVar("T", bound=ManagedObject)

DidSaveCallback = Callable[[ChangeNotification], object]


class ManagedObjectContext:
    """A read/write handle over the store with its own object cache.

    Each saved object is registered under its :class:`ObjectID`, so one
    context never holds two instances of the same row.  Async operations
    (fetch, save, merge) take the context's lock; plain attribute edits,
    :meth:`insert` and :meth:`delete` only record pending changes.
    """

    def __init__(
        self,
        store: Store,
        *,
        name: str = "context",
        merge_policy: MergePolicy = MergePolicy.INCOMING,
        on_did_save: DidSaveCallback | None = None,
    ) -> None:
        self._store = store
        self.name = name
        self.merge_policy = merge_policy
        self._on_did_save = on_did_save
        self._lock = asyncio.Lock()
        self._registered: dict[ObjectID, ManagedObject] = {}
        self._by_key: dict[tuple[str, Any], ManagedObject] = {}
        self._inserted: list[ManagedObject] = []
        self._deleted: dict[ObjectID, ManagedObject] = {}
        self._results: weakref.WeakSet[FetchedResults] = weakref.WeakSet()

    def __repr__(self) -> str:
        return f"<ManagedObjectContext {self.name!r} registered={len(self._registered)}>"

    # -- state ----------------------------------------------------------------

    @property
    def has_changes(self) -> bool:
        return bool(
            self._inserted
            or self._deleted
            or any(obj.has_changes for obj in self._registered.values())
        )

    @property
    def registered_objects(self) -> list[ManagedObject]:
        return list(self._registered.values())

    @property
    def inserted_objects(self) -> list[ManagedObject]:
        return list(self._inserted)

    @property
    def deleted_objects(self) -> list[ManagedObject]:
        return list(self._deleted.values())

    def registered_object(self, object_id: ObjectID) -> ManagedObject | None:
        return self._registered.get(object_id)

    def object_for_key(self, entity_name: str, key: Any) -> ManagedObject | None:
        """Return the cached object whose natural key is *key*, if any."""
        return self._by_key.get((entity_name, key))

    def live_objects(self, entity: type[ManagedObject]) -> list[ManagedObject]:
        """Saved objects of *entity* in the cache that are not pending deletion."""
        return [
            obj
            for oid, obj in self._registered.items()
            if isinstance(obj, entity) and oid not in self._deleted
        ]

    # -- pending changes --------------------------------------------------------

    def insert(self, obj: T) -> T:
        """Add a new object to the context; it is written on the next save."""
        if obj.context is self:
            return obj
        if obj.context is not None or obj.object_id is not None:
            msg = f"{obj.entity_name} already belongs to another context"
            raise ValueError(msg)
        for name, rel in obj.to_one.items():
            if self.object_for_key(rel.target, getattr(obj, rel.foreign_key)) is None:
                msg = f"{obj.entity_name}.{name} must reference an object in context {self.name!r}"
                raise ValueError(msg)
        obj._context = self
        self._inserted.append(obj)
        self._index(obj)
        return obj

    def delete(self, obj: ManagedObject) -> None:
        """Mark *obj* for deletion on the next save.

        Deleting an object also deletes the pending inserts that reference
        it through a cascading relationship; saved dependents are removed by
        the store and reported back when the save completes.
        """
        if obj.context is not self:
            msg = f"{obj.entity_name} does not belong to context {self.name!r}"
            raise ValueError(msg)
        if obj.is_deleted:
            return
        if obj.object_id is None:
            self._inserted.remove(obj)
            self._detach(obj)
            self._notify_results([obj], set())
        else:
            self._deleted[obj.object_id] = obj
        self._cascade_pending(obj)

    def rollback(self) -> None:
        """Discard every pending change and restore last committed values."""
        discarded = list(self._inserted)
        for obj in discarded:
            self._detach(obj)
        self._inserted.clear()
        self._deleted.clear()
        for obj in self._registered.values():
            obj._revert()
        self._notify_results(discarded, set())

    def reset(self) -> None:
        """Forget every cached object; live results are emptied."""
        evicted = set(self._registered)
        discarded = list(self._inserted)
        for obj in [*self._registered.values(), *discarded]:
            self._detach(obj)
        self._registered.clear()
        self._by_key.clear()
        self._inserted.clear()
        self._deleted.clear()
        self._notify_results(discarded, evicted)

    # -- fetching -----------------------------------------------------------------

    async def fetch(self, request: FetchRequest) -> list[ManagedObject]:
        """Return the objects matching *request*, including pending inserts.

        Raises :class:`~songstore.errors.FetchError` when the query fails.
        """
        async with self._lock:
            return await self._fetch(request)

    async def object_with_id(self, object_id: ObjectID) -> ManagedObject | None:
        """Return the cached object for *object_id*, loading it if needed."""
        async with self._lock:
            return await self._object_with_id(object_id)

    def attach_results(self, results: FetchedResults) -> None:
        self._results.add(results)

    def detach_results(self, results: FetchedResults) -> None:
        self._results.discard(results)

    # -- saving -----------------------------------------------------------------

    async def save(self) -> None:
        """Commit pending changes; does nothing when there are none.

        Raises :class:`~songstore.errors.SaveError` if the store rejects the
        commit.  Pending changes are then left in place so the caller can
        retry or :meth:`rollback`.
        """
        async with self._lock:
            if not self.has_changes:
                return
            inserted = list(self._inserted)
            updated = [
                (obj, obj.changed_values())
                for oid, obj in self._registered.items()
                if obj.has_changes and oid not in self._deleted
            ]
            changes = ChangeSet(
                inserts=[(type(obj), obj.values()) for obj in inserted],
                updates=[(obj.object_id, values) for obj, values in updated],  # type: ignore[misc]
                deletes=list(self._deleted),
            )
            result = await self._store.commit(changes)

            inserted_values: dict[ObjectID, dict[str, Any]] = {}
            for obj, (_, values), object_id in zip(inserted, changes.inserts, result.inserted, strict=True):
                obj._object_id = object_id
                obj._mark_saved(values)
                self._inserted.remove(obj)
                self._register(obj)
                inserted_values[object_id] = values
            committed = set(result.updated)
            updated_values: dict[ObjectID, dict[str, Any]] = {}
            for obj, values in updated:
                obj._mark_saved(values)
                if obj.object_id in committed:
                    updated_values[obj.object_id] = values  # type: ignore[index]
            removed = self._drop(result.deleted)

        notification = ChangeNotification(
            source=self,
            inserted=inserted_values,
            updated=updated_values,
            deleted=frozenset(result.deleted),
        )
        log.info("context_saved", context=self.name, **notification.summary())
        self._notify_results([*inserted, *(obj for obj, _ in updated)], removed)
        if self._on_did_save is not None:
            self._on_did_save(notification)

    async def execute_batch_delete(self, request: FetchRequest) -> BatchDeleteResult:
        """Delete matching rows in the store without loading them.

        The cache is not touched: post the result to the merge coordinator
        (see :meth:`ChangeNotification.from_batch_delete`) to drop the
        deleted objects from contexts that hold them.
        """
        async with self._lock:
            return await self._store.batch_delete(request)

    # -- merging ------------------------------------------------------------------

    async def merge_changes(self, notification: ChangeNotification) -> None:
        """Apply a change notification committed elsewhere, property by property."""
        async with self._lock:
            await self._merge(notification)

    async def _merge(self, notification: ChangeNotification) -> None:
        deleted = self._drop(notification.deleted)
        changed: list[ManagedObject] = []
        materialized: list[ManagedObject] = []

        for object_id, values in notification.inserted.items():
            if object_id in notification.deleted:
                continue
            obj = self._registered.get(object_id)
            if obj is None:
                obj = self._materialize(object_id, values)
                materialized.append(obj)
            else:
                self._apply_incoming(obj, values)
            changed.append(obj)

        watched = {results.request.entity.entity_name for results in self._results}
        for object_id, values in notification.updated.items():
            if object_id in notification.deleted:
                continue
            obj = self._registered.get(object_id)
            if obj is not None:
                self._apply_incoming(obj, values)
            elif object_id.entity in watched:
                obj = await self._object_with_id(object_id)
                if obj is None:
                    continue
            else:
                continue
            changed.append(obj)

        await self._prefetch_related(materialized)
        self._notify_results(changed, deleted)
        log.debug("context_merged", context=self.name, changed=len(changed), deleted=len(deleted))

    def _apply_incoming(self, obj: ManagedObject, values: dict[str, Any] | Any) -> None:
        for key, value in values.items():
            if key not in type(obj).model_fields or key in obj.immutable_fields:
                continue
            if self.merge_policy is MergePolicy.IN_MEMORY and key in obj._changed_keys:
                obj._committed[key] = value
                continue
            obj._set_primitive(key, value)

    # -- internals ----------------------------------------------------------------

    async def _fetch(self, request: FetchRequest) -> list[ManagedObject]:
        rows = await self._store.fetch(request)
        objects: list[ManagedObject] = []
        materialized: list[ManagedObject] = []
        for object_id, values in rows:
            if object_id in self._deleted:
                continue
            obj = self._registered.get(object_id)
            if obj is None:
                obj = self._materialize(object_id, values)
                materialized.append(obj)
            objects.append(obj)
        await self._prefetch_related(materialized)

        pending = [obj for obj in self._inserted if request.matches(obj)]
        if pending:
            objects = request.sort([*objects, *pending])
        return objects

    async def _object_with_id(self, object_id: ObjectID) -> ManagedObject | None:
        obj = self._registered.get(object_id)
        if obj is not None:
            return obj
        values = await self._store.fetch_object(object_id)
        if values is None:
            return None
        obj = self._materialize(object_id, values)
        await self._prefetch_related([obj])
        return obj

    async def _prefetch_related(self, objects: Iterable[ManagedObject]) -> None:
        """Load the to-one targets of *objects* that are not cached yet."""
        missing: dict[str, set[Any]] = {}
        for obj in objects:
            for rel in obj.to_one.values():
                key = getattr(obj, rel.foreign_key)
                if self.object_for_key(rel.target, key) is None:
                    missing.setdefault(rel.target, set()).add(key)
        for entity_name, keys in missing.items():
            entity = entity_for_name(entity_name)
            request = FetchRequest(entity, Predicate(entity.natural_key, "in", sorted(keys, key=str)))
            for object_id, values in await self._store.fetch(request):
                if object_id not in self._registered:
                    self._materialize(object_id, values)

    def _materialize(self, object_id: ObjectID, values: dict[str, Any] | Any) -> ManagedObject:
        entity = entity_for_name(object_id.entity)
        obj = entity.model_validate(dict(values))
        obj._object_id = object_id
        obj._context = self
        obj._mark_saved(obj.values())
        self._register(obj)
        return obj

    def _register(self, obj: ManagedObject) -> None:
        assert obj.object_id is not None
        self._registered[obj.object_id] = obj
        self._index(obj)

    def _index(self, obj: ManagedObject) -> None:
        if obj.natural_key is not None:
            self._by_key[(obj.entity_name, getattr(obj, obj.natural_key))] = obj

    def _detach(self, obj: ManagedObject) -> None:
        if obj.natural_key is not None:
            key = (obj.entity_name, getattr(obj, obj.natural_key))
            if self._by_key.get(key) is obj:
                del self._by_key[key]
        obj._is_deleted = True

    def _drop(self, object_ids: Iterable[ObjectID]) -> set[ObjectID]:
        """Remove deleted objects from the cache; return the ones that were cached."""
        dropped: set[ObjectID] = set()
        for object_id in object_ids:
            self._deleted.pop(object_id, None)
            obj = self._registered.pop(object_id, None)
            if obj is not None:
                self._detach(obj)
                dropped.add(object_id)
        return dropped

    def _cascade_pending(self, obj: ManagedObject) -> None:
        if obj.natural_key is None:
            return
        key = getattr(obj, obj.natural_key)
        for rel in obj.to_many.values():
            child = entity_for_name(rel.target)
            foreign_key = child.to_one[rel.inverse].foreign_key
            for pending in [o for o in self._inserted if isinstance(o, child)]:
                if getattr(pending, foreign_key) == key:
                    self.delete(pending)

    def _notify_results(self, changed: Iterable[ManagedObject], deleted: set[ObjectID]) -> None:
        changed = list(changed)
        for results in list(self._results):
            results.context_did_change(changed, deleted)
