"""Change notifications and the coordinator that merges them into a context.

Every context is created with an ``on_did_save`` callback that posts its
:class:`ChangeNotification` here; batch deletes are posted explicitly.  One
consumer task applies notifications to the target context in delivery order,
holding the target's lock so a merge never interleaves with a fetch or save.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from songstore.persistence.context import ManagedObjectContext
    from songstore.storage.models import ObjectID
    from songstore.storage.store import BatchDeleteResult

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ChangeNotification:
    """Identities (and changed values) produced by one commit.

    ``inserted`` carries every attribute of a new object, ``updated`` only
    the attributes that changed.  Batch deletes produce notifications with
    no source and only ``deleted`` identities.
    """

    source: ManagedObjectContext | None = None
    inserted: Mapping[ObjectID, Mapping[str, Any]] = field(default_factory=lambda: MappingProxyType({}))
    updated: Mapping[ObjectID, Mapping[str, Any]] = field(default_factory=lambda: MappingProxyType({}))
    deleted: frozenset[ObjectID] = frozenset()

    @classmethod
    def from_batch_delete(cls, *results: BatchDeleteResult) -> ChangeNotification:
        deleted: set[ObjectID] = set()
        for result in results:
            deleted.update(result.object_ids)
        return cls(deleted=frozenset(deleted))

    @property
    def is_empty(self) -> bool:
        return not (self.inserted or self.updated or self.deleted)

    def summary(self) -> dict[str, int]:
        return {
            "inserted": len(self.inserted),
            "updated": len(self.updated),
            "deleted": len(self.deleted),
        }


class MergeCoordinator:
    """Serializes merges of change notifications into one target context."""

    def __init__(self, target: ManagedObjectContext) -> None:
        self._target = target
        self._queue: asyncio.Queue[tuple[ChangeNotification, asyncio.Future[None]]] | None = None
        self._task: asyncio.Task | None = None
        self._merged_count = 0

    @property
    def target(self) -> ManagedObjectContext:
        return self._target

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def merged_count(self) -> int:
        return self._merged_count

    async def start(self) -> None:
        """Start the consumer task on the running loop."""
        if self.is_running:
            return
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._loop(), name=f"merge-into-{self._target.name}")
        log.info("merge_coordinator_started", target=self._target.name)

    async def stop(self) -> None:
        """Apply everything already posted, then stop the consumer task."""
        if not self.is_running:
            return
        await self.flush()
        assert self._task is not None
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        log.info("merge_coordinator_stopped", merged=self._merged_count)

    def post(self, notification: ChangeNotification) -> asyncio.Future[None]:
        """Queue *notification* for merging.

        Must be called on the coordinator's loop.  The returned future
        resolves once the notification has been applied (or skipped); callers
        that do not need to wait may drop it.
        """
        if not self.is_running or self._queue is None:
            msg = "Merge coordinator is not running. Call start() first."
            raise RuntimeError(msg)
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((notification, future))
        return future

    async def flush(self) -> None:
        """Wait until every posted notification has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def _loop(self) -> None:
        assert self._queue is not None
        while True:
            notification, future = await self._queue.get()
            try:
                await self._apply(notification)
            except Exception as exc:
                log.error("merge_failed", target=self._target.name, error=str(exc), exc_info=True)
                if not future.done():
                    future.set_exception(exc)
                    # Already logged; keep asyncio from reporting it again
                    # when nobody awaits the future.
                    future.exception()
            else:
                if not future.done():
                    future.set_result(None)
            finally:
                self._queue.task_done()

    async def _apply(self, notification: ChangeNotification) -> None:
        if notification.source is self._target:
            return
        if notification.is_empty:
            return
        await self._target.merge_changes(notification)
        self._merged_count += 1
        log.debug(
            "notification_merged",
            source=notification.source.name if notification.source else "batch_delete",
            target=self._target.name,
            **notification.summary(),
        )
