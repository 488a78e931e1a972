"""The persistent container: one store, one view context, many background contexts."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from songstore.logging import configure_logging
from songstore.persistence.context import ManagedObjectContext
from songstore.persistence.merge import ChangeNotification, MergeCoordinator
from songstore.persistence.policy import MergePolicy
from songstore.storage.store import Store

if TYPE_CHECKING:
    from songstore.config import AppConfig

log = structlog.get_logger(__name__)

BackgroundWork = Callable[[ManagedObjectContext], Awaitable[object]]


class PersistentContainer:
    """Owns the store, the view context and the merge coordinator.

    The view context belongs to the event loop :meth:`load` ran on.  Every
    context the container creates reports its saves to the coordinator,
    which merges them into the view context.
    """

    def __init__(
        self,
        path: Path,
        *,
        merge_policy: MergePolicy = MergePolicy.INCOMING,
        journal_mode: str = "wal",
    ) -> None:
        self.path = path
        self.merge_policy = merge_policy
        self._store = Store(path, journal_mode=journal_mode)
        self._view_context: ManagedObjectContext | None = None
        self._coordinator: MergeCoordinator | None = None
        self._tasks: set[asyncio.Task] = set()
        self._background_count = 0

    @classmethod
    def from_config(cls, config: AppConfig, *, setup_logging: bool = True) -> PersistentContainer:
        """Build a container for the configured dataset.

        Unless *setup_logging* is false, the ``[logging]`` section is applied
        first so the container's own events reach the configured log files.
        """
        if setup_logging:
            configure_logging(config)
        return cls(
            config.store_path,
            merge_policy=config.store.merge_policy,
            journal_mode=config.store.journal_mode,
        )

    @property
    def store(self) -> Store:
        return self._store

    @property
    def is_loaded(self) -> bool:
        return self._view_context is not None

    @property
    def view_context(self) -> ManagedObjectContext:
        if self._view_context is None:
            msg = "Container not loaded. Call load() first."
            raise RuntimeError(msg)
        return self._view_context

    @property
    def coordinator(self) -> MergeCoordinator:
        if self._coordinator is None:
            msg = "Container not loaded. Call load() first."
            raise RuntimeError(msg)
        return self._coordinator

    # -- lifecycle ------------------------------------------------------------

    async def load(self) -> None:
        """Open (or create) the store and start merging into the view context.

        Raises :class:`~songstore.errors.StoreOpenError` if the dataset
        cannot be opened.
        """
        if self.is_loaded:
            return
        await self._store.connect()
        view = ManagedObjectContext(
            self._store,
            name="view",
            merge_policy=self.merge_policy,
            on_did_save=self._context_did_save,
        )
        coordinator = MergeCoordinator(view)
        await coordinator.start()
        self._view_context = view
        self._coordinator = coordinator
        log.info("container_loaded", path=str(self.path), merge_policy=self.merge_policy.value)

    async def close(self) -> None:
        """Wait for background work and pending merges, then close the store."""
        if not self.is_loaded:
            return
        await self.drain()
        await self.coordinator.stop()
        await self._store.close()
        self._view_context = None
        self._coordinator = None
        log.info("container_closed", path=str(self.path))

    async def __aenter__(self) -> PersistentContainer:
        await self.load()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # -- background contexts --------------------------------------------------

    def new_background_context(self) -> ManagedObjectContext:
        """Create a context for off-foreground work; its saves merge into the view context."""
        if not self.is_loaded:
            msg = "Container not loaded. Call load() first."
            raise RuntimeError(msg)
        self._background_count += 1
        return ManagedObjectContext(
            self._store,
            name=f"background-{self._background_count}",
            merge_policy=self.merge_policy,
            on_did_save=self._context_did_save,
        )

    def perform_background_task(self, work: BackgroundWork) -> None:
        """Run ``work(context)`` with a fresh background context as a task.

        Fire-and-forget: nothing is returned and failures are only logged.
        *work* is responsible for saving its context.
        """
        context = self.new_background_context()
        task = asyncio.create_task(self._run_background(work, context), name=context.name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for every background task and every queued merge."""
        while self._tasks:
            await asyncio.gather(*self._tasks)
        await self.coordinator.flush()

    # -- merging ----------------------------------------------------------------

    def merge_changes(self, notification: ChangeNotification) -> asyncio.Future[None]:
        """Post *notification* for merging into the view context.

        Await the result to wait until the view context reflects it.
        """
        return self.coordinator.post(notification)

    def _context_did_save(self, notification: ChangeNotification) -> None:
        if self._coordinator is None:
            log.warning("save_after_close", source=notification.source.name if notification.source else None)
            return
        self._coordinator.post(notification)

    async def _run_background(self, work: BackgroundWork, context: ManagedObjectContext) -> None:
        log.debug("background_task_started", context=context.name)
        try:
            await work(context)
        except Exception as exc:
            log.error("background_task_failed", context=context.name, error=str(exc), exc_info=True)
        else:
            log.debug("background_task_finished", context=context.name)
