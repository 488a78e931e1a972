"""CRUD facade over users and songs."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from songstore.errors import FetchError, SaveError
from songstore.persistence.merge import ChangeNotification
from songstore.persistence.results import FetchedResults
from songstore.storage.models import DEFAULT_USER_AGE, Song, User
from songstore.storage.query import FetchRequest, Predicate, SortDescriptor
from songstore.storage.store import BatchDeleteResult

if TYPE_CHECKING:
    from songstore.persistence.container import PersistentContainer
    from songstore.persistence.context import ManagedObjectContext

log = structlog.get_logger(__name__)

Completion = Callable[[], None]


class SongRepository:
    """Create, read, update and delete users and songs through the view context.

    Single-object operations save immediately.  Bulk deletes go through the
    store's batch delete and are merged back into the view context before
    their completion callback runs.
    """

    def __init__(self, container: PersistentContainer) -> None:
        self._container = container
        self._bulk_operations = 0

    @property
    def context(self) -> ManagedObjectContext:
        return self._container.view_context

    @property
    def is_busy(self) -> bool:
        """True while a bulk delete is in flight."""
        return self._bulk_operations > 0

    # -- users ----------------------------------------------------------------

    async def create_user(self, username: str) -> User:
        user = self.context.insert(User(username=username, age=DEFAULT_USER_AGE))
        await self.context.save()
        log.info("user_created", username=username, unique_id=str(user.unique_id))
        return user

    async def fetch_user(self, username: str) -> User | None:
        """Return the first user named *username*, or None (also on query failure)."""
        request = FetchRequest(User, Predicate("username", "==", username), fetch_limit=1)
        try:
            users = await self.context.fetch(request)
        except FetchError as exc:
            log.warning("fetch_user_failed", username=username, error=str(exc))
            return None
        return users[0] if users else None  # type: ignore[return-value]

    async def fetch_or_create_user(self, username: str) -> User:
        user = await self.fetch_user(username)
        if user is None:
            user = await self.create_user(username)
        return user

    async def delete_user(self, user: User) -> None:
        """Delete *user* and, by cascade, every song it owns."""
        self.context.delete(user)
        await self.context.save()
        log.info("user_deleted", username=user.username)

    # -- songs ----------------------------------------------------------------

    async def create_song(
        self,
        title: str,
        date_recorded: datetime,
        duration: float,
        user: User,
        *,
        is_favorite: bool = False,
    ) -> Song:
        song = Song(
            title=title,
            date_recorded=date_recorded,
            duration=duration,
            is_favorite=is_favorite,
            user_id=user.unique_id,
        )
        self.context.insert(song)
        await self.context.save()
        log.info("song_created", title=title, username=user.username)
        return song

    @staticmethod
    def songs_request(username: str) -> FetchRequest:
        """Songs owned by *username*, most recently recorded first."""
        return FetchRequest(
            Song,
            Predicate("user.username", "==", username),
            sort_descriptors=(SortDescriptor("date_recorded", ascending=False),),
        )

    async def fetch_songs(self, username: str) -> list[Song]:
        try:
            return await self.context.fetch(self.songs_request(username))  # type: ignore[return-value]
        except FetchError as exc:
            log.warning("fetch_songs_failed", username=username, error=str(exc))
            return []

    async def songs_query(self, username: str) -> FetchedResults:
        """Live, auto-updating list of *username*'s songs."""
        results = FetchedResults(self.context, self.songs_request(username))
        await results.perform_fetch()
        return results

    async def update_song_title(self, song: Song, new_title: str) -> None:
        song.title = new_title
        await self.context.save()

    async def delete_song(self, song: Song) -> None:
        self.context.delete(song)
        await self.context.save()

    async def delete_songs(self, songs: Iterable[Song]) -> None:
        for song in songs:
            self.context.delete(song)
        await self.context.save()

    # -- bulk deletes -----------------------------------------------------------

    async def delete_all_songs_and_users(self, completion: Completion | None = None) -> None:
        """Batch delete every song and user, merge, then call *completion*.

        Raises :class:`~songstore.errors.SaveError` if either batch delete
        fails; *completion* is not called in that case.  Rows removed by a
        batch delete that did succeed are still merged before the error
        propagates.
        """
        self._bulk_operations += 1
        results: list[BatchDeleteResult] = []
        try:
            for entity in (Song, User):
                results.append(await self.context.execute_batch_delete(FetchRequest(entity)))
        except SaveError:
            if results:
                await self._container.merge_changes(ChangeNotification.from_batch_delete(*results))
            raise
        else:
            await self._container.merge_changes(ChangeNotification.from_batch_delete(*results))
        finally:
            self._bulk_operations -= 1
        songs, users = results
        log.info("deleted_all_songs_and_users", songs=len(songs), users=len(users))
        if completion is not None:
            completion()

    def delete_all_songs_using_background(self, completion: Completion | None = None) -> None:
        """Batch delete every song from a background context.

        Returns immediately.  Once the deletion has been merged into the
        view context, *completion* is scheduled on the calling loop.
        """
        loop = asyncio.get_running_loop()
        self._bulk_operations += 1

        async def work(context: ManagedObjectContext) -> None:
            try:
                songs = await context.execute_batch_delete(FetchRequest(Song))
                await self._container.merge_changes(ChangeNotification.from_batch_delete(songs))
            except Exception:
                loop.call_soon(self._finish_bulk, None)
                raise
            log.info("deleted_all_songs", context=context.name, songs=len(songs))
            loop.call_soon(self._finish_bulk, completion)

        self._container.perform_background_task(work)

    def _finish_bulk(self, completion: Completion | None) -> None:
        self._bulk_operations -= 1
        if completion is not None:
            completion()
