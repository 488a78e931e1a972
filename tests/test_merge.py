"""Tests for change notifications and merging into the view context."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from songstore.persistence import ChangeNotification, MergeCoordinator, MergePolicy, PersistentContainer
from songstore.storage import FetchRequest, ObjectID, Predicate, Song, User
from songstore.storage.store import BatchDeleteResult


async def _seed_song(container: PersistentContainer, title: str = "original") -> Song:
    ctx = container.view_context
    user = ctx.insert(User(username="alice"))
    song = ctx.insert(
        Song(title=title, date_recorded=datetime(2024, 3, 1, tzinfo=UTC), duration=100.0, user_id=user.unique_id)
    )
    await ctx.save()
    return song


async def _background_song(container: PersistentContainer, song: Song):
    bg = container.new_background_context()
    copy = await bg.object_with_id(song.object_id)
    assert copy is not None and copy is not song
    return bg, copy


# ---------------------------------------------------------------------------
# ChangeNotification
# ---------------------------------------------------------------------------


def test_from_batch_delete_unions_results():
    songs = BatchDeleteResult((ObjectID("Song", 1), ObjectID("Song", 2)))
    users = BatchDeleteResult((ObjectID("User", 1), ObjectID("Song", 2)))

    notification = ChangeNotification.from_batch_delete(songs, users)

    assert notification.source is None
    assert notification.deleted == {ObjectID("Song", 1), ObjectID("Song", 2), ObjectID("User", 1)}
    assert notification.summary() == {"inserted": 0, "updated": 0, "deleted": 3}


def test_empty_notification():
    assert ChangeNotification().is_empty
    assert not ChangeNotification(deleted=frozenset({ObjectID("Song", 1)})).is_empty


# ---------------------------------------------------------------------------
# Background saves reach the view context
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_background_insert_appears_in_view(container: PersistentContainer):
    song = await _seed_song(container)
    user = song.user
    bg = container.new_background_context()
    [bg_user] = await bg.fetch(FetchRequest(User, Predicate("unique_id", "==", user.unique_id)))
    new = bg.insert(
        Song(title="fresh", date_recorded=datetime(2024, 3, 2, tzinfo=UTC), duration=5.0, user_id=bg_user.unique_id)
    )
    await bg.save()
    await container.drain()

    merged = container.view_context.registered_object(new.object_id)
    assert merged is not None
    assert merged is not new
    assert merged.title == "fresh"
    assert merged.user is user


@pytest.mark.asyncio()
async def test_background_update_applied_in_place(container: PersistentContainer):
    song = await _seed_song(container)
    bg, copy = await _background_song(container, song)

    copy.title = "remote"
    await bg.save()
    await container.drain()

    assert song.title == "remote"
    assert not song.has_changes


@pytest.mark.asyncio()
async def test_background_delete_drops_object(container: PersistentContainer):
    song = await _seed_song(container)
    bg, copy = await _background_song(container, song)

    bg.delete(copy)
    await bg.save()
    await container.drain()

    assert song.is_deleted
    assert container.view_context.registered_object(song.object_id) is None


@pytest.mark.asyncio()
async def test_different_properties_both_survive(container: PersistentContainer):
    song = await _seed_song(container)
    bg, copy = await _background_song(container, song)

    song.duration = 300.0
    copy.title = "remote"
    await bg.save()
    await container.drain()

    assert song.title == "remote"
    assert song.duration == 300.0
    assert song.has_changes
    await container.view_context.save()
    values = await container.store.fetch_object(song.object_id)
    assert values["title"] == "remote"
    assert values["duration"] == 300.0


@pytest.mark.asyncio()
async def test_incoming_policy_overwrites_conflicting_property(container: PersistentContainer):
    song = await _seed_song(container)
    bg, copy = await _background_song(container, song)

    song.title = "local"
    copy.title = "remote"
    await bg.save()
    await container.drain()

    assert song.title == "remote"
    assert not song.has_changes


@pytest.mark.asyncio()
async def test_in_memory_policy_keeps_local_edit(tmp_path):
    async with PersistentContainer(tmp_path / "songs.sqlite", merge_policy=MergePolicy.IN_MEMORY) as container:
        song = await _seed_song(container)
        bg, copy = await _background_song(container, song)

        song.title = "local"
        copy.title = "remote"
        await bg.save()
        await container.drain()

        assert song.title == "local"
        assert song.has_changes
        await container.view_context.save()
        values = await container.store.fetch_object(song.object_id)
        assert values["title"] == "local"


@pytest.mark.asyncio()
async def test_batch_delete_merge(container: PersistentContainer):
    song = await _seed_song(container)
    bg = container.new_background_context()

    result = await bg.execute_batch_delete(FetchRequest(Song))
    assert not song.is_deleted

    await container.merge_changes(ChangeNotification.from_batch_delete(result))
    assert song.is_deleted


# ---------------------------------------------------------------------------
# MergeCoordinator
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_post_requires_running_coordinator(container: PersistentContainer):
    coordinator = MergeCoordinator(container.view_context)
    with pytest.raises(RuntimeError, match="not running"):
        coordinator.post(ChangeNotification())


@pytest.mark.asyncio()
async def test_own_saves_not_merged_back(container: PersistentContainer):
    await _seed_song(container)
    await container.drain()
    assert container.coordinator.merged_count == 0


@pytest.mark.asyncio()
async def test_merge_failure_fails_future_and_keeps_running(
    container: PersistentContainer, monkeypatch: pytest.MonkeyPatch
):
    async def _boom(notification):
        raise RuntimeError("merge exploded")

    monkeypatch.setattr(container.view_context, "merge_changes", _boom)
    future = container.merge_changes(ChangeNotification(deleted=frozenset({ObjectID("Song", 1)})))
    with pytest.raises(RuntimeError, match="merge exploded"):
        await future

    monkeypatch.undo()
    await container.merge_changes(ChangeNotification(deleted=frozenset({ObjectID("Song", 1)})))
    assert container.coordinator.is_running
    assert container.coordinator.merged_count == 1


@pytest.mark.asyncio()
async def test_notifications_applied_in_order(container: PersistentContainer):
    song = await _seed_song(container)
    bg, copy = await _background_song(container, song)

    for title in ("one", "two", "three"):
        copy.title = title
        await bg.save()
    await container.drain()

    assert song.title == "three"
