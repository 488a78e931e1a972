"""Tests for managed object contexts."""

from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

import pytest

from songstore.errors import SaveError
from songstore.persistence import FetchedResults, PersistentContainer
from songstore.storage import FetchRequest, ObjectID, Predicate, Song, User


def _song(user: User, title: str, day: int = 1) -> Song:
    return Song(title=title, date_recorded=datetime(2024, 1, day, tzinfo=UTC), duration=120.0, user_id=user.unique_id)


# ---------------------------------------------------------------------------
# insert / save
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_save_assigns_object_ids(container: PersistentContainer):
    ctx = container.view_context
    user = ctx.insert(User(username="alice"))
    song = ctx.insert(_song(user, "one"))
    assert ctx.has_changes
    assert user.object_id is None

    await ctx.save()

    assert isinstance(user.object_id, ObjectID)
    assert song.object_id is not None and song.object_id.entity == "Song"
    assert not ctx.has_changes
    assert ctx.registered_object(song.object_id) is song
    assert song.user is user


@pytest.mark.asyncio()
async def test_save_without_changes_is_noop(container: PersistentContainer, monkeypatch: pytest.MonkeyPatch):
    async def _fail(changes):
        raise AssertionError("commit should not be called")

    monkeypatch.setattr(container.store, "commit", _fail)
    await container.view_context.save()


@pytest.mark.asyncio()
async def test_insert_requires_related_object_in_context(container: PersistentContainer):
    ctx = container.view_context
    stranger = User(username="stranger")
    with pytest.raises(ValueError, match="must reference"):
        ctx.insert(_song(stranger, "lost"))


@pytest.mark.asyncio()
async def test_insert_into_second_context_rejected(container: PersistentContainer):
    user = container.view_context.insert(User(username="alice"))
    with pytest.raises(ValueError, match="another context"):
        container.new_background_context().insert(user)


@pytest.mark.asyncio()
async def test_unique_id_is_immutable(container: PersistentContainer):
    user = container.view_context.insert(User(username="alice"))
    with pytest.raises(AttributeError):
        user.unique_id = uuid4()


@pytest.mark.asyncio()
async def test_invalid_assignment_rejected(container: PersistentContainer):
    user = container.view_context.insert(User(username="alice"))
    with pytest.raises(ValueError):
        user.age = -1


# ---------------------------------------------------------------------------
# fetch
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_fetch_returns_same_instance(container: PersistentContainer):
    ctx = container.view_context
    ctx.insert(User(username="alice"))
    await ctx.save()

    request = FetchRequest(User, Predicate("username", "==", "alice"))
    first = await ctx.fetch(request)
    second = await ctx.fetch(request)
    assert len(first) == 1
    assert first[0] is second[0]


@pytest.mark.asyncio()
async def test_fetch_includes_pending_inserts(container: PersistentContainer):
    ctx = container.view_context
    ctx.insert(User(username="alice"))
    await ctx.save()
    ctx.insert(User(username="alice"))

    users = await ctx.fetch(FetchRequest(User, Predicate("username", "==", "alice")))
    assert len(users) == 2
    assert sum(u.object_id is None for u in users) == 1


@pytest.mark.asyncio()
async def test_fetch_excludes_pending_deletes(container: PersistentContainer):
    ctx = container.view_context
    user = ctx.insert(User(username="alice"))
    await ctx.save()
    ctx.delete(user)
    assert await ctx.fetch(FetchRequest(User)) == []


@pytest.mark.asyncio()
async def test_fetch_in_fresh_context_resolves_owner(container: PersistentContainer):
    ctx = container.view_context
    user = ctx.insert(User(username="alice"))
    ctx.insert(_song(user, "one"))
    await ctx.save()

    other = container.new_background_context()
    songs = await other.fetch(FetchRequest(Song, Predicate("user.username", "==", "alice")))
    assert len(songs) == 1
    assert songs[0].user is not None
    assert songs[0].user.username == "alice"
    assert songs[0].user is not user


@pytest.mark.asyncio()
async def test_object_with_id(container: PersistentContainer):
    ctx = container.view_context
    user = ctx.insert(User(username="alice"))
    await ctx.save()

    other = container.new_background_context()
    loaded = await other.object_with_id(user.object_id)
    assert loaded is not None
    assert loaded.unique_id == user.unique_id
    assert await other.object_with_id(ObjectID("User", 9999)) is None


# ---------------------------------------------------------------------------
# delete / rollback / reset
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_delete_pending_user_cascades_pending_songs(container: PersistentContainer):
    ctx = container.view_context
    user = ctx.insert(User(username="alice"))
    song = ctx.insert(_song(user, "one"))

    ctx.delete(user)

    assert ctx.inserted_objects == []
    assert song.is_deleted
    assert not ctx.has_changes


@pytest.mark.asyncio()
async def test_delete_saved_user_cascades_songs(container: PersistentContainer):
    ctx = container.view_context
    user = ctx.insert(User(username="alice"))
    songs = [ctx.insert(_song(user, f"s{i}", i + 1)) for i in range(3)]
    await ctx.save()

    ctx.delete(user)
    await ctx.save()

    assert user.is_deleted
    assert all(song.is_deleted for song in songs)
    assert ctx.registered_objects == []
    assert await container.store.fetch(FetchRequest(Song)) == []


@pytest.mark.asyncio()
async def test_modifying_deleted_object_raises(container: PersistentContainer):
    ctx = container.view_context
    user = ctx.insert(User(username="alice"))
    await ctx.save()
    ctx.delete(user)
    await ctx.save()
    with pytest.raises(RuntimeError, match="deleted"):
        user.username = "ghost"


@pytest.mark.asyncio()
async def test_delete_foreign_object_rejected(container: PersistentContainer):
    with pytest.raises(ValueError, match="does not belong"):
        container.view_context.delete(User(username="free"))


@pytest.mark.asyncio()
async def test_rollback_restores_committed_values(container: PersistentContainer):
    ctx = container.view_context
    user = ctx.insert(User(username="alice"))
    await ctx.save()

    user.username = "changed"
    pending = ctx.insert(User(username="pending"))
    ctx.rollback()

    assert user.username == "alice"
    assert pending.is_deleted
    assert not ctx.has_changes


@pytest.mark.asyncio()
async def test_reset_empties_cache_and_live_results(container: PersistentContainer):
    ctx = container.view_context
    ctx.insert(User(username="alice"))
    await ctx.save()
    results = FetchedResults(ctx, FetchRequest(User))
    await results.perform_fetch()
    assert len(results) == 1

    ctx.reset()

    assert ctx.registered_objects == []
    assert len(results) == 0
    assert len(await ctx.fetch(FetchRequest(User))) == 1


# ---------------------------------------------------------------------------
# save failure
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_failed_save_keeps_pending_changes(container: PersistentContainer, monkeypatch: pytest.MonkeyPatch):
    async def _fail(changes):
        raise SaveError("disk full")

    ctx = container.view_context
    user = ctx.insert(User(username="alice"))
    monkeypatch.setattr(container.store, "commit", _fail)

    with pytest.raises(SaveError):
        await ctx.save()

    assert ctx.inserted_objects == [user]
    assert user.object_id is None
    monkeypatch.undo()
    await ctx.save()
    assert user.object_id is not None


@pytest.mark.asyncio()
async def test_round_trip_after_reset(container: PersistentContainer):
    ctx = container.view_context
    user = ctx.insert(User(username="alice", age=33))
    song = ctx.insert(_song(user, "keeper", 7))
    song.is_favorite = True
    await ctx.save()
    expected_user, expected_song = user.values(), song.values()

    ctx.reset()
    [loaded] = await ctx.fetch(FetchRequest(Song))

    assert loaded is not song
    assert loaded.values() == expected_song
    assert loaded.user.values() == expected_user
