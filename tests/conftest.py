"""Shared fixtures for songstore tests."""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from songstore.persistence import PersistentContainer
from songstore.repository import SongRepository


@pytest.fixture()
def base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect all songstore runtime files to a temporary directory.

    Patches ``songstore.config.get_base_dir`` so that nothing touches the
    real ``~/.songstore/``.
    """
    fake_base = tmp_path / ".songstore"
    fake_base.mkdir()
    (fake_base / "logs").mkdir()

    monkeypatch.setattr("songstore.config.get_base_dir", lambda: fake_base)

    return fake_base


@pytest_asyncio.fixture()
async def container(tmp_path: Path):
    """A loaded container over a fresh store file."""
    c = PersistentContainer(tmp_path / "SongStore.sqlite")
    await c.load()
    yield c
    await c.close()


@pytest.fixture()
def repo(container: PersistentContainer) -> SongRepository:
    return SongRepository(container)
