"""Merge conflict policies shared by every context."""

from __future__ import annotations

from enum import StrEnum


class MergePolicy(StrEnum):
    """How a context resolves a merged property that it also edited locally.

    Both policies work per property: only the keys present in an incoming
    change are considered, the rest of the cached object is left alone.
    """

    # Incoming committed value overwrites the cached one, local edit dropped.
    INCOMING = "incoming"
    # Local unsaved edit survives; the incoming value is applied only to
    # properties that have no pending local change.
    IN_MEMORY = "in_memory"
