"""Pydantic entity models for the songstore object graph."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, ClassVar
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator

DEFAULT_USER_AGE = 18


@dataclass(frozen=True, order=True)
class ObjectID:
    """Store-assigned identity of a saved object: entity name plus row id."""

    entity: str
    pk: int

    def __str__(self) -> str:
        return f"{self.entity}/p{self.pk}"


class DeleteRule(StrEnum):
    CASCADE = "cascade"


@dataclass(frozen=True)
class ToOne:
    """Many-to-one relationship held as a foreign key on the source entity."""

    target: str
    foreign_key: str


@dataclass(frozen=True)
class ToMany:
    """Inverse side of a :class:`ToOne` declared on *target*."""

    target: str
    inverse: str
    delete_rule: DeleteRule = DeleteRule.CASCADE


class ManagedObject(BaseModel):
    """Base class for entities that live in a context.

    Field assignments are validated and recorded as pending changes until the
    owning context saves.  Equality is identity: two instances are the same
    object only if they are the same Python object, which is what the
    context's identity map guarantees per :class:`ObjectID`.
    """

    model_config = ConfigDict(validate_assignment=True)

    entity_name: ClassVar[str]
    table_name: ClassVar[str]
    # Attribute other entities reference through a foreign key.
    natural_key: ClassVar[str | None] = None
    immutable_fields: ClassVar[frozenset[str]] = frozenset()
    to_one: ClassVar[dict[str, ToOne]] = {}
    to_many: ClassVar[dict[str, ToMany]] = {}

    _object_id: ObjectID | None = PrivateAttr(default=None)
    _context: Any = PrivateAttr(default=None)
    _changed_keys: set[str] = PrivateAttr(default_factory=set)
    _committed: dict[str, Any] = PrivateAttr(default_factory=dict)
    _is_deleted: bool = PrivateAttr(default=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if name not in type(self).model_fields:
            super().__setattr__(name, value)
            return
        if name in self.immutable_fields:
            msg = f"{self.entity_name}.{name} cannot be changed once assigned"
            raise AttributeError(msg)
        if self._is_deleted:
            msg = f"Cannot modify deleted object {self._object_id}"
            raise RuntimeError(msg)
        super().__setattr__(name, value)
        self._changed_keys.add(name)

    def __eq__(self, other: object) -> bool:
        return self is other

    __hash__ = object.__hash__

    # -- public state -------------------------------------------------------

    @property
    def object_id(self) -> ObjectID | None:
        return self._object_id

    @property
    def context(self) -> Any:
        return self._context

    @property
    def is_deleted(self) -> bool:
        return self._is_deleted

    @property
    def has_changes(self) -> bool:
        return bool(self._changed_keys)

    def changed_values(self) -> dict[str, Any]:
        """Return the pending (unsaved) value of every changed attribute."""
        return {key: getattr(self, key) for key in sorted(self._changed_keys)}

    def values(self) -> dict[str, Any]:
        return self.model_dump(mode="python")

    # -- context bookkeeping --------------------------------------------------

    def _set_primitive(self, key: str, value: Any) -> None:
        """Assign *key* as a committed value without recording a change."""
        BaseModel.__setattr__(self, key, value)
        self._committed[key] = getattr(self, key)
        self._changed_keys.discard(key)

    def _mark_saved(self, values: dict[str, Any]) -> None:
        for key, value in values.items():
            self._committed[key] = value
            if getattr(self, key) == value:
                self._changed_keys.discard(key)

    def _revert(self) -> None:
        for key in list(self._changed_keys):
            if key in self._committed:
                BaseModel.__setattr__(self, key, self._committed[key])
        self._changed_keys.clear()

    def _related(self, name: str) -> ManagedObject | None:
        rel = self.to_one[name]
        if self._context is None:
            return None
        return self._context.object_for_key(rel.target, getattr(self, rel.foreign_key))


class User(ManagedObject):
    """A library owner; owns any number of songs."""

    entity_name: ClassVar[str] = "User"
    table_name: ClassVar[str] = "user"
    natural_key: ClassVar[str | None] = "unique_id"
    immutable_fields: ClassVar[frozenset[str]] = frozenset({"unique_id"})
    to_many: ClassVar[dict[str, ToMany]] = {"songs": ToMany(target="Song", inverse="user")}

    unique_id: UUID = Field(default_factory=uuid4)
    username: str
    age: int = Field(default=DEFAULT_USER_AGE, ge=0)


class Song(ManagedObject):
    """A recording owned by exactly one user."""

    entity_name: ClassVar[str] = "Song"
    table_name: ClassVar[str] = "song"
    to_one: ClassVar[dict[str, ToOne]] = {"user": ToOne(target="User", foreign_key="user_id")}

    title: str
    date_recorded: datetime
    duration: float = Field(ge=0.0)
    is_favorite: bool = False
    user_id: UUID

    @field_validator("date_recorded")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @property
    def user(self) -> User | None:
        """Owning user, resolved through the song's context."""
        return self._related("user")  # type: ignore[return-value]

    @user.setter
    def user(self, user: User) -> None:
        self.user_id = user.unique_id


ENTITIES: dict[str, type[ManagedObject]] = {cls.entity_name: cls for cls in (User, Song)}


def entity_for_name(name: str) -> type[ManagedObject]:
    try:
        return ENTITIES[name]
    except KeyError:
        msg = f"Unknown entity: {name}"
        raise ValueError(msg) from None
