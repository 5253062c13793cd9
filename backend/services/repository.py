from typing import Generic, TypeVar

from backend.errors import StorageError
from backend.models import Entity
from database.db import Conflict, EntityNotFound, EntityStore, Stored
from database.retry import StoreUnavailable

E = TypeVar("E", bound=Entity)


class Repository(Generic[E]):
    """Typed view of one entity kind in the store."""

    def __init__(self, store: EntityStore, kind: str, model: type[E]):
        self.store = store
        self.kind = kind
        self.model = model

    def _load(self, stored: Stored) -> E:
        entity = self.model.model_validate(stored.value)
        entity.tag = stored.tag
        return entity

    def get(self, partition_key: str, row_key: str) -> E | None:
        try:
            return self._load(self.store.get(self.kind, partition_key, row_key))
        except EntityNotFound:
            return None
        except StoreUnavailable as exc:
            raise StorageError(details={"kind": self.kind}) from exc

    def insert(self, partition_key: str, row_key: str, entity: E) -> E:
        try:
            entity.tag = self.store.insert(self.kind, partition_key, row_key, entity.body())
        except StoreUnavailable as exc:
            raise StorageError(details={"kind": self.kind}) from exc
        return entity

    def update(self, partition_key: str, row_key: str, entity: E) -> E:
        """
        Write `entity` only if the stored tag still equals `entity.tag`.

        Raises `database.db.Conflict` or `EntityNotFound` unchanged so callers
        can decide whether a lost race is an error for them.
        """
        if entity.tag is None:
            raise Conflict(f"{self.kind}/{partition_key}/{row_key} has no tag")
        try:
            entity.tag = self.store.conditional_update(
                self.kind, partition_key, row_key, entity.body(), entity.tag
            )
        except StoreUnavailable as exc:
            raise StorageError(details={"kind": self.kind}) from exc
        return entity

    def list_partition(self, partition_key: str) -> list[E]:
        try:
            return [self._load(s) for s in self.store.list_partition(self.kind, partition_key)]
        except StoreUnavailable as exc:
            raise StorageError(details={"kind": self.kind}) from exc
