"""
Keyed repositories for routes and workflow instances.

The engine only talks to the Repository interface. InMemoryRepository is
the default (and what the tests use); SqlRepository persists through
SQLAlchemy.

Both hand out copies: a caller edits its own copy and writes it back with
put(). Passing expected_version turns the write into a compare-and-swap
on the entity's version counter.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, Generic, List, Optional, Type, TypeVar
import threading
import structlog
from pydantic import BaseModel
from sqlalchemy import select, update

from docflow.models.database import Database

logger = structlog.get_logger()

T = TypeVar("T", bound=BaseModel)


class ConcurrentModificationError(Exception):
    """Raised when an entity was modified concurrently"""

    pass


def _stale(entity: BaseModel, expected_version: int, table: str) -> ConcurrentModificationError:
    logger.warning(
        "concurrent_modification_detected",
        table=table,
        entity_id=entity.id,
        expected_version=expected_version,
    )
    return ConcurrentModificationError(
        f"{entity.id} was modified concurrently. "
        f"Expected version {expected_version}, but it has changed. Please retry."
    )


class Repository(ABC, Generic[T]):
    """Minimal storage contract: get, put, list"""

    @abstractmethod
    def get(self, entity_id: str) -> Optional[T]:
        """Return a copy of the entity or None"""

    @abstractmethod
    def put(self, entity: T, expected_version: Optional[int] = None) -> T:
        """
        Insert or replace by id.

        With expected_version, only replace a stored entity still at that
        version; raises ConcurrentModificationError otherwise.
        """

    @abstractmethod
    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        """All entities in insertion order, optionally filtered"""

    def __len__(self) -> int:
        return len(self.list())


class InMemoryRepository(Repository[T]):
    """
    Dict-backed repository. Replacing an existing id keeps its original
    insertion position.
    """

    def __init__(self):
        self._items: Dict[str, T] = {}
        self._lock = threading.Lock()

    def get(self, entity_id: str) -> Optional[T]:
        with self._lock:
            item = self._items.get(entity_id)
        return item.model_copy(deep=True) if item is not None else None

    def put(self, entity: T, expected_version: Optional[int] = None) -> T:
        with self._lock:
            if expected_version is not None:
                current = self._items.get(entity.id)
                if current is None or current.version != expected_version:
                    raise _stale(entity, expected_version, "memory")
            self._items[entity.id] = entity.model_copy(deep=True)
        return entity

    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        with self._lock:
            items = [item.model_copy(deep=True) for item in self._items.values()]
        if predicate is None:
            return items
        return [item for item in items if predicate(item)]

    def __len__(self) -> int:
        return len(self._items)


class SqlRepository(Repository[T]):
    """
    SQLAlchemy-backed repository. Entities are stored as JSON payloads on a
    record class exposing ``values_for(entity)`` and ``apply(entity)``.
    """

    def __init__(self, db: Database, record_cls, model_cls: Type[T]):
        self.db = db
        self.record_cls = record_cls
        self.model_cls = model_cls

    def _to_model(self, record) -> T:
        return self.model_cls.model_validate_json(record.payload)

    def get(self, entity_id: str) -> Optional[T]:
        with self.db.session() as session:
            record = session.get(self.record_cls, entity_id)
            if record is None:
                return None
            return self._to_model(record)

    def put(self, entity: T, expected_version: Optional[int] = None) -> T:
        table = self.record_cls.__tablename__

        with self.db.session() as session:
            if expected_version is None:
                record = session.get(self.record_cls, entity.id)
                if record is None:
                    record = self.record_cls(id=entity.id)
                    session.add(record)
                record.apply(entity)
            else:
                # Only succeeds if no other writer has bumped the version
                result = session.execute(
                    update(self.record_cls)
                    .where(self.record_cls.id == entity.id, self.record_cls.version == expected_version)
                    .values(**self.record_cls.values_for(entity))
                )
                if result.rowcount == 0:
                    raise _stale(entity, expected_version, table)

        logger.debug(
            "entity_persisted",
            table=table,
            entity_id=entity.id,
            version=entity.version,
        )
        return entity

    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        with self.db.session() as session:
            result = session.execute(
                select(self.record_cls).order_by(self.record_cls.inserted_at, self.record_cls.id)
            )
            items = [self._to_model(record) for record in result.scalars().all()]

        if predicate is None:
            return items
        return [item for item in items if predicate(item)]
