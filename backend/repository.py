"""Transactional persistence consumed by the ATD engine and the lab tracker.

A repository runs a function against a unit of work and commits every write
made through it as one bundle, or none of them. ``SqlRepository`` gets that
from the database session; ``InMemoryRepository`` stages writes and publishes
them under a lock. A repository that writes through immediately (``atomic``
is False) is wrapped in a ``CompensatingUnitOfWork`` by ``run_atomically``,
which restores every touched record on failure.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Optional, Protocol, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import SQLModel, Session, select

from errors import ConflictError, InternalError, WardflowError

T = TypeVar("T")
M = TypeVar("M", bound=SQLModel)

logger = logging.getLogger("wardflow.repository")


class UnitOfWork(Protocol):
    def get(self, model: type[M], entity_id: Optional[int]) -> Optional[M]: ...

    def put(self, entity: M) -> M: ...

    def delete(self, entity: SQLModel) -> None: ...

    def query(
        self,
        model: type[M],
        *,
        after_id: Optional[int] = None,
        limit: Optional[int] = None,
        order_by: str = "id",
        **filters: Any,
    ) -> list[M]: ...


class Repository(Protocol):
    atomic: bool

    def transaction(self, fn: Callable[[UnitOfWork], T]) -> T: ...


def _clone(entity: M) -> M:
    return type(entity)(**copy.deepcopy(entity.model_dump()))


# --- SQL ---


class SqlUnitOfWork:
    def __init__(self, session: Session):
        self.session = session

    def get(self, model, entity_id):
        if entity_id is None:
            return None
        return self.session.get(model, entity_id)

    def put(self, entity):
        self.session.add(entity)
        self.session.flush()
        return entity

    def delete(self, entity):
        current = self.session.get(type(entity), entity.id)
        if current is not None:
            self.session.delete(current)
            self.session.flush()

    def query(self, model, *, after_id=None, limit=None, order_by="id", **filters):
        stmt = select(model)
        for field, value in filters.items():
            stmt = stmt.where(getattr(model, field) == value)
        if after_id is not None:
            stmt = stmt.where(model.id > after_id)
        stmt = stmt.order_by(getattr(model, order_by), model.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.exec(stmt).all())


class SqlRepository:
    atomic = True

    def __init__(self, engine):
        self.engine = engine

    def transaction(self, fn):
        with Session(self.engine, expire_on_commit=False) as session:
            try:
                result = fn(SqlUnitOfWork(session))
                session.commit()
            except WardflowError:
                session.rollback()
                raise
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("Write conflicts with a concurrent change") from exc
            except SQLAlchemyError as exc:
                session.rollback()
                logger.error("Storage failure: %s", exc)
                raise InternalError("Storage unavailable") from exc
            except Exception:
                session.rollback()
                raise
            return result


# --- In-memory ---


class _MemoryUnitOfWork:
    def __init__(self, repo: "InMemoryRepository", staged: bool):
        self._repo = repo
        self._staged = staged
        self._writes: dict[tuple[type, int], SQLModel] = {}
        self._deletes: set[tuple[type, int]] = set()

    def get(self, model, entity_id):
        if entity_id is None:
            return None
        key = (model, entity_id)
        if key in self._deletes:
            return None
        if key in self._writes:
            return _clone(self._writes[key])
        return self._repo._read(model, entity_id)

    def put(self, entity):
        model = type(entity)
        if entity.id is None:
            entity.id = self._repo._allocate_id(model)
        if self._staged:
            key = (model, entity.id)
            self._deletes.discard(key)
            self._writes[key] = _clone(entity)
        else:
            self._repo._write(entity)
        return entity

    def delete(self, entity):
        key = (type(entity), entity.id)
        if self._staged:
            self._writes.pop(key, None)
            self._deletes.add(key)
        else:
            self._repo._remove(*key)

    def query(self, model, *, after_id=None, limit=None, order_by="id", **filters):
        rows = {entity.id: entity for entity in self._repo._scan(model)}
        for (staged_model, entity_id), entity in self._writes.items():
            if staged_model is model:
                rows[entity_id] = _clone(entity)
        for staged_model, entity_id in self._deletes:
            if staged_model is model:
                rows.pop(entity_id, None)

        matched = [
            entity
            for entity in rows.values()
            if (after_id is None or entity.id > after_id)
            and all(getattr(entity, field) == value for field, value in filters.items())
        ]
        matched.sort(key=lambda entity: (getattr(entity, order_by), entity.id))
        if limit is not None:
            return matched[:limit]
        return matched

    def publish(self):
        self._repo._publish(self._writes, self._deletes)


class InMemoryRepository:
    """Dict-backed store. With ``atomic=False`` writes land immediately."""

    def __init__(self, atomic: bool = True):
        self.atomic = atomic
        self._tables: dict[type, dict[int, SQLModel]] = {}
        self._next_ids: dict[type, int] = {}
        self._lock = threading.RLock()

    def transaction(self, fn):
        uow = _MemoryUnitOfWork(self, staged=self.atomic)
        result = fn(uow)
        if self.atomic:
            uow.publish()
        return result

    def _allocate_id(self, model) -> int:
        with self._lock:
            next_id = self._next_ids.get(model, 1)
            self._next_ids[model] = next_id + 1
            return next_id

    def _read(self, model, entity_id):
        with self._lock:
            entity = self._tables.get(model, {}).get(entity_id)
            return _clone(entity) if entity is not None else None

    def _scan(self, model) -> list[SQLModel]:
        with self._lock:
            return [_clone(entity) for entity in self._tables.get(model, {}).values()]

    def _write(self, entity):
        with self._lock:
            self._tables.setdefault(type(entity), {})[entity.id] = _clone(entity)

    def _remove(self, model, entity_id):
        with self._lock:
            self._tables.get(model, {}).pop(entity_id, None)

    def _publish(self, writes, deletes):
        with self._lock:
            for (model, entity_id), entity in writes.items():
                self._tables.setdefault(model, {})[entity_id] = entity
            for model, entity_id in deletes:
                self._tables.get(model, {}).pop(entity_id, None)


# --- Compensation ---


class CompensatingUnitOfWork:
    """Records the before-image of each touched record so a failed operation can be undone."""

    def __init__(self, inner: UnitOfWork):
        self._inner = inner
        self._undo: list[tuple[type, int, Optional[SQLModel]]] = []
        self._touched: set[tuple[type, int]] = set()

    def get(self, model, entity_id):
        return self._inner.get(model, entity_id)

    def query(self, model, **kwargs):
        return self._inner.query(model, **kwargs)

    def _remember(self, model, entity_id, before):
        key = (model, entity_id)
        if key not in self._touched:
            self._touched.add(key)
            self._undo.append((model, entity_id, before))

    def put(self, entity):
        model = type(entity)
        before = self._inner.get(model, entity.id) if entity.id is not None else None
        stored = self._inner.put(entity)
        self._remember(model, stored.id, before)
        return stored

    def delete(self, entity):
        before = self._inner.get(type(entity), entity.id)
        self._inner.delete(entity)
        self._remember(type(entity), entity.id, before)

    def rollback(self):
        for model, entity_id, before in reversed(self._undo):
            if before is None:
                current = self._inner.get(model, entity_id)
                if current is not None:
                    self._inner.delete(current)
            else:
                self._inner.put(before)
        self._undo.clear()
        self._touched.clear()


def run_atomically(repository: Repository, fn: Callable[[UnitOfWork], T]) -> T:
    """Run ``fn`` as one unit of work, compensating by hand if the store cannot roll back."""
    if repository.atomic:
        return repository.transaction(fn)

    def _compensated(uow: UnitOfWork) -> T:
        scope = CompensatingUnitOfWork(uow)
        try:
            return fn(scope)
        except Exception:
            logger.warning("Operation failed; restoring %d touched record(s)", len(scope._undo))
            scope.rollback()
            raise

    return repository.transaction(_compensated)
