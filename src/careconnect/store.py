"""Record store contract and the in-memory implementation.

The workflow only needs create, read, update-by-id and equality filtering over
its four record types, plus ``atomic()``: a block in which every write
succeeds together or none of them is observable afterwards.
"""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from enum import Enum
from typing import Any, ContextManager, Dict, Iterator, List, Optional, Tuple, Type, TypeVar

from .exceptions import DuplicateRecordError, NotFoundError
from .models import RECORD_TYPES

R = TypeVar("R")


class RecordStore(ABC):
    """Generic persistence used by :class:`~careconnect.service.CareConnect`."""

    @abstractmethod
    def create(self, record: R) -> R:
        """Persist a new record, raising :class:`DuplicateRecordError` on id clashes."""

    @abstractmethod
    def get(self, kind: Type[R], record_id: str) -> R:
        """Return a copy of the record, raising :class:`NotFoundError` when absent."""

    @abstractmethod
    def update(self, record: R) -> R:
        """Replace the stored record that shares ``record.id``."""

    @abstractmethod
    def filter(self, kind: Type[R], **criteria: Any) -> List[R]:
        """Return copies of every record whose attributes equal ``criteria``."""

    @abstractmethod
    def atomic(self) -> ContextManager[None]:
        """Group operations so they apply together or not at all."""


def _matches(record: Any, criteria: Dict[str, Any]) -> bool:
    for key, expected in criteria.items():
        value = getattr(record, key)
        if isinstance(expected, Enum):
            expected = expected.value
        if isinstance(value, Enum):
            value = value.value
        if value != expected:
            return False
    return True


class InMemoryRecordStore(RecordStore):
    """Dictionary backed store guarded by a re-entrant lock.

    Records are copied on the way in and out, so callers can only change stored
    state through :meth:`create` and :meth:`update`. Inside :meth:`atomic` every
    write remembers the entry it replaced; when the outermost block raises, those
    entries are put back in reverse order.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tables: Dict[type, Dict[str, Any]] = {kind: {} for kind in RECORD_TYPES}
        self._undo: Optional[List[Tuple[Dict[str, Any], str, Any]]] = None

    def _table(self, kind: type) -> Dict[str, Any]:
        try:
            return self._tables[kind]
        except KeyError as exc:
            raise TypeError(f"Unsupported record type: {kind!r}") from exc

    def _write(self, table: Dict[str, Any], record_id: str, record: Any) -> None:
        if self._undo is not None:
            self._undo.append((table, record_id, table.get(record_id)))
        table[record_id] = copy.deepcopy(record)

    def create(self, record: R) -> R:
        with self._lock:
            table = self._table(type(record))
            record_id = getattr(record, "id")
            if record_id in table:
                raise DuplicateRecordError(f"{type(record).__name__} '{record_id}' already exists.")
            self._write(table, record_id, record)
            return copy.deepcopy(record)

    def get(self, kind: Type[R], record_id: str) -> R:
        with self._lock:
            try:
                return copy.deepcopy(self._table(kind)[record_id])
            except KeyError as exc:
                raise NotFoundError(f"{kind.__name__} '{record_id}' does not exist.") from exc

    def update(self, record: R) -> R:
        with self._lock:
            table = self._table(type(record))
            record_id = getattr(record, "id")
            if record_id not in table:
                raise NotFoundError(f"{type(record).__name__} '{record_id}' does not exist.")
            self._write(table, record_id, record)
            return copy.deepcopy(record)

    def filter(self, kind: Type[R], **criteria: Any) -> List[R]:
        with self._lock:
            return [
                copy.deepcopy(record)
                for record in self._table(kind).values()
                if _matches(record, criteria)
            ]

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._lock:
            if self._undo is not None:
                yield
                return
            self._undo = []
            try:
                yield
            except BaseException:
                # stored entries are never mutated in place, so the old objects are intact
                for table, record_id, previous in reversed(self._undo):
                    if previous is None:
                        del table[record_id]
                    else:
                        table[record_id] = previous
                raise
            finally:
                self._undo = None


__all__ = ["InMemoryRecordStore", "RecordStore"]
