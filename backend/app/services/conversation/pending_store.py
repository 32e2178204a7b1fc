"""Keyed storage for the at-most-one pending operation per user."""

from __future__ import annotations

import abc
import logging
import time
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from threading import Lock
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.finance import PendingOperationRow
from app.services.finance_store import PersistenceError, as_utc

from .state_machine import PendingOperation

logger = logging.getLogger(__name__)


class PendingStore(abc.ABC):
    """Whole-value get/put/clear; an operation is never partially replaced."""

    @abc.abstractmethod
    def get(self, user_id: str) -> Optional[PendingOperation]: ...

    @abc.abstractmethod
    def put(self, user_id: str, operation: PendingOperation) -> None: ...

    @abc.abstractmethod
    def clear(self, user_id: str) -> bool:
        """Drop the user's pending operation. Returns whether one existed."""


class InMemoryPendingStore(PendingStore):
    """Process-local store. Entries expire after *ttl_seconds* when set."""

    def __init__(self, ttl_seconds: Optional[int] = None) -> None:
        self._ttl = ttl_seconds
        self._entries: dict[str, tuple[dict, Optional[float]]] = {}
        self._lock = Lock()

    def get(self, user_id: str) -> Optional[PendingOperation]:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            data, expires_at = entry
            if expires_at is not None and time.monotonic() >= expires_at:
                del self._entries[user_id]
                logger.info("Pending operation for user=%s expired", user_id)
                return None
        return PendingOperation.from_dict(data)

    def put(self, user_id: str, operation: PendingOperation) -> None:
        expires_at = time.monotonic() + self._ttl if self._ttl else None
        with self._lock:
            self._entries[user_id] = (operation.to_dict(), expires_at)

    def clear(self, user_id: str) -> bool:
        with self._lock:
            return self._entries.pop(user_id, None) is not None


class SqlPendingStore(PendingStore):
    """``pending_operations`` table; shared by every instance using the database."""

    def __init__(self, db: Session, ttl_seconds: Optional[int] = None) -> None:
        self._db = db
        self._ttl = ttl_seconds

    def get(self, user_id: str) -> Optional[PendingOperation]:
        row = self._db.get(PendingOperationRow, user_id)
        if row is None:
            return None
        expires_at = as_utc(row.expires_at)
        if expires_at is not None and expires_at <= datetime.now(timezone.utc):
            logger.info("Pending operation for user=%s expired", user_id)
            self.clear(user_id)
            return None
        return PendingOperation.from_dict({"fields": row.fields, "missing_fields": row.missing_fields})

    def put(self, user_id: str, operation: PendingOperation) -> None:
        now = datetime.now(timezone.utc)
        data = operation.to_dict()
        try:
            row = self._db.get(PendingOperationRow, user_id)
            if row is None:
                row = PendingOperationRow(user_id=user_id)
                self._db.add(row)
            row.fields = data["fields"]
            row.missing_fields = data["missing_fields"]
            row.updated_at = now
            row.expires_at = now + timedelta(seconds=self._ttl) if self._ttl else None
            self._db.commit()
        except SQLAlchemyError as exc:
            self._db.rollback()
            raise PersistenceError("could not store the pending operation") from exc

    def clear(self, user_id: str) -> bool:
        try:
            row = self._db.get(PendingOperationRow, user_id)
            if row is None:
                return False
            self._db.delete(row)
            self._db.commit()
            return True
        except SQLAlchemyError as exc:
            self._db.rollback()
            raise PersistenceError("could not clear the pending operation") from exc


@lru_cache
def memory_pending_store() -> InMemoryPendingStore:
    return InMemoryPendingStore(ttl_seconds=get_settings().chat_pending_ttl_seconds)


def build_pending_store(db: Optional[Session]) -> PendingStore:
    settings = get_settings()
    if settings.chat_pending_store == "database" and db is not None:
        return SqlPendingStore(db, ttl_seconds=settings.chat_pending_ttl_seconds)
    return memory_pending_store()
