"""Key-value stores backing the alert history."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

import redis
from sqlalchemy import DateTime, String, Text, create_engine
from sqlalchemy.orm import Mapped, Session, declarative_base, mapped_column, sessionmaker

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PersistentStore(Protocol):
    """Durable surface holding one serialized value per key."""

    def get(self, key: str) -> str | None:  # pragma: no cover - typing hook
        ...

    def set(self, key: str, value: str) -> bool:  # pragma: no cover - typing hook
        ...


class InMemoryKeyValueStore:
    """Process-local store; survives engine restarts but not the process."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> bool:
        self._values[key] = value
        return True


class RedisKeyValueStore:
    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> str | None:
        value = self._client.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set(self, key: str, value: str) -> bool:
        return bool(self._client.set(key, value))


class KeyValueEntry(Base):
    __tablename__ = "gap_alert_kv"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class SqlKeyValueStore:
    """Store values in a single table through SQLAlchemy."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, url: str) -> "SqlKeyValueStore":
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        engine = create_engine(url, connect_args=connect_args, future=True)
        Base.metadata.create_all(bind=engine)
        return cls(sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True))

    def get(self, key: str) -> str | None:
        session = self._session_factory()
        try:
            entry = session.get(KeyValueEntry, key)
            return entry.value if entry is not None else None
        finally:
            session.close()

    def set(self, key: str, value: str) -> bool:
        session = self._session_factory()
        try:
            entry = session.get(KeyValueEntry, key)
            if entry is None:
                session.add(KeyValueEntry(key=key, value=value))
            else:
                entry.value = value
            session.commit()
            return True
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def create_store(url: str) -> PersistentStore:
    """Build a store from ``memory://``, ``redis://`` or a SQLAlchemy URL."""

    if url.startswith("memory://"):
        return InMemoryKeyValueStore()
    if url.startswith(("redis://", "rediss://")):
        return RedisKeyValueStore.from_url(url)
    return SqlKeyValueStore.from_url(url)


__all__ = [
    "Base",
    "InMemoryKeyValueStore",
    "KeyValueEntry",
    "PersistentStore",
    "RedisKeyValueStore",
    "SqlKeyValueStore",
    "create_store",
]
