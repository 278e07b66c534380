"""Injected keyed stores for shared runtime state.

The health cache, push/poll mode table and alert cooldowns live behind the
``KeyValueStore`` protocol. ``MemoryStore`` keeps them per process;
``SqliteStore`` shares them between processes through the ``kv_store``
table so scheduler decisions stay consistent across instances.
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from cachetools import TTLCache

from replyguard.config import Config

DEFAULT_MAXSIZE = 10_000


@runtime_checkable
class KeyValueStore(Protocol):
    """Protocol for namespaced key/value state with an optional per-store TTL."""

    def get(self, key: str) -> Any | None:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def items(self) -> list[tuple[str, Any]]:
        ...


class MemoryStore:
    """Thread-safe in-process store; entries expire after ``ttl`` seconds when set."""

    def __init__(self, ttl: float | None = None, maxsize: int = DEFAULT_MAXSIZE):
        self.ttl = ttl
        self._data: dict[str, Any] | TTLCache = (
            TTLCache(maxsize=maxsize, ttl=ttl) if ttl else {}
        )
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def items(self) -> list[tuple[str, Any]]:
        with self._lock:
            if isinstance(self._data, TTLCache):
                self._data.expire()
            return list(self._data.items())

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class SqliteStore:
    """Store backed by the kv_store table; opens a short-lived connection per call."""

    def __init__(self, db_path: str, namespace: str, ttl: float | None = None):
        self.db_path = db_path
        self.namespace = namespace
        self.ttl = ttl

    def _connect(self):
        from replyguard.database import get_db

        return get_db(db_path=self.db_path)

    def get(self, key: str) -> Any | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT value, expires_at FROM kv_store WHERE namespace = ? AND key = ?",
                (self.namespace, key),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        if row["expires_at"] is not None and row["expires_at"] <= time.time():
            return None
        return json.loads(row["value"])

    def set(self, key: str, value: Any) -> None:
        expires_at = time.time() + self.ttl if self.ttl else None
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """INSERT INTO kv_store (namespace, key, value, expires_at)
                       VALUES (?, ?, ?, ?)
                       ON CONFLICT(namespace, key) DO UPDATE SET
                           value = excluded.value,
                           expires_at = excluded.expires_at""",
                    (self.namespace, key, json.dumps(value), expires_at),
                )
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "DELETE FROM kv_store WHERE namespace = ? AND key = ?",
                    (self.namespace, key),
                )
        finally:
            conn.close()

    def items(self) -> list[tuple[str, Any]]:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "DELETE FROM kv_store WHERE namespace = ? AND expires_at IS NOT NULL AND expires_at <= ?",
                    (self.namespace, time.time()),
                )
            rows = conn.execute(
                "SELECT key, value FROM kv_store WHERE namespace = ? ORDER BY key",
                (self.namespace,),
            ).fetchall()
        finally:
            conn.close()
        return [(row["key"], json.loads(row["value"])) for row in rows]


@dataclass
class StateStores:
    health_cache: KeyValueStore
    push_modes: KeyValueStore
    alert_cooldowns: KeyValueStore


def build_state_stores(config: Config) -> StateStores:
    """Create the shared state stores for the configured backend."""
    health_ttl = config.health.cache_ttl_seconds
    cooldown_ttl = config.alerts.cooldown_hours * 3600

    if config.state.backend == "memory":
        return StateStores(
            health_cache=MemoryStore(ttl=health_ttl),
            push_modes=MemoryStore(),
            alert_cooldowns=MemoryStore(ttl=cooldown_ttl),
        )
    if config.state.backend == "sqlite":
        path = config.storage.sqlite_path
        return StateStores(
            health_cache=SqliteStore(path, "health_cache", ttl=health_ttl),
            push_modes=SqliteStore(path, "push_modes"),
            alert_cooldowns=SqliteStore(path, "alert_cooldowns", ttl=cooldown_ttl),
        )
    raise ValueError(f"Unknown state backend: {config.state.backend!r}. Use 'memory' or 'sqlite'.")
