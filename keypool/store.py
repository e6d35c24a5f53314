"""Durable storage for the pool document.

Backends are synchronous and run on a worker thread; :class:`StateStore`
adds serialisation, bounded retries and the async surface, and
:class:`DebouncedWriter` coalesces hot-path mutations into one write.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Optional

from .errors import PersistenceError
from .models import now_iso

LOG = logging.getLogger("keypool.store")


def encode_state(data: dict[str, Any]) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


class StateBackend(ABC):
    """Read and atomically replace one JSON document."""

    @abstractmethod
    def read(self) -> Optional[dict[str, Any]]:
        """Return the stored document, or ``None`` when nothing is stored."""

    @abstractmethod
    def write(self, data: dict[str, Any]) -> None:
        """Replace the stored document; must leave the old one intact on failure."""

    def close(self) -> None:
        pass


# ── JSON file backend ─────────────────────────────────────────────────────────


class JsonFileBackend(StateBackend):
    """Single JSON file updated via temp file, verify, backup, rename."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)
        self.tmp_path = self.path.with_name(self.path.name + ".tmp")
        self.bak_path = self.path.with_name(self.path.name + ".bak")

    def read(self) -> Optional[dict[str, Any]]:
        if not self.path.exists():
            if self.bak_path.exists():
                LOG.warning("State file %s missing, restoring from backup", self.path)
                return self._read_file(self.bak_path)
            return None
        try:
            return self._read_file(self.path)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            if not self.bak_path.exists():
                raise PersistenceError(f"state file {self.path} is corrupt: {exc}") from exc
            LOG.warning("State file %s is corrupt (%s), using backup", self.path, exc)
            return self._read_file(self.bak_path)

    @staticmethod
    def _read_file(path: Path) -> dict[str, Any]:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise PersistenceError(f"state file {path} does not hold an object")
        return data

    def write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        text = encode_state(data)
        self.tmp_path.write_text(text, encoding="utf-8")
        if self.tmp_path.read_text(encoding="utf-8") != text:
            self.tmp_path.unlink(missing_ok=True)
            raise OSError(f"verification of {self.tmp_path} failed")
        if self.path.exists():
            shutil.copyfile(self.path, self.bak_path)
        os.replace(self.tmp_path, self.path)


# ── SQLite backend ────────────────────────────────────────────────────────────


class SQLiteBackend(StateBackend):
    """Pool document stored in SQLite.

    The previous document is copied to the ``backup`` row and the new one is
    read back before the transaction commits.
    """

    def __init__(self, db_path: str | os.PathLike[str]) -> None:
        p = Path(db_path)
        p.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(p, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock:
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA synchronous = NORMAL")
            self._conn.execute("PRAGMA busy_timeout = 5000")
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS pool_state (
                    name       TEXT PRIMARY KEY,
                    value      TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    def _get(self, name: str) -> Optional[str]:
        r = self._conn.execute(
            "SELECT value FROM pool_state WHERE name=?", (name,)
        ).fetchone()
        return str(r["value"]) if r else None

    def read(self) -> Optional[dict[str, Any]]:
        with self._lock:
            raw = self._get("current")
            backup = self._get("backup")
        for label, value in (("current", raw), ("backup", backup)):
            if value is None:
                continue
            try:
                return json.loads(value)
            except json.JSONDecodeError as exc:
                LOG.warning("SQLite %s document is corrupt: %s", label, exc)
        if raw is not None:
            raise PersistenceError("stored pool document is corrupt")
        return None

    def write(self, data: dict[str, Any]) -> None:
        text = encode_state(data)
        ts = now_iso()
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO pool_state(name,value,updated_at) "
                    "SELECT 'backup', value, ? FROM pool_state WHERE name='current' "
                    "ON CONFLICT(name) DO UPDATE "
                    "SET value=excluded.value, updated_at=excluded.updated_at",
                    (ts,),
                )
                self._conn.execute(
                    "INSERT INTO pool_state(name,value,updated_at) VALUES('current',?,?) "
                    "ON CONFLICT(name) DO UPDATE "
                    "SET value=excluded.value, updated_at=excluded.updated_at",
                    (text, ts),
                )
                if self._get("current") != text:
                    raise sqlite3.DatabaseError("verification of written document failed")
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.execute("PRAGMA optimize")
            except sqlite3.Error:
                pass
            self._conn.close()


def make_backend(kind: str, path: str) -> StateBackend:
    if kind == "sqlite":
        return SQLiteBackend(path)
    return JsonFileBackend(path)


# ── Async store ───────────────────────────────────────────────────────────────


class StateStore:
    """Async facade with serialised writes and bounded retries."""

    def __init__(
        self,
        backend: StateBackend,
        max_retries: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        self.backend = backend
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self._lock = asyncio.Lock()
        self.writes = 0

    async def load(self) -> Optional[dict[str, Any]]:
        return await asyncio.to_thread(self.backend.read)

    async def save(self, data: dict[str, Any]) -> None:
        async with self._lock:
            last_exc: Optional[BaseException] = None
            for attempt in range(1, self.max_retries + 1):
                try:
                    await asyncio.to_thread(self.backend.write, data)
                    self.writes += 1
                    return
                except (OSError, sqlite3.Error, TypeError, ValueError) as exc:
                    last_exc = exc
                    LOG.error(
                        "State write failed (attempt %d/%d): %s",
                        attempt, self.max_retries, exc,
                    )
                    if attempt < self.max_retries:
                        await asyncio.sleep(self.retry_delay)
            raise PersistenceError(
                f"failed to persist pool state after {self.max_retries} attempts: {last_exc}"
            ) from last_exc

    def close(self) -> None:
        self.backend.close()


class DebouncedWriter:
    """Coalesce many mutations into one write of the latest snapshot.

    ``schedule`` arms a single timer per window; it does not push the timer
    back, so a steady stream of mutations still reaches disk every ``delay``
    seconds. Outside an event loop it only marks the state dirty and the next
    ``write_now``/``flush`` picks it up.
    """

    def __init__(
        self,
        store: StateStore,
        snapshot: Callable[[], dict[str, Any]],
        delay: float = 1.0,
    ) -> None:
        self._store = store
        self._snapshot = snapshot
        self._delay = delay
        self._dirty = False
        self._handle: Optional[asyncio.TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self.last_error: Optional[PersistenceError] = None

    @property
    def dirty(self) -> bool:
        return self._dirty

    def schedule(self) -> None:
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._loop is not loop:
            # Timer from a loop that has since closed.
            self._loop = loop
            self._handle = None
        if self._handle is None:
            self._handle = loop.call_later(self._delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self._task = asyncio.ensure_future(self._background_flush())

    async def _background_flush(self) -> None:
        try:
            await self.flush()
        except PersistenceError as exc:
            self.last_error = exc
            LOG.error("Debounced state write failed: %s", exc)

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def flush(self) -> None:
        """Write pending changes now, if there are any."""
        self._cancel_timer()
        if not self._dirty:
            return
        self._dirty = False
        try:
            await self._store.save(self._snapshot())
        except PersistenceError:
            self._dirty = True
            raise
        self.last_error = None

    async def write_now(self) -> None:
        """Write through immediately; used for critical state changes."""
        self._dirty = True
        await self.flush()

    async def close(self) -> None:
        self._cancel_timer()
        task = self._task
        if task is not None and not task.done():
            await task
        await self.flush()
