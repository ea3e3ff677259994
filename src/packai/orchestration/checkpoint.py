"""Plan checkpoint persistence.

The engine saves the whole plan after each batch and periodically in the
background, so an interrupted run can be resumed with completed tasks kept.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Protocol

from packai.errors import StatePersistenceError
from packai.models import Plan

logger = logging.getLogger(__name__)

CHECKPOINT_KEY_PREFIX = "plan-"


class StateStore(Protocol):
    """Key/value store for JSON-serializable values."""

    def save(self, key: str, value: Any) -> None: ...

    def load(self, key: str) -> Any | None: ...

    def delete(self, key: str) -> None: ...


class MemoryStateStore:
    """In-process store. Values are copied through JSON like a real backend."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def save(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def load(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class SQLiteStateStore:
    """SQLite-backed store with one row per key."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS packai_state (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
    """

    def __init__(self, db_path: str = "packai-state.db"):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file.
        """
        self.db_path = db_path
        with self._connect() as conn:
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def save(self, key: str, value: Any) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO packai_state (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, json.dumps(value)),
            )

    def load(self, key: str) -> Any | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM packai_state WHERE key = ?", (key,)
            ).fetchone()
        return json.loads(row[0]) if row else None

    def delete(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM packai_state WHERE key = ?", (key,))

    def keys(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key FROM packai_state ORDER BY key").fetchall()
        return [row[0] for row in rows]


class ExecutionStateManager:
    """Saves, loads and clears plan checkpoints in a ``StateStore``."""

    def __init__(
        self,
        store: StateStore,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self._clock = clock
        self._autosave_task: asyncio.Task | None = None

    @staticmethod
    def key_for(plan_id: str) -> str:
        return f"{CHECKPOINT_KEY_PREFIX}{plan_id}"

    def checkpoint(self, plan_id: str, plan: Plan) -> None:
        """Persist the plan with its current task statuses.

        Raises:
            StatePersistenceError: If the store rejects the write.
        """
        payload = {
            "plan_id": plan_id,
            "saved_at": self._clock(),
            "plan": plan.model_dump(mode="json"),
        }
        try:
            self.store.save(self.key_for(plan_id), payload)
        except Exception as e:
            raise StatePersistenceError("save", str(e)) from e
        logger.debug("Checkpointed plan %s", plan_id)

    def load_checkpoint(self, plan_id: str) -> Plan | None:
        try:
            payload = self.store.load(self.key_for(plan_id))
        except Exception as e:
            raise StatePersistenceError("load", str(e)) from e
        if payload is None:
            return None
        return Plan.model_validate(payload["plan"])

    def clear_checkpoint(self, plan_id: str) -> None:
        try:
            self.store.delete(self.key_for(plan_id))
        except Exception as e:
            raise StatePersistenceError("clear", str(e)) from e

    # ------------------------------------------------------------------
    # Autosave
    # ------------------------------------------------------------------

    def start_autosave(
        self,
        plan_id: str,
        get_plan: Callable[[], Plan],
        interval_seconds: float = 30.0,
    ) -> None:
        """Checkpoint ``get_plan()`` every ``interval_seconds`` until stopped.

        Must be called from a running event loop. Restarting replaces any
        previous autosave loop.
        """
        self.cancel_autosave()
        self._autosave_task = asyncio.create_task(
            self._autosave_loop(plan_id, get_plan, interval_seconds)
        )

    async def _autosave_loop(
        self, plan_id: str, get_plan: Callable[[], Plan], interval_seconds: float
    ) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.checkpoint(plan_id, get_plan())
            except StatePersistenceError as e:
                logger.warning("Autosave failed for %s: %s", plan_id, e)

    def cancel_autosave(self) -> asyncio.Task | None:
        """Request the autosave loop to stop without waiting for it."""
        task, self._autosave_task = self._autosave_task, None
        if task is not None:
            task.cancel()
        return task

    async def stop_autosave(self) -> None:
        """Cancel the autosave loop and wait until it has exited."""
        task = self.cancel_autosave()
        if task is not None:
            await asyncio.wait([task])

    @property
    def autosave_running(self) -> bool:
        return self._autosave_task is not None and not self._autosave_task.done()

    def dispose(self) -> None:
        self.cancel_autosave()
