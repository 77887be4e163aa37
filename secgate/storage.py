"""Baseline store: one committed GateReport per artifact."""

import logging
import sqlite3
import threading
import weakref
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from .errors import BaselineUnavailableError
from .models import GateReport

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path(".secgate/baselines.db")


class BaselineBackend(ABC):
    """Persistence layer holding one serialized report per artifact.

    ``write`` must replace the stored document atomically. Implementations
    raise BaselineUnavailableError when storage cannot be reached.
    """

    @abstractmethod
    def read(self, artifact_id: str) -> Optional[str]:
        pass

    @abstractmethod
    def write(self, artifact_id: str, document: str, overall_passed: bool) -> None:
        pass

    @abstractmethod
    def delete(self, artifact_id: str) -> bool:
        pass

    @abstractmethod
    def keys(self) -> list[str]:
        pass


class InMemoryBaselineBackend(BaselineBackend):
    def __init__(self) -> None:
        self._documents: dict[str, str] = {}

    def read(self, artifact_id: str) -> Optional[str]:
        return self._documents.get(artifact_id)

    def write(self, artifact_id: str, document: str, overall_passed: bool) -> None:
        self._documents[artifact_id] = document

    def delete(self, artifact_id: str) -> bool:
        return self._documents.pop(artifact_id, None) is not None

    def keys(self) -> list[str]:
        return sorted(self._documents)


class SQLiteBaselineBackend(BaselineBackend):
    """SQLite-backed baselines. The schema is created on first use."""

    def __init__(self, db_path: Union[str, Path, None] = None, timeout: float = 5.0) -> None:
        self.db_path = Path(db_path) if db_path is not None else DEFAULT_DB_PATH
        self.timeout = timeout
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        try:
            if not self._schema_ready:
                with self._schema_lock:
                    if not self._schema_ready:
                        self._init_db()
                        self._schema_ready = True
            return sqlite3.connect(str(self.db_path), timeout=self.timeout)
        except (sqlite3.Error, OSError) as e:
            raise BaselineUnavailableError(f"Cannot open baseline database {self.db_path}: {e}") from e

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS baselines (
                    artifact_id TEXT PRIMARY KEY,
                    report TEXT NOT NULL,
                    overall_passed INTEGER NOT NULL,
                    committed_at TEXT NOT NULL
                )
            """)
            conn.commit()
        finally:
            conn.close()

    def read(self, artifact_id: str) -> Optional[str]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT report FROM baselines WHERE artifact_id = ?",
                (artifact_id,),
            ).fetchone()
        except sqlite3.Error as e:
            raise BaselineUnavailableError(f"Cannot read baseline for {artifact_id}: {e}") from e
        finally:
            conn.close()
        return row[0] if row else None

    def write(self, artifact_id: str, document: str, overall_passed: bool) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """INSERT OR REPLACE INTO baselines
                       (artifact_id, report, overall_passed, committed_at)
                       VALUES (?, ?, ?, ?)""",
                    (artifact_id, document, int(overall_passed), datetime.now(timezone.utc).isoformat()),
                )
        except sqlite3.Error as e:
            raise BaselineUnavailableError(f"Cannot write baseline for {artifact_id}: {e}") from e
        finally:
            conn.close()

    def delete(self, artifact_id: str) -> bool:
        conn = self._connect()
        try:
            with conn:
                cursor = conn.execute("DELETE FROM baselines WHERE artifact_id = ?", (artifact_id,))
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise BaselineUnavailableError(f"Cannot delete baseline for {artifact_id}: {e}") from e
        finally:
            conn.close()

    def keys(self) -> list[str]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT artifact_id FROM baselines ORDER BY artifact_id").fetchall()
        except sqlite3.Error as e:
            raise BaselineUnavailableError(f"Cannot list baselines: {e}") from e
        finally:
            conn.close()
        return [row[0] for row in rows]


class BaselineStore:
    """Current baseline per artifact on top of an injected backend.

    Commits for the same artifact are serialized by a per-artifact lock.
    Reads take no lock; backends only ever expose complete documents.
    """

    def __init__(self, backend: Optional[BaselineBackend] = None) -> None:
        self.backend = backend if backend is not None else InMemoryBaselineBackend()
        # Entries vanish once no commit holds the lock
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, artifact_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(artifact_id)
            if lock is None:
                lock = self._locks[artifact_id] = threading.Lock()
            return lock

    def get(self, artifact_id: str) -> Optional[GateReport]:
        document = self.backend.read(artifact_id)
        if document is None:
            return None
        try:
            return GateReport.from_json(document)
        except ValidationError as e:
            raise BaselineUnavailableError(f"Stored baseline for {artifact_id} is corrupt: {e}") from e

    def commit(self, artifact_id: str, report: GateReport) -> None:
        """Make ``report`` the current baseline for ``artifact_id``."""
        if report.artifact_id != artifact_id:
            raise ValueError(
                f"Report for {report.artifact_id!r} cannot be committed as baseline of {artifact_id!r}"
            )
        document = report.to_json()
        with self._lock_for(artifact_id):
            self.backend.write(artifact_id, document, report.overall_passed)
        logger.info("Committed baseline for %s (passed=%s)", artifact_id, report.overall_passed)

    def delete(self, artifact_id: str) -> bool:
        with self._lock_for(artifact_id):
            return self.backend.delete(artifact_id)

    def list_artifacts(self) -> list[str]:
        return self.backend.keys()
