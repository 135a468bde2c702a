"""Concrete stores backed by SQLite and local JSON files."""
from __future__ import annotations

import json
import os
import sqlite3
import threading
from pathlib import Path
from typing import List, Optional

from .domain import LearnerState
from .errors import LoadError, NotFoundError
from .index import CorpusIndex
from .models import SessionRecord
from .repositories import HistoryRepository, SnapshotStore


class JsonSnapshotStore(SnapshotStore):
    """Persists the canonical index snapshot to a JSON file on disk."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def save(self, index: CorpusIndex) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        tmp_path.write_bytes(index.snapshot_bytes())
        os.replace(tmp_path, self._path)

    def load(self, category_penalty: float = 0.5) -> CorpusIndex:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise LoadError(f"No corpus snapshot at {self._path}") from exc
        except (OSError, ValueError) as exc:
            raise LoadError(f"Unreadable corpus snapshot {self._path}: {exc}") from exc
        return CorpusIndex.from_snapshot(payload, category_penalty=category_penalty)


class SqliteHistoryRepository(HistoryRepository):
    """Stores finished sessions and learner state in a SQLite database."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._initialise_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _initialise_schema(self) -> None:
        with self._lock:
            cursor = self._conn.cursor()
            cursor.executescript(
                """
                CREATE TABLE IF NOT EXISTS quiz_sessions (
                    session_id TEXT PRIMARY KEY,
                    learner_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS quiz_sessions_learner
                    ON quiz_sessions (learner_id, created_at);

                CREATE TABLE IF NOT EXISTS learner_state (
                    learner_id TEXT PRIMARY KEY,
                    state_json TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    # SessionHistoryRepository -------------------------------------------
    def save_session(self, record: SessionRecord) -> None:
        with self._lock:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                INSERT OR REPLACE INTO quiz_sessions (session_id, learner_id, created_at, payload_json)
                VALUES (?, ?, ?, ?)
                """,
                (
                    record.session_id,
                    record.policy.learner_id,
                    record.created_at.isoformat(),
                    record.model_dump_json(),
                ),
            )
            self._conn.commit()

    def get_session(self, session_id: str) -> SessionRecord:
        with self._lock:
            cursor = self._conn.cursor()
            row = cursor.execute(
                "SELECT payload_json FROM quiz_sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        if not row:
            raise NotFoundError(f"Unknown session id: {session_id}")
        return SessionRecord.model_validate_json(row["payload_json"])

    def list_sessions(self, learner_id: Optional[str] = None) -> List[SessionRecord]:
        with self._lock:
            cursor = self._conn.cursor()
            if learner_id is None:
                rows = cursor.execute(
                    "SELECT payload_json FROM quiz_sessions ORDER BY created_at, session_id"
                ).fetchall()
            else:
                rows = cursor.execute(
                    """
                    SELECT payload_json FROM quiz_sessions
                     WHERE learner_id = ?
                     ORDER BY created_at, session_id
                    """,
                    (learner_id,),
                ).fetchall()
        return [SessionRecord.model_validate_json(row["payload_json"]) for row in rows]

    # LearnerStateRepository ---------------------------------------------
    def get_learner_state(self, learner_id: str) -> LearnerState:
        with self._lock:
            cursor = self._conn.cursor()
            row = cursor.execute(
                "SELECT state_json FROM learner_state WHERE learner_id = ?",
                (learner_id,),
            ).fetchone()
        if not row:
            state = LearnerState()
            self.save_learner_state(learner_id, state)
            return state
        return LearnerState.from_dict(json.loads(row["state_json"]))

    def save_learner_state(self, learner_id: str, state: LearnerState) -> None:
        payload = json.dumps(state.to_dict())
        with self._lock:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                INSERT OR REPLACE INTO learner_state (learner_id, state_json)
                VALUES (?, ?)
                """,
                (learner_id, payload),
            )
            self._conn.commit()


__all__ = ["JsonSnapshotStore", "SqliteHistoryRepository"]
