from __future__ import annotations

import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable


logger = logging.getLogger("dro")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class RunRow:
    id: int
    kind: str  # deploy|rollback
    image: str | None
    state: str
    snapshot_id: str | None
    warnings: str  # JSON list
    error: str | None
    started_at: str
    finished_at: str | None

    @property
    def warning_list(self) -> list[str]:
        return json.loads(self.warnings or "[]")


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


class Journal:
    """SQLite-backed event log and run history for one deployment directory.

    The newest run row is the persisted state marker: a run that ended in
    ``Failed`` tells the next invocation that a rollback may be due.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = self._resolve(db_path)
        self.init_db()

    @staticmethod
    def _resolve(db_path: str) -> str:
        # A bind-mounted path that did not exist may have been created as a directory.
        p = os.path.abspath(db_path)
        if os.path.isdir(p):
            p = os.path.join(p, "dro.db")
        parent = os.path.dirname(p)
        if parent and not os.path.exists(parent):
            os.makedirs(parent, exist_ok=True)
        return p

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS runs (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  kind TEXT NOT NULL,
                  image TEXT,
                  state TEXT NOT NULL,
                  snapshot_id TEXT,
                  warnings TEXT NOT NULL DEFAULT '[]',
                  error TEXT,
                  started_at TEXT NOT NULL,
                  finished_at TEXT
                );

                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  run_id INTEGER,
                  stage TEXT,
                  image TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                CREATE INDEX IF NOT EXISTS idx_events_run_id ON events(run_id);
                """
            )

    def log_event(
        self,
        level: str,
        message: str,
        run_id: int | None = None,
        stage: str | None = None,
        image: str | None = None,
    ) -> None:
        level = level.upper()
        logger.log(_LEVELS.get(level, logging.INFO), message)
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, run_id, stage, image, message) VALUES (?, ?, ?, ?, ?, ?)",
                (utc_now(), level, run_id, stage, image, message),
            )

    def start_run(self, kind: str, image: str | None, state: str) -> RunRow:
        with self.connect() as conn:
            cur = conn.execute(
                "INSERT INTO runs (kind, image, state, started_at) VALUES (?, ?, ?, ?)",
                (kind, image, state, utc_now()),
            )
            row = conn.execute("SELECT * FROM runs WHERE id=?", (cur.lastrowid,)).fetchone()
            return RunRow(**dict(row))

    def set_run_state(self, run_id: int, state: str) -> None:
        with self.connect() as conn:
            conn.execute("UPDATE runs SET state=? WHERE id=?", (state, run_id))

    def set_run_snapshot(self, run_id: int, snapshot_id: str) -> None:
        with self.connect() as conn:
            conn.execute("UPDATE runs SET snapshot_id=? WHERE id=?", (snapshot_id, run_id))

    def finish_run(self, run_id: int, state: str, warnings: list[str], error: str | None = None) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                UPDATE runs
                SET state=?, warnings=?, error=?, finished_at=?
                WHERE id=?
                """,
                (state, json.dumps(warnings), error, utc_now(), run_id),
            )

    def get_run(self, run_id: int) -> RunRow | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM runs WHERE id=?", (run_id,)).fetchone()
            return RunRow(**dict(row)) if row else None

    def latest_run(self) -> RunRow | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM runs ORDER BY id DESC LIMIT 1").fetchone()
            return RunRow(**dict(row)) if row else None

    def list_runs(self, limit: int = 20) -> list[RunRow]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM runs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return _rows_to_dataclass(rows, RunRow)

    def latest_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self.connect() as conn:
            if run_id is None:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events WHERE run_id=? ORDER BY id DESC LIMIT ?", (run_id, limit)
                ).fetchall()
            return [dict(r) for r in rows]
