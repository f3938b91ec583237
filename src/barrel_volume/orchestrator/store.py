from __future__ import annotations

import json
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from ..domain.models import Dataset, dataset_from_json_obj, dataset_to_json_obj
from ..logging import get_logger
from ..paths import find_project_root, var_dir
from .constants import RUN_STATUS_CHOICES, RUN_STATUS_OK, STORAGE_KEY


LOG = get_logger("barreldb-store")


DEFAULT_DB_FOLDER = "barreldb"
DEFAULT_DB_FILENAME = "barrels.sqlite3"

RUN_STATUS_ENUM_SQL = ", ".join(f"'{value}'" for value in RUN_STATUS_CHOICES)


SCHEMA_SQL = f"""
PRAGMA foreign_keys = ON;

-- 1) Saved datasets, one JSON blob per logical key
CREATE TABLE IF NOT EXISTS datasets (
  storage_key  TEXT PRIMARY KEY,
  content      TEXT NOT NULL,         -- JSON array of row objects
  row_count    INTEGER NOT NULL DEFAULT 0,
  updated_at   TEXT DEFAULT (datetime('now'))
);

-- 2) Analysis runs (extract + verify attempts)
CREATE TABLE IF NOT EXISTS analysis_runs (
  run_id         INTEGER PRIMARY KEY,
  filename       TEXT,
  sha256         TEXT,
  model_name     TEXT NOT NULL,
  started_at     TEXT DEFAULT (datetime('now')),
  status         TEXT NOT NULL CHECK (status IN ({RUN_STATUS_ENUM_SQL})) DEFAULT '{RUN_STATUS_OK}',
  failed_stage   TEXT,
  row_count      INTEGER NOT NULL DEFAULT 0,
  notes          TEXT
);

CREATE INDEX IF NOT EXISTS idx_runs_started ON analysis_runs(started_at);
"""


class DatasetStore:
    """SQLite-backed persistence for the barrel dataset.

    - Places the DB under `<repo-root>/var/barreldb/barrels.sqlite3`.
    - Ensures schema on first use.
    - Missing or unreadable data loads as an empty dataset.
    """

    def __init__(self, root_dir: Optional[str] = None, *, storage_key: str = STORAGE_KEY) -> None:
        root = find_project_root(root_dir)
        db_folder = os.path.join(var_dir(root), DEFAULT_DB_FOLDER)
        os.makedirs(db_folder, exist_ok=True)
        self.db_path = os.path.join(db_folder, DEFAULT_DB_FILENAME)
        self.storage_key = storage_key
        LOG.info(f"Barrel DB path: {self.db_path}")
        self._ensure_schema()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self.connect() as conn:
            cur = conn.cursor()
            try:
                cur.execute("PRAGMA journal_mode=WAL;")
            except sqlite3.DatabaseError as exc:
                LOG.debug("WAL mode unavailable: %s", exc)
            cur.executescript(SCHEMA_SQL)
            conn.commit()
            LOG.debug("Barrel DB schema ensured.")

    # ---- dataset blob -----------------------------------------------------------
    def load(self) -> Dataset:
        try:
            with self.connect() as conn:
                row = conn.execute(
                    "SELECT content FROM datasets WHERE storage_key = ?;", (self.storage_key,)
                ).fetchone()
        except sqlite3.Error as exc:
            LOG.error("Error reading saved dataset: %s", exc)
            return []
        if row is None:
            LOG.debug("No saved dataset under key %r", self.storage_key)
            return []
        try:
            data = json.loads(row["content"])
            if not isinstance(data, list):
                raise ValueError("stored dataset is not a list")
            dataset = dataset_from_json_obj(data)
        except (ValueError, TypeError, AttributeError) as exc:
            LOG.warning("Saved dataset is corrupt (%s); starting empty", exc)
            return []
        LOG.info("Loaded dataset with %d rows", len(dataset))
        return dataset

    def save(self, dataset: Dataset) -> bool:
        """Persist the dataset; an empty dataset removes the saved copy."""
        if not dataset:
            return self.clear()
        content = json.dumps(dataset_to_json_obj(dataset), ensure_ascii=False)
        try:
            with self.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO datasets (storage_key, content, row_count, updated_at)
                    VALUES (?, ?, ?, datetime('now'))
                    ON CONFLICT(storage_key) DO UPDATE SET
                        content = excluded.content,
                        row_count = excluded.row_count,
                        updated_at = excluded.updated_at;
                    """,
                    (self.storage_key, content, len(dataset)),
                )
                conn.commit()
        except sqlite3.Error as exc:
            LOG.error("Error writing dataset: %s", exc)
            return False
        LOG.debug("Saved dataset with %d rows", len(dataset))
        return True

    def clear(self) -> bool:
        try:
            with self.connect() as conn:
                conn.execute("DELETE FROM datasets WHERE storage_key = ?;", (self.storage_key,))
                conn.commit()
        except sqlite3.Error as exc:
            LOG.error("Error clearing dataset: %s", exc)
            return False
        LOG.info("Cleared saved dataset %r", self.storage_key)
        return True

    # ---- run history ------------------------------------------------------------
    def record_run(self, run: Dict[str, Any]) -> int:
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO analysis_runs (filename, sha256, model_name, status, failed_stage, row_count, notes)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                RETURNING run_id;
                """,
                (
                    run.get("filename"),
                    run.get("sha256"),
                    run["model_name"],
                    run.get("status") or RUN_STATUS_OK,
                    run.get("failed_stage"),
                    int(run.get("row_count") or 0),
                    run.get("notes"),
                ),
            )
            row = cur.fetchone()
            conn.commit()
            return int(row[0])

    @staticmethod
    def _rows_to_dicts(rows: Sequence[sqlite3.Row]) -> List[Dict[str, Any]]:
        return [dict(r) for r in rows]

    def fetch_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM analysis_runs ORDER BY run_id DESC LIMIT ?;", (int(limit),)
            ).fetchall()
        return self._rows_to_dicts(rows)
