# src/daproof/storage/sqlite_db.py
from __future__ import annotations

import json
import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from daproof.clients.chain import Block
from daproof.models.result import VerificationResult

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _canon_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _env_int(name: str, default: int) -> int:
    raw = str(os.environ.get(name, "")).strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


class SqliteDB:
    """SQLite manager for the verifier's local state.

    One connection per operation; never shared across threads. SQLite allows
    a single writer, so BEGIN IMMEDIATE is retried with jittered backoff up to
    a deadline (DAPROOF_SQLITE_WRITE_DEADLINE_MS).
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str) -> None:
        self.path = str(path)

    def ensure_parent_dir(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        self.ensure_parent_dir()
        connect_timeout_s = float(_env_int("DAPROOF_SQLITE_CONNECT_TIMEOUT_MS", 30_000)) / 1000.0

        con = sqlite3.connect(
            self.path,
            timeout=connect_timeout_s,
            isolation_level=None,  # BEGIN/COMMIT managed here
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row

        con.execute("PRAGMA journal_mode=WAL;")
        con.execute("PRAGMA synchronous=NORMAL;")
        con.execute("PRAGMA temp_store=MEMORY;")
        busy_ms = max(0, _env_int("DAPROOF_SQLITE_BUSY_TIMEOUT_MS", int(connect_timeout_s * 1000)))
        con.execute(f"PRAGMA busy_timeout={busy_ms};")
        return con

    def init_schema(self) -> None:
        with self.write_tx() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS verification_results (
                  submission_id TEXT PRIMARY KEY,
                  outcome TEXT NOT NULL,
                  reason TEXT,
                  checked_ms INTEGER NOT NULL,
                  result_json TEXT NOT NULL
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_results_outcome ON verification_results(outcome);")
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS blocks (
                  number INTEGER PRIMARY KEY,
                  timestamp INTEGER NOT NULL
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS cursor (
                  name TEXT PRIMARY KEY,
                  value TEXT,
                  updated_ms INTEGER NOT NULL
                );
                """
            )

            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
            else:
                try:
                    v = int(str(row["value"]))
                except ValueError:
                    v = 0
                if v != self.SCHEMA_VERSION:
                    raise RuntimeError(
                        f"sqlite schema_version mismatch: have={v} want={self.SCHEMA_VERSION}. "
                        "Refuse to start to avoid corrupting data."
                    )

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return ("database is locked" in msg) or ("database is busy" in msg)

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Write transaction with bounded retry on writer-lock contention."""
        deadline_ms = max(250, _env_int("DAPROOF_SQLITE_WRITE_DEADLINE_MS", 30_000))
        deadline_ts = _now_ms() + deadline_ms
        base_sleep = 0.005
        max_sleep = 0.25

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                        raise
                    sleep_s = min(max_sleep, base_sleep * (2.0 ** min(attempt, 8)))
                    time.sleep(sleep_s * (0.5 + random.random()))
                    attempt += 1

            try:
                yield con
                con.execute("COMMIT;")
            except BaseException:
                con.execute("ROLLBACK;")
                raise


class VerificationStore:
    """Terminal results, block header cache and the watcher cursor.

    Only terminal results (VALID/INVALID) are stored; a stored result is never
    overwritten with a different outcome.
    """

    def __init__(self, *, db: SqliteDB) -> None:
        self._db = db
        self._db.init_schema()

    # ---- results ----

    def get_result(self, submission_id: str) -> Optional[VerificationResult]:
        with self._db.connection() as con:
            row = con.execute(
                "SELECT result_json FROM verification_results WHERE submission_id=? LIMIT 1;",
                (str(submission_id),),
            ).fetchone()
        if row is None:
            return None
        return VerificationResult.from_json(json.loads(str(row["result_json"])))

    def put_result(self, result: VerificationResult) -> bool:
        """Insert a terminal result. Returns False if one was already stored."""
        if not result.is_terminal:
            raise ValueError(f"only terminal results are stored, got {result.outcome.value}")
        with self._db.write_tx() as con:
            cur = con.execute(
                """
                INSERT OR IGNORE INTO verification_results(submission_id, outcome, reason, checked_ms, result_json)
                VALUES(?, ?, ?, ?, ?);
                """,
                (
                    result.submission_id,
                    result.outcome.value,
                    result.reason.value if result.reason is not None else None,
                    int(result.checked_ms),
                    _canon_json(result.to_json()),
                ),
            )
            return int(cur.rowcount or 0) > 0

    def count_results(self) -> Dict[str, int]:
        with self._db.connection() as con:
            rows = con.execute("SELECT outcome, COUNT(*) AS n FROM verification_results GROUP BY outcome;").fetchall()
        return {str(r["outcome"]): int(r["n"]) for r in rows}

    # ---- blocks ----

    def get_block(self, number: int) -> Optional[Block]:
        with self._db.connection() as con:
            row = con.execute("SELECT number, timestamp FROM blocks WHERE number=? LIMIT 1;", (int(number),)).fetchone()
        if row is None:
            return None
        return Block(number=int(row["number"]), timestamp=int(row["timestamp"]))

    def put_block(self, block: Block) -> None:
        with self._db.write_tx() as con:
            con.execute(
                "INSERT OR IGNORE INTO blocks(number, timestamp) VALUES(?, ?);",
                (int(block.number), int(block.timestamp)),
            )

    # ---- cursor ----

    def get_cursor(self, name: str = "watcher") -> Optional[str]:
        with self._db.connection() as con:
            row = con.execute("SELECT value FROM cursor WHERE name=? LIMIT 1;", (str(name),)).fetchone()
        if row is None or row["value"] is None:
            return None
        return str(row["value"])

    def set_cursor(self, value: Optional[str], name: str = "watcher") -> None:
        with self._db.write_tx() as con:
            con.execute(
                """
                INSERT INTO cursor(name, value, updated_ms) VALUES(?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET value=excluded.value, updated_ms=excluded.updated_ms;
                """,
                (str(name), value, _now_ms()),
            )
