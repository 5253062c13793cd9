import json
import sqlite3
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypedDict

from database.retry import RetryPolicy

CHAIN_STORE_MIGRATION_FILE = Path(__file__).resolve().parent / "migrations" / "001_chain_store.sql"

SESSIONS = "sessions"
TOKENS = "tokens"
CHAINS = "chains"
ATTENDANCE = "attendance"
ENROLLMENTS = "enrollments"

# Every session lives in one partition so the sweep can list them.
SESSION_PARTITION = "SESSION"


class EntityNotFound(Exception):
    pass


class EntityExists(Exception):
    pass


class Conflict(Exception):
    """The stored precondition tag no longer matches the caller's."""


@dataclass(frozen=True)
class Stored:
    partition_key: str
    row_key: str
    value: dict[str, Any]
    tag: str


class ScanLogRow(TypedDict):
    id: int
    session_id: str
    flow: str | None
    token_id: str | None
    chain_id: str | None
    holder_id: str | None
    scanner_id: str | None
    device_fingerprint: str | None
    ip: str | None
    bssid: str | None
    gps: dict[str, Any] | None
    user_agent: str | None
    result: str
    error: str | None
    scanned_at: float


def _new_tag() -> str:
    return uuid.uuid4().hex


def ensure_chain_store_schema(conn: sqlite3.Connection) -> None:
    """
    Ensure the store tables exist (`entities`, `scan_logs`).

    SQL source: `database/migrations/001_chain_store.sql`.
    """
    cur = conn.cursor()
    cur.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type='table'
          AND name IN ('entities', 'scan_logs')
        """
    )
    existing = {str(row[0]) for row in cur.fetchall()}
    if not {"entities", "scan_logs"}.issubset(existing):
        sql = CHAIN_STORE_MIGRATION_FILE.read_text(encoding="utf-8")
        conn.executescript(sql)


class EntityStore:
    """
    Keyed storage for sessions, tokens, chains, attendance and enrollments.

    Each entity is addressed by (kind, partition_key, row_key) and carries an
    opaque tag that is replaced on every write. `conditional_update` only
    succeeds when the caller's tag still matches the stored one, which is the
    only cross-request coordination the service relies on.

    Every call runs through the configured `RetryPolicy`, so transient sqlite
    errors are retried here and nowhere else.
    """

    def __init__(self, db_path: str | Path, retry: RetryPolicy | None = None, *, timeout: float = 5.0):
        self.db_path = Path(db_path)
        self.retry = retry or RetryPolicy()
        self.timeout = timeout

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def create_tables(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        def _create() -> None:
            conn = self.connect()
            try:
                conn.execute("PRAGMA journal_mode=WAL;")
                ensure_chain_store_schema(conn)
                conn.commit()
            finally:
                conn.close()

        self.retry.run(_create, label="create_tables")

    # -----------------------------
    # Entities
    # -----------------------------
    def get(self, kind: str, partition_key: str, row_key: str) -> Stored:
        def _get() -> Stored:
            conn = self.connect()
            try:
                row = conn.execute(
                    """
                    SELECT body, etag
                    FROM entities
                    WHERE kind = ? AND partition_key = ? AND row_key = ?
                    """,
                    (kind, partition_key, row_key),
                ).fetchone()
            finally:
                conn.close()
            if not row:
                raise EntityNotFound(f"{kind}/{partition_key}/{row_key}")
            return Stored(partition_key, row_key, json.loads(row["body"]), str(row["etag"]))

        return self.retry.run(_get, label=f"get {kind}")

    def insert(self, kind: str, partition_key: str, row_key: str, value: dict[str, Any]) -> str:
        tag = _new_tag()
        body = json.dumps(value, separators=(",", ":"), sort_keys=True)

        def _insert() -> str:
            conn = self.connect()
            try:
                conn.execute(
                    """
                    INSERT INTO entities (kind, partition_key, row_key, body, etag)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (kind, partition_key, row_key, body, tag),
                )
                conn.commit()
            except sqlite3.IntegrityError as exc:
                raise EntityExists(f"{kind}/{partition_key}/{row_key}") from exc
            finally:
                conn.close()
            return tag

        return self.retry.run(_insert, label=f"insert {kind}")

    def conditional_update(
        self,
        kind: str,
        partition_key: str,
        row_key: str,
        value: dict[str, Any],
        expected_tag: str,
    ) -> str:
        new_tag = _new_tag()
        body = json.dumps(value, separators=(",", ":"), sort_keys=True)

        def _update() -> str:
            conn = self.connect()
            try:
                cur = conn.execute(
                    """
                    UPDATE entities
                    SET body = ?, etag = ?, updated_at = CURRENT_TIMESTAMP
                    WHERE kind = ? AND partition_key = ? AND row_key = ? AND etag = ?
                    """,
                    (body, new_tag, kind, partition_key, row_key, expected_tag),
                )
                if cur.rowcount == 1:
                    conn.commit()
                    return new_tag
                exists = conn.execute(
                    """
                    SELECT 1
                    FROM entities
                    WHERE kind = ? AND partition_key = ? AND row_key = ?
                    """,
                    (kind, partition_key, row_key),
                ).fetchone()
            finally:
                conn.close()
            if not exists:
                raise EntityNotFound(f"{kind}/{partition_key}/{row_key}")
            raise Conflict(f"{kind}/{partition_key}/{row_key}")

        return self.retry.run(_update, label=f"update {kind}")

    def list_partition(self, kind: str, partition_key: str) -> list[Stored]:
        def _list() -> list[Stored]:
            conn = self.connect()
            try:
                rows = conn.execute(
                    """
                    SELECT row_key, body, etag
                    FROM entities
                    WHERE kind = ? AND partition_key = ?
                    ORDER BY created_at, row_key
                    """,
                    (kind, partition_key),
                ).fetchall()
            finally:
                conn.close()
            return [Stored(partition_key, str(r["row_key"]), json.loads(r["body"]), str(r["etag"])) for r in rows]

        return self.retry.run(_list, label=f"list {kind}")

    # -----------------------------
    # Scan logs (append-only)
    # -----------------------------
    def append_scan_log(self, entry: dict[str, Any]) -> int:
        gps = entry.get("gps")
        params = (
            entry["session_id"],
            entry.get("flow"),
            entry.get("token_id"),
            entry.get("chain_id"),
            entry.get("holder_id"),
            entry.get("scanner_id"),
            entry.get("device_fingerprint"),
            entry.get("ip"),
            entry.get("bssid"),
            json.dumps(gps) if gps is not None else None,
            entry.get("user_agent"),
            entry["result"],
            entry.get("error"),
            float(entry["scanned_at"]),
        )

        def _append() -> int:
            conn = self.connect()
            try:
                cur = conn.execute(
                    """
                    INSERT INTO scan_logs (
                        session_id,
                        flow,
                        token_id,
                        chain_id,
                        holder_id,
                        scanner_id,
                        device_fingerprint,
                        ip,
                        bssid,
                        gps_json,
                        user_agent,
                        result,
                        error,
                        scanned_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    params,
                )
                conn.commit()
                return int(cur.lastrowid)
            finally:
                conn.close()

        return self.retry.run(_append, label="append scan log")

    def list_scan_logs(self, session_id: str, *, chain_id: str | None = None, limit: int = 500) -> list[ScanLogRow]:
        where = "session_id = ?"
        params: list[Any] = [session_id]
        if chain_id:
            where += " AND chain_id = ?"
            params.append(chain_id)
        params.append(max(1, int(limit)))

        def _list() -> list[ScanLogRow]:
            conn = self.connect()
            try:
                rows = conn.execute(
                    f"""
                    SELECT *
                    FROM scan_logs
                    WHERE {where}
                    ORDER BY scanned_at, id
                    LIMIT ?
                    """,
                    params,
                ).fetchall()
            finally:
                conn.close()
            return [_scan_log_row(r) for r in rows]

        return self.retry.run(_list, label="list scan logs")


def _scan_log_row(row: sqlite3.Row) -> ScanLogRow:
    return {
        "id": int(row["id"]),
        "session_id": str(row["session_id"]),
        "flow": row["flow"],
        "token_id": row["token_id"],
        "chain_id": row["chain_id"],
        "holder_id": row["holder_id"],
        "scanner_id": row["scanner_id"],
        "device_fingerprint": row["device_fingerprint"],
        "ip": row["ip"],
        "bssid": row["bssid"],
        "gps": json.loads(row["gps_json"]) if row["gps_json"] else None,
        "user_agent": row["user_agent"],
        "result": str(row["result"]),
        "error": row["error"],
        "scanned_at": float(row["scanned_at"]),
    }
