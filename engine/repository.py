"""
SQLite persistence for Order aggregates.

One database file (data/orders.db) holds:

  orders     one row per Quote / WorkOrder; the full aggregate is stored as
             JSON in `payload`, with key fields denormalised for filtering
  notes      work order notes; non-system notes gate the inspection-complete
             transition
  audit_log  one row per committed write

Optimistic concurrency
----------------------
Every aggregate carries a `version`.  save(order, expected_version) only
succeeds if the stored row is still at expected_version, and stores it at
expected_version + 1.  expected_version == 0 means "must not exist yet".
A mismatch raises ConflictError; the caller reloads and retries.

save_many() writes several aggregates in ONE transaction: conversion and
split commit the source and the new work order together or not at all.
"""
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Sequence

from models.order import ORDER_ADAPTER, Order, OrderStatus
from .errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS orders (
    id            TEXT PRIMARY KEY,
    kind          TEXT    NOT NULL,             -- quote | work_order
    status        TEXT    NOT NULL,
    version       INTEGER NOT NULL,

    -- Key fields (denormalised for fast filtering / sorting)
    customer_id   TEXT    NOT NULL,
    vehicle_id    TEXT,
    title         TEXT,

    -- Full aggregate (Quote / WorkOrder serialised as JSON)
    payload       TEXT    NOT NULL,

    created_at    TEXT    NOT NULL,
    updated_at    TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_orders_kind_status ON orders (kind, status);
CREATE INDEX IF NOT EXISTS idx_orders_customer    ON orders (customer_id);
CREATE INDEX IF NOT EXISTS idx_orders_updated_at  ON orders (updated_at DESC);

CREATE TABLE IF NOT EXISTS notes (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id           TEXT    NOT NULL,
    content            TEXT    NOT NULL,
    is_system          INTEGER NOT NULL DEFAULT 0,   -- generated by the app, not a person
    is_customer_facing INTEGER NOT NULL DEFAULT 0,
    created_by         TEXT    NOT NULL DEFAULT 'system',
    created_at         TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_notes_order ON notes (order_id, created_at DESC);

CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id    TEXT    NOT NULL,
    timestamp   TEXT    NOT NULL,   -- ISO-8601 UTC
    action      TEXT    NOT NULL,   -- created | updated | status_changed | converted | split | ...
    actor       TEXT    NOT NULL DEFAULT 'system',
    detail      TEXT                -- optional JSON blob with action-specific context
);

CREATE INDEX IF NOT EXISTS idx_audit_order     ON audit_log (order_id);
CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log (timestamp DESC);
"""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class OrderRepository:
    """Thin wrapper around an SQLite database file holding Order aggregates."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @contextmanager
    def _conn(self):
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(_SCHEMA)
        logger.debug("Database schema ready: %s", self.db_path)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def get(self, order_id: str) -> Optional[Order]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT payload FROM orders WHERE id = ?", (order_id,)
            ).fetchone()
        if row is None:
            return None
        return ORDER_ADAPTER.validate_json(row["payload"])

    def load(self, order_id: str) -> Order:
        """Return the stored aggregate or raise NotFoundError."""
        order = self.get(order_id)
        if order is None:
            raise NotFoundError(f"No order found with id {order_id}", order_id=order_id)
        return order

    def list_orders(
        self,
        kind: Optional[str] = None,
        status: Optional[OrderStatus | str] = None,
        customer_id: Optional[str] = None,
        limit: int = 500,
        offset: int = 0,
    ) -> list[Order]:
        """Newest-first list, optionally filtered by kind, status and customer."""
        clauses, params = [], []
        if kind:
            clauses.append("kind = ?")
            params.append(kind)
        if status:
            clauses.append("status = ?")
            params.append(status.value if isinstance(status, OrderStatus) else status)
        if customer_id:
            clauses.append("customer_id = ?")
            params.append(customer_id)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT payload FROM orders {where} "
                f"ORDER BY updated_at DESC LIMIT ? OFFSET ?",
                params,
            ).fetchall()
        return [ORDER_ADAPTER.validate_json(r["payload"]) for r in rows]

    def current_version(self, order_id: str) -> Optional[int]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT version FROM orders WHERE id = ?", (order_id,)
            ).fetchone()
        return row["version"] if row else None

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def save(
        self,
        order: Order,
        expected_version: int,
        *,
        action: str = "updated",
        actor: str = "system",
    ) -> Order:
        """
        Store *order* if the row is still at *expected_version*.

        Returns the stored aggregate (version = expected_version + 1).
        Raises ConflictError on a stale version, NotFoundError if an update
        targets a row that does not exist.
        """
        return self.save_many([(order, expected_version)], action=action, actor=actor)[0]

    def save_many(
        self,
        changes: Sequence[tuple[Order, int]],
        *,
        action: str = "updated",
        actor: str = "system",
    ) -> list[Order]:
        """Store several aggregates atomically; any failure rolls all of them back."""
        with self._conn() as conn:
            saved = [
                self._write(conn, order, expected_version, action, actor)
                for order, expected_version in changes
            ]
        for order in saved:
            logger.debug("Saved %s %s at version %d", order.kind, order.id, order.version)
        return saved

    def _write(
        self,
        conn: sqlite3.Connection,
        order: Order,
        expected_version: int,
        action: str,
        actor: str,
    ) -> Order:
        stored = order.model_copy(update={"version": expected_version + 1})
        values = (
            stored.kind,
            stored.status.value,
            stored.version,
            stored.customer_id,
            stored.vehicle_id,
            stored.title,
            stored.model_dump_json(),
            stored.created_at.isoformat(),
            stored.updated_at.isoformat(),
        )

        if expected_version == 0:
            try:
                conn.execute(
                    """
                    INSERT INTO orders (
                        kind, status, version, customer_id, vehicle_id, title,
                        payload, created_at, updated_at, id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values + (stored.id,),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError(
                    f"Order {stored.id} already exists", order_id=stored.id,
                ) from exc
        else:
            cursor = conn.execute(
                """
                UPDATE orders SET
                    kind = ?, status = ?, version = ?, customer_id = ?,
                    vehicle_id = ?, title = ?, payload = ?, created_at = ?,
                    updated_at = ?
                WHERE id = ? AND version = ?
                """,
                values + (stored.id, expected_version),
            )
            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT version FROM orders WHERE id = ?", (stored.id,)
                ).fetchone()
                if row is None:
                    raise NotFoundError(f"No order found with id {stored.id}", order_id=stored.id)
                raise ConflictError(
                    f"Order {stored.id} was changed by someone else "
                    f"(stored version {row['version']}, expected {expected_version})",
                    order_id=stored.id,
                )

        self._log_action(conn, stored.id, action, actor, {
            "version": stored.version,
            "status":  stored.status.value,
        })
        return stored

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def add_note(
        self,
        order_id: str,
        content: str,
        *,
        is_system: bool = False,
        is_customer_facing: bool = False,
        created_by: str = "system",
    ) -> int:
        """Insert a note and return its id."""
        with self._conn() as conn:
            cursor = conn.execute(
                """
                INSERT INTO notes (order_id, content, is_system, is_customer_facing,
                                   created_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (order_id, content, int(is_system), int(is_customer_facing),
                 created_by, _now_iso()),
            )
            self._log_action(conn, order_id, "note_added", created_by, {
                "note_id": cursor.lastrowid,
                "is_system": is_system,
            })
            return cursor.lastrowid

    def list_notes(self, order_id: str) -> list[dict]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM notes WHERE order_id = ? ORDER BY created_at DESC, id DESC",
                (order_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def count_notes(self, order_id: str, include_system: bool = True) -> int:
        sql = "SELECT COUNT(*) FROM notes WHERE order_id = ?"
        if not include_system:
            sql += " AND is_system = 0"
        with self._conn() as conn:
            return conn.execute(sql, (order_id,)).fetchone()[0]

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    @staticmethod
    def _log_action(
        conn: sqlite3.Connection,
        order_id: str,
        action: str,
        actor: str,
        detail: Optional[dict] = None,
    ) -> None:
        conn.execute(
            "INSERT INTO audit_log (order_id, timestamp, action, actor, detail) "
            "VALUES (?, ?, ?, ?, ?)",
            (order_id, _now_iso(), action, actor,
             json.dumps(detail) if detail else None),
        )

    def get_audit_log(self, order_id: str) -> list[dict]:
        """Return every audit entry for *order_id*, oldest first."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_log WHERE order_id = ? ORDER BY id ASC",
                (order_id,),
            ).fetchall()
        entries = []
        for r in rows:
            entry = dict(r)
            if entry.get("detail"):
                entry["detail"] = json.loads(entry["detail"])
            entries.append(entry)
        return entries

    def count_orders(self, kinds: Iterable[str] = ("quote", "work_order")) -> dict[str, int]:
        """Row counts per kind."""
        counts = {k: 0 for k in kinds}
        with self._conn() as conn:
            for row in conn.execute("SELECT kind, COUNT(*) AS n FROM orders GROUP BY kind"):
                counts[row["kind"]] = row["n"]
        return counts
