"""SQLite storage backend for AgriMarket.

Local-first storage for development, the CLI and single-node deployments.
Each call opens its own connection; inside ``transaction()`` every call on
the same thread reuses one connection holding a ``BEGIN IMMEDIATE`` write
lock, so a multi-step transition is atomic and serialized against other
writers.
"""

import contextlib
import json
import logging
import sqlite3
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from agrimarket.errors import ConflictError, DependencyError, DuplicateOfferError
from agrimarket.marketplace.models import (
    Booking,
    Job,
    JobStateTransition,
    Offer,
    OfferMessage,
    ServiceConfiguration,
)
from agrimarket.storage.base import OFFER_EDITABLE_FIELDS, StatusFilter, status_set

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    buyer_org_id TEXT NOT NULL,
    service_type TEXT NOT NULL,
    field_name TEXT NOT NULL,
    area_ha REAL NOT NULL,
    crop_type TEXT,
    terrain_conditions TEXT,
    treatment_type TEXT,
    location TEXT,
    target_date_start TEXT,
    target_date_end TEXT,
    requested_window_start TEXT,
    requested_window_end TEXT,
    notes TEXT,
    status TEXT NOT NULL DEFAULT 'open',
    accepted_offer_id TEXT,
    completed_by_org_id TEXT,
    completed_by_role TEXT,
    created_at TEXT,
    updated_at TEXT,
    assigned_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    cancelled_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_buyer ON jobs(buyer_org_id);

CREATE TABLE IF NOT EXISTS offers (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(id),
    operator_org_id TEXT NOT NULL,
    total_cents INTEGER NOT NULL CHECK (total_cents > 0),
    currency TEXT NOT NULL DEFAULT 'EUR',
    status TEXT NOT NULL DEFAULT 'pending',
    proposed_start TEXT,
    proposed_end TEXT,
    provider_note TEXT,
    pricing_snapshot TEXT,
    created_at TEXT,
    updated_at TEXT,
    decided_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_offers_job ON offers(job_id);
CREATE INDEX IF NOT EXISTS idx_offers_operator ON offers(operator_org_id);
CREATE UNIQUE INDEX IF NOT EXISTS uq_offers_one_accepted_per_job
    ON offers(job_id) WHERE status = 'accepted';
CREATE UNIQUE INDEX IF NOT EXISTS uq_offers_one_active_per_operator
    ON offers(job_id, operator_org_id) WHERE status IN ('pending', 'accepted');

CREATE TABLE IF NOT EXISTS service_configurations (
    org_id TEXT PRIMARY KEY,
    enable_job_filters INTEGER NOT NULL DEFAULT 0,
    offered_service_types TEXT,
    available_days TEXT,
    working_hours_start INTEGER,
    working_hours_end INTEGER,
    base_location_lat REAL,
    base_location_lng REAL,
    base_location_address TEXT,
    service_radius_km REAL,
    offer_message_template TEXT,
    rejection_message_template TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS bookings (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL UNIQUE REFERENCES jobs(id),
    offer_id TEXT NOT NULL REFERENCES offers(id),
    buyer_org_id TEXT NOT NULL,
    operator_org_id TEXT NOT NULL,
    service_type TEXT NOT NULL,
    total_cents INTEGER NOT NULL,
    currency TEXT NOT NULL DEFAULT 'EUR',
    site_snapshot TEXT,
    status TEXT NOT NULL DEFAULT 'confirmed',
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS offer_messages (
    id TEXT PRIMARY KEY,
    offer_id TEXT NOT NULL REFERENCES offers(id),
    sender_org_id TEXT NOT NULL,
    body TEXT NOT NULL,
    created_at TEXT,
    read_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_offer_messages_offer ON offer_messages(offer_id);

CREATE TABLE IF NOT EXISTS job_state_transitions (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(id),
    from_status TEXT,
    to_status TEXT NOT NULL,
    actor_id TEXT,
    actor_role TEXT,
    reason TEXT,
    metadata TEXT,
    created_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_transitions_job ON job_state_transitions(job_id);
"""

# Columns holding JSON documents, per table
_JSON_COLUMNS = {
    "jobs": ("location",),
    "offers": ("pricing_snapshot",),
    "bookings": ("site_snapshot",),
    "job_state_transitions": ("metadata",),
}


def _to_db(value: Any) -> Any:
    """Convert a Python value to its SQLite column representation."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _encode_row(table: str, data: Dict[str, Any]) -> Dict[str, Any]:
    json_cols = _JSON_COLUMNS.get(table, ())
    row = {}
    for key, value in data.items():
        if key in json_cols and value is not None:
            row[key] = json.dumps(value)
        else:
            row[key] = _to_db(value)
    return row


def _decode_row(table: str, row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    for key in _JSON_COLUMNS.get(table, ()):
        if data.get(key) is not None:
            data[key] = json.loads(data[key])
    return data


def _join_set(values: Optional[List[str]]) -> Optional[str]:
    """Store a set as "A,B"; empty set as "" (distinct from NULL)."""
    if values is None:
        return None
    return ",".join(values)


class SQLiteMarketplaceStorage:
    """SQLite-backed marketplace storage."""

    def __init__(self, db_path: Union[str, Path]):
        if str(db_path) == ":memory:":
            # Each call opens a fresh connection, which would see an empty database
            raise ValueError("SQLiteMarketplaceStorage needs a file path, not ':memory:'")
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode; transactions are explicit."""
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    @contextlib.contextmanager
    def _run(self, conn: sqlite3.Connection, begin: str):
        """Wrap a unit of work: commit on success, roll back on any error."""
        try:
            conn.execute(begin)
            yield conn
            conn.execute("COMMIT")
        except sqlite3.IntegrityError:
            self._rollback(conn)
            raise
        except sqlite3.Error as e:
            logger.error(f"SQLite error, rolling back: {e}")
            self._rollback(conn)
            raise DependencyError(f"Database error: {e}") from e
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            self._rollback(conn)
            raise

    @contextlib.contextmanager
    def _connect(self):
        """Connection for a single call; joins the thread's open transaction."""
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return
        conn = self._get_conn()
        try:
            with self._run(conn, "BEGIN") as c:
                yield c
        finally:
            conn.close()

    @contextlib.contextmanager
    def transaction(self):
        if getattr(self._local, "conn", None) is not None:
            # Nested: the outer transaction owns commit/rollback
            yield self
            return
        conn = self._get_conn()
        self._local.conn = conn
        try:
            with self._run(conn, "BEGIN IMMEDIATE"):
                yield self
        finally:
            self._local.conn = None
            conn.close()

    def _init_db(self) -> None:
        with contextlib.closing(self._get_conn()) as conn:
            conn.executescript(SCHEMA)
            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )

    def _insert(self, conn: sqlite3.Connection, table: str, data: Dict[str, Any]) -> None:
        row = _encode_row(table, data)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        conn.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", list(row.values()))

    def _guarded_update(
        self,
        table: str,
        record_id: str,
        expected: StatusFilter,
        new_status: str,
        fields: Dict[str, Any],
    ) -> bool:
        statuses = sorted(status_set(expected))
        row = _encode_row(table, {"status": new_status, **fields})
        assignments = ", ".join(f"{k} = ?" for k in row)
        marks = ", ".join("?" for _ in statuses)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ? AND status IN ({marks})",
                [*row.values(), record_id, *statuses],
            )
            return cursor.rowcount > 0

    # === Jobs ===

    def save_job(self, job: Job) -> str:
        with self._connect() as conn:
            self._insert(conn, "jobs", job.to_dict())
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return Job.from_dict(_decode_row("jobs", row)) if row else None

    def list_jobs(
        self,
        status: StatusFilter = None,
        buyer_org_id: Optional[str] = None,
        exclude_buyer_org_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        clauses, params = [], []
        statuses = status_set(status)
        if statuses is not None:
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(sorted(statuses))
        if buyer_org_id is not None:
            clauses.append("buyer_org_id = ?")
            params.append(buyer_org_id)
        if exclude_buyer_org_id is not None:
            clauses.append("buyer_org_id != ?")
            params.append(exclude_buyer_org_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM jobs {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
        return [Job.from_dict(_decode_row("jobs", r)) for r in rows]

    def update_job_status(
        self, job_id: str, expected: StatusFilter, new_status: str, **fields: Any
    ) -> Optional[Job]:
        with self.transaction():
            if not self._guarded_update("jobs", job_id, expected, new_status, fields):
                return None
            return self.get_job(job_id)

    # === Offers ===

    def save_offer(self, offer: Offer) -> str:
        try:
            with self._connect() as conn:
                self._insert(conn, "offers", offer.to_dict())
        except sqlite3.IntegrityError as e:
            raise DuplicateOfferError(
                f"Operator {offer.operator_org_id} already has an active offer on job {offer.job_id}"
            ) from e
        return offer.id

    def get_offer(self, offer_id: str) -> Optional[Offer]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM offers WHERE id = ?", (offer_id,)).fetchone()
        return Offer.from_dict(_decode_row("offers", row)) if row else None

    def list_offers(
        self,
        job_id: Optional[str] = None,
        operator_org_id: Optional[str] = None,
        status: StatusFilter = None,
        created_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Offer]:
        clauses, params = [], []
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)
        if operator_org_id is not None:
            clauses.append("operator_org_id = ?")
            params.append(operator_org_id)
        statuses = status_set(status)
        if statuses is not None:
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(sorted(statuses))
        if created_before is not None:
            clauses.append("created_at < ?")
            params.append(created_before.isoformat())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM offers {where} ORDER BY created_at DESC LIMIT ?",
                [*params, limit],
            ).fetchall()
        return [Offer.from_dict(_decode_row("offers", r)) for r in rows]

    def update_offer(self, offer: Offer) -> bool:
        full = offer.to_dict()
        data = {name: full[name] for name in OFFER_EDITABLE_FIELDS}
        row = _encode_row("offers", data)
        assignments = ", ".join(f"{k} = ?" for k in row)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE offers SET {assignments} WHERE id = ?", [*row.values(), offer.id]
            )
            return cursor.rowcount > 0

    def update_offer_status(
        self, offer_id: str, expected: StatusFilter, new_status: str, **fields: Any
    ) -> Optional[Offer]:
        try:
            with self.transaction():
                if not self._guarded_update("offers", offer_id, expected, new_status, fields):
                    return None
                return self.get_offer(offer_id)
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Offer {offer_id} cannot become {new_status}: {e}") from e

    # === Service configurations ===

    def get_service_configuration(self, org_id: str) -> Optional[ServiceConfiguration]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM service_configurations WHERE org_id = ?", (org_id,)
            ).fetchone()
        if not row:
            return None
        data = dict(row)
        data["enable_job_filters"] = bool(data["enable_job_filters"])
        return ServiceConfiguration.from_dict(data)

    def save_service_configuration(self, config: ServiceConfiguration) -> None:
        data = config.to_dict()
        data["offered_service_types"] = _join_set(data["offered_service_types"])
        data["available_days"] = _join_set(data["available_days"])
        row = _encode_row("service_configurations", data)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        with self._connect() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO service_configurations ({columns}) VALUES ({placeholders})",
                list(row.values()),
            )

    # === Bookings ===

    def save_booking(self, booking: Booking) -> str:
        with self._connect() as conn:
            self._insert(conn, "bookings", booking.to_dict())
        return booking.id

    def get_booking_for_job(self, job_id: str) -> Optional[Booking]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM bookings WHERE job_id = ?", (job_id,)).fetchone()
        return Booking.from_dict(_decode_row("bookings", row)) if row else None

    def update_booking_status(self, job_id: str, status: str, updated_at: datetime) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE bookings SET status = ?, updated_at = ? WHERE job_id = ?",
                (status, updated_at.isoformat(), job_id),
            )
            return cursor.rowcount > 0

    def delete_booking(self, booking_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM bookings WHERE id = ?", (booking_id,))
            return cursor.rowcount > 0

    # === Offer messages ===

    def save_message(self, message: OfferMessage) -> str:
        with self._connect() as conn:
            self._insert(conn, "offer_messages", message.to_dict())
        return message.id

    def list_messages(self, offer_id: str, limit: int = 200) -> List[OfferMessage]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM offer_messages WHERE offer_id = ? ORDER BY created_at ASC LIMIT ?",
                (offer_id, limit),
            ).fetchall()
        return [OfferMessage.from_dict(dict(r)) for r in rows]

    def mark_messages_read(self, offer_id: str, reader_org_id: str, read_at: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE offer_messages SET read_at = ? "
                "WHERE offer_id = ? AND sender_org_id != ? AND read_at IS NULL",
                (read_at.isoformat(), offer_id, reader_org_id),
            )
            return cursor.rowcount

    # === Transitions ===

    def save_transition(self, transition: JobStateTransition) -> str:
        with self._connect() as conn:
            self._insert(conn, "job_state_transitions", transition.to_dict())
        return transition.id

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM job_state_transitions WHERE job_id = ? ORDER BY created_at ASC, rowid ASC",
                (job_id,),
            ).fetchall()
        return [JobStateTransition.from_dict(_decode_row("job_state_transitions", r)) for r in rows]
