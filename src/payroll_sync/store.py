"""
SQLite persistence for payroll sync.

Holds connections, work sessions, punches, shifts, mappings and the
external entity cache. Uses WAL mode and a connection per operation so
the API process and the worker can share one database file.

Timestamps are stored as UTC ISO-8601 strings with fixed microsecond
precision so lexical comparison in SQL matches chronological order.
"""

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .models import (
    ApprovalStatus,
    CachedEntity,
    ClassMapping,
    Connection,
    ConnectionStatus,
    CustomerMapping,
    EmployeeMapping,
    EntityType,
    Punch,
    PunchSource,
    PunchType,
    QboEnvironment,
    Shift,
    SyncStatus,
    WorkSession,
    WorkSessionStatus,
)

logger = logging.getLogger(__name__)


SCHEMA = '''
    CREATE TABLE IF NOT EXISTS connections (
        tenant_id TEXT PRIMARY KEY,
        realm_id TEXT NOT NULL,
        encrypted_access_token TEXT NOT NULL,
        encrypted_refresh_token TEXT NOT NULL,
        token_expiry TEXT NOT NULL,
        status TEXT NOT NULL,
        environment TEXT NOT NULL,
        connected_at TEXT,
        connected_by TEXT,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS work_sessions (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        worksite_id TEXT NOT NULL,
        date TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT,
        ended_at TEXT,
        ended_by TEXT,
        program_id TEXT
    );

    CREATE TABLE IF NOT EXISTS punches (
        id TEXT PRIMARY KEY,
        work_session_id TEXT NOT NULL,
        worker_id TEXT NOT NULL,
        type TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        source TEXT NOT NULL,
        lat REAL,
        lng REAL,
        reason TEXT,
        closes_punch_id TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_punches_session
    ON punches(work_session_id);

    CREATE TABLE IF NOT EXISTS shifts (
        id TEXT PRIMARY KEY,
        work_session_id TEXT NOT NULL,
        worker_id TEXT NOT NULL,
        tenant_id TEXT,
        worksite_id TEXT,
        program_id TEXT,
        in_at TEXT NOT NULL,
        out_at TEXT,
        duration_minutes INTEGER,
        forced_out INTEGER NOT NULL DEFAULT 0,
        approval_status TEXT NOT NULL DEFAULT 'pending',
        approved_by TEXT,
        approved_at TEXT,
        external_id TEXT,
        sync_token TEXT,
        sync_status TEXT,
        sync_error TEXT,
        sync_attempts INTEGER NOT NULL DEFAULT 0,
        last_sync_attempt TEXT,
        synced_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_shifts_tenant_sync
    ON shifts(tenant_id, sync_status);

    CREATE INDEX IF NOT EXISTS idx_shifts_session
    ON shifts(work_session_id);

    CREATE TABLE IF NOT EXISTS employee_mappings (
        tenant_id TEXT NOT NULL,
        worker_id TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        display_name TEXT,
        PRIMARY KEY (tenant_id, worker_id)
    );

    CREATE TABLE IF NOT EXISTS customer_mappings (
        tenant_id TEXT NOT NULL,
        worksite_id TEXT NOT NULL,
        customer_id TEXT NOT NULL,
        display_name TEXT,
        PRIMARY KEY (tenant_id, worksite_id)
    );

    CREATE TABLE IF NOT EXISTS class_mappings (
        tenant_id TEXT NOT NULL,
        program_id TEXT NOT NULL,
        class_id TEXT NOT NULL,
        display_name TEXT,
        PRIMARY KEY (tenant_id, program_id)
    );

    CREATE TABLE IF NOT EXISTS entity_cache (
        tenant_id TEXT NOT NULL,
        entity_kind TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        display_name TEXT NOT NULL,
        fully_qualified_name TEXT,
        active INTEGER NOT NULL DEFAULT 1,
        cached_at TEXT NOT NULL,
        PRIMARY KEY (tenant_id, entity_kind, entity_id)
    );
'''


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Normalize to UTC with fixed precision. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _row_to_shift(row: sqlite3.Row) -> Shift:
    return Shift(
        id=row['id'],
        work_session_id=row['work_session_id'],
        worker_id=row['worker_id'],
        tenant_id=row['tenant_id'],
        worksite_id=row['worksite_id'],
        program_id=row['program_id'],
        in_at=from_db_time(row['in_at']),
        out_at=from_db_time(row['out_at']),
        duration_minutes=row['duration_minutes'],
        forced_out=bool(row['forced_out']),
        approval_status=ApprovalStatus(row['approval_status']),
        approved_by=row['approved_by'],
        approved_at=from_db_time(row['approved_at']),
        external_id=row['external_id'],
        sync_token=row['sync_token'],
        sync_status=SyncStatus(row['sync_status']) if row['sync_status'] else None,
        sync_error=row['sync_error'],
        sync_attempts=row['sync_attempts'],
        last_sync_attempt=from_db_time(row['last_sync_attempt']),
        synced_at=from_db_time(row['synced_at']),
    )


def _row_to_punch(row: sqlite3.Row) -> Punch:
    return Punch(
        id=row['id'],
        work_session_id=row['work_session_id'],
        worker_id=row['worker_id'],
        type=PunchType(row['type']),
        timestamp=from_db_time(row['timestamp']),
        source=PunchSource(row['source']),
        lat=row['lat'],
        lng=row['lng'],
        reason=row['reason'],
        closes_punch_id=row['closes_punch_id'],
    )


def _row_to_connection(row: sqlite3.Row) -> Connection:
    return Connection(
        tenant_id=row['tenant_id'],
        realm_id=row['realm_id'],
        encrypted_access_token=row['encrypted_access_token'],
        encrypted_refresh_token=row['encrypted_refresh_token'],
        token_expiry=from_db_time(row['token_expiry']),
        status=ConnectionStatus(row['status']),
        environment=QboEnvironment(row['environment']),
        connected_at=from_db_time(row['connected_at']),
        connected_by=row['connected_by'],
    )


def _row_to_session(row: sqlite3.Row) -> WorkSession:
    return WorkSession(
        id=row['id'],
        tenant_id=row['tenant_id'],
        worksite_id=row['worksite_id'],
        date=row['date'],
        status=WorkSessionStatus(row['status']),
        started_at=from_db_time(row['started_at']),
        ended_at=from_db_time(row['ended_at']),
        ended_by=row['ended_by'],
        program_id=row['program_id'],
    )


class PayrollStore:
    """
    SQLite-backed store for the payroll sync service.

    Methods are async for symmetry with the rest of the service; each
    opens and closes its own sqlite3 connection.
    """

    def __init__(self, db_path: Path):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._init_db()

    def _init_db(self):
        """Initialize SQLite database with schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(self.db_path)
        try:
            # WAL for crash safety and concurrent readers
            conn.execute('PRAGMA journal_mode=WAL')
            conn.execute('PRAGMA synchronous=NORMAL')
            conn.executescript(SCHEMA)
            conn.commit()
        finally:
            conn.close()

        logger.info(f"Initialized payroll store at {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    # ========================================================================
    # Connections
    # ========================================================================

    async def get_connection(self, tenant_id: str) -> Optional[Connection]:
        conn = self._connect()
        try:
            row = conn.execute(
                'SELECT * FROM connections WHERE tenant_id = ?', (tenant_id,)
            ).fetchone()
            return _row_to_connection(row) if row else None
        finally:
            conn.close()

    async def save_connection(self, connection: Connection):
        """Insert or overwrite the tenant's connection row."""
        conn = self._connect()
        try:
            conn.execute('''
                INSERT INTO connections
                (tenant_id, realm_id, encrypted_access_token, encrypted_refresh_token,
                 token_expiry, status, environment, connected_at, connected_by, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id) DO UPDATE SET
                    realm_id = excluded.realm_id,
                    encrypted_access_token = excluded.encrypted_access_token,
                    encrypted_refresh_token = excluded.encrypted_refresh_token,
                    token_expiry = excluded.token_expiry,
                    status = excluded.status,
                    environment = excluded.environment,
                    connected_at = excluded.connected_at,
                    connected_by = excluded.connected_by,
                    updated_at = excluded.updated_at
            ''', (
                connection.tenant_id,
                connection.realm_id,
                connection.encrypted_access_token,
                connection.encrypted_refresh_token,
                to_db_time(connection.token_expiry),
                connection.status.value,
                connection.environment.value,
                to_db_time(connection.connected_at),
                connection.connected_by,
                to_db_time(datetime.now(timezone.utc)),
            ))
            conn.commit()
        finally:
            conn.close()

    async def update_connection_tokens(
        self,
        tenant_id: str,
        encrypted_access_token: str,
        encrypted_refresh_token: str,
        token_expiry: datetime,
    ):
        """Persist refreshed tokens and mark the connection active."""
        conn = self._connect()
        try:
            conn.execute('''
                UPDATE connections
                SET encrypted_access_token = ?,
                    encrypted_refresh_token = ?,
                    token_expiry = ?,
                    status = ?,
                    updated_at = ?
                WHERE tenant_id = ?
            ''', (
                encrypted_access_token,
                encrypted_refresh_token,
                to_db_time(token_expiry),
                ConnectionStatus.ACTIVE.value,
                to_db_time(datetime.now(timezone.utc)),
                tenant_id,
            ))
            conn.commit()
        finally:
            conn.close()

    async def set_connection_status(self, tenant_id: str, status: ConnectionStatus) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute('''
                UPDATE connections SET status = ?, updated_at = ?
                WHERE tenant_id = ?
            ''', (status.value, to_db_time(datetime.now(timezone.utc)), tenant_id))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    async def list_active_tenants(self) -> List[str]:
        conn = self._connect()
        try:
            rows = conn.execute(
                'SELECT tenant_id FROM connections WHERE status = ? ORDER BY tenant_id',
                (ConnectionStatus.ACTIVE.value,)
            ).fetchall()
            return [row['tenant_id'] for row in rows]
        finally:
            conn.close()

    # ========================================================================
    # Work Sessions and Punches
    # ========================================================================

    async def create_work_session(self, session: WorkSession):
        conn = self._connect()
        try:
            conn.execute('''
                INSERT INTO work_sessions
                (id, tenant_id, worksite_id, date, status, started_at, ended_at, ended_by, program_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                session.id,
                session.tenant_id,
                session.worksite_id,
                session.date,
                session.status.value,
                to_db_time(session.started_at),
                to_db_time(session.ended_at),
                session.ended_by,
                session.program_id,
            ))
            conn.commit()
        finally:
            conn.close()

    async def get_work_session(self, session_id: str) -> Optional[WorkSession]:
        conn = self._connect()
        try:
            row = conn.execute(
                'SELECT * FROM work_sessions WHERE id = ?', (session_id,)
            ).fetchone()
            return _row_to_session(row) if row else None
        finally:
            conn.close()

    async def close_work_session(self, session_id: str, ended_at: datetime, ended_by: Optional[str]):
        conn = self._connect()
        try:
            conn.execute('''
                UPDATE work_sessions
                SET status = ?, ended_at = ?, ended_by = ?
                WHERE id = ?
            ''', (WorkSessionStatus.CLOSED.value, to_db_time(ended_at), ended_by, session_id))
            conn.commit()
        finally:
            conn.close()

    async def add_punches(self, punches: Iterable[Punch]) -> int:
        """
        Insert punches. Existing ids are left untouched.

        Returns:
            Number of rows actually inserted
        """
        conn = self._connect()
        try:
            inserted = 0
            for punch in punches:
                cursor = conn.execute('''
                    INSERT OR IGNORE INTO punches
                    (id, work_session_id, worker_id, type, timestamp, source,
                     lat, lng, reason, closes_punch_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    punch.id,
                    punch.work_session_id,
                    punch.worker_id,
                    punch.type.value,
                    to_db_time(punch.timestamp),
                    punch.source.value,
                    punch.lat,
                    punch.lng,
                    punch.reason,
                    punch.closes_punch_id,
                ))
                inserted += cursor.rowcount
            conn.commit()
            return inserted
        finally:
            conn.close()

    async def list_punches(self, work_session_id: str) -> List[Punch]:
        conn = self._connect()
        try:
            rows = conn.execute('''
                SELECT * FROM punches WHERE work_session_id = ?
                ORDER BY timestamp ASC, id ASC
            ''', (work_session_id,)).fetchall()
            return [_row_to_punch(row) for row in rows]
        finally:
            conn.close()

    # ========================================================================
    # Shifts
    # ========================================================================

    async def upsert_shifts(self, shifts: Iterable[Shift]) -> int:
        """
        Insert derived shifts or refresh their derived fields.

        Sync and approval columns of existing rows are never touched and
        locked rows are skipped entirely.

        Returns:
            Number of rows inserted or updated
        """
        conn = self._connect()
        try:
            written = 0
            for shift in shifts:
                cursor = conn.execute('''
                    INSERT INTO shifts
                    (id, work_session_id, worker_id, tenant_id, worksite_id, program_id,
                     in_at, out_at, duration_minutes, forced_out, approval_status)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        in_at = excluded.in_at,
                        out_at = excluded.out_at,
                        duration_minutes = excluded.duration_minutes,
                        forced_out = excluded.forced_out
                    WHERE shifts.approval_status != 'locked'
                ''', (
                    shift.id,
                    shift.work_session_id,
                    shift.worker_id,
                    shift.tenant_id,
                    shift.worksite_id,
                    shift.program_id,
                    to_db_time(shift.in_at),
                    to_db_time(shift.out_at),
                    shift.duration_minutes,
                    1 if shift.forced_out else 0,
                    shift.approval_status.value,
                ))
                written += cursor.rowcount
            conn.commit()
            return written
        finally:
            conn.close()

    async def get_shift(self, shift_id: str) -> Optional[Shift]:
        conn = self._connect()
        try:
            row = conn.execute('SELECT * FROM shifts WHERE id = ?', (shift_id,)).fetchone()
            return _row_to_shift(row) if row else None
        finally:
            conn.close()

    async def list_shifts(
        self,
        tenant_id: Optional[str] = None,
        work_session_id: Optional[str] = None,
        sync_statuses: Optional[Sequence[SyncStatus]] = None,
        approval_status: Optional[ApprovalStatus] = None,
        max_attempts: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Shift]:
        """
        List shifts matching all given filters.

        Args:
            max_attempts: Only shifts with fewer attempts than this
            limit: Maximum number of rows

        Returns:
            Shifts ordered by last attempt (never-attempted first), then id
        """
        query = 'SELECT * FROM shifts WHERE 1 = 1'
        params: List[Any] = []

        if tenant_id is not None:
            query += ' AND tenant_id = ?'
            params.append(tenant_id)
        if work_session_id is not None:
            query += ' AND work_session_id = ?'
            params.append(work_session_id)
        if sync_statuses:
            query += f" AND sync_status IN ({', '.join('?' for _ in sync_statuses)})"
            params.extend(s.value for s in sync_statuses)
        if approval_status is not None:
            query += ' AND approval_status = ?'
            params.append(approval_status.value)
        if max_attempts is not None:
            query += ' AND sync_attempts < ?'
            params.append(max_attempts)

        query += ' ORDER BY last_sync_attempt IS NOT NULL, last_sync_attempt ASC, id ASC'

        if limit:
            query += ' LIMIT ?'
            params.append(limit)

        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
            return [_row_to_shift(row) for row in rows]
        finally:
            conn.close()

    async def set_approval(
        self,
        shift_id: str,
        status: ApprovalStatus,
        actor: Optional[str],
        at: datetime,
    ) -> bool:
        """Change approval status unless the shift is locked."""
        conn = self._connect()
        try:
            if status == ApprovalStatus.APPROVED:
                cursor = conn.execute('''
                    UPDATE shifts
                    SET approval_status = ?, approved_by = ?, approved_at = ?
                    WHERE id = ? AND approval_status != 'locked'
                ''', (status.value, actor, to_db_time(at), shift_id))
            else:
                cursor = conn.execute('''
                    UPDATE shifts SET approval_status = ?
                    WHERE id = ? AND approval_status != 'locked'
                ''', (status.value, shift_id))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    async def claim_shift(self, shift_id: str, now: datetime, stale_before: datetime) -> bool:
        """
        Atomically mark a shift as in flight.

        The claim succeeds only for an approved shift that is not already
        pending with an attempt newer than stale_before.

        Returns:
            True if this caller now owns the attempt
        """
        conn = self._connect()
        try:
            cursor = conn.execute('''
                UPDATE shifts
                SET sync_status = ?, last_sync_attempt = ?
                WHERE id = ?
                AND approval_status = 'approved'
                AND NOT (
                    sync_status = 'pending'
                    AND last_sync_attempt IS NOT NULL
                    AND last_sync_attempt > ?
                )
            ''', (SyncStatus.PENDING.value, to_db_time(now), shift_id, to_db_time(stale_before)))
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    async def mark_synced(
        self,
        shift_id: str,
        external_id: str,
        sync_token: str,
        synced_at: datetime,
    ):
        """Record a successful push: attempts reset, error cleared."""
        conn = self._connect()
        try:
            conn.execute('''
                UPDATE shifts
                SET sync_status = ?,
                    external_id = ?,
                    sync_token = ?,
                    synced_at = ?,
                    sync_error = NULL,
                    sync_attempts = 0
                WHERE id = ?
            ''', (SyncStatus.SYNCED.value, external_id, sync_token, to_db_time(synced_at), shift_id))
            conn.commit()
        finally:
            conn.close()

    async def mark_sync_status(
        self,
        shift_id: str,
        status: SyncStatus,
        error: Optional[str] = None,
        attempts: Optional[int] = None,
    ):
        """
        Record a non-success outcome.

        Args:
            status: New sync status
            error: Human-readable error text (replaces the previous one)
            attempts: New attempt counter, or None to leave it unchanged
        """
        conn = self._connect()
        try:
            if attempts is None:
                conn.execute('''
                    UPDATE shifts SET sync_status = ?, sync_error = ?
                    WHERE id = ?
                ''', (status.value, error, shift_id))
            else:
                conn.execute('''
                    UPDATE shifts SET sync_status = ?, sync_error = ?, sync_attempts = ?
                    WHERE id = ?
                ''', (status.value, error, attempts, shift_id))
            conn.commit()
        finally:
            conn.close()

    async def dead_letter_exhausted(self, tenant_id: str, max_attempts: int) -> List[str]:
        """
        Move failed/retry shifts at the attempt ceiling to dead_letter.

        Returns:
            IDs of the shifts moved
        """
        conn = self._connect()
        try:
            rows = conn.execute('''
                SELECT id FROM shifts
                WHERE tenant_id = ?
                AND sync_status IN ('failed', 'retry')
                AND sync_attempts >= ?
            ''', (tenant_id, max_attempts)).fetchall()
            ids = [row['id'] for row in rows]
            if ids:
                conn.execute(f'''
                    UPDATE shifts SET sync_status = ?
                    WHERE id IN ({', '.join('?' for _ in ids)})
                ''', [SyncStatus.DEAD_LETTER.value, *ids])
                conn.commit()
            return ids
        finally:
            conn.close()

    async def reset_dead_letter(self, shift_id: str) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute('''
                UPDATE shifts
                SET sync_status = ?, sync_attempts = 0
                WHERE id = ? AND sync_status = ?
            ''', (SyncStatus.FAILED.value, shift_id, SyncStatus.DEAD_LETTER.value))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    async def sync_status_counts(self, tenant_id: str) -> Dict[str, int]:
        """Count shifts per sync status; unsynced shifts are keyed 'none'."""
        conn = self._connect()
        try:
            rows = conn.execute('''
                SELECT COALESCE(sync_status, 'none') AS status, COUNT(*) AS n
                FROM shifts WHERE tenant_id = ?
                GROUP BY COALESCE(sync_status, 'none')
            ''', (tenant_id,)).fetchall()
            return {row['status']: row['n'] for row in rows}
        finally:
            conn.close()

    # ========================================================================
    # Mappings
    # ========================================================================

    async def save_employee_mapping(self, mapping: EmployeeMapping):
        conn = self._connect()
        try:
            conn.execute('''
                INSERT OR REPLACE INTO employee_mappings
                (tenant_id, worker_id, entity_id, entity_type, display_name)
                VALUES (?, ?, ?, ?, ?)
            ''', (
                mapping.tenant_id,
                mapping.worker_id,
                mapping.entity_id,
                mapping.entity_type.value,
                mapping.display_name,
            ))
            conn.commit()
        finally:
            conn.close()

    async def get_employee_mapping(self, tenant_id: str, worker_id: str) -> Optional[EmployeeMapping]:
        conn = self._connect()
        try:
            row = conn.execute('''
                SELECT * FROM employee_mappings WHERE tenant_id = ? AND worker_id = ?
            ''', (tenant_id, worker_id)).fetchone()
            if not row:
                return None
            return EmployeeMapping(
                tenant_id=row['tenant_id'],
                worker_id=row['worker_id'],
                entity_id=row['entity_id'],
                entity_type=EntityType(row['entity_type']),
                display_name=row['display_name'],
            )
        finally:
            conn.close()

    async def save_customer_mapping(self, mapping: CustomerMapping):
        conn = self._connect()
        try:
            conn.execute('''
                INSERT OR REPLACE INTO customer_mappings
                (tenant_id, worksite_id, customer_id, display_name)
                VALUES (?, ?, ?, ?)
            ''', (mapping.tenant_id, mapping.worksite_id, mapping.customer_id, mapping.display_name))
            conn.commit()
        finally:
            conn.close()

    async def get_customer_mapping(self, tenant_id: str, worksite_id: str) -> Optional[CustomerMapping]:
        conn = self._connect()
        try:
            row = conn.execute('''
                SELECT * FROM customer_mappings WHERE tenant_id = ? AND worksite_id = ?
            ''', (tenant_id, worksite_id)).fetchone()
            if not row:
                return None
            return CustomerMapping(
                tenant_id=row['tenant_id'],
                worksite_id=row['worksite_id'],
                customer_id=row['customer_id'],
                display_name=row['display_name'],
            )
        finally:
            conn.close()

    async def save_class_mapping(self, mapping: ClassMapping):
        conn = self._connect()
        try:
            conn.execute('''
                INSERT OR REPLACE INTO class_mappings
                (tenant_id, program_id, class_id, display_name)
                VALUES (?, ?, ?, ?)
            ''', (mapping.tenant_id, mapping.program_id, mapping.class_id, mapping.display_name))
            conn.commit()
        finally:
            conn.close()

    async def get_class_mapping(self, tenant_id: str, program_id: str) -> Optional[ClassMapping]:
        conn = self._connect()
        try:
            row = conn.execute('''
                SELECT * FROM class_mappings WHERE tenant_id = ? AND program_id = ?
            ''', (tenant_id, program_id)).fetchone()
            if not row:
                return None
            return ClassMapping(
                tenant_id=row['tenant_id'],
                program_id=row['program_id'],
                class_id=row['class_id'],
                display_name=row['display_name'],
            )
        finally:
            conn.close()

    # ========================================================================
    # Entity Cache
    # ========================================================================

    async def replace_entity_cache(
        self,
        tenant_id: str,
        entity_kind: str,
        entities: Sequence[CachedEntity],
    ) -> int:
        """Replace every cached row of one kind for a tenant in one transaction."""
        conn = self._connect()
        try:
            conn.execute(
                'DELETE FROM entity_cache WHERE tenant_id = ? AND entity_kind = ?',
                (tenant_id, entity_kind)
            )
            conn.executemany('''
                INSERT OR REPLACE INTO entity_cache
                (tenant_id, entity_kind, entity_id, display_name,
                 fully_qualified_name, active, cached_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', [
                (
                    tenant_id,
                    entity_kind,
                    e.entity_id,
                    e.display_name,
                    e.fully_qualified_name,
                    1 if e.active else 0,
                    to_db_time(e.cached_at or datetime.now(timezone.utc)),
                )
                for e in entities
            ])
            conn.commit()
            return len(entities)
        finally:
            conn.close()

    async def list_cached_entities(self, tenant_id: str, entity_kind: str) -> List[CachedEntity]:
        conn = self._connect()
        try:
            rows = conn.execute('''
                SELECT * FROM entity_cache
                WHERE tenant_id = ? AND entity_kind = ?
                ORDER BY display_name ASC
            ''', (tenant_id, entity_kind)).fetchall()
            return [
                CachedEntity(
                    tenant_id=row['tenant_id'],
                    entity_id=row['entity_id'],
                    entity_kind=row['entity_kind'],
                    display_name=row['display_name'],
                    fully_qualified_name=row['fully_qualified_name'],
                    active=bool(row['active']),
                    cached_at=from_db_time(row['cached_at']),
                )
                for row in rows
            ]
        finally:
            conn.close()
