"""Repository layer responsible for all database access."""

from __future__ import annotations

import sqlite3
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator, Optional, Sequence

from backend.domain.constraints import DEFAULT_MEETING_PRIORITIES, DEFAULT_POLICY
from backend.domain.models import (
    AssignmentMode,
    AssignmentPolicy,
    Booking,
    MeetingType,
    MeetingTypePriority,
    PoolEntry,
    PoolStats,
    PoolStatus,
    WorkloadHistory,
)
from backend.utils.clock import from_db_timestamp, to_db_timestamp
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


_POOL_ENTRY_COLUMNS = """
    b.id,
    b.meeting_type,
    b.time_start,
    b.time_end,
    b.booking_status,
    b.interpreter_id,
    b.pool_status,
    b.pool_entry_time,
    b.pool_deadline_time,
    b.pool_processing_attempts,
    b.pool_processing_started_at,
    COALESCE(m.priority_value, 1) AS priority_value
"""

_POOL_ENTRY_FROM = """
    FROM Bookings AS b
    LEFT JOIN MeetingTypePriorities AS m ON m.meeting_type = b.meeting_type
"""


@dataclass(frozen=True)
class PoolRunRecord:
    """Persisted summary of one scheduled or manual pool run."""

    batch_id: str
    started_at: datetime
    finished_at: datetime
    processed_count: int
    assigned_count: int
    failed_count: int
    retried_count: int
    skipped_count: int
    error_count: int


class DataRepository:
    """Encapsulates SQLite access so pool logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.database_timeout_seconds,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection whose transaction commits on success and always closes."""
        connection = self._connect()
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connection() as conn:
                cursor = conn.cursor()
                cursor.execute("PRAGMA journal_mode = WAL;")

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Interpreters (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0,1)),
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Bookings (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        meeting_type TEXT NOT NULL,
                        time_start TEXT NOT NULL,
                        time_end TEXT NOT NULL,
                        booking_status TEXT NOT NULL DEFAULT 'waiting',
                        interpreter_id TEXT,
                        pool_status TEXT CHECK (
                            pool_status IS NULL
                            OR pool_status IN ('waiting','ready','processing','failed')
                        ),
                        pool_entry_time TEXT,
                        pool_deadline_time TEXT,
                        pool_processing_attempts INTEGER NOT NULL DEFAULT 0,
                        pool_processing_started_at TEXT,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (interpreter_id) REFERENCES Interpreters(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS AssignmentPolicy (
                        id INTEGER PRIMARY KEY CHECK (id = 1),
                        auto_assign_enabled INTEGER NOT NULL,
                        mode TEXT NOT NULL,
                        fairness_window_days INTEGER NOT NULL,
                        max_gap_hours REAL NOT NULL,
                        w_fair REAL NOT NULL,
                        w_urgency REAL NOT NULL,
                        w_lrs REAL NOT NULL,
                        dr_consecutive_penalty REAL NOT NULL,
                        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS MeetingTypePriorities (
                        meeting_type TEXT PRIMARY KEY,
                        priority_value INTEGER NOT NULL,
                        urgent_threshold_days INTEGER NOT NULL,
                        general_threshold_days INTEGER NOT NULL,
                        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS AssignmentLogs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        booking_id INTEGER NOT NULL,
                        interpreter_id TEXT NOT NULL,
                        score REAL,
                        processing_type TEXT NOT NULL,
                        assigned_at TEXT NOT NULL,
                        FOREIGN KEY (booking_id) REFERENCES Bookings(id),
                        FOREIGN KEY (interpreter_id) REFERENCES Interpreters(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS PoolRunLogs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        batch_id TEXT NOT NULL,
                        started_at TEXT NOT NULL,
                        finished_at TEXT NOT NULL,
                        processed_count INTEGER NOT NULL,
                        assigned_count INTEGER NOT NULL,
                        failed_count INTEGER NOT NULL,
                        retried_count INTEGER NOT NULL,
                        skipped_count INTEGER NOT NULL,
                        error_count INTEGER NOT NULL
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_bookings_pool_status_deadline
                    ON Bookings(pool_status, pool_deadline_time);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_bookings_interpreter_start
                    ON Bookings(interpreter_id, time_start);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_assignment_logs_interpreter
                    ON AssignmentLogs(interpreter_id, assigned_at);
                    """
                )
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def seed_default_configuration(self) -> None:
        """Insert the default policy row and meeting-type priorities when absent."""
        try:
            with self._connection() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) AS count FROM AssignmentPolicy;")
                if int(cursor.fetchone()["count"]) == 0:
                    self._write_policy(cursor, DEFAULT_POLICY)
                    logger.info("Default assignment policy seeded | mode=%s", DEFAULT_POLICY.mode.value)

                cursor.executemany(
                    """
                    INSERT OR IGNORE INTO MeetingTypePriorities (
                        meeting_type,
                        priority_value,
                        urgent_threshold_days,
                        general_threshold_days
                    )
                    VALUES (?, ?, ?, ?);
                    """,
                    [
                        (
                            priority.meeting_type.value,
                            priority.priority_value,
                            priority.urgent_threshold_days,
                            priority.general_threshold_days,
                        )
                        for priority in DEFAULT_MEETING_PRIORITIES
                    ],
                )
        except sqlite3.Error as exc:
            raise RuntimeError(f"Default configuration seeding failed: {exc}") from exc

    def seed_demo_interpreters_if_empty(self) -> None:
        """Seed a small interpreter roster for local runs."""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) AS count FROM Interpreters;")
            if int(cursor.fetchone()["count"]) > 0:
                logger.info("Interpreters already present; skipping demo seed")
                return
            roster = [
                ("INT001", "Interpreter One"),
                ("INT002", "Interpreter Two"),
                ("INT003", "Interpreter Three"),
                ("INT004", "Interpreter Four"),
            ]
            cursor.executemany(
                "INSERT INTO Interpreters (id, name, is_active) VALUES (?, ?, 1);",
                roster,
            )
        logger.info("Demo interpreter roster seeded with %s interpreters", len(roster))

    # --- Policy and meeting-type priorities ---

    @staticmethod
    def _write_policy(cursor: sqlite3.Cursor, policy: AssignmentPolicy) -> None:
        cursor.execute(
            """
            INSERT INTO AssignmentPolicy (
                id,
                auto_assign_enabled,
                mode,
                fairness_window_days,
                max_gap_hours,
                w_fair,
                w_urgency,
                w_lrs,
                dr_consecutive_penalty,
                updated_at
            )
            VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(id) DO UPDATE SET
                auto_assign_enabled = excluded.auto_assign_enabled,
                mode = excluded.mode,
                fairness_window_days = excluded.fairness_window_days,
                max_gap_hours = excluded.max_gap_hours,
                w_fair = excluded.w_fair,
                w_urgency = excluded.w_urgency,
                w_lrs = excluded.w_lrs,
                dr_consecutive_penalty = excluded.dr_consecutive_penalty,
                updated_at = CURRENT_TIMESTAMP;
            """,
            (
                1 if policy.auto_assign_enabled else 0,
                policy.mode.value,
                policy.fairness_window_days,
                policy.max_gap_hours,
                policy.w_fair,
                policy.w_urgency,
                policy.w_lrs,
                policy.dr_consecutive_penalty,
            ),
        )

    def load_policy(self) -> Optional[AssignmentPolicy]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM AssignmentPolicy WHERE id = 1;")
            row = cursor.fetchone()
            if row is None:
                return None
            return AssignmentPolicy(
                auto_assign_enabled=bool(row["auto_assign_enabled"]),
                mode=AssignmentMode(str(row["mode"])),
                fairness_window_days=int(row["fairness_window_days"]),
                max_gap_hours=float(row["max_gap_hours"]),
                w_fair=float(row["w_fair"]),
                w_urgency=float(row["w_urgency"]),
                w_lrs=float(row["w_lrs"]),
                dr_consecutive_penalty=float(row["dr_consecutive_penalty"]),
            )

    def save_policy(self, policy: AssignmentPolicy) -> None:
        with self._connection() as conn:
            self._write_policy(conn.cursor(), policy)

    def list_meeting_priorities(self) -> list[MeetingTypePriority]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT meeting_type, priority_value, urgent_threshold_days, general_threshold_days
                FROM MeetingTypePriorities
                ORDER BY priority_value DESC, meeting_type ASC;
                """
            )
            return [self._row_to_priority(row) for row in cursor.fetchall()]

    def get_meeting_priority(self, meeting_type: MeetingType) -> Optional[MeetingTypePriority]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT meeting_type, priority_value, urgent_threshold_days, general_threshold_days
                FROM MeetingTypePriorities
                WHERE meeting_type = ?;
                """,
                (meeting_type.value,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_priority(row)

    def save_meeting_priority(self, priority: MeetingTypePriority) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO MeetingTypePriorities (
                    meeting_type,
                    priority_value,
                    urgent_threshold_days,
                    general_threshold_days,
                    updated_at
                )
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(meeting_type) DO UPDATE SET
                    priority_value = excluded.priority_value,
                    urgent_threshold_days = excluded.urgent_threshold_days,
                    general_threshold_days = excluded.general_threshold_days,
                    updated_at = CURRENT_TIMESTAMP;
                """,
                (
                    priority.meeting_type.value,
                    priority.priority_value,
                    priority.urgent_threshold_days,
                    priority.general_threshold_days,
                ),
            )

    @staticmethod
    def _row_to_priority(row: sqlite3.Row) -> MeetingTypePriority:
        return MeetingTypePriority(
            meeting_type=MeetingType(str(row["meeting_type"])),
            priority_value=int(row["priority_value"]),
            urgent_threshold_days=int(row["urgent_threshold_days"]),
            general_threshold_days=int(row["general_threshold_days"]),
        )

    # --- Interpreters and bookings ---

    def create_interpreter(self, interpreter_id: str, name: str, is_active: bool = True) -> None:
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO Interpreters (id, name, is_active) VALUES (?, ?, ?);",
                (interpreter_id, name, 1 if is_active else 0),
            )

    def create_booking(
        self,
        meeting_type: MeetingType,
        time_start: datetime,
        time_end: datetime,
        interpreter_id: Optional[str] = None,
        booking_status: str = "waiting",
    ) -> int:
        """Insert booking row and return the created id."""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO Bookings (
                    meeting_type,
                    time_start,
                    time_end,
                    booking_status,
                    interpreter_id
                )
                VALUES (?, ?, ?, ?, ?);
                """,
                (
                    meeting_type.value,
                    to_db_timestamp(time_start),
                    to_db_timestamp(time_end),
                    booking_status,
                    interpreter_id,
                ),
            )
            return int(cursor.lastrowid)

    def get_booking(self, booking_id: int) -> Optional[Booking]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT id, meeting_type, time_start, time_end, booking_status, interpreter_id
                FROM Bookings
                WHERE id = ?;
                """,
                (booking_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_booking(row)

    def update_booking_status(self, booking_id: int, booking_status: str) -> None:
        with self._connection() as conn:
            conn.execute(
                "UPDATE Bookings SET booking_status = ? WHERE id = ?;",
                (booking_status, booking_id),
            )

    def list_unpooled_unassigned_bookings(self, now: datetime) -> list[Booking]:
        """Return future bookings that are neither pooled nor assigned."""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT id, meeting_type, time_start, time_end, booking_status, interpreter_id
                FROM Bookings
                WHERE pool_status IS NULL
                  AND interpreter_id IS NULL
                  AND booking_status != 'cancel'
                  AND time_start > ?
                ORDER BY time_start ASC, id ASC;
                """,
                (to_db_timestamp(now),),
            )
            return [self._row_to_booking(row) for row in cursor.fetchall()]

    def assign_interpreter(
        self,
        booking_id: int,
        interpreter_id: str,
        score: Optional[float],
        processing_type: str,
        assigned_at: datetime,
        require_claim: bool = True,
    ) -> bool:
        """Set the interpreter, clear the pool fields and write the log in one transaction.

        With ``require_claim`` the update only applies while the booking is
        still held in ``processing``; a lost claim leaves the row untouched.
        """
        claim_clause = "AND pool_status = 'processing'" if require_claim else ""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                UPDATE Bookings
                SET interpreter_id = ?,
                    pool_status = NULL,
                    pool_entry_time = NULL,
                    pool_deadline_time = NULL,
                    pool_processing_attempts = 0,
                    pool_processing_started_at = NULL
                WHERE id = ?
                  AND interpreter_id IS NULL
                  {claim_clause};
                """,
                (interpreter_id, booking_id),
            )
            if cursor.rowcount != 1:
                return False
            cursor.execute(
                """
                INSERT INTO AssignmentLogs (
                    booking_id,
                    interpreter_id,
                    score,
                    processing_type,
                    assigned_at
                )
                VALUES (?, ?, ?, ?, ?);
                """,
                (
                    booking_id,
                    interpreter_id,
                    score,
                    processing_type,
                    to_db_timestamp(assigned_at),
                ),
            )
            return True

    def count_assignment_logs(self) -> int:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) AS count FROM AssignmentLogs;")
            return int(cursor.fetchone()["count"])

    def save_assignment_log(
        self,
        booking_id: int,
        interpreter_id: str,
        processing_type: str,
        assigned_at: datetime,
        score: Optional[float] = None,
    ) -> None:
        """Record an assignment made outside the engine (manual or imported)."""
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO AssignmentLogs (
                    booking_id,
                    interpreter_id,
                    score,
                    processing_type,
                    assigned_at
                )
                VALUES (?, ?, ?, ?, ?);
                """,
                (booking_id, interpreter_id, score, processing_type, to_db_timestamp(assigned_at)),
            )

    @staticmethod
    def _row_to_booking(row: sqlite3.Row) -> Booking:
        return Booking(
            booking_id=int(row["id"]),
            meeting_type=MeetingType(str(row["meeting_type"])),
            time_start=from_db_timestamp(str(row["time_start"])),
            time_end=from_db_timestamp(str(row["time_end"])),
            booking_status=str(row["booking_status"]),
            interpreter_id=row["interpreter_id"],
        )

    # --- Workload history ---

    def load_workload_history(self, as_of: datetime, window_days: int) -> WorkloadHistory:
        """Build hours, last-assignment and DR history for active interpreters."""
        window_start = as_of - timedelta(days=window_days)
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT id FROM Interpreters WHERE is_active = 1 ORDER BY id ASC;")
            active_ids = [str(row["id"]) for row in cursor.fetchall()]
            hours: dict[str, float] = {interpreter_id: 0.0 for interpreter_id in active_ids}
            dr_assignments: dict[str, list[datetime]] = defaultdict(list)

            cursor.execute(
                """
                SELECT interpreter_id, meeting_type, time_start, time_end
                FROM Bookings
                WHERE interpreter_id IS NOT NULL
                  AND booking_status != 'cancel'
                  AND time_start >= ?
                ORDER BY time_start ASC;
                """,
                (to_db_timestamp(window_start),),
            )
            for row in cursor.fetchall():
                interpreter_id = str(row["interpreter_id"])
                start = from_db_timestamp(str(row["time_start"]))
                # DR history covers inactive interpreters too: it decides who served the last DR.
                if row["meeting_type"] == MeetingType.DR.value:
                    dr_assignments[interpreter_id].append(start)
                if interpreter_id not in hours:
                    continue
                end = from_db_timestamp(str(row["time_end"]))
                hours[interpreter_id] += (end - start).total_seconds() / 3600.0

            cursor.execute(
                """
                SELECT interpreter_id, MAX(assigned_at) AS last_assigned_at
                FROM AssignmentLogs
                GROUP BY interpreter_id;
                """
            )
            last_assignment_at = {
                str(row["interpreter_id"]): from_db_timestamp(str(row["last_assigned_at"]))
                for row in cursor.fetchall()
                if str(row["interpreter_id"]) in hours
            }

        return WorkloadHistory(
            as_of=as_of,
            window_days=window_days,
            hours_by_interpreter=hours,
            last_assignment_at=last_assignment_at,
            dr_assignments={
                interpreter_id: tuple(starts)
                for interpreter_id, starts in dr_assignments.items()
            },
        )

    def find_time_conflicts(
        self,
        booking_id: int,
        time_start: datetime,
        time_end: datetime,
    ) -> dict[str, int]:
        """Map each interpreter already holding an overlapping booking to that booking's id.

        Two bookings overlap when each starts before the other ends, so
        back-to-back meetings do not conflict. Cancelled bookings and the
        booking itself are ignored.
        """
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT interpreter_id, MIN(id) AS conflicting_booking_id
                FROM Bookings
                WHERE interpreter_id IS NOT NULL
                  AND booking_status != 'cancel'
                  AND id != ?
                  AND time_start < ?
                  AND time_end > ?
                GROUP BY interpreter_id;
                """,
                (booking_id, to_db_timestamp(time_end), to_db_timestamp(time_start)),
            )
            return {
                str(row["interpreter_id"]): int(row["conflicting_booking_id"])
                for row in cursor.fetchall()
            }

    # --- Pool state ---

    def get_pool_entry(self, booking_id: int) -> Optional[PoolEntry]:
        """Return the booking's pool projection, ``None`` when the booking is unknown."""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {_POOL_ENTRY_COLUMNS} {_POOL_ENTRY_FROM} WHERE b.id = ?;",
                (booking_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_pool_entry(row)

    def insert_pool_entry(self, booking_id: int, entry_time: datetime, deadline_time: datetime) -> bool:
        """Admit a booking that is not pooled yet; ``False`` when it already is."""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE Bookings
                SET pool_status = 'waiting',
                    pool_entry_time = ?,
                    pool_deadline_time = ?,
                    pool_processing_attempts = 0,
                    pool_processing_started_at = NULL
                WHERE id = ?
                  AND pool_status IS NULL;
                """,
                (to_db_timestamp(entry_time), to_db_timestamp(deadline_time), booking_id),
            )
            return cursor.rowcount == 1

    def transition_pool_status(
        self,
        booking_id: int,
        sources: Sequence[PoolStatus],
        target: PoolStatus,
        *,
        increment_attempts: bool = False,
        reset_attempts: bool = False,
        processing_started_at: Optional[datetime] = None,
    ) -> bool:
        """Compare-and-set the pool status in one UPDATE; ``True`` when it applied."""
        if not sources:
            return False
        assignments = ["pool_status = ?"]
        params: list[object] = [target.to_db()]
        if increment_attempts:
            assignments.append("pool_processing_attempts = pool_processing_attempts + 1")
        if reset_attempts:
            assignments.append("pool_processing_attempts = 0")
        if processing_started_at is not None:
            assignments.append("pool_processing_started_at = ?")
            params.append(to_db_timestamp(processing_started_at))

        placeholders = ",".join("?" for _ in sources)
        params.append(booking_id)
        params.extend(source.value for source in sources)
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                UPDATE Bookings
                SET {", ".join(assignments)}
                WHERE id = ?
                  AND pool_status IN ({placeholders});
                """,
                tuple(params),
            )
            return cursor.rowcount == 1

    def release_processing(self, booking_id: int, max_attempts: int) -> Optional[PoolStatus]:
        """Move a claimed entry back to waiting, or to failed at the attempt ceiling."""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE Bookings
                SET pool_status = CASE
                        WHEN pool_processing_attempts >= ? THEN 'failed'
                        ELSE 'waiting'
                    END
                WHERE id = ?
                  AND pool_status = 'processing';
                """,
                (max_attempts, booking_id),
            )
            if cursor.rowcount != 1:
                return None
            cursor.execute("SELECT pool_status FROM Bookings WHERE id = ?;", (booking_id,))
            return PoolStatus.from_db(cursor.fetchone()["pool_status"])

    def clear_pool_fields(self, booking_id: int) -> bool:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE Bookings
                SET pool_status = NULL,
                    pool_entry_time = NULL,
                    pool_deadline_time = NULL,
                    pool_processing_attempts = 0,
                    pool_processing_started_at = NULL
                WHERE id = ?
                  AND (pool_status IS NOT NULL OR pool_entry_time IS NOT NULL);
                """,
                (booking_id,),
            )
            return cursor.rowcount == 1

    def requeue_failed_entries(
        self,
        max_attempts: int,
        attempted_before: Optional[datetime],
        include_exhausted: bool,
    ) -> int:
        conditions = ["pool_status = 'failed'"]
        params: list[object] = []
        if not include_exhausted:
            conditions.append("pool_processing_attempts < ?")
            params.append(max_attempts)
        if attempted_before is not None:
            conditions.append(
                "(pool_processing_started_at IS NULL OR pool_processing_started_at <= ?)"
            )
            params.append(to_db_timestamp(attempted_before))
        reset_clause = ", pool_processing_attempts = 0" if include_exhausted else ""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                UPDATE Bookings
                SET pool_status = 'waiting'{reset_clause}
                WHERE {" AND ".join(conditions)};
                """,
                tuple(params),
            )
            return int(cursor.rowcount)

    def list_pool_entries(self, status: Optional[PoolStatus] = None) -> list[PoolEntry]:
        if status is None or status is PoolStatus.NONE:
            where_clause = "b.pool_status IS NOT NULL"
            params: tuple[object, ...] = ()
        else:
            where_clause = "b.pool_status = ?"
            params = (status.value,)
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {_POOL_ENTRY_COLUMNS} {_POOL_ENTRY_FROM}
                WHERE {where_clause}
                ORDER BY b.pool_entry_time ASC, b.id ASC;
                """,
                params,
            )
            return [self._row_to_pool_entry(row) for row in cursor.fetchall()]

    def list_ready_entries(self, now: datetime) -> list[PoolEntry]:
        """Entries flagged ready, or waiting with an elapsed deadline."""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {_POOL_ENTRY_COLUMNS} {_POOL_ENTRY_FROM}
                WHERE (b.pool_status = 'waiting' AND b.pool_deadline_time <= ?)
                   OR b.pool_status = 'ready'
                ORDER BY priority_value DESC, b.pool_deadline_time ASC, b.pool_entry_time ASC, b.id ASC;
                """,
                (to_db_timestamp(now),),
            )
            return [self._row_to_pool_entry(row) for row in cursor.fetchall()]

    def list_deadline_entries(self, now: datetime) -> list[PoolEntry]:
        """Entries whose deadline elapsed, regardless of the ready flag."""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {_POOL_ENTRY_COLUMNS} {_POOL_ENTRY_FROM}
                WHERE b.pool_status IN ('waiting', 'ready')
                  AND b.pool_deadline_time <= ?
                ORDER BY priority_value DESC, b.pool_deadline_time ASC, b.pool_entry_time ASC, b.id ASC;
                """,
                (to_db_timestamp(now),),
            )
            return [self._row_to_pool_entry(row) for row in cursor.fetchall()]

    def get_pool_stats(self, now: datetime) -> PoolStats:
        """Aggregate pool counters in a single statement."""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT
                    COUNT(*) AS total_in_pool,
                    COALESCE(SUM(CASE WHEN pool_status = 'waiting' THEN 1 ELSE 0 END), 0) AS waiting,
                    COALESCE(SUM(
                        CASE
                            WHEN pool_status = 'ready' THEN 1
                            WHEN pool_status = 'waiting' AND pool_deadline_time <= ? THEN 1
                            ELSE 0
                        END
                    ), 0) AS ready_for_processing,
                    COALESCE(SUM(CASE WHEN pool_status = 'processing' THEN 1 ELSE 0 END), 0) AS processing,
                    COALESCE(SUM(CASE WHEN pool_status = 'failed' THEN 1 ELSE 0 END), 0) AS failed,
                    MIN(pool_entry_time) AS oldest_entry
                FROM Bookings
                WHERE pool_status IS NOT NULL;
                """,
                (to_db_timestamp(now),),
            )
            row = cursor.fetchone()
            return PoolStats(
                total_in_pool=int(row["total_in_pool"]),
                waiting=int(row["waiting"]),
                ready_for_processing=int(row["ready_for_processing"]),
                currently_processing=int(row["processing"]),
                failed_entries=int(row["failed"]),
                oldest_entry=from_db_timestamp(row["oldest_entry"]),
            )

    @staticmethod
    def _row_to_pool_entry(row: sqlite3.Row) -> PoolEntry:
        return PoolEntry(
            booking_id=int(row["id"]),
            meeting_type=MeetingType(str(row["meeting_type"])),
            time_start=from_db_timestamp(str(row["time_start"])),
            time_end=from_db_timestamp(str(row["time_end"])),
            pool_status=PoolStatus.from_db(row["pool_status"]),
            pool_entry_time=from_db_timestamp(row["pool_entry_time"]),
            pool_deadline_time=from_db_timestamp(row["pool_deadline_time"]),
            pool_processing_attempts=int(row["pool_processing_attempts"]),
            pool_processing_started_at=from_db_timestamp(row["pool_processing_started_at"]),
            interpreter_id=row["interpreter_id"],
            booking_status=str(row["booking_status"]),
            priority_value=int(row["priority_value"]),
        )

    # --- Pool run logs ---

    def save_pool_run(self, record: PoolRunRecord) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO PoolRunLogs (
                    batch_id,
                    started_at,
                    finished_at,
                    processed_count,
                    assigned_count,
                    failed_count,
                    retried_count,
                    skipped_count,
                    error_count
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    record.batch_id,
                    to_db_timestamp(record.started_at),
                    to_db_timestamp(record.finished_at),
                    record.processed_count,
                    record.assigned_count,
                    record.failed_count,
                    record.retried_count,
                    record.skipped_count,
                    record.error_count,
                ),
            )

    def list_pool_runs(self, since: datetime) -> list[PoolRunRecord]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT *
                FROM PoolRunLogs
                WHERE started_at >= ?
                ORDER BY started_at ASC, id ASC;
                """,
                (to_db_timestamp(since),),
            )
            return [
                PoolRunRecord(
                    batch_id=str(row["batch_id"]),
                    started_at=from_db_timestamp(str(row["started_at"])),
                    finished_at=from_db_timestamp(str(row["finished_at"])),
                    processed_count=int(row["processed_count"]),
                    assigned_count=int(row["assigned_count"]),
                    failed_count=int(row["failed_count"]),
                    retried_count=int(row["retried_count"]),
                    skipped_count=int(row["skipped_count"]),
                    error_count=int(row["error_count"]),
                )
                for row in cursor.fetchall()
            ]
