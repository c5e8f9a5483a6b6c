"""
Session Registry Module - QR Check-In Attendance Protocol

This module tracks live attendance sessions: one per class and date while it
is active. It keeps the roster snapshot, the set of students already marked,
and the live counts shown to the lecturer. The check-then-insert that marks a
student runs as one immediate-mode transaction, so concurrent scans of the
same student can never produce two records.

Session lifecycle:
    created -> active -> ended
    active/ended -> cleared  (privileged wipe)

Features:
- Explicit session state machine
- Atomic, at-most-once marking per (session, student)
- Cached live statistics invalidated on every mutation
- Automatic absent records for unmarked students when a session ends
- Manual marks for students without a scannable code
- Status corrections by an authorized party
- Change notifications for observers
"""

from datetime import datetime
from enum import Enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from attendance_checkin.modules.auth_manager import ClearAuthorization, ClearAuthorizer
from attendance_checkin.modules.database_manager import DatabaseManager
from attendance_checkin.modules.errors import CheckInError, Rejection
from attendance_checkin.modules import notification_system as events


class SessionState(str, Enum):
    CREATED = 'created'
    ACTIVE = 'active'
    ENDED = 'ended'
    CLEARED = 'cleared'


class AttendanceStatus(str, Enum):
    PRESENT = 'present'
    LATE = 'late'
    EXCUSED = 'excused'
    ABSENT = 'absent'


# Statuses a scanner may assign at check-in time
SCAN_STATUSES = frozenset({AttendanceStatus.PRESENT, AttendanceStatus.LATE, AttendanceStatus.EXCUSED})

TRANSITIONS = {
    SessionState.CREATED: {SessionState.ACTIVE},
    SessionState.ACTIVE: {SessionState.ENDED, SessionState.CLEARED},
    SessionState.ENDED: {SessionState.CLEARED},
    SessionState.CLEARED: set(),
}


def parse_status(value: Any, allowed: Iterable[AttendanceStatus] = tuple(AttendanceStatus)) -> AttendanceStatus:
    """Normalize a status string; raises INVALID_STATUS if it is not allowed."""
    try:
        if isinstance(value, AttendanceStatus):
            status = value
        else:
            status = AttendanceStatus(str(value).strip().lower())
    except ValueError:
        raise CheckInError(Rejection.INVALID_STATUS, f"Invalid attendance status: {value!r}") from None
    if status not in allowed:
        raise CheckInError(Rejection.INVALID_STATUS, f"Status {status.value!r} is not allowed here")
    return status


def normalize_subject_id(subject_id: Any) -> str:
    return str(subject_id).strip()


@dataclass(frozen=True)
class SessionStats:
    """Live counts for one session."""
    enrolled_count: int
    marked_count: int
    remaining_count: int
    status_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enrolledCount': self.enrolled_count,
            'markedCount': self.marked_count,
            'remainingCount': self.remaining_count,
            'statusCounts': dict(self.status_counts),
        }


@dataclass(frozen=True)
class AttendanceSession:
    session_id: int
    class_id: str
    date_key: str
    state: SessionState
    enrolled_count: int
    marked_subject_ids: FrozenSet[str] = frozenset()
    started_by: Optional[str] = None
    started_at_ms: Optional[int] = None
    ended_at_ms: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sessionId': self.session_id,
            'classId': self.class_id,
            'dateKey': self.date_key,
            'state': self.state.value,
            'enrolledCount': self.enrolled_count,
            'markedCount': len(self.marked_subject_ids),
            'startedBy': self.started_by,
            'startedAtEpochMs': self.started_at_ms,
            'endedAtEpochMs': self.ended_at_ms,
        }


@dataclass(frozen=True)
class AttendanceRecord:
    """Data class for attendance record structure."""
    record_id: int
    session_id: int
    subject_id: str
    status: AttendanceStatus
    marked_at_ms: int
    marked_by: Optional[str]
    checked_in: bool = True
    notes: Optional[str] = None
    updated_by: Optional[str] = None
    updated_at_ms: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'AttendanceRecord':
        return cls(
            record_id=row['id'],
            session_id=row['session_id'],
            subject_id=row['subject_id'],
            status=AttendanceStatus(row['status']),
            marked_at_ms=row['marked_at_ms'],
            marked_by=row['marked_by'],
            checked_in=bool(row['checked_in']),
            notes=row['notes'],
            updated_by=row['updated_by'],
            updated_at_ms=row['updated_at_ms'],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.record_id,
            'sessionId': self.session_id,
            'subjectId': self.subject_id,
            'status': self.status.value,
            'markedAtEpochMs': self.marked_at_ms,
            'markedBy': self.marked_by,
            'checkedIn': self.checked_in,
            'notes': self.notes,
            'updatedBy': self.updated_by,
            'updatedAtEpochMs': self.updated_at_ms,
        }


class SessionRegistry:
    """
    Lifecycle and marked-set bookkeeping for attendance sessions.
    """

    def __init__(self, database_manager: DatabaseManager,
                 authorizer: Optional[ClearAuthorizer] = None,
                 notifier: Optional[events.StatsNotifier] = None,
                 clock: Optional[Callable[[], int]] = None):
        """
        Initialize the registry.

        Args:
            database_manager: Database manager instance
            authorizer: Verifies clear requests; clearing is refused without one
            notifier: Receives change notifications
            clock: Epoch-millisecond clock
        """
        self.db = database_manager
        self.authorizer = authorizer
        self.notifier = notifier
        self.clock = clock or (lambda: int(time.time() * 1000))
        self.logger = logging.getLogger(__name__)

        # session id -> SessionStats, guarded by the database lock
        self._stats_cache: Dict[int, SessionStats] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, class_id: str, roster: Iterable[Any], date_key: Optional[str] = None,
              started_by: Optional[str] = None) -> AttendanceSession:
        """
        Start taking attendance for a class on a date.

        Args:
            class_id (str): Class the session belongs to
            roster (Iterable): Subject ids of enrolled students
            date_key (str): Date of the session (YYYY-MM-DD), today by default
            started_by (str): Lecturer starting the session

        Returns:
            AttendanceSession: The new, active session

        Raises:
            CheckInError: ALREADY_ACTIVE if the class already has an active session on that date
        """
        class_id = str(class_id).strip()
        if not class_id:
            raise ValueError('class_id is required')
        date_key = date_key or datetime.now().strftime('%Y-%m-%d')

        subjects = []
        for subject_id in roster:
            normalized = normalize_subject_id(subject_id)
            if not normalized:
                raise ValueError('Roster contains an empty subject id')
            if normalized not in subjects:
                subjects.append(normalized)

        now = self.clock()
        with self.db.transaction() as conn:
            existing = conn.execute(
                "SELECT id FROM attendance_sessions WHERE class_id = ? AND date_key = ? AND state = ?",
                (class_id, date_key, SessionState.ACTIVE.value)
            ).fetchone()
            if existing:
                raise CheckInError(
                    Rejection.ALREADY_ACTIVE,
                    f"Class {class_id} already has an active session ({existing['id']}) for {date_key}"
                )

            cursor = conn.execute(
                """INSERT INTO attendance_sessions (class_id, date_key, state, enrolled_count, started_by)
                   VALUES (?, ?, ?, ?, ?)""",
                (class_id, date_key, SessionState.CREATED.value, len(subjects), started_by)
            )
            session_id = cursor.lastrowid

            conn.executemany(
                "INSERT INTO session_roster (session_id, subject_id) VALUES (?, ?)",
                [(session_id, subject_id) for subject_id in subjects]
            )

            self._transition(conn, session_id, SessionState.CREATED, SessionState.ACTIVE,
                             "started_at_ms = ?", (now,))

        self.logger.info(f"Attendance session {session_id} started for class {class_id} on {date_key} "
                         f"by {started_by} ({len(subjects)} enrolled)")

        session = self.get(session_id)
        self._publish(events.EVENT_SESSION_STARTED, session)
        return session

    def end(self, session_id: int, ended_by: Optional[str] = None,
            mark_absent: bool = True) -> AttendanceSession:
        """
        Close an active session. Later check-ins are rejected SESSION_CLOSED.

        Args:
            session_id (int): Session to end
            ended_by (str): Lecturer ending the session
            mark_absent (bool): Record unmarked roster members as absent

        Returns:
            AttendanceSession: The ended session
        """
        now = self.clock()
        absent_count = 0
        with self.db.transaction() as conn:
            row = self._load_row(conn, session_id)
            state = SessionState(row['state'])
            if state != SessionState.ACTIVE:
                raise CheckInError(Rejection.SESSION_CLOSED, f"Session {session_id} is {state.value}")

            if mark_absent:
                cursor = conn.execute(
                    """INSERT INTO attendance_records
                           (session_id, subject_id, status, checked_in, marked_at_ms, marked_by, notes)
                       SELECT r.session_id, r.subject_id, ?, 0, ?, ?, ?
                       FROM session_roster r
                       WHERE r.session_id = ?
                         AND NOT EXISTS (SELECT 1 FROM attendance_records a
                                         WHERE a.session_id = r.session_id AND a.subject_id = r.subject_id)""",
                    (AttendanceStatus.ABSENT.value, now, ended_by,
                     'Marked absent when the session ended', session_id)
                )
                absent_count = cursor.rowcount

            self._transition(conn, session_id, state, SessionState.ENDED, "ended_at_ms = ?", (now,))
            self._stats_cache.pop(session_id, None)

        self.logger.info(f"Attendance session {session_id} ended by {ended_by} "
                         f"({absent_count} marked absent)")

        session = self.get(session_id)
        self._publish(events.EVENT_SESSION_ENDED, session)
        return session

    def clear(self, session_id: int, authorization: Optional[ClearAuthorization]) -> int:
        """
        Delete every record of a session after privileged re-authorization.

        Args:
            session_id (int): Session to clear
            authorization (ClearAuthorization): Actor and clear password

        Returns:
            int: Number of records deleted

        Raises:
            CheckInError: UNAUTHORIZED, SESSION_NOT_FOUND or SESSION_CLOSED
        """
        if self.authorizer is None or not self.authorizer.verify(authorization):
            raise CheckInError(Rejection.UNAUTHORIZED)

        now = self.clock()
        with self.db.transaction() as conn:
            row = self._load_row(conn, session_id)
            state = SessionState(row['state'])
            if SessionState.CLEARED not in TRANSITIONS[state]:
                raise CheckInError(Rejection.SESSION_CLOSED, f"Session {session_id} is {state.value}")

            deleted = conn.execute(
                "DELETE FROM attendance_records WHERE session_id = ?", (session_id,)
            ).rowcount
            self._transition(conn, session_id, state, SessionState.CLEARED, "cleared_at_ms = ?", (now,))
            self._stats_cache.pop(session_id, None)

        self.logger.warning(f"Attendance session {session_id} cleared by {authorization.actor} "
                            f"({deleted} records deleted)")

        self._publish(events.EVENT_SESSION_CLEARED, self.get(session_id))
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, session_id: int) -> AttendanceSession:
        """Load a session; raises SESSION_NOT_FOUND for unknown ids."""
        with self.db.get_connection() as conn:
            row = self._load_row(conn, session_id)
            marked = conn.execute(
                "SELECT subject_id FROM attendance_records WHERE session_id = ? AND checked_in = 1",
                (session_id,)
            ).fetchall()
        return self._session_from_row(row, frozenset(r['subject_id'] for r in marked))

    def find(self, session_id: int) -> Optional[AttendanceSession]:
        try:
            return self.get(session_id)
        except CheckInError:
            return None

    def get_active(self, class_id: str) -> Optional[AttendanceSession]:
        """Most recently started active session of a class, if any."""
        row = self.db.execute_query(
            """SELECT id FROM attendance_sessions
               WHERE class_id = ? AND state = ?
               ORDER BY started_at_ms DESC, id DESC LIMIT 1""",
            (str(class_id).strip(), SessionState.ACTIVE.value),
            fetch_all=False
        )
        return self.get(row['id']) if row else None

    def stats(self, session_id: int) -> SessionStats:
        """
        Live counts for a session, served from cache between mutations.

        Returns:
            SessionStats: enrolled, marked, remaining and per-status counts
        """
        with self.db.get_connection() as conn:
            cached = self._stats_cache.get(session_id)
            if cached is not None:
                return cached

            row = self._load_row(conn, session_id)
            marked = conn.execute(
                "SELECT COUNT(*) AS marked FROM attendance_records WHERE session_id = ? AND checked_in = 1",
                (session_id,)
            ).fetchone()['marked']
            status_counts = {status.value: 0 for status in AttendanceStatus}
            for status_row in conn.execute(
                "SELECT status, COUNT(*) AS count FROM attendance_records WHERE session_id = ? GROUP BY status",
                (session_id,)
            ):
                status_counts[status_row['status']] = status_row['count']

            enrolled = row['enrolled_count']
            stats = SessionStats(
                enrolled_count=enrolled,
                marked_count=marked,
                remaining_count=max(0, enrolled - marked),
                status_counts=status_counts,
            )
            # Only active sessions are cached; end and clear drop the entry
            if row['state'] == SessionState.ACTIVE.value:
                self._stats_cache[session_id] = stats
            return stats

    def is_enrolled(self, session_id: int, subject_id: Any) -> bool:
        row = self.db.execute_query(
            "SELECT 1 AS enrolled FROM session_roster WHERE session_id = ? AND subject_id = ?",
            (session_id, normalize_subject_id(subject_id)),
            fetch_all=False
        )
        return row is not None

    def records(self, session_id: int) -> List[AttendanceRecord]:
        """All attendance records of a session, ordered by subject id."""
        with self.db.get_connection() as conn:
            self._load_row(conn, session_id)
            rows = conn.execute(
                "SELECT * FROM attendance_records WHERE session_id = ? ORDER BY subject_id",
                (session_id,)
            ).fetchall()
        return [AttendanceRecord.from_row(dict(row)) for row in rows]

    def get_record(self, session_id: int, subject_id: Any) -> Optional[AttendanceRecord]:
        row = self.db.execute_query(
            "SELECT * FROM attendance_records WHERE session_id = ? AND subject_id = ?",
            (session_id, normalize_subject_id(subject_id)),
            fetch_all=False
        )
        return AttendanceRecord.from_row(row) if row else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def try_mark(self, session_id: int, subject_id: Any, status: AttendanceStatus,
                 marked_by: Optional[str] = None, notes: Optional[str] = None,
                 now_ms: Optional[int] = None) -> AttendanceRecord:
        """
        Atomically add a student to the session's marked set.

        The session state, roster membership and uniqueness are all checked
        inside one immediate transaction; the insert itself cannot create a
        second row for the same (session, student).

        Raises:
            CheckInError: NO_ACTIVE_SESSION, SESSION_CLOSED, NOT_ENROLLED or ALREADY_MARKED
        """
        subject = normalize_subject_id(subject_id)
        status = parse_status(status)
        checked_in = status != AttendanceStatus.ABSENT
        marked_at = self.clock() if now_ms is None else now_ms

        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT state FROM attendance_sessions WHERE id = ?", (session_id,)
            ).fetchone()
            if row is None:
                raise CheckInError(Rejection.NO_ACTIVE_SESSION)
            state = SessionState(row['state'])
            if state in (SessionState.ENDED, SessionState.CLEARED):
                raise CheckInError(Rejection.SESSION_CLOSED)
            if state != SessionState.ACTIVE:
                raise CheckInError(Rejection.NO_ACTIVE_SESSION)

            enrolled = conn.execute(
                "SELECT 1 FROM session_roster WHERE session_id = ? AND subject_id = ?",
                (session_id, subject)
            ).fetchone()
            if enrolled is None:
                raise CheckInError(Rejection.NOT_ENROLLED)

            cursor = conn.execute(
                """INSERT INTO attendance_records
                       (session_id, subject_id, status, checked_in, marked_at_ms, marked_by, notes)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (session_id, subject_id) DO NOTHING""",
                (session_id, subject, status.value, int(checked_in), marked_at, marked_by, notes)
            )
            if cursor.rowcount == 0:
                raise CheckInError(Rejection.ALREADY_MARKED)

            record_id = cursor.lastrowid
            self._stats_cache.pop(session_id, None)

        self.logger.info(f"Attendance recorded: session {session_id}, student {subject}, status {status.value}")
        return AttendanceRecord(
            record_id=record_id,
            session_id=session_id,
            subject_id=subject,
            status=status,
            marked_at_ms=marked_at,
            marked_by=marked_by,
            checked_in=checked_in,
            notes=notes,
        )

    def mark_manual(self, session_id: int, subject_id: Any, status: Any,
                    marked_by: Optional[str], notes: Optional[str] = None) -> AttendanceRecord:
        """
        Record attendance for a student who cannot present a QR code.

        Goes through ``try_mark``, so a manual mark and a scan of the same
        student still produce a single record. An ``absent`` mark is stored
        but does not count as checked in.

        Args:
            session_id (int): Active session
            subject_id: Student to mark
            status: present, late, excused or absent
            marked_by (str): Lecturer recording the mark
            notes (str): Optional remark; a default note is stored otherwise

        Returns:
            AttendanceRecord: The new record
        """
        new_status = parse_status(status)
        record = self.try_mark(
            session_id, subject_id, new_status,
            marked_by=marked_by,
            notes=notes or f"Recorded manually by {marked_by}",
        )

        self._publish(events.EVENT_MANUAL_MARK, self.get(session_id),
                      subject_id=record.subject_id, status=new_status.value)
        return record

    def update_status(self, session_id: int, subject_id: Any, status: Any,
                      updated_by: Optional[str], notes: Optional[str] = None) -> AttendanceRecord:
        """
        Correct the status of an existing record (e.g. late -> excused).

        Re-scanning never changes a record; only this method does.

        Returns:
            AttendanceRecord: The updated record
        """
        subject = normalize_subject_id(subject_id)
        new_status = parse_status(status)
        now = self.clock()

        with self.db.transaction() as conn:
            row = self._load_row(conn, session_id)
            if SessionState(row['state']) == SessionState.CLEARED:
                raise CheckInError(Rejection.SESSION_CLOSED)

            updated = conn.execute(
                """UPDATE attendance_records
                   SET status = ?, notes = COALESCE(?, notes), updated_by = ?, updated_at_ms = ?
                   WHERE session_id = ? AND subject_id = ?""",
                (new_status.value, notes, updated_by, now, session_id, subject)
            ).rowcount
            if updated == 0:
                raise CheckInError(Rejection.RECORD_NOT_FOUND)
            self._stats_cache.pop(session_id, None)

        self.logger.info(f"Attendance record for student {subject} in session {session_id} "
                         f"changed to {new_status.value} by {updated_by}")

        session = self.get(session_id)
        self._publish(events.EVENT_STATUS_CORRECTED, session, subject_id=subject, status=new_status.value)
        return self.get_record(session_id, subject)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_row(self, conn, session_id: int) -> Dict[str, Any]:
        row = conn.execute("SELECT * FROM attendance_sessions WHERE id = ?", (session_id,)).fetchone()
        if row is None:
            raise CheckInError(Rejection.SESSION_NOT_FOUND, f"Attendance session {session_id} not found")
        return dict(row)

    def _transition(self, conn, session_id: int, current: SessionState, target: SessionState,
                    extra_assignments: str = '', extra_params: tuple = ()) -> None:
        if target not in TRANSITIONS[current]:
            raise CheckInError(Rejection.SESSION_CLOSED,
                               f"Session {session_id} cannot move from {current.value} to {target.value}")
        assignments = 'state = ?' + (f', {extra_assignments}' if extra_assignments else '')
        conn.execute(
            f"UPDATE attendance_sessions SET {assignments} WHERE id = ? AND state = ?",
            (target.value, *extra_params, session_id, current.value)
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any], marked: FrozenSet[str]) -> AttendanceSession:
        return AttendanceSession(
            session_id=row['id'],
            class_id=row['class_id'],
            date_key=row['date_key'],
            state=SessionState(row['state']),
            enrolled_count=row['enrolled_count'],
            marked_subject_ids=marked,
            started_by=row['started_by'],
            started_at_ms=row['started_at_ms'],
            ended_at_ms=row['ended_at_ms'],
        )

    def _publish(self, event_type: str, session: AttendanceSession, **kwargs) -> None:
        if self.notifier is None:
            return
        self.notifier.publish(event_type, session.session_id, session.class_id,
                              self.stats(session.session_id), **kwargs)
