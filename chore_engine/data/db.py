"""
Chore Engine — Household Database.

Children, task templates, candidates, responses, assignments and the
completion ledger persist in SQLite. Idempotence and the at-most-one
acceptance rule are enforced by unique indexes in the schema, so
concurrent generator runs and accept calls coordinate through the store
rather than through in-process locks.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

from chore_engine.core.errors import LockTimeoutError
from chore_engine.core.rules import Rule, SingleRule, rule_to_config
from chore_engine.data.models import (
    AssignmentStatus,
    CandidateStatus,
    ChildProfile,
    CompletionLedgerEntry,
    ResponseType,
    RuleType,
    SingleTaskSummary,
    TaskAssignment,
    TaskResponse,
    TaskTemplate,
)

logger = logging.getLogger(__name__)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS children (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    household_id  INTEGER NOT NULL,
    name          TEXT    NOT NULL,
    created_at    TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_children_household ON children(household_id);

CREATE TABLE IF NOT EXISTS task_templates (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    household_id  INTEGER NOT NULL,
    name          TEXT    NOT NULL,
    points        INTEGER NOT NULL DEFAULT 0,
    rule_type     TEXT    NOT NULL
                  CHECK (rule_type IN ('daily', 'repeating', 'weekly_rotation', 'single')),
    rule_config   TEXT    NOT NULL DEFAULT '{}',
    deadline      TEXT,
    active        INTEGER NOT NULL DEFAULT 1,
    expired_at    TEXT,
    created_at    TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_task_templates_household ON task_templates(household_id, active);

CREATE TABLE IF NOT EXISTS task_candidates (
    task_id       INTEGER NOT NULL REFERENCES task_templates(id),
    child_id      INTEGER NOT NULL REFERENCES children(id),
    PRIMARY KEY (task_id, child_id)
);
CREATE INDEX IF NOT EXISTS idx_task_candidates_child ON task_candidates(child_id);

CREATE TABLE IF NOT EXISTS task_responses (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id       INTEGER NOT NULL REFERENCES task_templates(id),
    child_id      INTEGER NOT NULL REFERENCES children(id),
    response      TEXT    NOT NULL CHECK (response IN ('accepted', 'declined')),
    responded_at  TEXT    NOT NULL,
    UNIQUE (task_id, child_id)
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_task_responses_one_acceptance
    ON task_responses(task_id) WHERE response = 'accepted';

CREATE TABLE IF NOT EXISTS task_assignments (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    household_id  INTEGER NOT NULL,
    task_id       INTEGER NOT NULL REFERENCES task_templates(id),
    child_id      INTEGER REFERENCES children(id),
    date          TEXT    NOT NULL,
    status        TEXT    NOT NULL DEFAULT 'pending'
                  CHECK (status IN ('pending', 'completed', 'overdue', 'expired')),
    completed_at  TEXT,
    created_at    TEXT    NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_task_assignments_child_day
    ON task_assignments(task_id, child_id, date) WHERE child_id IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS idx_task_assignments_household_day
    ON task_assignments(task_id, date) WHERE child_id IS NULL;
CREATE INDEX IF NOT EXISTS idx_task_assignments_household_date
    ON task_assignments(household_id, date);

CREATE TABLE IF NOT EXISTS task_completions (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    household_id   INTEGER NOT NULL,
    assignment_id  INTEGER NOT NULL UNIQUE REFERENCES task_assignments(id),
    child_id       INTEGER NOT NULL REFERENCES children(id),
    points_earned  INTEGER NOT NULL,
    completed_at   TEXT    NOT NULL
);
"""

# Counts only responses from listed candidates
_SUMMARY_SELECT = """
    SELECT
        t.id, t.household_id, t.name, t.points, t.deadline, t.created_at,
        (SELECT COUNT(*) FROM task_candidates c WHERE c.task_id = t.id) AS candidate_count,
        (SELECT COUNT(*) FROM task_responses r
           JOIN task_candidates c ON c.task_id = r.task_id AND c.child_id = r.child_id
          WHERE r.task_id = t.id AND r.response = 'declined') AS decline_count
    FROM task_templates t
"""

_NOT_ACCEPTED = """
    NOT EXISTS (
        SELECT 1 FROM task_responses ra
        WHERE ra.task_id = t.id AND ra.response = 'accepted'
    )
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc_iso(value: datetime) -> str:
    """Canonical stored timestamp: UTC, second precision, explicit offset.

    Every timestamp goes through here so string comparison in SQL orders
    them correctly. Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def local_date(now: datetime, tz_name: str | None = None) -> date:
    """The household calendar date at ``now`` in the configured timezone."""
    if tz_name is None:
        from chore_engine.config import settings
        tz_name = settings.TIMEZONE
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(tz_name)).date()


class _SQLiteDB:
    """Shared connection handling for the repositories below.

    All repositories point at the same database file; each creates the full
    schema if it is missing, so they can be constructed in any order.
    """

    def __init__(self, db_path: str | None = None, busy_timeout: float | None = None) -> None:
        if db_path is None or busy_timeout is None:
            from chore_engine.config import settings
            db_path = db_path if db_path is not None else settings.DATABASE_PATH
            if busy_timeout is None:
                busy_timeout = settings.DB_BUSY_TIMEOUT_SECONDS

        self._db_path = db_path
        self._busy_timeout = busy_timeout
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _open(self, timeout: float | None = None, autocommit: bool = False) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._db_path,
            timeout=timeout if timeout is not None else self._busy_timeout,
            isolation_level=None if autocommit else "",
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Short-lived connection; a busy wait that runs out raises ``LockTimeoutError``."""
        conn = self._open()
        try:
            with conn:
                yield conn
        except sqlite3.OperationalError as exc:
            if _is_lock_error(exc):
                raise self._lock_timeout(self._busy_timeout) from exc
            raise
        finally:
            conn.close()

    @contextmanager
    def _session(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        """Use the caller's transaction if given, else a short-lived connection."""
        if conn is not None:
            yield conn
            return
        with self._connect() as own:
            yield own

    @contextmanager
    def transaction(self, timeout: float | None = None) -> Iterator[sqlite3.Connection]:
        """Run a write transaction holding the database write lock.

        ``BEGIN IMMEDIATE`` takes the lock up front, waiting at most
        ``timeout`` seconds for a concurrent writer; running out of time
        raises ``LockTimeoutError``. Commits on success, rolls back on any
        exception.
        """
        wait = timeout if timeout is not None else self._busy_timeout
        conn = self._open(timeout=wait, autocommit=True)
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                if _is_lock_error(exc):
                    raise self._lock_timeout(wait) from exc
                raise
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _lock_timeout(self, wait: float) -> LockTimeoutError:
        logger.warning("Lock wait exceeded %.1fs on %s", wait, self._db_path)
        return LockTimeoutError(
            "Timed out waiting for the database lock; retry the request",
            timeout_seconds=wait,
        )

    def _init_db(self) -> None:
        """Create all tables and indexes if they don't exist."""
        conn = self._open(autocommit=True)
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(_SCHEMA)
        finally:
            conn.close()
        logger.debug("Schema initialized at %s", self._db_path)


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


# ---------------------------------------------------------------------------
# Children
# ---------------------------------------------------------------------------


class ChildDB(_SQLiteDB):
    """Child profiles. Read-only to the engine; written by the household admin."""

    @staticmethod
    def _row_to_child(row: sqlite3.Row) -> ChildProfile:
        return ChildProfile(
            id=row["id"],
            household_id=row["household_id"],
            name=row["name"],
            created_at=row["created_at"],
        )

    def add_child(self, household_id: int, name: str) -> ChildProfile:
        created_at = to_utc_iso(utcnow())
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO children (household_id, name, created_at) VALUES (?, ?, ?)",
                (household_id, name.strip(), created_at),
            )
            child_id = cursor.lastrowid
        logger.info("Child added: #%d '%s' in household %d", child_id, name, household_id)
        return ChildProfile(
            id=child_id, household_id=household_id, name=name.strip(), created_at=created_at,
        )

    def get_child(
        self, child_id: int, conn: sqlite3.Connection | None = None,
    ) -> ChildProfile | None:
        with self._session(conn) as c:
            row = c.execute("SELECT * FROM children WHERE id = ?", (child_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_child(row)

    def list_children(
        self, household_id: int, conn: sqlite3.Connection | None = None,
    ) -> list[ChildProfile]:
        """Children of a household in insertion order."""
        with self._session(conn) as c:
            rows = c.execute(
                "SELECT * FROM children WHERE household_id = ? ORDER BY id",
                (household_id,),
            ).fetchall()
        return [self._row_to_child(r) for r in rows]


# ---------------------------------------------------------------------------
# Task templates
# ---------------------------------------------------------------------------


class TemplateDB(_SQLiteDB):
    """Task templates and, for single tasks, their fixed candidate set."""

    @staticmethod
    def _row_to_template(row: sqlite3.Row) -> TaskTemplate:
        return TaskTemplate(
            id=row["id"],
            household_id=row["household_id"],
            name=row["name"],
            rule_type=RuleType(row["rule_type"]),
            rule_config=json.loads(row["rule_config"] or "{}"),
            points=row["points"],
            deadline=row["deadline"],
            active=bool(row["active"]),
            expired_at=row["expired_at"],
            created_at=row["created_at"],
        )

    def add_template(self, household_id: int, name: str, rule: Rule, points: int = 0) -> TaskTemplate:
        """Insert a template; single tasks get their candidate rows in the same transaction."""
        deadline = None
        if isinstance(rule, SingleRule) and rule.deadline is not None:
            deadline = to_utc_iso(rule.deadline)
        config = rule_to_config(rule)
        created_at = to_utc_iso(utcnow())

        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO task_templates
                    (household_id, name, points, rule_type, rule_config, deadline, active, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (household_id, name, points, rule.rule_type, json.dumps(config), deadline, created_at),
            )
            task_id = cursor.lastrowid
            if isinstance(rule, SingleRule):
                conn.executemany(
                    "INSERT INTO task_candidates (task_id, child_id) VALUES (?, ?)",
                    [(task_id, child_id) for child_id in rule.candidates],
                )

        logger.info("Template added: #%d '%s' (%s)", task_id, name, rule.rule_type)
        return TaskTemplate(
            id=task_id,
            household_id=household_id,
            name=name,
            rule_type=RuleType(rule.rule_type),
            rule_config=config,
            points=points,
            deadline=deadline,
            active=True,
            created_at=created_at,
        )

    def get_template(
        self, task_id: int, conn: sqlite3.Connection | None = None,
    ) -> TaskTemplate | None:
        with self._session(conn) as c:
            row = c.execute("SELECT * FROM task_templates WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_template(row)

    def list_templates(
        self,
        household_id: int,
        active_only: bool = True,
        include_single: bool = True,
    ) -> list[TaskTemplate]:
        conditions = ["household_id = ?"]
        params: list = [household_id]
        if active_only:
            conditions.append("active = 1")
        if not include_single:
            conditions.append("rule_type != 'single'")

        query = "SELECT * FROM task_templates WHERE " + " AND ".join(conditions) + " ORDER BY name, id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_template(r) for r in rows]

    def update_rule(self, task_id: int, rule: Rule) -> None:
        """Replace the stored rule of a recurring template."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE task_templates SET rule_type = ?, rule_config = ? WHERE id = ?",
                (rule.rule_type, json.dumps(rule_to_config(rule)), task_id),
            )
        logger.info("Template #%d rule updated (%s)", task_id, rule.rule_type)

    def set_active(
        self, task_id: int, active: bool, conn: sqlite3.Connection | None = None,
    ) -> bool:
        with self._session(conn) as c:
            cursor = c.execute(
                "UPDATE task_templates SET active = ? WHERE id = ? AND active = ?",
                (int(active), task_id, int(not active)),
            )
        changed = cursor.rowcount > 0
        if changed:
            logger.info("Template #%d %s", task_id, "activated" if active else "deactivated")
        return changed

    def households_with_recurring_templates(self) -> list[int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT household_id FROM task_templates
                WHERE active = 1 AND rule_type != 'single'
                ORDER BY household_id
                """
            ).fetchall()
        return [r["household_id"] for r in rows]

    def mark_expired(self, now: datetime, household_id: int | None = None) -> int:
        """Stamp ``expired_at`` on single tasks past deadline with no acceptance.

        Only ever sets the column, never clears it.
        """
        stamp = to_utc_iso(now)
        query = """
            UPDATE task_templates SET expired_at = ?
            WHERE rule_type = 'single'
              AND active = 1
              AND expired_at IS NULL
              AND deadline IS NOT NULL
              AND deadline <= ?
              AND NOT EXISTS (
                  SELECT 1 FROM task_responses ra
                  WHERE ra.task_id = task_templates.id AND ra.response = 'accepted'
              )
        """
        params: list = [stamp, stamp]
        if household_id is not None:
            query += " AND household_id = ?"
            params.append(household_id)
        with self._connect() as conn:
            cursor = conn.execute(query, params)
        return cursor.rowcount


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------


class AssignmentDB(_SQLiteDB):
    """Concrete task assignments. Rows are never deleted."""

    @staticmethod
    def _row_to_assignment(row: sqlite3.Row) -> TaskAssignment:
        return TaskAssignment(
            id=row["id"],
            household_id=row["household_id"],
            task_id=row["task_id"],
            child_id=row["child_id"],
            date=row["date"],
            status=AssignmentStatus(row["status"]),
            completed_at=row["completed_at"],
        )

    def insert_many_if_absent(
        self, household_id: int, rows: Iterable[tuple[int, int | None, str]],
    ) -> tuple[int, int]:
        """Insert ``(task_id, child_id, date)`` rows, skipping existing ones.

        The unique indexes decide what already exists, so overlapping or
        concurrent runs never double-insert.

        Returns:
            ``(created, skipped)`` counts.
        """
        created = skipped = 0
        created_at = to_utc_iso(utcnow())
        with self.transaction() as conn:
            for task_id, child_id, day in rows:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO task_assignments
                        (household_id, task_id, child_id, date, status, created_at)
                    VALUES (?, ?, ?, ?, 'pending', ?)
                    """,
                    (household_id, task_id, child_id, day, created_at),
                )
                if cursor.rowcount > 0:
                    created += 1
                else:
                    skipped += 1
        return created, skipped

    def create_assignment(
        self,
        household_id: int,
        task_id: int,
        child_id: int | None,
        day: date,
        conn: sqlite3.Connection | None = None,
    ) -> TaskAssignment:
        """Insert one pending assignment. A duplicate raises ``sqlite3.IntegrityError``."""
        with self._session(conn) as c:
            cursor = c.execute(
                """
                INSERT INTO task_assignments
                    (household_id, task_id, child_id, date, status, created_at)
                VALUES (?, ?, ?, ?, 'pending', ?)
                """,
                (household_id, task_id, child_id, day.isoformat(), to_utc_iso(utcnow())),
            )
            assignment_id = cursor.lastrowid
        return TaskAssignment(
            id=assignment_id,
            household_id=household_id,
            task_id=task_id,
            child_id=child_id,
            date=day.isoformat(),
        )

    def get_assignment(
        self, assignment_id: int, conn: sqlite3.Connection | None = None,
    ) -> TaskAssignment | None:
        with self._session(conn) as c:
            row = c.execute(
                "SELECT * FROM task_assignments WHERE id = ?", (assignment_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_assignment(row)

    def list_assignments(
        self,
        household_id: int,
        child_id: int | None = None,
        task_id: int | None = None,
        status: AssignmentStatus | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[TaskAssignment]:
        """Household assignments, optionally filtered, ordered by date."""
        conditions = ["household_id = ?"]
        params: list = [household_id]
        if child_id is not None:
            conditions.append("child_id = ?")
            params.append(child_id)
        if task_id is not None:
            conditions.append("task_id = ?")
            params.append(task_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(AssignmentStatus(status).value)
        if start is not None:
            conditions.append("date >= ?")
            params.append(start.isoformat())
        if end is not None:
            conditions.append("date <= ?")
            params.append(end.isoformat())

        query = (
            "SELECT * FROM task_assignments WHERE " + " AND ".join(conditions)
            + " ORDER BY date, task_id, child_id"
        )
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_assignment(r) for r in rows]

    def mark_completed(
        self, assignment_id: int, completed_at: datetime, conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Flip a pending or overdue assignment to completed."""
        with self._session(conn) as c:
            cursor = c.execute(
                """
                UPDATE task_assignments SET status = 'completed', completed_at = ?
                WHERE id = ? AND status IN ('pending', 'overdue')
                """,
                (to_utc_iso(completed_at), assignment_id),
            )
        return cursor.rowcount > 0

    def mark_overdue(self, today: date, household_id: int | None = None) -> int:
        """Flip pending recurring assignments dated before ``today`` to overdue."""
        query = """
            UPDATE task_assignments SET status = 'overdue'
            WHERE status = 'pending'
              AND date < ?
              AND task_id IN (SELECT id FROM task_templates WHERE rule_type != 'single')
        """
        params: list = [today.isoformat()]
        if household_id is not None:
            query += " AND household_id = ?"
            params.append(household_id)
        with self._connect() as conn:
            cursor = conn.execute(query, params)
        return cursor.rowcount

    def expire_single_assignments(self, now: datetime, household_id: int | None = None) -> int:
        """Flip pending single-task assignments whose task deadline has passed to expired."""
        query = """
            UPDATE task_assignments SET status = 'expired'
            WHERE status = 'pending'
              AND task_id IN (
                  SELECT id FROM task_templates
                  WHERE rule_type = 'single' AND deadline IS NOT NULL AND deadline <= ?
              )
        """
        params: list = [to_utc_iso(now)]
        if household_id is not None:
            query += " AND household_id = ?"
            params.append(household_id)
        with self._connect() as conn:
            cursor = conn.execute(query, params)
        return cursor.rowcount


# ---------------------------------------------------------------------------
# Candidates & responses
# ---------------------------------------------------------------------------


class ResponseDB(_SQLiteDB):
    """Candidate lookups, accept/decline responses and single-task listings."""

    @staticmethod
    def _row_to_response(row: sqlite3.Row) -> TaskResponse:
        return TaskResponse(
            id=row["id"],
            task_id=row["task_id"],
            child_id=row["child_id"],
            response=ResponseType(row["response"]),
            responded_at=row["responded_at"],
        )

    @staticmethod
    def _row_to_summary(row: sqlite3.Row) -> SingleTaskSummary:
        return SingleTaskSummary(
            id=row["id"],
            household_id=row["household_id"],
            name=row["name"],
            points=row["points"],
            deadline=row["deadline"],
            candidate_count=row["candidate_count"],
            decline_count=row["decline_count"],
        )

    def is_candidate(
        self, task_id: int, child_id: int, conn: sqlite3.Connection | None = None,
    ) -> bool:
        with self._session(conn) as c:
            row = c.execute(
                "SELECT 1 FROM task_candidates WHERE task_id = ? AND child_id = ?",
                (task_id, child_id),
            ).fetchone()
        return row is not None

    def candidate_statuses(self, task_id: int) -> list[CandidateStatus]:
        """Every candidate of a task with its current response, by name."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT tc.child_id, ch.name AS child_name, tr.response, tr.responded_at
                FROM task_candidates tc
                JOIN children ch ON ch.id = tc.child_id
                LEFT JOIN task_responses tr
                       ON tr.task_id = tc.task_id AND tr.child_id = tc.child_id
                WHERE tc.task_id = ?
                ORDER BY ch.name, tc.child_id
                """,
                (task_id,),
            ).fetchall()
        return [
            CandidateStatus(
                child_id=r["child_id"],
                child_name=r["child_name"],
                response=ResponseType(r["response"]) if r["response"] else None,
                responded_at=r["responded_at"],
            )
            for r in rows
        ]

    def get_response(
        self, task_id: int, child_id: int, conn: sqlite3.Connection | None = None,
    ) -> TaskResponse | None:
        with self._session(conn) as c:
            row = c.execute(
                "SELECT * FROM task_responses WHERE task_id = ? AND child_id = ?",
                (task_id, child_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_response(row)

    def accepted_response(
        self, task_id: int, conn: sqlite3.Connection | None = None,
    ) -> TaskResponse | None:
        with self._session(conn) as c:
            row = c.execute(
                "SELECT * FROM task_responses WHERE task_id = ? AND response = 'accepted'",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_response(row)

    def response_counts(self, task_id: int) -> tuple[int, int]:
        """Return ``(candidate_count, decline_count)`` for a task."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM task_candidates WHERE task_id = ?) AS candidate_count,
                    (SELECT COUNT(*) FROM task_responses r
                       JOIN task_candidates c ON c.task_id = r.task_id AND c.child_id = r.child_id
                      WHERE r.task_id = ? AND r.response = 'declined') AS decline_count
                """,
                (task_id, task_id),
            ).fetchone()
        return row["candidate_count"], row["decline_count"]

    def record_acceptance(
        self,
        task_id: int,
        child_id: int,
        responded_at: datetime,
        conn: sqlite3.Connection | None = None,
    ) -> TaskResponse:
        """Upsert an accepted response.

        A second acceptance for the same task raises ``sqlite3.IntegrityError``
        from the one-acceptance index.
        """
        with self._session(conn) as c:
            c.execute(
                """
                INSERT INTO task_responses (task_id, child_id, response, responded_at)
                VALUES (?, ?, 'accepted', ?)
                ON CONFLICT (task_id, child_id)
                DO UPDATE SET response = 'accepted', responded_at = excluded.responded_at
                """,
                (task_id, child_id, to_utc_iso(responded_at)),
            )
            row = c.execute(
                "SELECT * FROM task_responses WHERE task_id = ? AND child_id = ?",
                (task_id, child_id),
            ).fetchone()
        return self._row_to_response(row)

    def record_decline(self, task_id: int, child_id: int, responded_at: datetime) -> TaskResponse:
        """Upsert a declined response; an existing acceptance is left untouched.

        Returns the row as stored, so a decline by the accepting child comes
        back as the unchanged acceptance.
        """
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO task_responses (task_id, child_id, response, responded_at)
                VALUES (?, ?, 'declined', ?)
                ON CONFLICT (task_id, child_id)
                DO UPDATE SET response = 'declined', responded_at = excluded.responded_at
                WHERE task_responses.response != 'accepted'
                """,
                (task_id, child_id, to_utc_iso(responded_at)),
            )
            row = conn.execute(
                "SELECT * FROM task_responses WHERE task_id = ? AND child_id = ?",
                (task_id, child_id),
            ).fetchone()
        return self._row_to_response(row)

    def delete_decline(
        self, task_id: int, child_id: int, conn: sqlite3.Connection | None = None,
    ) -> bool:
        with self._session(conn) as c:
            cursor = c.execute(
                """
                DELETE FROM task_responses
                WHERE task_id = ? AND child_id = ? AND response = 'declined'
                """,
                (task_id, child_id),
            )
        return cursor.rowcount > 0

    def list_available(self, household_id: int, child_id: int, now: datetime) -> list[SingleTaskSummary]:
        """Open single tasks the child may still accept.

        The child is a candidate, has no response on record, nobody has
        accepted and the deadline (if any) is still ahead.
        """
        query = _SUMMARY_SELECT + f"""
            WHERE t.household_id = ?
              AND t.rule_type = 'single'
              AND t.active = 1
              AND t.expired_at IS NULL
              AND (t.deadline IS NULL OR t.deadline > ?)
              AND EXISTS (
                  SELECT 1 FROM task_candidates tc WHERE tc.task_id = t.id AND tc.child_id = ?
              )
              AND NOT EXISTS (
                  SELECT 1 FROM task_responses own WHERE own.task_id = t.id AND own.child_id = ?
              )
              AND {_NOT_ACCEPTED}
            ORDER BY t.deadline IS NULL, t.deadline, t.created_at DESC, t.id DESC
        """
        with self._connect() as conn:
            rows = conn.execute(
                query, (household_id, to_utc_iso(now), child_id, child_id),
            ).fetchall()
        return [self._row_to_summary(r) for r in rows]

    def list_failed(self, household_id: int, now: datetime) -> list[SingleTaskSummary]:
        """Unexpired single tasks that every candidate has declined."""
        query = "SELECT * FROM (" + _SUMMARY_SELECT + f"""
            WHERE t.household_id = ?
              AND t.rule_type = 'single'
              AND t.active = 1
              AND t.expired_at IS NULL
              AND (t.deadline IS NULL OR t.deadline > ?)
              AND {_NOT_ACCEPTED}
        ) WHERE candidate_count > 0 AND decline_count = candidate_count
          ORDER BY deadline IS NULL, deadline, created_at DESC, id DESC
        """
        with self._connect() as conn:
            rows = conn.execute(query, (household_id, to_utc_iso(now))).fetchall()
        return [self._row_to_summary(r) for r in rows]

    def list_expired(self, household_id: int, now: datetime) -> list[SingleTaskSummary]:
        """Single tasks past their deadline (or stamped expired) with no acceptance."""
        query = _SUMMARY_SELECT + f"""
            WHERE t.household_id = ?
              AND t.rule_type = 'single'
              AND t.active = 1
              AND (t.expired_at IS NOT NULL
                   OR (t.deadline IS NOT NULL AND t.deadline <= ?))
              AND {_NOT_ACCEPTED}
            ORDER BY t.deadline DESC, t.id DESC
        """
        with self._connect() as conn:
            rows = conn.execute(query, (household_id, to_utc_iso(now))).fetchall()
        return [self._row_to_summary(r) for r in rows]


# ---------------------------------------------------------------------------
# Completion ledger
# ---------------------------------------------------------------------------


class LedgerDB(_SQLiteDB):
    """Append-only completion ledger. Entries are inserted, never updated."""

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> CompletionLedgerEntry:
        return CompletionLedgerEntry(
            id=row["id"],
            household_id=row["household_id"],
            assignment_id=row["assignment_id"],
            child_id=row["child_id"],
            points_earned=row["points_earned"],
            completed_at=row["completed_at"],
        )

    def add_entry(
        self,
        household_id: int,
        assignment_id: int,
        child_id: int,
        points_earned: int,
        completed_at: datetime,
        conn: sqlite3.Connection | None = None,
    ) -> CompletionLedgerEntry:
        stamp = to_utc_iso(completed_at)
        with self._session(conn) as c:
            cursor = c.execute(
                """
                INSERT INTO task_completions
                    (household_id, assignment_id, child_id, points_earned, completed_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (household_id, assignment_id, child_id, points_earned, stamp),
            )
            entry_id = cursor.lastrowid
        return CompletionLedgerEntry(
            id=entry_id,
            household_id=household_id,
            assignment_id=assignment_id,
            child_id=child_id,
            points_earned=points_earned,
            completed_at=stamp,
        )

    def get_by_assignment(
        self, assignment_id: int, conn: sqlite3.Connection | None = None,
    ) -> CompletionLedgerEntry | None:
        with self._session(conn) as c:
            row = c.execute(
                "SELECT * FROM task_completions WHERE assignment_id = ?", (assignment_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_entry(row)

    def list_entries(self, household_id: int, child_id: int | None = None) -> list[CompletionLedgerEntry]:
        query = "SELECT * FROM task_completions WHERE household_id = ?"
        params: list = [household_id]
        if child_id is not None:
            query += " AND child_id = ?"
            params.append(child_id)
        query += " ORDER BY completed_at, id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_entry(r) for r in rows]
