"""
Chore Engine — Response Coordinator.

One-time ("single") tasks are offered to a fixed set of candidate children.
Each candidate may accept or decline; a decline can be undone while the task
is still open. At most one candidate ever accepts a task:

    OPEN ──accept──▶ ACCEPTED (terminal, one assignment created)
    OPEN ──all candidates decline──▶ FAILED ──undo decline──▶ OPEN
    OPEN ──deadline passes, nobody accepted──▶ EXPIRED

``accept`` runs in a short write transaction that takes the lock before
re-checking the task, so among concurrent accepts for one task exactly one
commits and the rest see the acceptance and fail with ``ConflictError``.
The lock wait is bounded; running out of time raises the retryable
``LockTimeoutError``. The store's one-acceptance index backs this up.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import TYPE_CHECKING

from chore_engine.core.errors import (
    ConflictError,
    DeadlinePassedError,
    ForbiddenError,
    NotFoundError,
)
from chore_engine.data.db import local_date, to_utc_iso, utcnow
from chore_engine.data.models import ResponseType, SingleTaskState

if TYPE_CHECKING:
    from chore_engine.data.db import AssignmentDB, ChildDB, ResponseDB, TemplateDB
    from chore_engine.data.models import (
        CandidateStatus,
        SingleTaskSummary,
        TaskAssignment,
        TaskResponse,
        TaskTemplate,
    )

logger = logging.getLogger(__name__)


class ResponseCoordinator:
    """Accept / decline / undo for single tasks, and their listings."""

    def __init__(
        self,
        template_db: TemplateDB,
        child_db: ChildDB,
        response_db: ResponseDB,
        assignment_db: AssignmentDB,
        lock_timeout: float | None = None,
    ) -> None:
        if lock_timeout is None:
            from chore_engine.config import settings
            lock_timeout = settings.ACCEPT_LOCK_TIMEOUT_SECONDS

        self._templates = template_db
        self._children = child_db
        self._responses = response_db
        self._assignments = assignment_db
        self._lock_timeout = lock_timeout

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def accept(
        self,
        household_id: int,
        task_id: int,
        child_id: int,
        now: datetime | None = None,
    ) -> TaskAssignment:
        """Claim a single task for ``child_id`` and create its assignment.

        Raises:
            NotFoundError: unknown child, or no active single task with this
                id in the household.
            ForbiddenError: the child is not a candidate.
            ConflictError: another candidate already accepted.
            DeadlinePassedError: the task's deadline has passed.
            LockTimeoutError: the lock could not be taken in time; retry.
        """
        now = now or utcnow()
        self._require_child(household_id, child_id)

        try:
            with self._responses.transaction(timeout=self._lock_timeout) as conn:
                template, accepted = self._require_respondable(household_id, task_id, conn=conn)

                if not self._responses.is_candidate(task_id, child_id, conn=conn):
                    raise ForbiddenError(
                        "You are not a candidate for this task", task_id=task_id, child_id=child_id,
                    )

                if accepted is not None:
                    raise ConflictError(
                        "Task has already been accepted by another child",
                        task_id=task_id, accepted_by=accepted.child_id,
                    )

                if _deadline_passed(template, now):
                    raise DeadlinePassedError(
                        "The deadline for this task has passed",
                        task_id=task_id, deadline=template.deadline,
                    )

                self._responses.record_acceptance(task_id, child_id, now, conn=conn)
                assignment = self._assignments.create_assignment(
                    household_id, task_id, child_id, local_date(now), conn=conn,
                )
        except sqlite3.IntegrityError as exc:
            # One-acceptance index: a concurrent accept got there first
            raise ConflictError(
                "Task has already been accepted by another child", task_id=task_id,
            ) from exc

        logger.info(
            "Household %d: task #%d accepted by child %d (assignment #%d)",
            household_id, task_id, child_id, assignment.id,
        )
        return assignment

    def decline(
        self,
        household_id: int,
        task_id: int,
        child_id: int,
        now: datetime | None = None,
    ) -> TaskResponse:
        """Record that ``child_id`` declines a single task.

        Declines from different children are independent writes. A decline
        after the task was accepted is stored but changes nothing; a decline
        by the accepting child leaves the acceptance in place.
        """
        now = now or utcnow()
        self._require_child(household_id, child_id)
        self._require_respondable(household_id, task_id)
        if not self._responses.is_candidate(task_id, child_id):
            raise ForbiddenError(
                "You are not a candidate for this task", task_id=task_id, child_id=child_id,
            )

        response = self._responses.record_decline(task_id, child_id, now)
        if response.response == ResponseType.ACCEPTED:
            logger.info(
                "Task #%d: decline from child %d ignored, child already accepted",
                task_id, child_id,
            )
        else:
            logger.info("Task #%d declined by child %d", task_id, child_id)
        return response

    def undo_decline(self, household_id: int, task_id: int, child_id: int) -> None:
        """Withdraw a decline so the child sees the task as available again.

        Raises:
            ConflictError: the task was already accepted.
            NotFoundError: the child has no decline on record.
        """
        self._require_child(household_id, child_id)
        with self._responses.transaction(timeout=self._lock_timeout) as conn:
            _, accepted = self._require_respondable(household_id, task_id, conn=conn)
            if accepted is not None:
                raise ConflictError(
                    "Task has already been accepted; declines can no longer be undone",
                    task_id=task_id,
                )
            if not self._responses.delete_decline(task_id, child_id, conn=conn):
                raise NotFoundError(
                    "No response found to undo", task_id=task_id, child_id=child_id,
                )
        logger.info("Task #%d: child %d withdrew their decline", task_id, child_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def available_tasks(
        self, household_id: int, child_id: int, now: datetime | None = None,
    ) -> list[SingleTaskSummary]:
        """Open single tasks the child can still accept."""
        self._require_child(household_id, child_id)
        return self._responses.list_available(household_id, child_id, now or utcnow())

    def failed_tasks(self, household_id: int, now: datetime | None = None) -> list[SingleTaskSummary]:
        """Tasks every candidate declined (and not yet expired)."""
        return self._responses.list_failed(household_id, now or utcnow())

    def expired_tasks(self, household_id: int, now: datetime | None = None) -> list[SingleTaskSummary]:
        """Tasks whose deadline passed without any acceptance."""
        return self._responses.list_expired(household_id, now or utcnow())

    def candidate_statuses(self, household_id: int, task_id: int) -> list[CandidateStatus]:
        self._require_single_task(household_id, task_id, active_only=False)
        return self._responses.candidate_statuses(task_id)

    def task_state(
        self, household_id: int, task_id: int, now: datetime | None = None,
    ) -> SingleTaskState:
        now = now or utcnow()
        template = self._require_single_task(household_id, task_id, active_only=False)
        if self._responses.accepted_response(task_id) is not None:
            return SingleTaskState.ACCEPTED
        if _deadline_passed(template, now):
            return SingleTaskState.EXPIRED
        candidates, declines = self._responses.response_counts(task_id)
        if candidates > 0 and declines == candidates:
            return SingleTaskState.FAILED
        return SingleTaskState.OPEN

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_child(self, household_id: int, child_id: int) -> None:
        child = self._children.get_child(child_id)
        if child is None or child.household_id != household_id:
            raise NotFoundError("Child profile not found", child_id=child_id)

    def _require_single_task(
        self,
        household_id: int,
        task_id: int,
        conn: sqlite3.Connection | None = None,
        active_only: bool = True,
    ) -> TaskTemplate:
        template = self._templates.get_template(task_id, conn=conn)
        if (
            template is None
            or template.household_id != household_id
            or not template.is_single
            or (active_only and not template.active)
        ):
            raise NotFoundError("Task not found or not a single task", task_id=task_id)
        return template

    def _require_respondable(
        self, household_id: int, task_id: int, conn: sqlite3.Connection | None = None,
    ) -> tuple[TaskTemplate, TaskResponse | None]:
        """Task plus its acceptance, if any.

        A task resolved by completion is inactive but still answers late
        responders; only an inactive task nobody accepted is gone.
        """
        template = self._require_single_task(household_id, task_id, conn=conn, active_only=False)
        accepted = self._responses.accepted_response(task_id, conn=conn)
        if not template.active and accepted is None:
            raise NotFoundError("Task not found or not a single task", task_id=task_id)
        return template, accepted


def _deadline_passed(template: TaskTemplate, now: datetime) -> bool:
    if template.expired_at is not None:
        return True
    return template.deadline is not None and template.deadline <= to_utc_iso(now)
