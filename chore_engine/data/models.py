"""
Chore Engine — Data Models.

Households own children, task templates and the assignments generated from
them. Assignments are never deleted: together with responses and the
completion ledger they are the audit trail of who did what and when.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from chore_engine.core.rules import Rule


class RuleType(str, Enum):
    DAILY = "daily"
    REPEATING = "repeating"
    WEEKLY_ROTATION = "weekly_rotation"
    SINGLE = "single"


class RotationType(str, Enum):
    ODD_EVEN_WEEK = "odd_even_week"
    ALTERNATING = "alternating"


class AssignmentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    OVERDUE = "overdue"
    EXPIRED = "expired"


class ResponseType(str, Enum):
    ACCEPTED = "accepted"
    DECLINED = "declined"


class SingleTaskState(str, Enum):
    """Derived lifecycle of a one-time task.

    OPEN → ACCEPTED (terminal)
    OPEN → FAILED (every candidate declined) → OPEN again on undo
    OPEN → EXPIRED (deadline passed without an acceptance)
    """
    OPEN = "open"
    ACCEPTED = "accepted"
    FAILED = "failed"
    EXPIRED = "expired"


@dataclass
class ChildProfile:
    """A child in a household. Insertion order (id) is the rotation order."""

    id: int
    household_id: int
    name: str
    created_at: str = ""


@dataclass
class TaskTemplate:
    """A chore definition plus the rule that decides who gets it and when.

    ``rule_config`` is the stored payload; ``rule`` parses it into the typed
    rule variant and raises ``ValidationError`` if it no longer validates.
    """

    id: int
    household_id: int
    name: str
    rule_type: RuleType
    rule_config: dict[str, Any] = field(default_factory=dict)
    points: int = 0
    deadline: str | None = None      # UTC ISO timestamp, single tasks only
    active: bool = True
    expired_at: str | None = None    # set once by the sweeper, never cleared
    created_at: str = ""

    @property
    def rule(self) -> Rule:
        from chore_engine.core.rules import parse_rule

        return parse_rule(self.rule_type, self.rule_config)

    @property
    def is_single(self) -> bool:
        return self.rule_type == RuleType.SINGLE


@dataclass
class TaskAssignment:
    """A concrete instance of a template on one date.

    ``child_id`` None means the chore is household-wide.
    """

    id: int
    household_id: int
    task_id: int
    child_id: int | None
    date: str                          # ISO date YYYY-MM-DD
    status: AssignmentStatus = AssignmentStatus.PENDING
    completed_at: str | None = None


@dataclass
class TaskResponse:
    id: int
    task_id: int
    child_id: int
    response: ResponseType
    responded_at: str


@dataclass
class CompletionLedgerEntry:
    """Append-only record of points earned by completing an assignment."""

    id: int
    household_id: int
    assignment_id: int
    child_id: int
    points_earned: int
    completed_at: str


@dataclass
class CandidateStatus:
    child_id: int
    child_name: str
    response: ResponseType | None = None
    responded_at: str | None = None


@dataclass
class SingleTaskSummary:
    """Read model for available / failed / expired one-time task listings."""

    id: int
    household_id: int
    name: str
    points: int
    deadline: str | None
    candidate_count: int
    decline_count: int

    @property
    def has_deadline(self) -> bool:
        return self.deadline is not None

    def days_until_deadline(self, now: datetime) -> int | None:
        """Whole days left until the deadline, rounded up. None without one."""
        if self.deadline is None:
            return None
        remaining = datetime.fromisoformat(self.deadline) - now
        return math.ceil(remaining.total_seconds() / 86400)
