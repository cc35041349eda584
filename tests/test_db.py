"""Tests for chore_engine.data.db — SQLite repositories and their constraints."""

import sqlite3
from datetime import date, datetime, timedelta, timezone

import pytest

from chore_engine.core.errors import LockTimeoutError
from chore_engine.core.rules import DailyRule, SingleRule
from chore_engine.core.sweeper import LifecycleSweeper
from chore_engine.data.db import AssignmentDB, ResponseDB, TemplateDB, local_date, to_utc_iso
from chore_engine.data.models import AssignmentStatus, ResponseType

HOUSEHOLD = 1
OTHER_HOUSEHOLD = 2
NOW = datetime(2024, 1, 3, 12, 0, tzinfo=timezone.utc)


class TestTimeHelpers:
    def test_to_utc_iso_converts_offset(self):
        value = datetime(2024, 1, 3, 14, 30, 15, 999, tzinfo=timezone(timedelta(hours=2)))
        assert to_utc_iso(value) == "2024-01-03T12:30:15+00:00"

    def test_to_utc_iso_naive_is_utc(self):
        assert to_utc_iso(datetime(2024, 1, 3, 12, 0)) == "2024-01-03T12:00:00+00:00"

    def test_local_date_uses_timezone(self):
        late_evening_utc = datetime(2024, 1, 3, 23, 30, tzinfo=timezone.utc)
        assert local_date(late_evening_utc, "UTC") == date(2024, 1, 3)
        assert local_date(late_evening_utc, "Asia/Jerusalem") == date(2024, 1, 4)


class TestChildDB:
    def test_add_and_get(self, child_db):
        child = child_db.add_child(HOUSEHOLD, " Emma ")
        assert child.name == "Emma"
        assert child_db.get_child(child.id) == child

    def test_get_missing(self, child_db):
        assert child_db.get_child(999) is None

    def test_list_in_insertion_order(self, child_db):
        noah = child_db.add_child(HOUSEHOLD, "Noah")
        emma = child_db.add_child(HOUSEHOLD, "Emma")
        child_db.add_child(OTHER_HOUSEHOLD, "Liam")
        assert [c.id for c in child_db.list_children(HOUSEHOLD)] == [noah.id, emma.id]


class TestTemplateDB:
    def test_single_template_stores_candidates(self, children, template_db, response_db):
        rule = SingleRule(candidates=(children["emma"].id,), deadline=NOW)
        template = template_db.add_template(HOUSEHOLD, "Clean garage", rule, points=10)

        assert template.deadline == "2024-01-03T12:00:00+00:00"
        assert response_db.is_candidate(template.id, children["emma"].id)
        assert response_db.response_counts(template.id) == (1, 0)

    def test_unknown_candidate_rolls_back(self, template_db):
        rule = SingleRule(candidates=(999,))
        with pytest.raises(sqlite3.IntegrityError):
            template_db.add_template(HOUSEHOLD, "Clean garage", rule)
        assert template_db.list_templates(HOUSEHOLD, active_only=False) == []

    def test_list_excluding_single(self, children, template_db):
        template_db.add_template(HOUSEHOLD, "Make bed", DailyRule())
        template_db.add_template(HOUSEHOLD, "Clean garage", SingleRule(candidates=(children["emma"].id,)))

        names = [t.name for t in template_db.list_templates(HOUSEHOLD, include_single=False)]
        assert names == ["Make bed"]

    def test_households_with_recurring_templates(self, children, template_db):
        template_db.add_template(HOUSEHOLD, "Make bed", DailyRule())
        template_db.add_template(OTHER_HOUSEHOLD, "Clean garage", SingleRule(candidates=(children["liam"].id,)))
        assert template_db.households_with_recurring_templates() == [HOUSEHOLD]

    def test_set_active_reports_change(self, template_db):
        template = template_db.add_template(HOUSEHOLD, "Make bed", DailyRule())
        assert template_db.set_active(template.id, False) is True
        assert template_db.set_active(template.id, False) is False
        assert template_db.set_active(template.id, True) is True


class TestAssignmentDB:
    @pytest.fixture
    def task(self, template_db):
        return template_db.add_template(HOUSEHOLD, "Make bed", DailyRule())

    def test_insert_many_counts(self, children, task, assignment_db):
        emma = children["emma"].id
        rows = [(task.id, emma, "2024-01-01"), (task.id, emma, "2024-01-02")]

        assert assignment_db.insert_many_if_absent(HOUSEHOLD, rows) == (2, 0)
        assert assignment_db.insert_many_if_absent(HOUSEHOLD, rows) == (0, 2)

    def test_duplicate_within_one_batch(self, children, task, assignment_db):
        row = (task.id, children["emma"].id, "2024-01-01")
        assert assignment_db.insert_many_if_absent(HOUSEHOLD, [row, row]) == (1, 1)

    def test_household_wide_row_is_unique(self, task, assignment_db):
        rows = [(task.id, None, "2024-01-01")]
        assert assignment_db.insert_many_if_absent(HOUSEHOLD, rows) == (1, 0)
        assert assignment_db.insert_many_if_absent(HOUSEHOLD, rows) == (0, 1)

    def test_household_wide_and_child_rows_coexist(self, children, task, assignment_db):
        rows = [(task.id, None, "2024-01-01"), (task.id, children["emma"].id, "2024-01-01")]
        assert assignment_db.insert_many_if_absent(HOUSEHOLD, rows) == (2, 0)

    def test_create_assignment_duplicate_raises(self, children, task, assignment_db):
        assignment_db.create_assignment(HOUSEHOLD, task.id, children["emma"].id, date(2024, 1, 1))
        with pytest.raises(sqlite3.IntegrityError):
            assignment_db.create_assignment(HOUSEHOLD, task.id, children["emma"].id, date(2024, 1, 1))

    def test_list_filters(self, children, task, assignment_db):
        emma, noah = children["emma"].id, children["noah"].id
        assignment_db.insert_many_if_absent(HOUSEHOLD, [
            (task.id, emma, "2024-01-01"),
            (task.id, noah, "2024-01-01"),
            (task.id, emma, "2024-01-02"),
        ])

        assert len(assignment_db.list_assignments(HOUSEHOLD, child_id=emma)) == 2
        assert len(assignment_db.list_assignments(HOUSEHOLD, start=date(2024, 1, 2))) == 1
        assert len(assignment_db.list_assignments(HOUSEHOLD, end=date(2024, 1, 1))) == 2
        assert len(assignment_db.list_assignments(HOUSEHOLD, status=AssignmentStatus.COMPLETED)) == 0

    def test_mark_completed_only_once(self, children, task, assignment_db):
        assignment = assignment_db.create_assignment(
            HOUSEHOLD, task.id, children["emma"].id, date(2024, 1, 1),
        )
        assert assignment_db.mark_completed(assignment.id, NOW) is True
        assert assignment_db.mark_completed(assignment.id, NOW) is False
        assert assignment_db.get_assignment(assignment.id).completed_at == "2024-01-03T12:00:00+00:00"


class TestResponseDB:
    @pytest.fixture
    def task(self, children, template_db):
        rule = SingleRule(candidates=(children["emma"].id, children["noah"].id))
        return template_db.add_template(HOUSEHOLD, "Clean garage", rule)

    def test_second_acceptance_violates_index(self, children, task, response_db):
        response_db.record_acceptance(task.id, children["emma"].id, NOW)
        with pytest.raises(sqlite3.IntegrityError):
            response_db.record_acceptance(task.id, children["noah"].id, NOW)

    def test_decline_does_not_overwrite_acceptance(self, children, task, response_db):
        emma = children["emma"].id
        response_db.record_acceptance(task.id, emma, NOW)

        stored = response_db.record_decline(task.id, emma, NOW + timedelta(hours=1))

        assert stored.response == ResponseType.ACCEPTED
        assert stored.responded_at == "2024-01-03T12:00:00+00:00"

    def test_acceptance_overwrites_decline(self, children, task, response_db):
        emma = children["emma"].id
        response_db.record_decline(task.id, emma, NOW)
        response_db.record_acceptance(task.id, emma, NOW)
        assert response_db.get_response(task.id, emma).response == ResponseType.ACCEPTED

    def test_delete_decline_only_deletes_declines(self, children, task, response_db):
        emma, noah = children["emma"].id, children["noah"].id
        response_db.record_acceptance(task.id, emma, NOW)
        response_db.record_decline(task.id, noah, NOW)

        assert response_db.delete_decline(task.id, emma) is False
        assert response_db.delete_decline(task.id, noah) is True
        assert response_db.get_response(task.id, noah) is None

    def test_response_counts_ignore_non_candidates(self, children, child_db, task, response_db, tmp_db_path):
        mia = child_db.add_child(HOUSEHOLD, "Mia")
        conn = sqlite3.connect(tmp_db_path)
        with conn:
            conn.execute(
                "INSERT INTO task_responses (task_id, child_id, response, responded_at) VALUES (?, ?, 'declined', ?)",
                (task.id, mia.id, to_utc_iso(NOW)),
            )
        conn.close()
        assert response_db.response_counts(task.id) == (2, 0)


class TestLedgerDB:
    def test_one_entry_per_assignment(self, children, template_db, assignment_db, ledger_db):
        task = template_db.add_template(HOUSEHOLD, "Make bed", DailyRule())
        assignment = assignment_db.create_assignment(
            HOUSEHOLD, task.id, children["emma"].id, date(2024, 1, 1),
        )
        ledger_db.add_entry(HOUSEHOLD, assignment.id, children["emma"].id, 5, NOW)
        with pytest.raises(sqlite3.IntegrityError):
            ledger_db.add_entry(HOUSEHOLD, assignment.id, children["emma"].id, 5, NOW)
        assert ledger_db.get_by_assignment(assignment.id).points_earned == 5


class TestLockTimeouts:
    @pytest.fixture
    def impatient(self, children, tmp_db_path):
        """Repositories with a short busy wait, built before anyone holds the lock."""
        templates = TemplateDB(db_path=tmp_db_path, busy_timeout=0.1)
        rule = SingleRule(candidates=(children["emma"].id,))
        task = templates.add_template(HOUSEHOLD, "Clean garage", rule)
        return {
            "task": task,
            "templates": templates,
            "responses": ResponseDB(db_path=tmp_db_path, busy_timeout=0.1),
            "assignments": AssignmentDB(db_path=tmp_db_path, busy_timeout=0.1),
        }

    @pytest.fixture
    def held_lock(self, impatient, tmp_db_path):
        holder = sqlite3.connect(tmp_db_path, isolation_level=None)
        holder.execute("BEGIN IMMEDIATE")
        yield
        holder.execute("ROLLBACK")
        holder.close()

    def test_decline_raises_typed_error(self, children, impatient, held_lock):
        with pytest.raises(LockTimeoutError) as exc_info:
            impatient["responses"].record_decline(impatient["task"].id, children["emma"].id, NOW)
        assert exc_info.value.retryable is True
        assert exc_info.value.details["timeout_seconds"] == 0.1

    def test_sweep_raises_typed_error(self, impatient, held_lock):
        sweeper = LifecycleSweeper(impatient["templates"], impatient["assignments"])
        with pytest.raises(LockTimeoutError):
            sweeper.sweep(now=NOW)

    def test_reads_are_not_blocked(self, children, impatient, held_lock):
        assert impatient["responses"].is_candidate(impatient["task"].id, children["emma"].id)
