"""Shared test fixtures and configuration.

Sets up fake environment variables before any chore_engine import, and
provides temp-file databases plus a small household to work with.
"""

import os

# Patch env vars BEFORE any chore_engine imports
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "UTC")
os.environ.setdefault("ACCEPT_LOCK_TIMEOUT_SECONDS", "5")

import pytest

HOUSEHOLD = 1
OTHER_HOUSEHOLD = 2


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_chores.db")


@pytest.fixture
def child_db(tmp_db_path):
    from chore_engine.data.db import ChildDB
    return ChildDB(db_path=tmp_db_path)


@pytest.fixture
def template_db(tmp_db_path):
    from chore_engine.data.db import TemplateDB
    return TemplateDB(db_path=tmp_db_path)


@pytest.fixture
def assignment_db(tmp_db_path):
    from chore_engine.data.db import AssignmentDB
    return AssignmentDB(db_path=tmp_db_path)


@pytest.fixture
def response_db(tmp_db_path):
    from chore_engine.data.db import ResponseDB
    return ResponseDB(db_path=tmp_db_path)


@pytest.fixture
def ledger_db(tmp_db_path):
    from chore_engine.data.db import LedgerDB
    return LedgerDB(db_path=tmp_db_path)


@pytest.fixture
def children(child_db):
    """Emma and Noah in household 1, Liam in household 2."""
    emma = child_db.add_child(HOUSEHOLD, "Emma")
    noah = child_db.add_child(HOUSEHOLD, "Noah")
    liam = child_db.add_child(OTHER_HOUSEHOLD, "Liam")
    return {"emma": emma, "noah": noah, "liam": liam}


@pytest.fixture
def template_service(template_db, child_db):
    from chore_engine.core.templates import TemplateService
    return TemplateService(template_db, child_db)


@pytest.fixture
def generator(template_db, child_db, assignment_db):
    from chore_engine.core.generator import AssignmentGenerator
    return AssignmentGenerator(template_db, child_db, assignment_db)


@pytest.fixture
def coordinator(template_db, child_db, response_db, assignment_db):
    from chore_engine.core.responses import ResponseCoordinator
    return ResponseCoordinator(template_db, child_db, response_db, assignment_db, lock_timeout=5.0)


@pytest.fixture
def completion_service(assignment_db, template_db, ledger_db, child_db):
    from chore_engine.core.completion import CompletionService
    return CompletionService(assignment_db, template_db, ledger_db, child_db)


@pytest.fixture
def sweeper(template_db, assignment_db):
    from chore_engine.core.sweeper import LifecycleSweeper
    return LifecycleSweeper(template_db, assignment_db)
