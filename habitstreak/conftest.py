# habitstreak/conftest.py
import sys
from pathlib import Path

import pytest

# Make the package importable without an editable install
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from habitstreak.core.metrics import METRICS
from habitstreak.features.audit.service import clear_buffered_audit_events
from habitstreak.features.streaks.store import InMemoryHabitStore
from habitstreak.tests.mocks import FixedClock, make_engine


@pytest.fixture(scope="function", autouse=True)
def reset_process_state():
    """Metrics and the audit fallback buffer are process-wide."""
    METRICS.reset()
    clear_buffered_audit_events()
    yield
    clear_buffered_audit_events()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return InMemoryHabitStore()


@pytest.fixture
def updates():
    return []


@pytest.fixture
def engine(store, clock, updates):
    return make_engine(store, clock, notifier=updates.append)


@pytest.fixture
def sql_store():
    """SQL store on a private in-memory SQLite database."""
    from habitstreak.core.database import build_engine
    from habitstreak.features.streaks.store_sql import SqlHabitStore

    db = build_engine("sqlite://")
    yield SqlHabitStore(db)
    db.dispose()
