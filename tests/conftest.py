"""
Pytest fixtures for the royalty engine test suite.

Provides:
- Structured logging configured for the whole run, with captured JSON logs
- A session-scoped mirror database, emptied before every test that uses it
- A deterministic clock, an in-memory transport and a wired splitter
- A reconciliation worker pool following the splitter's event log

Environment Variables:
- DATABASE_URL: Database URL for the relational mirror.  If not set, a
  SQLite file in the pytest temp directory is used.
"""

import json
import logging
import os
from io import StringIO

import pytest
from sqlalchemy import delete

from royalty_kernel.db.base import Base
from royalty_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from royalty_kernel.domain.clock import DeterministicClock
from royalty_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from royalty_kernel.services.royalty_splitter import RoyaltySplitter
from royalty_kernel.services.transport import InMemoryTransport
from royalty_services.reconciliation_orchestrator import ReconciliationWorkerPool

ADMIN = "0x00000000000000000000000000000000000000ad"
ALICE = "0x000000000000000000000000000000000000a11c"
BOB = "0x0000000000000000000000000000000000000b0b"
CAROL = "0x00000000000000000000000000000000000ca201"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture royalty_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, splitter):
            splitter.register_work(1, ALICE)
            logs = captured_logs()
            assert any(r["message"] == "work_registered" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("royalty_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Identities and engine fixtures
# =============================================================================


@pytest.fixture
def admin():
    return ADMIN


@pytest.fixture
def alice():
    return ALICE


@pytest.fixture
def bob():
    return BOB


@pytest.fixture
def carol():
    return CAROL


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def splitter(transport, clock):
    """A splitter administered by ADMIN, paying out through ``transport``."""
    instance = RoyaltySplitter(ADMIN, transport=transport, clock=clock)
    yield instance
    instance.close()


# =============================================================================
# Mirror database
# =============================================================================


def get_database_url(tmp_dir) -> str:
    """DATABASE_URL from the environment, or a SQLite file under ``tmp_dir``."""
    return os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_dir / 'royalty_mirror.db'}"


@pytest.fixture(scope="session")
def db_engine(tmp_path_factory):
    """Single engine and schema for the entire test session."""
    url = get_database_url(tmp_path_factory.mktemp("mirror"))
    engine = init_engine_from_url(url, pool_size=10, max_overflow=20, pool_timeout=30)
    drop_tables()
    create_tables()
    yield engine
    drop_tables()
    reset_engine()


@pytest.fixture
def session_factory(db_engine):
    """Session factory over an emptied mirror."""
    factory = get_session_factory()
    with factory() as cleanup:
        for table in reversed(Base.metadata.sorted_tables):
            cleanup.execute(delete(table))
        cleanup.commit()
    return factory


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def pool(splitter, session_factory, clock):
    """Worker pool reconciling the splitter's log into the mirror."""
    instance = ReconciliationWorkerPool(
        splitter.event_log,
        session_factory,
        clock=clock,
        workers=4,
        batch_size=50,
        max_apply_attempts=10,
        retry_backoff_seconds=0.01,
    )
    yield instance
    instance.close()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "postgres: test exercises PostgreSQL-specific behavior")
    config.addinivalue_line("markers", "slow_locks: test may wait on database locks")
