"""Pytest configuration and fixtures for edmcp-pii tests."""

import io
import sys
import zipfile
from pathlib import Path

import pytest
from edmcp_core import DatabaseManager

from edmcp_pii.core import ContextCache, PiiContext, PiiSettings, RosterIndex, RosterStore
from edmcp_pii.core.models import GroupEntry, RosterEntry

OWNER = "instructor-1"
COURSE = 101

SAMPLE_PARTICIPANTS = [
    {
        "userId": 12345,
        "name": "Jackson Smith",
        "email": "jackson.smith@louisiana.edu",
        "role": "student",
        "username": "C00123456",
    },
    {
        "userId": 12346,
        "name": "Mary Johnson",
        "email": "mary.johnson@louisiana.edu",
        "role": "student",
        "username": "C00654321",
    },
    {
        "userId": 99999,
        "name": "Arun Lakhotia",
        "email": "arun.lakhotia@louisiana.edu",
        "role": "editingteacher",
    },
    {
        "userId": 21011,
        "name": "Matheus John Nery",
        "email": "matheus.nery@louisiana.edu",
        "role": "student",
        "username": "C00789012",
    },
]


def _entry(anchor_id, name, student_id=None, email=None, role="student"):
    return RosterEntry(
        owner_id=OWNER,
        course_id=COURSE,
        anchor_id=anchor_id,
        display_name=name,
        student_id=student_id,
        email=email,
        role=role,
    )


@pytest.fixture
def sample_participants():
    """Participant rows as an LMS listing reports them."""
    return [dict(p) for p in SAMPLE_PARTICIPANTS]


@pytest.fixture
def sample_roster():
    """Roster entries matching SAMPLE_PARTICIPANTS."""
    return [
        _entry(12345, "Jackson Smith", "C00123456", "jackson.smith@louisiana.edu"),
        _entry(12346, "Mary Johnson", "C00654321", "mary.johnson@louisiana.edu"),
        _entry(99999, "Arun Lakhotia", None, "arun.lakhotia@louisiana.edu", role="editingteacher"),
        _entry(21011, "Matheus John Nery", "C00789012", "matheus.nery@louisiana.edu"),
    ]


@pytest.fixture
def sample_groups():
    return [GroupEntry(owner_id=OWNER, course_id=COURSE, group_id=77, name="Team Falcon")]


@pytest.fixture
def sample_index(sample_roster, sample_groups):
    return RosterIndex(sample_roster, sample_groups)


@pytest.fixture
def ambiguous_roster():
    """Two John Smiths who share most short forms, plus an unrelated student."""
    return [
        _entry(30001, "John Michael Smith", "C00111111", "john.m.smith@louisiana.edu"),
        _entry(30002, "John David Smith", "C00222222", "john.d.smith@louisiana.edu"),
        _entry(30003, "Sarah Jane Connor"),
    ]


@pytest.fixture
def ambiguous_index(ambiguous_roster):
    return RosterIndex(ambiguous_roster)


@pytest.fixture
def test_db_manager(tmp_path):
    """Create a DatabaseManager with a temporary database."""
    db_path = tmp_path / "test_pii.db"
    manager = DatabaseManager(db_path)
    yield manager
    manager.close()


@pytest.fixture
def store(test_db_manager):
    return RosterStore(test_db_manager)


@pytest.fixture
def cache(store):
    return ContextCache(store.load_snapshot, ttl_seconds=300)


@pytest.fixture
def pii_context(store, cache):
    return PiiContext(store, cache, PiiSettings())


@pytest.fixture
def make_office_file():
    """Builds an in-memory office container from {entry name: bytes or str}."""

    def build(entries):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            for name, data in entries.items():
                archive.writestr(name, data.encode("utf-8") if isinstance(data, str) else data)
        return buffer.getvalue()

    return build


@pytest.fixture(autouse=True)
def reset_server_state(tmp_path):
    """Reset server global state before each test to ensure isolation."""
    # Add parent directory to path so we can import server module
    sys.path.insert(0, str(Path(__file__).parent.parent))

    import server

    server._db_manager = None
    server._store = None
    server._cache = None
    server._context = None

    # Point to a temp database for server tests
    server.DB_PATH = tmp_path / "test_server.db"

    yield

    if server._db_manager is not None:
        server._db_manager.close()
    server._db_manager = None
    server._store = None
    server._cache = None
    server._context = None
