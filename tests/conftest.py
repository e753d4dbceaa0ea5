"""
Shared pytest fixtures for the TraceWell test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - program: Pre-created Program entity
    - admin / portfolio_manager / program_manager / developer /
      uat_manager / uat_tester / uat_tester_2: one User per role
    - auth_header(user): Authorization header with a signed session token
    - actor(user): service-layer Actor for a user
    - story_factory / ready_test_case: workflow entities for the UAT tests
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from app import create_app
from app.core.roles import Actor, Role, parse_role
from app.models import db as _db
from app.models.auth import User
from app.models.program import Program
from app.models.story import Story
from app.models.testing import TestCase


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Identity fixtures ────────────────────────────────────────────────────


def _make_user(role, email):
    user = User(email=email, full_name=f"{role} user", role=role, is_active=True)
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def admin():
    return _make_user(Role.ADMIN.value, "admin@tracewell.test")


@pytest.fixture()
def portfolio_manager():
    return _make_user(Role.PORTFOLIO_MANAGER.value, "pfm@tracewell.test")


@pytest.fixture()
def program_manager():
    return _make_user(Role.PROGRAM_MANAGER.value, "pgm@tracewell.test")


@pytest.fixture()
def developer():
    return _make_user(Role.DEVELOPER.value, "dev@tracewell.test")


@pytest.fixture()
def uat_manager():
    return _make_user(Role.UAT_MANAGER.value, "uatm@tracewell.test")


@pytest.fixture()
def uat_tester():
    return _make_user(Role.UAT_TESTER.value, "tester@tracewell.test")


@pytest.fixture()
def uat_tester_2():
    return _make_user(Role.UAT_TESTER.value, "tester2@tracewell.test")


@pytest.fixture()
def auth_header(app):
    """Return a function minting ``Authorization`` headers for a user."""

    def _header(user, *, expires_in=900, secret=None):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"sub": str(user.id), "iat": now, "exp": now + timedelta(seconds=expires_in)},
            secret or app.config["JWT_SECRET_KEY"],
            algorithm=app.config["JWT_ALGORITHM"],
        )
        return {"Authorization": f"Bearer {token}"}

    return _header


@pytest.fixture()
def actor():
    """Return a function building the service-layer Actor for a user."""

    def _actor(user):
        return Actor(user_id=user.id, role=parse_role(user.role))

    return _actor


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def program():
    """Create and return a test Program."""
    prog = Program(name="Test Program", description="UAT programme")
    _db.session.add(prog)
    _db.session.commit()
    return prog


@pytest.fixture()
def story_factory(program, program_manager):
    """Create a story directly in a given status (test setup only)."""

    def _story(status="Draft", **kwargs):
        story = Story(
            program_id=program.id,
            title=kwargs.pop("title", f"Story in {status}"),
            status=status,
            version=kwargs.pop("version", 1),
            created_by=program_manager.id,
            **kwargs,
        )
        _db.session.add(story)
        _db.session.commit()
        return story

    return _story


@pytest.fixture()
def ready_test_case(story_factory):
    """A ready test case with three steps on a story in UAT."""
    story = story_factory("In UAT")
    case = TestCase(
        story_id=story.id,
        program_id=story.program_id,
        title="Login with valid credentials",
        test_steps=[
            {"step_number": 1, "action": "Open login page", "expected_result": "Form shown"},
            {"step_number": 2, "action": "Enter credentials", "expected_result": "Accepted"},
            {"step_number": 3, "action": "Submit", "expected_result": "Dashboard shown"},
        ],
        status="ready",
        version=1,
    )
    _db.session.add(case)
    _db.session.commit()
    return case
