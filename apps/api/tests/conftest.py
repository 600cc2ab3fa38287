from __future__ import annotations

import base64
import os
import tempfile
import uuid
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import pytest
from alembic.config import Config
from sqlalchemy import create_engine, delete, text
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.orm import Session

from alembic import command

# Settings are read while test modules are imported, so the static test values go in first.
os.environ.setdefault("APP_ENV", "test")
os.environ["ENCRYPTION_KEY_BASE64"] = base64.b64encode(b"t" * 32).decode("ascii")
os.environ["TRUST_ACTOR_HEADER"] = "true"
os.environ["EMAIL_FROM"] = "helpdesk@example.com"


def _make_admin_url(url: URL) -> URL:
    return url.set(database="postgres")


def _make_test_db_name() -> str:
    return f"helpdesk_test_{uuid.uuid4().hex}"


@pytest.fixture(scope="session", autouse=True)
def _test_database() -> None:
    # SQLite file by default; TEST_DATABASE_URL points the suite at a local Postgres instead.
    base_url = os.environ.get("TEST_DATABASE_URL")
    admin_engine = None
    db_name = None
    if base_url:
        url = make_url(base_url)
        if url.host not in {"localhost", "127.0.0.1", None}:
            raise RuntimeError(
                "Refusing to run tests against a non-local TEST_DATABASE_URL host. "
                "Set TEST_DATABASE_URL to a local/dev Postgres instance."
            )
        db_name = _make_test_db_name()
        admin_engine = create_engine(
            _make_admin_url(url), isolation_level="AUTOCOMMIT", pool_pre_ping=True
        )
        with admin_engine.connect() as conn:
            conn.execute(text(f'CREATE DATABASE "{db_name}"'))
        test_url = url.set(database=db_name).render_as_string(hide_password=False)
    else:
        db_dir = Path(tempfile.mkdtemp(prefix="helpdesk-test-"))
        test_url = f"sqlite+pysqlite:///{db_dir / 'helpdesk.sqlite3'}"
    os.environ["DATABASE_URL"] = test_url

    # Clear cached settings/engines so imports inside the test session use the test DB.
    from helpdesk.core.config import get_settings
    from helpdesk.db.session import get_engine, get_sessionmaker

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()

    alembic_ini = Path(__file__).resolve().parents[1] / "alembic.ini"
    cfg = Config(str(alembic_ini))
    command.upgrade(cfg, "head")

    yield

    with suppress(Exception):
        get_engine().dispose()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()
    get_settings.cache_clear()

    if admin_engine is not None:
        with admin_engine.connect() as conn:
            conn.execute(
                text(
                    """
                    SELECT pg_terminate_backend(pid)
                    FROM pg_stat_activity
                    WHERE datname = :db_name AND pid <> pg_backend_pid();
                    """
                ),
                {"db_name": db_name},
            )
            conn.execute(text(f'DROP DATABASE IF EXISTS "{db_name}"'))
        admin_engine.dispose()


@pytest.fixture(autouse=True)
def _clean_tables() -> None:
    yield
    from helpdesk.db.session import get_sessionmaker
    from helpdesk.models import Base

    session = get_sessionmaker()()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(delete(table))
        session.commit()
    finally:
        session.close()


@pytest.fixture()
def db_session() -> Session:
    from helpdesk.db.session import get_sessionmaker

    SessionLocal = get_sessionmaker()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@dataclass
class Lookups:
    open_status_id: int
    closed_status_id: int
    low_priority_id: int
    high_priority_id: int
    root_category_id: int
    child_category_id: int
    other_category_id: int


class Seeder:
    """Row builders shared by the test modules; callers commit when they need to."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def user(self, email: str, *, permissions=(), **fields):
        from helpdesk.models.identity import User

        user = User(email=email, permissions=list(permissions), is_active=True, **fields)
        self.session.add(user)
        self.session.flush()
        return user

    def team(self, name: str, *, permissions=(), is_active: bool = True):
        from helpdesk.models.identity import Team

        team = Team(name=name, permissions=list(permissions), is_active=is_active)
        self.session.add(team)
        self.session.flush()
        return team

    def membership(self, user, team, *, permissions=(), is_active: bool = True):
        from helpdesk.models.identity import UserTeam

        ut = UserTeam(
            user_id=user.id, team_id=team.id, permissions=list(permissions), is_active=is_active
        )
        self.session.add(ut)
        self.session.flush()
        return ut

    def team_entity(self, team) -> int:
        from helpdesk.services.entities import TeamOwner, resolve_entity_for

        return resolve_entity_for(self.session, TeamOwner(team.id))

    def membership_entity(self, ut) -> int:
        from helpdesk.services.entities import UserTeamOwner, resolve_entity_for

        return resolve_entity_for(self.session, UserTeamOwner(ut.id))

    def lookups(self) -> Lookups:
        from helpdesk.models.tickets import TicketCategory, TicketPriority, TicketStatus

        open_status = TicketStatus(name="Open", is_closed=False, sort_order=0)
        closed_status = TicketStatus(name="Closed", is_closed=True, sort_order=10)
        low = TicketPriority(name="Low", sort_order=0)
        high = TicketPriority(name="High", sort_order=10)
        root = TicketCategory(name="Hardware", priority=0)
        other = TicketCategory(name="Billing", priority=1)
        self.session.add_all([open_status, closed_status, low, high, root, other])
        self.session.flush()
        child = TicketCategory(name="Laptops", parent_id=root.id, priority=0)
        self.session.add(child)
        self.session.flush()
        return Lookups(
            open_status_id=open_status.id,
            closed_status_id=closed_status.id,
            low_priority_id=low.id,
            high_priority_id=high.id,
            root_category_id=root.id,
            child_category_id=child.id,
            other_category_id=other.id,
        )

    def grant_category(self, category_id: int, team) -> None:
        from helpdesk.models.tickets import TicketCategoryTeamAccess

        self.session.add(TicketCategoryTeamAccess(category_id=category_id, team_id=team.id))
        self.session.flush()

    def ticket(
        self,
        lookups: Lookups,
        *,
        created_by: int,
        assigned_to: int | None = None,
        title: str = "Printer on fire",
        category_id: int | None = None,
    ):
        from helpdesk.models.tickets import Ticket

        now = datetime.now(UTC)
        ticket = Ticket(
            title=title,
            current_status_id=lookups.open_status_id,
            current_priority_id=lookups.low_priority_id,
            current_category_id=category_id or lookups.root_category_id,
            current_assigned_to_id=assigned_to,
            created_by_id=created_by,
            created_at=now,
            updated_at=now,
        )
        self.session.add(ticket)
        self.session.flush()
        return ticket


@pytest.fixture()
def seed(db_session: Session) -> Seeder:
    return Seeder(db_session)
