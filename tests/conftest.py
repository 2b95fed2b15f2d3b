import os
from datetime import datetime, timedelta

# Keep the module-level engine off the filesystem before app modules import it
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")
os.environ.pop("CRON_SECRET", None)

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from devmatch.database import Base
from devmatch.domain.rotation.service import RotationService
from devmatch.models import (
    FRESHER,
    PROJECT_SUBMITTED,
    DeveloperProfile,
    DeveloperSkill,
    Project,
    Skill,
    User,
    generate_id,
)


class FakeClock:
    """Mutable clock for deadline tests"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0))


@pytest.fixture
def rotation(db, clock, session_factory):
    return RotationService(db, clock=clock, session_factory=session_factory)


@pytest.fixture
def make_user(db):
    def _make(email=None, full_name=None):
        user = User(id=generate_id(), email=email or f"{generate_id()}@example.com", full_name=full_name)
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def make_skill(db):
    def _make(slug=None):
        slug = slug or f"skill-{generate_id()[:8]}"
        skill = Skill(id=generate_id(), slug=slug, name=slug.title())
        db.add(skill)
        db.commit()
        return skill

    return _make


@pytest.fixture
def make_developer(db, make_user):
    """Approved, available, verified developer unless told otherwise"""

    def _make(
        level=FRESHER,
        skills=(),
        approval="approved",
        availability="available",
        whatsapp_verified=True,
        user=None,
    ):
        user = user or make_user()
        developer = DeveloperProfile(
            id=generate_id(),
            user_id=user.id,
            level=level,
            admin_approval_status=approval,
            availability_status=availability,
            whatsapp_verified=whatsapp_verified,
        )
        db.add(developer)
        db.flush()
        for skill in skills:
            db.add(DeveloperSkill(developer_id=developer.id, skill_id=skill.id))
        db.commit()
        return developer

    return _make


@pytest.fixture
def make_project(db, make_user):
    def _make(skills=(), status=PROJECT_SUBMITTED, client=None):
        client = client or make_user()
        project = Project(
            id=generate_id(),
            title="Marketplace rebuild",
            client_user_id=client.id,
            skills_required=[s.id for s in skills],
            status=status,
        )
        db.add(project)
        db.commit()
        return project

    return _make
