"""
Pytest configuration and fixtures

Every test gets a fresh in-memory SQLite schema shared between the test
session and the API (StaticPool keeps one connection).
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("RATE_LIMIT", "10000/minute")
os.environ.setdefault("ENABLE_METRICS", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")

import uuid
from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from stablehub.auth.security import create_access_token
from stablehub.db import Base, get_db
from stablehub.main import app
from stablehub.models.models import (
    Horse,
    HorseGroup,
    Organization,
    OrganizationMember,
    RoutineInstance,
    RoutineTemplate,
    SelectionProcess,
    Stable,
    User,
)
from stablehub.schemas.routines import decode_steps
from stablehub.services.schedule_expander import build_instance


engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def _override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def db_session():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db_session):
    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


def make_step(name: str, horse_context: str = "none", horse_filter=None, **flags) -> dict:
    step = {
        "id": str(uuid.uuid4()),
        "name": name,
        "category": flags.pop("category", "other"),
        "horse_context": horse_context,
        "horse_filter": horse_filter or {},
    }
    step.update(flags)
    return step


class Factory:
    """Builds committed rows for tests."""

    def __init__(self, db):
        self.db = db

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def user(self, name: str = "Test User", system_role: str = "user") -> User:
        return self._save(User(
            email=f"{uuid.uuid4().hex[:10]}@example.com",
            display_name=name,
            system_role=system_role,
            is_active=True,
        ))

    def organization(self, owner: User, name: str = "Test Org") -> Organization:
        return self._save(Organization(name=name, owner_id=owner.id))

    def member(self, user: User, org: Organization, roles=None, status: str = "active",
               stable_access: str = "all", assigned_stable_ids=None) -> OrganizationMember:
        return self._save(OrganizationMember(
            user_id=user.id,
            organization_id=org.id,
            status=status,
            roles=roles or [],
            stable_access=stable_access,
            assigned_stable_ids=assigned_stable_ids or [],
        ))

    def stable(self, org: Organization, name: str = "Main Stable", owner: User = None) -> Stable:
        return self._save(Stable(organization_id=org.id, name=name, owner_id=owner.id if owner else None))

    def horse(self, stable: Stable = None, name: str = "Horse", horse_id: str = None, status: str = "active", **fields) -> Horse:
        return self._save(Horse(
            id=horse_id or str(uuid.uuid4()),
            name=name,
            status=status,
            current_stable_id=stable.id if stable else None,
            **fields,
        ))

    def group(self, org: Organization, horse_ids, name: str = "Group") -> HorseGroup:
        return self._save(HorseGroup(organization_id=org.id, name=name, horse_ids=list(horse_ids)))

    def template(self, org: Organization, stable: Stable = None, steps=None, **fields) -> RoutineTemplate:
        fields.setdefault("name", "Morning routine")
        fields.setdefault("type", "morning")
        fields.setdefault("points_value", 3)
        fields.setdefault("requires_notes_read", False)
        steps = steps or [make_step("Feed")]
        for index, step in enumerate(steps):
            step.setdefault("order", index + 1)
        return self._save(RoutineTemplate(
            organization_id=org.id,
            stable_id=stable.id if stable else None,
            steps=steps,
            **fields,
        ))

    def instance(self, template: RoutineTemplate, stable: Stable, scheduled_date: date = date(2025, 1, 6),
                 status: str = "scheduled", **fields) -> RoutineInstance:
        instance = build_instance(
            template,
            decode_steps(template.steps, template.id),
            stable,
            scheduled_date,
            created_by="system",
        )
        instance.status = status
        for key, value in fields.items():
            setattr(instance, key, value)
        return self._save(instance)

    def selection_process(self, stable: Stable, turn_users, current_turn_index: int = 0, status: str = "active") -> SelectionProcess:
        turns = [
            {"user_id": u.id, "user_name": u.display_name, "order": i + 1, "status": "pending", "selections_count": 0}
            for i, u in enumerate(turn_users)
        ]
        return self._save(SelectionProcess(
            organization_id=stable.organization_id,
            stable_id=stable.id,
            name="Spring selection",
            status=status,
            turns=turns,
            current_turn_index=current_turn_index,
        ))


@pytest.fixture
def factory(db_session):
    return Factory(db_session)


@pytest.fixture
def org_setup(factory):
    """Owner, organization, one stable, an administrator and a groom."""
    owner = factory.user("Olivia Owner")
    org = factory.organization(owner)
    stable = factory.stable(org)
    admin = factory.user("Adam Admin")
    factory.member(admin, org, roles=["administrator"])
    groom = factory.user("Greta Groom")
    factory.member(groom, org, roles=["groom"])
    return {"owner": owner, "org": org, "stable": stable, "admin": admin, "groom": groom}
