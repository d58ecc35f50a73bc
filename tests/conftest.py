from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from core import config as core_config
from core.clock import get_clock
from core.db import Base, get_db
from models.profile import Profile
from models.subscription import SubscriptionRecord
from models.usage import UsageCounters
from models.user import ADMIN_ROLE, User, user_roles
from security import jwt as jwt_utils
from security.password import hash_password
from services import email as email_service
from services.plans import get_plan

NOW = datetime(2026, 3, 15, 12, 0, 0)


@pytest.fixture(scope="session", autouse=True)
def test_settings():
    core_config.settings.JWT_SECRET = "test-secret"
    core_config.settings.REFRESH_SECRET = "test-refresh"
    core_config.settings.TESTING = True
    yield


@pytest.fixture()
def db():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def now():
    return NOW


@pytest.fixture()
def client(db, now):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_clock] = lambda: (lambda: now)
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def mock_email_send(monkeypatch):
    sent = []

    def _fake_send(to_email, subject, html_body, to_name=None, tags=None):
        sent.append({"to": to_email, "subject": subject, "body": html_body, "tags": tags})

    monkeypatch.setattr(email_service, "send_email", _fake_send)
    return sent


@pytest.fixture()
def make_user(db, now):
    """Create a user with a profile and usage counters; trial by default."""
    counter = {"n": 0}

    def _make(email=None, plan_code="trial", trial_ends_at=None, password="testpass123", **profile_fields):
        counter["n"] += 1
        user = User(
            first_name="Test",
            last_name=f"User{counter['n']}",
            email=email or f"user{counter['n']}@example.com",
            password_hash=hash_password(password),
        )
        db.add(user)
        db.flush()
        plan = get_plan(plan_code)
        db.add(Profile(
            user_id=user.id,
            full_name=user.full_name,
            subscription_plan=plan_code,
            trial_ends_at=trial_ends_at if trial_ends_at is not None else now + timedelta(days=10),
            **profile_fields,
        ))
        db.add(UsageCounters(
            user_id=user.id,
            campaigns_used=0,
            campaigns_limit=plan.campaign_limit if plan else 0,
            stores_used=0,
            stores_limit=plan.store_limit if plan else 0,
            reset_at=now + timedelta(days=30),
        ))
        db.commit()
        return user
    return _make


@pytest.fixture()
def make_subscription(db, now):
    """Attach a subscription record to ``user``; fields override plan defaults."""
    def _make(user, plan_code="standard", **fields):
        plan = get_plan(plan_code)
        values = dict(
            user_id=user.id,
            plan_code=plan.code,
            plan_name=plan.name,
            state="active",
            status="active",
            current_period_start=now - timedelta(days=20),
            current_period_end=now + timedelta(days=10),
            campaign_limit=plan.campaign_limit,
            store_limit=plan.store_limit,
            features_enabled=plan.features_json(),
            last_state_change_at=now - timedelta(days=20),
        )
        values.update(fields)
        record = SubscriptionRecord(**values)
        db.add(record)
        db.commit()
        return record
    return _make


@pytest.fixture()
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {jwt_utils.create_access_token(user.id)}"}
    return _headers


@pytest.fixture()
def admin_user(db, make_user, now):
    user = make_user(email="admin@example.com")
    db.execute(user_roles.insert().values(user_id=user.id, role=ADMIN_ROLE, created_at=now - timedelta(days=1)))
    db.commit()
    return user
