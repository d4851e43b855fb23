import os

# must be set before config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["ENABLE_SCHEDULER"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth.models import User
from auth.services import AuthService
from billing.dependencies import get_billing_provider, get_plan_catalog
from billing.plans import Plan, PlanCatalog
from database import Base, get_db
from main import app
from payment.models import Payment  # noqa: F401  (registers the table)
from subscription.models import Subscription  # noqa: F401
from subscription.services import SubscriptionService
from webhook.routes import get_reconciler
from webhook.services import WebhookReconciler

from fakes import FakeBillingProvider, WEBHOOK_SECRET


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
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def catalog():
    return PlanCatalog([
        Plan("price_basic", "Basic Monthly", "basic"),
        Plan("price_premium", "Premium Monthly", "premium"),
        Plan("price_premium_annual", "Premium Annual", "premium"),
        Plan("price_elite", "Elite Monthly", "elite"),
    ])


@pytest.fixture
def provider():
    return FakeBillingProvider()


@pytest.fixture
def subscription_service(provider, catalog):
    return SubscriptionService(provider, catalog)


@pytest.fixture
def reconciler(provider, catalog):
    return WebhookReconciler(provider, catalog, WEBHOOK_SECRET)


def _make_user(db, email, role="member"):
    user = User(email=email, name=email.split("@")[0].title(), password_hash="not-a-hash", role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user(db):
    return _make_user(db, "member@example.com")


@pytest.fixture
def other_user(db):
    return _make_user(db, "other@example.com")


@pytest.fixture
def admin_user(db):
    return _make_user(db, "admin@example.com", role="admin")


@pytest.fixture
def auth_headers():
    def build(user):
        token = AuthService.create_access_token({"sub": user.email})
        return {"Authorization": f"Bearer {token}"}
    return build


@pytest.fixture
def client(db, provider, catalog, reconciler):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_provider] = lambda: provider
    app.dependency_overrides[get_plan_catalog] = lambda: catalog
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    # no context manager: startup would create tables on the module engine and start jobs
    yield TestClient(app)
    app.dependency_overrides.clear()
