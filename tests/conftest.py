import os
import threading
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

from datetime import datetime
from decimal import Decimal

import pytest
from checkout_recovery import create_app
from checkout_recovery.config import TestingConfig
from checkout_recovery.extensions import db
from checkout_recovery.models import CallJob, Checkout, ShopBilling, ShopSession, ShopSettings
from checkout_recovery.services.tool_cache import get_tool_cache

SHOP = "demo-store.myshopify.com"

TEST_PROVIDER_CONFIG = dict(
    APP_BASE_URL="http://example.test",
    VAPI_API_KEY="vapi-test-key",
    VAPI_ASSISTANT_ID="asst_default",
    VAPI_PHONE_NUMBER_ID="pn_default",
    BREVO_API_KEY="brevo-test-key",
    BREVO_SMS_SENDER="ShopCalls",
)


@pytest.fixture(scope="session")
def app():
    app = create_app(TestingConfig)
    app.config.update(TESTING=True, **TEST_PROVIDER_CONFIG)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def ctx(app):
    """Pushes an app context for service-level tests."""
    with app.app_context():
        yield app


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    get_tool_cache().clear()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    get_tool_cache().clear()


@pytest.fixture()
def seed(app):
    """Factory for the rows most tests need. Call inside an app context."""

    def _seed(job_id="job-1", *, shop=SHOP, checkout_id="chk-1", phone="+4915112345678",
              scheduled_for=datetime(2026, 1, 6, 8, 0), status="QUEUED", attempts=0,
              value="80.00", recovery_url="https://demo-store.example/checkouts/chk-1/recover",
              settings=None, billing=None, token="shpat_test"):
        db.session.add(Checkout(
            shop=shop, checkout_id=checkout_id, email="ada@example.com", phone=phone,
            customer_name="Ada Lovelace", value=Decimal(value), currency="EUR",
            recovery_url=recovery_url,
        ))
        db.session.add(CallJob(
            id=job_id, shop=shop, checkout_id=checkout_id, status=status, attempts=attempts,
            scheduled_for=scheduled_for, phone=phone, meta={},
        ))
        # per-shop rows are created once, on the first seed for that shop
        if settings is not None and db.session.get(ShopSettings, shop) is None:
            db.session.add(ShopSettings(shop=shop, **settings))
        if billing is not None and db.session.get(ShopBilling, shop) is None:
            db.session.add(ShopBilling(shop=shop, **billing))
        if token and ShopSession.query.filter_by(shop=shop).first() is None:
            db.session.add(ShopSession(shop=shop, access_token=token))
        db.session.commit()
        return job_id

    return _seed


@pytest.fixture()
def file_app(tmp_path):
    """App on a file-backed SQLite database, for tests that race real connections."""
    class RaceConfig(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'race.db'}"
        # each thread checks out its own connection to the one database file
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30, "check_same_thread": False}}

    app = create_app(RaceConfig)
    app.config.update(TESTING=True, **TEST_PROVIDER_CONFIG)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


@pytest.fixture()
def run_concurrently(file_app):
    """Runs fn in N threads, each inside its own app context, released together."""

    def _run(fn, n=2):
        barrier = threading.Barrier(n)
        results, errors = [], []

        def worker():
            with file_app.app_context():
                barrier.wait()
                try:
                    results.append(fn())
                except Exception as e:  # surfaced to the test below
                    errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)
        assert not errors, errors
        return results

    return _run
