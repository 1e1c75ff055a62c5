"""
Pytest fixtures for the promo token service.

Each test gets its own SQLite file, a fresh overlay and a TestClient wired
to those through dependency overrides.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PROMO_ADMIN_TOKEN"] = "test-admin-token"
os.environ.pop("PROMO_STORE_READ_ONLY", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

import main
from db import make_engine
from models import Base
from overlay import EphemeralOverlay


@pytest.fixture(scope='function')
def engine(tmp_path):
    """Fresh durable database for each test."""
    engine = make_engine(f"sqlite:///{tmp_path / 'tokens.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope='function')
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture(scope='function')
def overlay():
    return EphemeralOverlay()


@pytest.fixture(scope='function')
def services(session_factory, overlay):
    """Service bundle over a writable durable store."""
    return main.build_services(session_factory, read_only=False, overlay=overlay)


@pytest.fixture(scope='function')
def store(services):
    return services.registry.store


@pytest.fixture(scope='function')
def registry(services):
    return services.registry


@pytest.fixture(scope='function')
def issuer(services):
    return services.issuer


@pytest.fixture(scope='function')
def redeemer(services):
    return services.redeemer


@pytest.fixture(scope='function')
def client(services):
    """Test client bound to this test's services."""
    main.app.dependency_overrides[main.get_services] = lambda: services
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": "test-admin-token"}


@pytest.fixture
def break_commits(session_factory):
    """Call to make every later durable commit fail like a broken disk does.

    Reads keep working and rows committed before the call stay in place.
    """
    def refuse(session):
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    def attach():
        event.listen(session_factory, "before_commit", refuse)

    yield attach
    if event.contains(session_factory, "before_commit", refuse):
        event.remove(session_factory, "before_commit", refuse)
