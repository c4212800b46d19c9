"""Shared test fixtures"""
import os

# must be set before anything imports app.db
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("AGGREGATE_RETRY_WAIT", "0")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from app.db import Base, get_db
from app import models  # noqa: F401  (registers tables)
from app.services.coordinator import ConsistencyCoordinator
from app.services.items import create_item
from app.services.reviews import ReviewRepository


@pytest.fixture
def engine(tmp_path):
    """
    File-backed SQLite so several threads can share it. pysqlite's own
    transaction handling is switched off and every transaction starts with
    BEGIN IMMEDIATE, which gives working SAVEPOINTs and serializes writers
    the way a row lock would.
    """
    eng = create_engine(
        f"sqlite:///{tmp_path / 'ratings.db'}",
        future=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(eng, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def coordinator():
    return ConsistencyCoordinator(retries=1, retry_wait=0)


@pytest.fixture
def repo(db, coordinator):
    return ReviewRepository(db, observers=[coordinator])


@pytest.fixture
def make_item(db, repo):
    """Create an item and push its reviews through the repository."""

    def _make(name="Cantina", ratings=()):
        item = create_item(db, name)
        for rating in ratings:
            repo.create(item.id, rating)
        return item

    return _make


@pytest.fixture
def client(session_factory):
    from app.main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
