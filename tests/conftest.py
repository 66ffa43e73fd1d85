"""Shared test fixtures for tally tests."""

from datetime import date

import pytest

from tally import db
from tally.config import Config, SchedulerConfig


@pytest.fixture
def db_path(tmp_path):
    """Initialize a real SQLite database using schema.sql and return its path."""
    path = tmp_path / "test.db"
    db.init_db(path)
    return path


@pytest.fixture
def db_conn(db_path):
    """Yield a database connection with row factory set."""
    with db.get_db(db_path) as conn:
        yield conn


@pytest.fixture
def make_config(tmp_path, db_path):
    """Factory fixture that creates Config instances pointing at the test database."""
    def _make_config(**overrides):
        defaults = {
            "db_path": db_path,
            "scheduler": SchedulerConfig(lock_path=tmp_path / "scheduler.lock"),
        }
        defaults.update(overrides)
        return Config(**defaults)
    return _make_config


def seed_records(conn) -> None:
    """One client with one project and two team members."""
    db.create_client(conn, "acme", "Acme Corp", email="billing@acme.test")
    db.create_project(
        conn, "web", "acme", "Website rebuild",
        budget=10000, start_date=date(2024, 1, 1), end_date=date(2024, 6, 30),
    )
    db.upsert_user(conn, "alice", "Alice", hourly_cost=60)
    db.upsert_user(conn, "bob", "Bob")


@pytest.fixture
def seeded_conn(db_conn):
    """Connection to a database holding the seed records."""
    seed_records(db_conn)
    return db_conn


@pytest.fixture
def seeded_db(db_path):
    """Database path with the seed records committed, for code that opens its own connections."""
    with db.get_db(db_path) as conn:
        seed_records(conn)
    return db_path
