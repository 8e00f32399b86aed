"""
Shared test fixtures for the mongolite test suite.
"""
import time

import pytest

from mongolite import Database, RetryPolicy


@pytest.fixture
def db():
    """In-memory database with a retry policy that never sleeps."""
    database = Database(":memory:", retry=RetryPolicy(sleep=lambda _: None))
    yield database
    database.close()


@pytest.fixture
def file_db(tmp_path):
    database = Database(str(tmp_path / "app.db"), retry=RetryPolicy(sleep=lambda _: None))
    yield database
    database.close()


@pytest.fixture
def users(db):
    """The Alice/Bob collection used across the suite."""
    coll = db["users"]
    coll.insert_many([
        {"_id": "u1", "name": "Alice", "age": 30, "email": "alice@example.com",
         "tags": ["admin", "dev"], "address": {"city": "Paris", "zip": "75001"},
         "scores": [85, 92], "active": True},
        {"_id": "u2", "name": "Bob", "age": 25, "email": "bob@example.com",
         "tags": ["dev"], "address": {"city": "Berlin", "zip": "10115"},
         "scores": [70, 75], "active": False},
    ])
    return coll


def wait_until(predicate, timeout=3.0, interval=0.01):
    """Poll ``predicate`` until it returns truthy or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if result:
            return result
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait():
    return wait_until
