import os

# Keep test runs from writing a log file into the working tree
os.environ.setdefault("LOG_FILE", "")

import pytest
from sqlalchemy.orm import sessionmaker

from fleetops.db import make_engine, init_db


@pytest.fixture
def session_factory(tmp_path):
    """Fresh SQLite database per test."""
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    factory = sessionmaker(bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


