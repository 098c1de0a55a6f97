import os
import sys

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import models  # noqa: F401  (registers tables on Base)
from database import Base, configure_sqlite


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite with foreign keys and savepoints, like the app database."""
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'mirror.db'}", connect_args={"check_same_thread": False}
    )
    configure_sqlite(test_engine)
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()
