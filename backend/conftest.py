from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT))

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DATABASE_WRITE_URL"] = "sqlite+pysqlite:///:memory:"

from serialdb.apps.serials import repository  # noqa: E402


def _session_factory(url: str):
    engine = create_engine(url)
    repository.create_tables(engine)
    factory = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
    return engine, factory


@pytest.fixture()
def db_session():
    engine, TestingSession = _session_factory("sqlite+pysqlite:///:memory:")
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def file_sessionmaker(tmp_path):
    """Sessions on a file-backed database, for tests that need two connections."""
    engine, factory = _session_factory(f"sqlite+pysqlite:///{tmp_path / 'serials.db'}")
    try:
        yield factory
    finally:
        engine.dispose()
