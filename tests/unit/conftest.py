"""Shared fixtures for the docflow unit tests."""

from __future__ import annotations

import pytest
import sqlalchemy as sa
from sqlalchemy.orm import sessionmaker

from docflow.store import sql as sql_schema


@pytest.fixture()
def session_factory(tmp_path):
    """Sessionmaker bound to a throwaway SQLite database with every table created."""

    engine = sa.create_engine(
        f"sqlite:///{tmp_path / 'docflow.db'}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    sql_schema.METADATA.create_all(engine)
    try:
        yield sessionmaker(bind=engine, future=True)
    finally:
        engine.dispose()


@pytest.fixture()
def anyio_backend():
    """The notification hub is built on asyncio loops; run async tests on asyncio only."""

    return "asyncio"
