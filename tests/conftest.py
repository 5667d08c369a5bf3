import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from starling_cli.db import SqlTransactionStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def store() -> SqlTransactionStore:
    """A fresh in-memory ledger per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    return SqlTransactionStore(engine)
