import os
import sys
from pathlib import Path

# Ensure project root is on sys.path so `import collection_crm` works when running the tests directly
ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from collection_crm.models import CustomerRecord


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def make_record(session):
    """Insert a record directly, bypassing reconciliation (legacy data)."""

    def factory(c_unique_id: str, **values) -> CustomerRecord:
        record = CustomerRecord(c_unique_id=c_unique_id, created_by="seed", **values)
        session.add(record)
        session.commit()
        session.refresh(record)
        return record

    return factory
