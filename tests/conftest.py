import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ADMIN_EMAIL", "admin@example.com")
os.environ.setdefault("ADMIN_ORGANIZATION_ID", "org-1")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from automation_platform.models import Base, Workflow  # noqa: E402

ORG_ID = "org-1"


def simple_definition(message="Hello {{trigger_data.name}}"):
    return {
        "nodes": [
            {"id": "trigger", "type": "trigger", "data": {"label": "Start"}},
            {
                "id": "log",
                "type": "action",
                "data": {"label": "Log", "config": {"actionType": "log_message", "message": message}},
            },
        ],
        "edges": [{"id": "e1", "source": "trigger", "target": "log"}],
    }


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_workflow(db):
    def _make(definition=None, status="active", organization_id=ORG_ID, **fields):
        row = Workflow(
            organization_id=organization_id,
            created_by="owner",
            name=fields.pop("name", "Test workflow"),
            status=status,
            definition=definition or simple_definition(),
            variables=fields.pop("variables", {}),
            **fields,
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    return _make
