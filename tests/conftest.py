"""Shared pytest fixtures for backend tests."""

import os
from datetime import datetime
from typing import AsyncGenerator, Optional
from uuid import uuid4

# Settings are read at import time; JWT_SECRET has no default
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-pytest")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, insert
from sqlalchemy.ext.asyncio import create_async_engine

from kanban_api.database import DatabaseHandle, EngineDatabase
from kanban_api.main import app
from kanban_api.models import Board, BoardColumn, Task
from kanban_api.services import ordering_service, tenant_service
from kanban_api.services.auth_service import create_access_token
from kanban_api.services.event_publisher import LocalEventPublisher, get_event_publisher
from kanban_api.services.ordering_service import ScopeLocks
from kanban_api.services.tenant_service import TenantRegistry


class RecordingPublisher(LocalEventPublisher):
    """Local publisher that keeps every envelope it delivers."""

    def __init__(self) -> None:
        super().__init__(timeout=1.0)
        self.envelopes: list[dict] = []

    async def _send(self, channel: str, envelope: dict) -> None:
        self.envelopes.append({**envelope, "channel": channel})
        await super()._send(channel, envelope)

    def events(self, name: Optional[str] = None) -> list[dict]:
        return [e for e in self.envelopes if name is None or e["event"] == name]


@pytest.fixture(autouse=True)
def fresh_scope_locks(monkeypatch):
    """Locks bind to the event loop of the test that first contends them."""
    monkeypatch.setattr(ordering_service, "scope_locks", ScopeLocks())


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Create a file-backed SQLite engine with foreign keys enabled."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'kanban.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine) -> AsyncGenerator[EngineDatabase, None]:
    """Single-tenant database handle with the schema created."""
    handle = EngineDatabase(engine)
    await handle.create_schema()
    yield handle


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest_asyncio.fixture
async def client(db, publisher, monkeypatch) -> AsyncGenerator[AsyncClient, None]:
    """
    HTTP client for the API.

    The tenant registry serves the test database for the default tenant and
    events go to the recording publisher.
    """
    async def factory(tenant_id):
        return db

    monkeypatch.setattr(tenant_service.tenant_resolver, "registry", TenantRegistry(factory))
    app.dependency_overrides[get_event_publisher] = lambda: publisher

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


# ============================================================================
# Tokens
# ============================================================================


@pytest.fixture
def user_token() -> str:
    """Token of a regular user."""
    return create_access_token(data={"sub": "user-1", "email": "user@example.com", "role": "user"})


@pytest.fixture
def admin_token() -> str:
    """Token of an admin who also owns the instance."""
    return create_access_token(data={"sub": "admin-1", "email": "owner@example.com", "role": "admin"})


@pytest.fixture
def auth_headers(user_token: str) -> dict:
    return {"Authorization": f"Bearer {user_token}"}


@pytest.fixture
def admin_headers(admin_token: str) -> dict:
    return {"Authorization": f"Bearer {admin_token}"}


# ============================================================================
# Data
# ============================================================================


async def add_board(db: DatabaseHandle, board_id: str, position: int, title: Optional[str] = None) -> str:
    now = datetime.utcnow()
    await db.execute(insert(Board).values(
        id=board_id, title=title or board_id, project=None,
        position=position, created_at=now, updated_at=now,
    ))
    return board_id


async def add_column(db: DatabaseHandle, board_id: str, column_id: str, position: int) -> str:
    now = datetime.utcnow()
    await db.execute(insert(BoardColumn).values(
        id=column_id, board_id=board_id, title=column_id, position=position,
        is_finished=False, is_archived=False, created_at=now, updated_at=now,
    ))
    return column_id


async def add_task(
    db: DatabaseHandle,
    board_id: str,
    column_id: str,
    task_id: Optional[str] = None,
    position: int = 0,
) -> str:
    now = datetime.utcnow()
    task_id = task_id or str(uuid4())
    await db.execute(insert(Task).values(
        id=task_id, board_id=board_id, column_id=column_id, title=task_id,
        description=None, ticket=None, member_id=None, position=position,
        pre_board_id=None, pre_column_id=None, created_at=now, updated_at=now,
    ))
    return task_id


@pytest_asyncio.fixture
async def board_with_tasks(db) -> dict:
    """
    One board ``b1`` with columns ``c1`` and ``c2``.

    ``c1`` holds tasks A, B, C, D at positions 0..3; ``c2`` holds X, Y.
    """
    await add_board(db, "b1", 0)
    await add_column(db, "b1", "c1", 0)
    await add_column(db, "b1", "c2", 1)
    for position, task_id in enumerate("ABCD"):
        await add_task(db, "b1", "c1", task_id, position)
    for position, task_id in enumerate("XY"):
        await add_task(db, "b1", "c2", task_id, position)
    return {"board": "b1", "columns": ["c1", "c2"]}
