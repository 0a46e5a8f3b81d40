import os

os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["CALL_PACING_SECONDS"] = "0"
os.environ["ELEVENLABS_WEBHOOK_SECRET"] = ""
os.environ["INTERNAL_API_TOKEN"] = ""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from app import models  # noqa: F401
from app.core.database import Base, get_db
from app.main import app
from app.models.bulk_operation import BulkOperation
from app.models.candidate import Candidate
from app.models.role import Role
from app.models.scheduled_call import ScheduledCall
from app.models.screening import Screening
from app.services.call_provider import CallProviderError, ConversationNotFound


@pytest.fixture()
def db_path(tmp_path):
    return tmp_path / "screenline.db"


@pytest.fixture()
def sync_engine(db_path):
    engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db(sync_engine) -> Session:
    """Worker-side session, same database file the API client writes to."""
    session = sessionmaker(sync_engine, class_=Session)()
    yield session
    session.close()


@pytest_asyncio.fixture()
async def client(sync_engine, db_path):
    async_engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    TestSession = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with TestSession() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    await async_engine.dispose()


def _task_mock(task_id: str) -> MagicMock:
    task = MagicMock()
    task.delay.return_value.id = task_id
    task.apply_async.return_value.id = task_id
    return task


@pytest.fixture()
def enqueued(monkeypatch):
    """Replace Celery tasks with mocks so nothing reaches a broker."""
    tasks = {
        "dispatch": _task_mock("dispatch-task"),
        "supervise": _task_mock("supervise-task"),
        "scheduled": _task_mock("scheduled-task"),
        "reconcile": _task_mock("reconcile-task"),
        "ingest": _task_mock("ingest-task"),
    }
    monkeypatch.setattr("app.workers.bulk_dispatch.dispatch_bulk_batch", tasks["dispatch"])
    monkeypatch.setattr("app.workers.bulk_dispatch.supervise_bulk_operations", tasks["supervise"])
    monkeypatch.setattr("app.workers.scheduled_calls.process_scheduled_calls", tasks["scheduled"])
    monkeypatch.setattr("app.workers.reconciliation.reconcile_stuck_screenings", tasks["reconcile"])
    monkeypatch.setattr("app.workers.completion.ingest_provider_webhook", tasks["ingest"])
    return tasks


class FakeCallProvider:
    """In-memory stand-in for CallProviderClient."""

    def __init__(self):
        self.calls = []
        self.initiate_errors = []
        self.conversations = {}
        self.conversation_errors = {}
        self.before_call = None

    def initiate_call(self, agent_id, phone_number, metadata=None, first_message=None):
        self.calls.append(
            {
                "agent_id": agent_id,
                "phone_number": phone_number,
                "metadata": metadata,
                "first_message": first_message,
            }
        )
        if self.before_call:
            self.before_call(len(self.calls))
        if self.initiate_errors:
            error = self.initiate_errors.pop(0)
            if error is not None:
                raise error
        return f"conv_{len(self.calls)}"

    def get_conversation(self, session_id):
        if session_id in self.conversation_errors:
            raise self.conversation_errors[session_id]
        if session_id not in self.conversations:
            raise ConversationNotFound(session_id)
        return self.conversations[session_id]

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return None


@pytest.fixture()
def provider():
    return FakeCallProvider()


def transient_error():
    return CallProviderError("Provider API error: 503", status_code=503, transient=True)


def permanent_error():
    return CallProviderError("Provider API error: 400", status_code=400, transient=False)


@pytest.fixture()
def make_role(db):
    def _make(voice_agent_id="agent_screening_01", call_window=None, title="Field Sales Executive"):
        role = Role(
            title=title,
            location="Pune",
            voice_agent_id=voice_agent_id,
            call_window=call_window,
        )
        db.add(role)
        db.commit()
        return role

    return _make


@pytest.fixture()
def make_candidate(db):
    counter = {"n": 0}

    def _make(name=None, phone="default"):
        counter["n"] += 1
        candidate = Candidate(
            name=name or f"Candidate {counter['n']}",
            phone=f"+9198000000{counter['n']:02d}" if phone == "default" else phone,
            email=f"candidate{counter['n']}@example.com",
        )
        db.add(candidate)
        db.commit()
        return candidate

    return _make


@pytest.fixture()
def make_bulk_operation(db, make_role, make_candidate):
    """Operation with ``count`` child screenings created in a fixed order."""

    def _make(
        count=3,
        batch_size=10,
        status="pending",
        scheduling_type="immediate",
        role=None,
        screening_status=None,
        scheduled_time=None,
    ):
        role = role or make_role()
        operation = BulkOperation(
            role_id=role.id,
            scheduling_type=scheduling_type,
            scheduled_time=scheduled_time,
            batch_size=batch_size,
            total_count=count,
            completed_count=0,
            failed_count=0,
            status=status,
        )
        db.add(operation)
        db.flush()

        base = datetime.now(timezone.utc) - timedelta(minutes=10)
        child_status = screening_status or (
            "scheduled" if scheduling_type == "scheduled" else "pending"
        )
        for i in range(count):
            candidate = make_candidate()
            screening = Screening(
                role_id=role.id,
                candidate_id=candidate.id,
                bulk_operation_id=operation.id,
                status=child_status,
                attempts=0,
                scheduled_at=scheduled_time,
                created_at=base + timedelta(seconds=i),
            )
            db.add(screening)
            if scheduling_type == "scheduled":
                db.flush()
                db.add(ScheduledCall(screening_id=screening.id, scheduled_time=scheduled_time))
        db.commit()
        return operation

    return _make


def children(db, operation_id):
    db.expire_all()
    return db.scalars(
        select(Screening)
        .where(Screening.bulk_operation_id == operation_id)
        .order_by(Screening.created_at, Screening.id)
    ).all()


def refreshed(db, obj):
    db.expire_all()
    return db.get(type(obj), obj.id)
