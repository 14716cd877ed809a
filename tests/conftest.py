"""
Fixtures compartidas para Pytest.
Configura una base de datos SQLite por test, el servicio de colas y el cliente HTTP.
"""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from clinic_queue.database import Base, build_engine
from clinic_queue.main import app
from clinic_queue.schemas.queue import NotificationEvent
from clinic_queue.services.broadcast_service import ClinicBroadcaster
from clinic_queue.services.notification_service import (
    NotificationDispatcher,
    NotificationTrigger,
)
from clinic_queue.services.queue_service import QueueService, get_queue_service


class RecordingSink:
    """Sink de notificaciones que solo guarda los eventos recibidos."""

    def __init__(self):
        self.events: list[NotificationEvent] = []

    async def __call__(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[NotificationEvent]:
        return [e for e in self.events if e.type == event_type]


# ── Engine de test (SQLite async, un archivo por test) ─
@pytest_asyncio.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Crea y destruye las tablas para cada test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provee una sesión de DB de test."""
    async with session_factory() as session:
        yield session


# ── Notificaciones y difusión ────────────────────────
@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest_asyncio.fixture
async def dispatcher(sink: RecordingSink) -> AsyncGenerator[NotificationDispatcher, None]:
    dispatcher = NotificationDispatcher(sink=sink, buffer_size=100)
    dispatcher.start()
    yield dispatcher
    await dispatcher.stop()


@pytest.fixture
def broadcaster() -> ClinicBroadcaster:
    return ClinicBroadcaster(buffer_size=10)


@pytest.fixture
def queue_service(session_factory, broadcaster, dispatcher) -> QueueService:
    return QueueService(
        session_factory=session_factory,
        broadcaster=broadcaster,
        notifier=NotificationTrigger(dispatcher, n3_away_offset=3, n3_after_call_next=True),
    )


# ── Cliente HTTP ─────────────────────────────────────
@pytest_asyncio.fixture
async def client(queue_service: QueueService) -> AsyncGenerator[AsyncClient, None]:
    """Cliente HTTP de test que usa el servicio con la DB de test."""
    app.dependency_overrides[get_queue_service] = lambda: queue_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
