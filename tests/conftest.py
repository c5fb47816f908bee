"""
Fixtures comunes de los tests de TaskQuest.

Cada test tiene su propia base de datos SQLite (en tmp_path), con el
catálogo de logros ya insertado, un publicador que graba los eventos
y un reloj fijo.
"""

from datetime import datetime

import pytest

from achievements import seed_achievements
from database import build_engine, build_session_factory, init_db
from gamification import apply_task_values
from models import Task, TaskStatus, User
from progression import ProgressionService
from store import ProgressionStore

# Martes 10 de marzo de 2026, 12:00 UTC → 13:00 en Madrid
NOW = datetime(2026, 3, 10, 12, 0, 0)


class RecordingPublisher:
    """Publicador de pruebas: guarda (topic, payload) en orden"""

    def __init__(self):
        self.published = []

    async def publish(self, topic: str, payload: dict) -> None:
        self.published.append((topic, payload))

    def events(self, topic=None) -> list[str]:
        return [p["event"] for t, p in self.published if topic is None or t == topic]

    def payloads(self, event: str) -> list[dict]:
        return [p for _, p in self.published if p["event"] == event]


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'taskquest_test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_factory(engine):
    factory = build_session_factory(engine)
    async with factory() as db:
        await seed_achievements(db)
    return factory


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def service(db, publisher, clock):
    return ProgressionService(ProgressionStore(db), publisher, clock=clock)


@pytest.fixture
def make_user(db):
    async def _make_user(**fields) -> User:
        values = {
            "email": f"user{len(_make_user.created)}@taskquest.dev",
            "password_hash": "x",
            "name": "Ana",
            "timezone": "Europe/Madrid",
            "xp": 0,
            "coins": 100,
            "streak": 0,
        }
        values.update(fields)
        user = User(**values)
        db.add(user)
        await db.commit()
        await db.refresh(user)
        _make_user.created.append(user)
        return user

    _make_user.created = []
    return _make_user


@pytest.fixture
def make_task(db):
    async def _make_task(user: User, **fields) -> Task:
        values = {
            "user_id": user.id,
            "title": "Tarea",
            "category": "personal",
            "difficulty": "easy",
            "status": TaskStatus.pending.value,
        }
        values.update(fields)
        task = Task(**values)
        apply_task_values(task)
        db.add(task)
        await db.commit()
        await db.refresh(task)
        return task

    return _make_task
