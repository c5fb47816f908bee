"""Completar tareas y sesiones de foco de principio a fin"""

import asyncio
from datetime import timedelta

import pytest
import pytz
from sqlalchemy import select

from conftest import NOW, FixedClock, RecordingPublisher
from models import Completed, FocusSession, Pending, Task, TaskStatus, User
from progression import (
    FocusSessionNotCompletableError, ProgressionService, RewardApplicationError,
    TaskNotCompletableError, UserNotFoundError
)
from store import ProgressionStore


async def reload(db, model, pk):
    result = await db.execute(
        select(model).where(model.id == pk).execution_options(populate_existing=True)
    )
    return result.scalar_one()


# ─────────────────────────────────────────────────────────────────────────────
# ESCENARIOS
# ─────────────────────────────────────────────────────────────────────────────

async def test_first_completion_of_new_user(db, service, publisher, make_user, make_task):
    user = await make_user(xp=0, coins=100, streak=0)
    task = await make_task(user, category="personal", difficulty="easy")
    assert (task.xp_value, task.coins_value) == (11, 2)
    assert task.state == Pending()

    result = await service.complete_task(user.id, task.id)

    assert result.task.state == Completed(at=NOW)
    assert result.xp_awarded == 11
    assert result.coins_awarded == 2
    assert result.streak_bonus == 0
    assert result.level_up is False
    assert result.new_level is None
    assert result.task.status == TaskStatus.completed
    assert result.task.completed_at == NOW

    user = await reload(db, User, user.id)
    assert user.xp == 11
    assert user.coins == 102
    assert user.streak == 1
    assert user.longest_streak == 1
    assert user.last_active_date == NOW
    assert user.total_tasks_completed == 1

    assert publisher.events(f"user:{user.id}") == ["task-completed", "xp-gained", "coins-earned"]
    completed = publisher.payloads("task-completed")[0]
    assert completed["task"]["id"] == task.id
    assert completed["rewards"]["xp"] == 11
    assert "timestamp" in completed


async def test_streak_bonus_uses_streak_before_update(db, service, make_user, make_task):
    user = await make_user(streak=10, longest_streak=10, last_active_date=NOW - timedelta(days=1))
    task = await make_task(user, category="learning", difficulty="hard", deadline=NOW + timedelta(days=1))

    result = await service.complete_task(user.id, task.id)

    # 25 de la tarea + 50 de racha (tope) + 10 por entregar antes de la fecha límite
    assert result.streak_bonus == 50
    assert result.early_bonus is True
    assert result.xp_awarded == 85
    assert result.coins_awarded == 7

    user = await reload(db, User, user.id)
    assert user.streak == 11
    assert user.longest_streak == 11


async def test_overdue_task_gets_no_early_bonus(service, make_user, make_task):
    user = await make_user()
    task = await make_task(user, deadline=NOW - timedelta(hours=3))

    result = await service.complete_task(user.id, task.id)
    assert result.early_bonus is False
    assert result.xp_awarded == task.xp_value


async def test_tenth_completion_unlocks_rookie_in_same_pass(db, service, publisher, make_user, make_task):
    user = await make_user(total_tasks_completed=9)
    task = await make_task(user)

    result = await service.complete_task(user.id, task.id)

    assert result.new_achievements == ["Rookie Achiever"]
    user = await reload(db, User, user.id)
    assert user.total_tasks_completed == 10
    assert user.xp == 11 + 100
    assert user.coins == 100 + 2 + 50
    assert "achievement-unlocked" in publisher.events(f"user:{user.id}")
    assert "user-achievement-unlocked" in publisher.events("leaderboard")


async def test_concurrent_completions_reward_once(session_factory, make_user, make_task):
    user = await make_user()
    task = await make_task(user)

    async def complete():
        async with session_factory() as session:
            service = ProgressionService(ProgressionStore(session), RecordingPublisher(), clock=FixedClock())
            return await service.complete_task(user.id, task.id)

    results = await asyncio.gather(complete(), complete(), return_exceptions=True)

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], TaskNotCompletableError)

    async with session_factory() as session:
        fresh = await session.get(User, user.id)
        assert fresh.xp == task.xp_value
        assert fresh.total_tasks_completed == 1


# ─────────────────────────────────────────────────────────────────────────────
# IDEMPOTENCIA Y RACHAS
# ─────────────────────────────────────────────────────────────────────────────

async def test_completing_twice_rewards_once(db, service, publisher, make_user, make_task):
    user = await make_user()
    task = await make_task(user)
    await service.complete_task(user.id, task.id)
    published = len(publisher.published)

    with pytest.raises(TaskNotCompletableError):
        await service.complete_task(user.id, task.id)

    user = await reload(db, User, user.id)
    assert user.xp == task.xp_value
    assert user.total_tasks_completed == 1
    assert len(publisher.published) == published


async def test_same_day_completions_count_streak_once(db, service, make_user, make_task):
    user = await make_user()
    first = await make_task(user)
    second = await make_task(user)

    await service.complete_task(user.id, first.id)
    result = await service.complete_task(user.id, second.id)

    assert result.streak_bonus == 5
    user = await reload(db, User, user.id)
    assert user.streak == 1


async def test_other_users_task_is_not_completable(db, service, make_user, make_task):
    owner = await make_user()
    intruder = await make_user()
    task = await make_task(owner)

    with pytest.raises(TaskNotCompletableError):
        await service.complete_task(intruder.id, task.id)

    task = await reload(db, Task, task.id)
    assert task.status == TaskStatus.pending
    assert task.completed_at is None


async def test_missing_user_changes_nothing(db, service, make_user, make_task):
    user = await make_user()
    task = await make_task(user)

    with pytest.raises(UserNotFoundError):
        await service.complete_task(user.id + 1000, task.id)

    task = await reload(db, Task, task.id)
    assert task.status == TaskStatus.pending


# ─────────────────────────────────────────────────────────────────────────────
# NIVELES Y FALLOS
# ─────────────────────────────────────────────────────────────────────────────

async def test_level_up_is_announced(db, service, publisher, make_user, make_task):
    user = await make_user(xp=490)
    task = await make_task(user, category="work", difficulty="medium")

    result = await service.complete_task(user.id, task.id)

    assert result.level_up is True
    assert result.new_level == 2
    user = await reload(db, User, user.id)
    assert user.level == 2
    assert publisher.events(f"user:{user.id}")[-1] == "level-up"
    assert publisher.payloads("user-level-up")[0]["level_data"]["previous_level"] == 1


async def test_failing_achievement_check_keeps_rewards(db, service, make_user, make_task, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(service.achievements, "evaluate", broken)
    user = await make_user()
    task = await make_task(user)

    result = await service.complete_task(user.id, task.id)

    assert result.new_achievements == []
    assert result.task.title == "Tarea"
    user = await reload(db, User, user.id)
    assert user.xp == task.xp_value


async def test_reward_failure_leaves_task_completed(db, service, make_user, make_task, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(service.store, "apply_user_progress", broken)
    user = await make_user()
    task = await make_task(user)
    user_id, task_id = user.id, task.id

    with pytest.raises(RewardApplicationError):
        await service.complete_task(user_id, task_id)

    task = await reload(db, Task, task_id)
    assert task.status == TaskStatus.completed
    user = await reload(db, User, user_id)
    assert user.xp == 0


# ─────────────────────────────────────────────────────────────────────────────
# SESIONES DE FOCO
# ─────────────────────────────────────────────────────────────────────────────

async def start_session(db, user, **fields) -> FocusSession:
    values = {"user_id": user.id, "type": "pomodoro", "duration": 25, "start_time": NOW - timedelta(minutes=30)}
    values.update(fields)
    session = FocusSession(**values)
    db.add(session)
    await db.commit()
    await db.refresh(session)
    return session


async def test_focus_session_awards_xp_and_minutes(db, service, publisher, make_user):
    user = await make_user(streak=3)
    session = await start_session(db, user)

    result = await service.complete_focus_session(user.id, session.id, productivity=100)

    # 5 × 30 min × 1.2 (pomodoro) × 1.1 (≥25 min) + 20
    assert result.xp_awarded == 218
    assert result.session.actual_duration == 30
    assert result.session.completed is True

    user = await reload(db, User, user.id)
    assert user.xp == 218
    assert user.total_focus_time == 30
    assert user.streak == 3
    assert publisher.events(f"user:{user.id}")[:2] == ["focus-session-completed", "xp-gained"]

    with pytest.raises(FocusSessionNotCompletableError):
        await service.complete_focus_session(user.id, session.id)


async def test_focus_minutes_unlock_deep_focus(db, service, make_user):
    user = await make_user(total_focus_time=590)
    session = await start_session(db, user, type="custom", duration=10)

    result = await service.complete_focus_session(user.id, session.id, productivity=0, actual_duration=10)

    assert result.xp_awarded == 20
    assert result.new_achievements == ["Deep Focus"]


async def test_manual_check(service, make_user):
    user = await make_user(streak=30)
    unlocked = await service.check_achievements(user.id)
    assert sorted(a.name for a in unlocked) == ["Consistency Hero", "Streak Legend"]


async def test_sync_level_only_raises(db, make_user):
    store = ProgressionStore(db)
    behind = await make_user(xp=2000, level=1)
    ahead = await make_user(xp=100, level=5)

    assert (await store.sync_level(behind.id)).level == 3
    assert (await store.sync_level(ahead.id)).level == 5


async def test_unknown_timezone_leaves_task_pending(db, service, make_user, make_task):
    user = await make_user(timezone="Mars/Olympus")
    task = await make_task(user)

    with pytest.raises(pytz.UnknownTimeZoneError):
        await service.complete_task(user.id, task.id)

    task = await reload(db, Task, task.id)
    assert task.status == TaskStatus.pending
    assert task.completed_at is None
    user = await reload(db, User, user.id)
    assert user.xp == 0


async def test_level_up_from_achievement_reward_is_announced(db, service, publisher, make_user, make_task):
    # 450 + 11 de la tarea no llega a 500; los 100 de Rookie Achiever sí
    user = await make_user(xp=450, total_tasks_completed=9)
    task = await make_task(user)

    result = await service.complete_task(user.id, task.id)

    assert result.new_achievements == ["Rookie Achiever"]
    assert result.level_up is True
    assert result.new_level == 2
    level_data = publisher.payloads("level-up")[0]["level_data"]
    assert level_data["level"] == 2
    assert level_data["previous_level"] == 1
    user = await reload(db, User, user.id)
    assert user.level == 2


async def test_manual_check_announces_level_up(service, publisher, make_user):
    user = await make_user(streak=30)

    await service.check_achievements(user.id)

    # 200 + 1000 XP de los dos logros de racha → nivel 2
    assert publisher.events(f"user:{user.id}")[-1] == "level-up"
    assert publisher.payloads("level-up")[0]["level_data"]["level"] == 2


async def test_completed_task_status_cannot_be_changed(db, service, make_user, make_task):
    store = ProgressionStore(db)
    user = await make_user()
    task = await make_task(user)

    started = await store.conditional_set_task_status(task.id, user.id, TaskStatus.in_progress)
    assert started.status == TaskStatus.in_progress

    await service.complete_task(user.id, task.id)

    assert await store.conditional_set_task_status(task.id, user.id, TaskStatus.pending) is None
    task = await reload(db, Task, task.id)
    assert task.status == TaskStatus.completed
    assert task.completed_at == NOW
