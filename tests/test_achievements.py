"""Catálogo, evaluador y progreso de logros"""

from datetime import datetime

from sqlalchemy import func, select

import achievements
from achievements import (
    ACHIEVEMENT_DEFINITIONS, MEASURES, AchievementEvaluator, seed_achievements
)
from models import Achievement, CriteriaType, TaskStatus, UserAchievement
from realtime import ProgressEvents
from store import ProgressionStore


def evaluator_for(db, publisher) -> AchievementEvaluator:
    return AchievementEvaluator(ProgressionStore(db), ProgressEvents(publisher))


async def find_achievement(db, code: str) -> Achievement:
    result = await db.execute(select(Achievement).where(Achievement.code == code))
    return result.scalar_one()


def test_every_criteria_type_has_a_measure():
    assert set(MEASURES) == set(CriteriaType)


async def test_seed_is_an_upsert(db):
    await seed_achievements(db)
    count = await db.execute(select(func.count(Achievement.id)))
    assert count.scalar_one() == len(ACHIEVEMENT_DEFINITIONS) == 11


async def test_evaluate_unlocks_once(db, publisher, make_user):
    user = await make_user(total_tasks_completed=10)
    evaluator = evaluator_for(db, publisher)

    first = await evaluator.evaluate(user.id)
    second = await evaluator.evaluate(user.id)

    assert [a.name for a in first] == ["Rookie Achiever"]
    assert second == []

    await db.refresh(user)
    assert user.xp == 100
    assert user.coins == 150

    rows = await db.execute(select(UserAchievement).where(UserAchievement.user_id == user.id))
    unlocked = [r for r in rows.scalars().all() if r.is_unlocked]
    assert len(unlocked) == 1
    assert publisher.events().count("achievement-unlocked") == 1


async def test_unlock_event_goes_to_user_and_leaderboard(db, publisher, make_user):
    user = await make_user(streak=7)
    await evaluator_for(db, publisher).evaluate(user.id)

    assert publisher.events(f"user:{user.id}") == ["achievement-unlocked"]
    assert publisher.events("leaderboard") == ["user-achievement-unlocked"]
    payload = publisher.payloads("user-achievement-unlocked")[0]
    assert payload["user_id"] == user.id
    assert payload["achievement"]["name"] == "Consistency Hero"


async def test_early_bird_only_with_completed_task(db, publisher, make_user, make_task):
    user = await make_user()
    # 05:00 UTC = 06:00 en Madrid
    task = await make_task(
        user, status=TaskStatus.completed.value, completed_at=datetime(2026, 3, 10, 5, 0)
    )
    evaluator = evaluator_for(db, publisher)

    assert await evaluator.evaluate(user.id) == []
    unlocked = await evaluator.evaluate(user.id, task=task)
    assert [a.name for a in unlocked] == ["Early Bird"]


async def test_night_owl_uses_user_timezone(db, publisher, make_user, make_task):
    # 21:30 UTC = 22:30 en Madrid
    madrid = await make_user(timezone="Europe/Madrid")
    utc = await make_user(timezone="UTC")
    completed_at = datetime(2026, 3, 10, 21, 30)
    evaluator = evaluator_for(db, publisher)

    task = await make_task(madrid, status=TaskStatus.completed.value, completed_at=completed_at)
    assert [a.name for a in await evaluator.evaluate(madrid.id, task=task)] == ["Night Owl"]

    task = await make_task(utc, status=TaskStatus.completed.value, completed_at=completed_at)
    assert await evaluator.evaluate(utc.id, task=task) == []


async def test_category_achievement_counts_completed_tasks(db, publisher, make_user, make_task):
    user = await make_user()
    for _ in range(25):
        await make_task(
            user, category="work", status=TaskStatus.completed.value, completed_at=datetime(2026, 3, 10, 12)
        )
    await make_task(user, category="work")

    unlocked = await evaluator_for(db, publisher).evaluate(user.id)
    assert [a.name for a in unlocked] == ["Work Warrior"]


async def test_failing_rule_is_skipped(db, publisher, make_user, monkeypatch):
    async def broken(ctx, achievement):
        raise RuntimeError("boom")

    monkeypatch.setitem(achievements.MEASURES, CriteriaType.task_count, broken)
    user = await make_user(total_tasks_completed=10, streak=7)

    unlocked = await evaluator_for(db, publisher).evaluate(user.id, action="task_completed")
    assert [a.name for a in unlocked] == ["Consistency Hero"]


async def test_progress_is_recorded_with_history(db, publisher, make_user):
    user = await make_user(total_tasks_completed=3)
    evaluator = evaluator_for(db, publisher)
    rookie = await find_achievement(db, "rookie_achiever")

    await evaluator.evaluate(user.id, action="task_completed")
    await evaluator.evaluate(user.id, action="task_completed")

    row = await ProgressionStore(db).get_or_create_user_achievement(user.id, rookie.id)
    assert row.progress == 3
    assert row.is_unlocked is False
    assert len(row.progress_history) == 1
    assert row.progress_history[0]["action"] == "task_completed"
    assert row.progress_history[0]["value"] == 3


async def test_progress_is_capped_at_target(db, publisher, make_user):
    user = await make_user(streak=45)
    legend = await find_achievement(db, "streak_legend")

    progress = await evaluator_for(db, publisher).get_progress(user.id, legend.id)
    assert progress == {"progress": 30, "target": 30, "completed": False}


async def test_progress_of_unlocked_achievement(db, publisher, make_user):
    user = await make_user(total_tasks_completed=12)
    evaluator = evaluator_for(db, publisher)
    rookie = await find_achievement(db, "rookie_achiever")
    await evaluator.evaluate(user.id)

    assert await evaluator.get_progress(user.id, rookie.id) == {"progress": 10, "target": 10, "completed": True}


async def test_user_achievements_split(db, publisher, make_user):
    user = await make_user(total_tasks_completed=10)
    evaluator = evaluator_for(db, publisher)
    await evaluator.evaluate(user.id)

    result = await evaluator.get_user_achievements(user.id)
    assert [a["name"] for a in result["unlocked"]] == ["Rookie Achiever"]
    assert len(result["locked"]) == len(ACHIEVEMENT_DEFINITIONS) - 1
    assert all(a["progress"] <= a["criteria"]["target"] for a in result["locked"])
