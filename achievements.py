"""
=============================================================================
ACHIEVEMENTS.PY — Sistema de Logros
=============================================================================
Gestiona:
  - El catálogo de logros (se inserta en BD al arrancar)
  - Cómo se mide cada tipo de criterio (tareas, racha, categoría, foco, hora)
  - El evaluador: qué logros nuevos se desbloquean tras una acción
  - El progreso de cada logro por usuario (con historial)

Reglas del evaluador:
  1. Un logro ya desbloqueado se salta ANTES de evaluarlo (nunca se da dos veces)
  2. Si la comprobación de un logro falla, se registra y se sigue con el resto
  3. Desbloquear = marcar + sumar recompensa + guardar, y después avisar
"""

import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gamification import local_hour
from models import (
    Achievement, AchievementCategory, AchievementRarity, CriteriaType, Task, TaskStatus, User
)
from realtime import ProgressEvents
from store import ProgressionStore

logger = logging.getLogger("taskquest.achievements")


# =============================================================================
# ===================== CATÁLOGO ==============================================
# =============================================================================

class AchievementCode(str, enum.Enum):
    rookie_achiever = "rookie_achiever"
    task_master = "task_master"
    century_club = "century_club"
    consistency_hero = "consistency_hero"
    streak_legend = "streak_legend"
    early_bird = "early_bird"
    night_owl = "night_owl"
    work_warrior = "work_warrior"
    health_hero = "health_hero"
    learning_legend = "learning_legend"
    deep_focus = "deep_focus"


@dataclass(frozen=True)
class AchievementDefinition:
    code: AchievementCode
    name: str
    description: str
    icon: str
    category: str
    rarity: str
    criteria_type: CriteriaType
    target: int
    xp: int
    coins: int
    criteria_category: Optional[str] = None


ACHIEVEMENT_DEFINITIONS = [
    # ── Productividad ──
    AchievementDefinition(AchievementCode.rookie_achiever, "Rookie Achiever", "Completa tus primeras 10 tareas",
                          "🥉", "productivity", "common", CriteriaType.task_count, 10, xp=100, coins=50),
    AchievementDefinition(AchievementCode.task_master, "Task Master", "Completa 50 tareas",
                          "🥈", "productivity", "rare", CriteriaType.task_count, 50, xp=300, coins=150),
    AchievementDefinition(AchievementCode.century_club, "Century Club", "Completa 100 tareas",
                          "💯", "productivity", "epic", CriteriaType.task_count, 100, xp=500, coins=250),

    # ── Constancia ──
    AchievementDefinition(AchievementCode.consistency_hero, "Consistency Hero", "Mantén una racha de 7 días",
                          "🔥", "consistency", "rare", CriteriaType.streak, 7, xp=200, coins=100),
    AchievementDefinition(AchievementCode.streak_legend, "Streak Legend", "Mantén una racha de 30 días",
                          "👑", "consistency", "legendary", CriteriaType.streak, 30, xp=1000, coins=500),

    # ── Especiales (dependen de la tarea recién completada) ──
    AchievementDefinition(AchievementCode.early_bird, "Early Bird", "Completa una tarea antes de las 8:00",
                          "🌅", "special", "epic", CriteriaType.early_completion, 1, xp=50, coins=25),
    AchievementDefinition(AchievementCode.night_owl, "Night Owl", "Completa una tarea a partir de las 22:00",
                          "🦉", "special", "epic", CriteriaType.late_completion, 1, xp=50, coins=25),

    # ── Por categoría ──
    AchievementDefinition(AchievementCode.work_warrior, "Work Warrior", "Completa 25 tareas de trabajo",
                          "💼", "productivity", "rare", CriteriaType.category_tasks, 25, xp=250, coins=125,
                          criteria_category="work"),
    AchievementDefinition(AchievementCode.health_hero, "Health Hero", "Completa 25 tareas de salud",
                          "💪", "productivity", "rare", CriteriaType.category_tasks, 25, xp=250, coins=125,
                          criteria_category="health"),
    AchievementDefinition(AchievementCode.learning_legend, "Learning Legend", "Completa 25 tareas de aprendizaje",
                          "📚", "productivity", "epic", CriteriaType.category_tasks, 25, xp=300, coins=150,
                          criteria_category="learning"),

    # ── Foco ──
    AchievementDefinition(AchievementCode.deep_focus, "Deep Focus", "Acumula 600 minutos de foco",
                          "🎯", "productivity", "epic", CriteriaType.focus_time, 600, xp=300, coins=150),
]


async def seed_achievements(db: AsyncSession):
    """
    Inserta o actualiza los logros del catálogo (por code).
    Se ejecuta al arrancar la aplicación.
    """
    for definition in ACHIEVEMENT_DEFINITIONS:
        result = await db.execute(select(Achievement).where(Achievement.code == definition.code.value))
        achievement = result.scalar_one_or_none()
        if achievement is None:
            achievement = Achievement(code=definition.code.value)
            db.add(achievement)

        achievement.name = definition.name
        achievement.description = definition.description
        achievement.icon = definition.icon
        achievement.category = AchievementCategory(definition.category).value
        achievement.rarity = AchievementRarity(definition.rarity).value
        achievement.criteria_type = definition.criteria_type.value
        achievement.target = definition.target
        achievement.criteria_category = definition.criteria_category
        achievement.xp_reward = definition.xp
        achievement.coins_reward = definition.coins
        achievement.is_active = True
    await db.commit()
    logger.info(f"✅ {len(ACHIEVEMENT_DEFINITIONS)} logros verificados en BD")


def achievement_to_dict(achievement: Achievement) -> dict:
    return {
        "id": achievement.id,
        "code": achievement.code,
        "name": achievement.name,
        "description": achievement.description,
        "icon": achievement.icon,
        "category": achievement.category,
        "rarity": achievement.rarity,
        "criteria": {
            "type": achievement.criteria_type,
            "target": achievement.target,
            "category": achievement.criteria_category,
        },
        "rewards": {"xp": achievement.xp_reward, "coins": achievement.coins_reward},
    }


# =============================================================================
# ===================== MEDIDAS POR TIPO DE CRITERIO ==========================
# =============================================================================
# Cada tipo de criterio tiene una función que devuelve "cuánto lleva" el
# usuario. El logro se desbloquea cuando esa medida llega al target.

@dataclass
class RuleContext:
    user: User
    task: Optional[Task]
    store: ProgressionStore


Measure = Callable[[RuleContext, Achievement], Awaitable[float]]


async def _total_tasks(ctx: RuleContext, achievement: Achievement) -> float:
    return ctx.user.total_tasks_completed


async def _current_streak(ctx: RuleContext, achievement: Achievement) -> float:
    return ctx.user.streak


async def _category_tasks(ctx: RuleContext, achievement: Achievement) -> float:
    return await ctx.store.count_tasks(
        ctx.user.id, category=achievement.criteria_category, status=TaskStatus.completed
    )


async def _focus_minutes(ctx: RuleContext, achievement: Achievement) -> float:
    return ctx.user.total_focus_time


async def _completed_early(ctx: RuleContext, achievement: Achievement) -> float:
    # Solo cuenta la tarea que se acaba de completar
    if ctx.task is None or ctx.task.completed_at is None:
        return 0
    return 1 if local_hour(ctx.task.completed_at, ctx.user.timezone) < 8 else 0


async def _completed_late(ctx: RuleContext, achievement: Achievement) -> float:
    if ctx.task is None or ctx.task.completed_at is None:
        return 0
    return 1 if local_hour(ctx.task.completed_at, ctx.user.timezone) >= 22 else 0


MEASURES: dict[CriteriaType, Measure] = {
    CriteriaType.task_count: _total_tasks,
    CriteriaType.streak: _current_streak,
    CriteriaType.category_tasks: _category_tasks,
    CriteriaType.focus_time: _focus_minutes,
    CriteriaType.early_completion: _completed_early,
    CriteriaType.late_completion: _completed_late,
}

# La racha puede bajar; el resto solo crece
CUMULATIVE_CRITERIA = {
    CriteriaType.task_count,
    CriteriaType.category_tasks,
    CriteriaType.focus_time,
    CriteriaType.early_completion,
    CriteriaType.late_completion,
}


async def measure(achievement: Achievement, ctx: RuleContext) -> float:
    """Lanza ValueError si el tipo de criterio no existe en el registro"""
    criteria = CriteriaType(achievement.criteria_type)
    return await MEASURES[criteria](ctx, achievement)


# =============================================================================
# ===================== EVALUADOR =============================================
# =============================================================================

class AchievementEvaluator:
    def __init__(self, store: ProgressionStore, events: ProgressEvents):
        self.store = store
        self.events = events

    async def evaluate(
        self,
        user_id: int,
        task: Optional[Task] = None,
        action: Optional[str] = None,
    ) -> list[Achievement]:
        """
        Comprueba todos los logros activos y desbloquea los que se cumplan.

        - task: la tarea recién completada (para Early Bird / Night Owl)
        - action: si se indica, se guarda el progreso medido con esa acción
          en el historial de cada logro

        Retorna la lista de logros recién desbloqueados.
        """
        user = await self.store.find_user_by_id(user_id)
        if user is None:
            return []

        task_id = task.id if task is not None else None
        unlocked = await self.store.unlocked_achievement_codes(user_id)
        newly_unlocked = []

        for achievement in await self.store.list_active_achievements():
            if achievement.code in unlocked:
                continue

            try:
                value = await measure(achievement, RuleContext(user=user, task=task, store=self.store))
                if action is not None:
                    cumulative = CriteriaType(achievement.criteria_type) in CUMULATIVE_CRITERIA
                    row = await self.store.record_progress(user_id, achievement, value, action, cumulative)
                    value = row.progress
            except Exception:
                logger.exception(f"⚠️ Error comprobando el logro {achievement.code} (usuario {user_id})")
                user, task = await self._reload_after_rollback(user_id, task_id)
                continue

            if value < achievement.target:
                continue

            if not await self.store.grant_achievement(user_id, achievement):
                continue

            newly_unlocked.append(achievement)
            logger.info(f"🏆 Usuario {user_id} desbloqueó: {achievement.name}")
            await self.events.achievement_unlocked(user_id, achievement_to_dict(achievement))

            # La recompensa cambió xp/coins; los siguientes logros ven el usuario al día
            user = await self.store.find_user_by_id(user_id)

        return newly_unlocked

    async def _reload_after_rollback(self, user_id: int, task_id: Optional[int]):
        """El rollback caduca los objetos de la sesión: se vuelven a leer"""
        await self.store.rollback()
        await self.store.list_active_achievements()
        user = await self.store.find_user_by_id(user_id)
        task = await self.store.find_task_by_id(task_id) if task_id is not None else None
        return user, task

    async def get_progress(self, user_id: int, achievement_id: int) -> Optional[dict]:
        """
        Progreso de un usuario en un logro. Nunca se muestra por encima del target.
        """
        user = await self.store.find_user_by_id(user_id)
        achievement = await self.store.find_achievement(achievement_id)
        if user is None or achievement is None:
            return None

        rows = await self.store.user_achievements(user_id)
        row = rows.get(achievement.id)
        if row is not None and row.is_unlocked:
            return {"progress": achievement.target, "target": achievement.target, "completed": True}

        try:
            value = await measure(achievement, RuleContext(user=user, task=None, store=self.store))
        except ValueError:
            value = 0
        if row is not None and CriteriaType(achievement.criteria_type) in CUMULATIVE_CRITERIA:
            value = max(value, row.progress or 0)

        return {
            "progress": min(value, achievement.target),
            "target": achievement.target,
            "completed": False,
        }

    async def get_user_achievements(self, user_id: int) -> dict:
        """Logros activos separados en desbloqueados y bloqueados"""
        unlocked_codes = await self.store.unlocked_achievement_codes(user_id)
        rows = await self.store.user_achievements(user_id)
        unlocked, locked = [], []

        for achievement in await self.store.list_active_achievements():
            item = achievement_to_dict(achievement)
            row = rows.get(achievement.id)
            if achievement.code in unlocked_codes:
                item["unlocked_at"] = row.unlocked_at if row else None
                unlocked.append(item)
            else:
                progress = row.progress if row else 0
                item["progress"] = min(progress or 0, achievement.target)
                locked.append(item)

        return {"unlocked": unlocked, "locked": locked}
