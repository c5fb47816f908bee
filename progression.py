"""
=============================================================================
PROGRESSION.PY — Completar tareas y sesiones de foco
=============================================================================
Aquí se junta todo: recompensa + racha + XP/monedas + nivel + logros + eventos.

Completar una tarea, en orden:
  1. Comprobar que el usuario existe (antes de tocar nada)
  2. Calcular la racha nueva (en la zona horaria del usuario)
  3. Marcar la tarea como completada SOLO si no lo estaba (UPDATE condicional)
  4. Calcular la recompensa con la racha de ANTES
  5. Sumar XP, monedas y tareas completadas en un único UPDATE
  6. Comprobar logros (si falla, NO se deshace nada de lo anterior)
  7. Recalcular el nivel (con la XP de los logros incluida) y ver si ha subido
  8. Emitir eventos

Si algo falla entre 3 y 5 la tarea queda completada sin recompensa.
Se registra como ERROR y el cliente recibe un 500.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from achievements import AchievementEvaluator
from database import utcnow
from gamification import (
    calculate_focus_xp, calculate_level, calculate_task_reward,
    focus_actual_minutes, get_level_info, update_streak
)
from models import Achievement, FocusSession, Task, User
from realtime import EventPublisher, ProgressEvents
from store import ProgressionStore

logger = logging.getLogger("taskquest.progression")


# ─────────────────────────────────────────────────────────────────────────────
# ERRORES
# ─────────────────────────────────────────────────────────────────────────────

class ProgressionError(Exception):
    """Error base del motor de progresión"""


class TaskNotCompletableError(ProgressionError):
    def __init__(self, task_id: int):
        super().__init__(f"Tarea {task_id} no encontrada o ya completada")
        self.task_id = task_id


class UserNotFoundError(ProgressionError):
    def __init__(self, user_id: int):
        super().__init__(f"Usuario {user_id} no encontrado")
        self.user_id = user_id


class FocusSessionNotCompletableError(ProgressionError):
    def __init__(self, session_id: int):
        super().__init__(f"Sesión de foco {session_id} no encontrada o ya completada")
        self.session_id = session_id


class RewardApplicationError(ProgressionError):
    """La tarea (o sesión) quedó completada pero la recompensa no se pudo aplicar"""


# ─────────────────────────────────────────────────────────────────────────────
# RESULTADOS
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class CompletionResult:
    task: Task
    xp_awarded: int
    coins_awarded: int
    level_up: bool
    new_level: Optional[int] = None
    new_achievements: list[str] = field(default_factory=list)
    streak_bonus: int = 0
    early_bonus: bool = False


@dataclass
class FocusResult:
    session: FocusSession
    xp_awarded: int
    level_up: bool
    new_level: Optional[int] = None
    new_achievements: list[str] = field(default_factory=list)


def task_to_dict(task: Task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "category": task.category,
        "difficulty": task.difficulty,
        "status": task.status,
        "xp_value": task.xp_value,
        "coins_value": task.coins_value,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }


def focus_session_to_dict(session: FocusSession) -> dict:
    return {
        "id": session.id,
        "type": session.type,
        "duration": session.duration,
        "actual_duration": session.actual_duration,
        "productivity": session.productivity,
        "task_id": session.task_id,
    }


# =============================================================================
# ===================== ORQUESTADOR ===========================================
# =============================================================================

class ProgressionService:
    """
    Casos de uso que mueven la progresión del usuario.

    El publicador de eventos y el reloj se inyectan (en los tests se usa
    un publicador que graba y un reloj fijo).
    """

    def __init__(
        self,
        store: ProgressionStore,
        publisher: EventPublisher,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.events = ProgressEvents(publisher)
        self.achievements = AchievementEvaluator(store, self.events)
        self.clock = clock

    # ─────────────────────────────────────────────────────────────────────────
    # COMPLETAR TAREA
    # ─────────────────────────────────────────────────────────────────────────

    async def complete_task(self, user_id: int, task_id: int) -> CompletionResult:
        user = await self.store.find_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        # Foto del usuario antes de completar
        previous_streak = user.streak
        last_active_date = user.last_active_date
        longest_streak = user.longest_streak
        tz_name = user.timezone

        # La racha no depende de la tarea: si falla, la tarea sigue sin completar
        now = self.clock()
        streak = update_streak(last_active_date, previous_streak, longest_streak, now, tz_name)

        task = await self.store.conditional_complete_task(task_id, user_id, now)
        if task is None:
            raise TaskNotCompletableError(task_id)

        try:
            reward = calculate_task_reward(
                task.xp_value, task.coins_value, previous_streak, task.deadline, task.completed_at
            )
            updated = await self.store.apply_user_progress(
                user_id,
                xp=reward.xp,
                coins=reward.coins,
                tasks_completed=1,
                streak=streak,
            )
            if updated is None:
                raise UserNotFoundError(user_id)
        except Exception as exc:
            logger.exception(
                f"❌ Tarea {task_id} completada pero sin recompensa aplicada (usuario {user_id})"
            )
            await self.store.rollback()
            raise RewardApplicationError(str(exc)) from exc

        previous_level = calculate_level(updated.xp - reward.xp)
        total_xp, total_coins = updated.xp, updated.coins

        unlocked = await self._evaluate_safely(user_id, task, "task_completed")

        # Las recompensas de los logros también pueden subir el nivel
        final_xp = await self._xp_after_achievements(user_id, total_xp, unlocked)
        new_level = calculate_level(final_xp)
        level_up = new_level > previous_level

        rewards = {
            "xp": reward.xp,
            "coins": reward.coins,
            "streak_bonus": reward.streak_bonus,
            "early_bonus": reward.early_bonus,
            "streak": streak.streak,
        }
        await self.events.task_completed(user_id, task_to_dict(task), rewards)
        await self.events.xp_gained(user_id, reward.xp, total_xp, "task_completed")
        await self.events.coins_earned(user_id, reward.coins, total_coins, "task_completed")
        if level_up:
            await self._announce_level_up(user_id, final_xp, previous_level)

        logger.info(
            f"✅ Usuario {user_id} completó la tarea {task_id}: +{reward.xp} XP, +{reward.coins} monedas"
        )
        return CompletionResult(
            task=task,
            xp_awarded=reward.xp,
            coins_awarded=reward.coins,
            level_up=level_up,
            new_level=new_level if level_up else None,
            new_achievements=[a.name for a in unlocked],
            streak_bonus=reward.streak_bonus,
            early_bonus=reward.early_bonus,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # COMPLETAR SESIÓN DE FOCO
    # ─────────────────────────────────────────────────────────────────────────

    async def complete_focus_session(
        self,
        user_id: int,
        session_id: int,
        productivity: Optional[int] = None,
        actual_duration: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> FocusResult:
        """
        Cierra una sesión de foco (una sola vez) y suma su XP y sus minutos.
        La racha no se toca: solo las tareas cuentan para la racha.
        """
        user = await self.store.find_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        session = await self.store.conditional_complete_focus_session(session_id, user_id, self.clock())
        if session is None:
            raise FocusSessionNotCompletableError(session_id)

        if actual_duration is None:
            actual_duration = focus_actual_minutes(session.start_time, session.end_time, session.paused_time)
        if productivity is None:
            productivity = session.productivity or 0
        xp = calculate_focus_xp(session.type, session.duration, actual_duration, productivity)

        try:
            session.actual_duration = actual_duration
            session.productivity = productivity
            session.xp_earned = xp
            if notes is not None:
                session.notes = notes
            await self.store.save(session)

            updated = await self.store.increment_user(user_id, xp=xp, focus_minutes=actual_duration)
            if updated is None:
                raise UserNotFoundError(user_id)
        except Exception as exc:
            logger.exception(
                f"❌ Sesión de foco {session_id} cerrada pero sin recompensa aplicada (usuario {user_id})"
            )
            await self.store.rollback()
            raise RewardApplicationError(str(exc)) from exc

        previous_level = calculate_level(updated.xp - xp)
        total_xp = updated.xp

        unlocked = await self._evaluate_safely(user_id, None, "focus_session_completed", session)

        final_xp = await self._xp_after_achievements(user_id, total_xp, unlocked)
        new_level = calculate_level(final_xp)
        level_up = new_level > previous_level

        await self.events.focus_session_completed(
            user_id, focus_session_to_dict(session), {"xp": xp, "minutes": actual_duration}
        )
        await self.events.xp_gained(user_id, xp, total_xp, "focus_session")
        if level_up:
            await self._announce_level_up(user_id, final_xp, previous_level)

        logger.info(f"🎯 Usuario {user_id} cerró la sesión {session_id}: {actual_duration} min, +{xp} XP")
        return FocusResult(
            session=session,
            xp_awarded=xp,
            level_up=level_up,
            new_level=new_level if level_up else None,
            new_achievements=[a.name for a in unlocked],
        )

    # ─────────────────────────────────────────────────────────────────────────
    # LOGROS
    # ─────────────────────────────────────────────────────────────────────────

    async def check_achievements(self, user_id: int) -> list[Achievement]:
        """Comprobación manual de logros (no depende de ninguna tarea)"""
        user = await self.store.find_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        xp_before = user.xp

        unlocked = await self.achievements.evaluate(user_id, action="manual_check")

        previous_level = calculate_level(xp_before)
        final_xp = await self._xp_after_achievements(user_id, xp_before, unlocked)
        if calculate_level(final_xp) > previous_level:
            await self._announce_level_up(user_id, final_xp, previous_level)
        return unlocked

    async def _xp_after_achievements(self, user_id: int, xp: int, unlocked: list[Achievement]) -> int:
        if not unlocked:
            return xp
        user = await self.store.find_user_by_id(user_id)
        return user.xp if user is not None else xp

    async def _evaluate_safely(self, user_id: int, task: Optional[Task], action: str, *loaded) -> list[Achievement]:
        # Un fallo aquí nunca deshace la recompensa ya guardada
        try:
            return await self.achievements.evaluate(user_id, task=task, action=action)
        except Exception:
            logger.exception(f"⚠️ Fallo comprobando logros del usuario {user_id}")
            await self.store.rollback()
            for obj in (task, *loaded):
                if obj is not None:
                    await self.store.refresh(obj)
            return []

    async def _announce_level_up(self, user_id: int, total_xp: int, previous_level: int):
        level_data = get_level_info(total_xp)
        level_data["previous_level"] = previous_level
        logger.info(f"⬆️ Usuario {user_id} sube a nivel {level_data['level']}")
        await self.events.level_up(user_id, level_data)


def user_level_payload(user: User) -> dict:
    """Nivel del usuario listo para la API"""
    info = get_level_info(user.xp)
    info["coins"] = user.coins
    info["streak"] = user.streak
    info["longest_streak"] = user.longest_streak
    return info
