"""
=============================================================================
STORE.PY — Acceso a datos de progresión
=============================================================================
Todo lo que el motor de recompensas necesita de la base de datos pasa por
aquí: buscar tareas y usuarios, completar una tarea UNA sola vez, sumar XP
y monedas, contar tareas y guardar logros.

Reglas importantes:
  - Los contadores (xp, coins, tareas completadas, minutos de foco) se suman
    con UPDATE ... SET xp = xp + :delta. Nunca "leer, sumar en Python, guardar":
    dos peticiones a la vez perderían una de las sumas.
  - level NUNCA se escribe a mano: se deriva de xp (calculate_level) y solo sube.
  - Completar una tarea es un UPDATE condicional (status != 'completed').
    Si no actualiza ninguna fila → la tarea no existe o ya estaba completada.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from database import utcnow
from gamification import StreakUpdate, calculate_level
from models import Achievement, FocusSession, Task, TaskStatus, User, UserAchievement

logger = logging.getLogger("taskquest.store")


class ProgressionStore:
    """Operaciones de persistencia sobre una sesión async de SQLAlchemy"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def rollback(self):
        await self.db.rollback()

    async def refresh(self, obj):
        """Vuelve a leer un objeto caducado (p. ej. tras un rollback)"""
        await self.db.refresh(obj)

    # ─────────────────────────────────────────────────────────────────────────
    # TAREAS
    # ─────────────────────────────────────────────────────────────────────────

    async def find_task_by_id(self, task_id: int, user_id: Optional[int] = None) -> Optional[Task]:
        query = select(Task).where(Task.id == task_id)
        if user_id is not None:
            query = query.where(Task.user_id == user_id)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def conditional_complete_task(
        self,
        task_id: int,
        user_id: int,
        completed_at: datetime,
        not_status: TaskStatus = TaskStatus.completed,
    ) -> Optional[Task]:
        """
        Marca la tarea como completada SOLO si su estado actual no es `not_status`.

        Devuelve la tarea actualizada, o None si no había nada que completar.
        Se confirma (commit) inmediatamente: a partir de aquí la tarea queda
        completada pase lo que pase después.
        """
        result = await self.db.execute(
            update(Task)
            .where(
                Task.id == task_id,
                Task.user_id == user_id,
                Task.status != not_status.value,
            )
            .values(status=TaskStatus.completed.value, completed_at=completed_at, updated_at=completed_at)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount != 1:
            return None
        return await self.find_task_by_id(task_id)

    async def conditional_set_task_status(self, task_id: int, user_id: int, status: TaskStatus) -> Optional[Task]:
        """Cambia entre pending e in_progress. Una tarea completada no se toca (None)."""
        result = await self.db.execute(
            update(Task)
            .where(
                Task.id == task_id,
                Task.user_id == user_id,
                Task.status != TaskStatus.completed.value,
            )
            .values(status=status.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount != 1:
            return None
        return await self.find_task_by_id(task_id)

    async def count_tasks(
        self,
        user_id: int,
        category: Optional[str] = None,
        status: Optional[str] = None,
    ) -> int:
        query = select(func.count(Task.id)).where(Task.user_id == user_id)
        if category is not None:
            query = query.where(Task.category == getattr(category, "value", category))
        if status is not None:
            query = query.where(Task.status == getattr(status, "value", status))
        result = await self.db.execute(query)
        return result.scalar_one()

    async def save(self, obj):
        """Guardado de documento completo (solo campos que no son contadores)"""
        self.db.add(obj)
        await self.db.commit()
        await self.db.refresh(obj)
        return obj

    # ─────────────────────────────────────────────────────────────────────────
    # USUARIOS
    # ─────────────────────────────────────────────────────────────────────────

    async def find_user_by_id(self, user_id: int) -> Optional[User]:
        return await self.db.get(User, user_id, populate_existing=True)

    async def _apply(
        self,
        user_id: int,
        xp: int = 0,
        coins: int = 0,
        tasks_completed: int = 0,
        focus_minutes: int = 0,
        streak: Optional[StreakUpdate] = None,
        refresh_longest_streak: bool = False,
    ) -> Optional[User]:
        """Un único UPDATE con todos los cambios + sincronizar el nivel. Sin commit."""
        values = {
            User.xp: User.xp + xp,
            User.coins: User.coins + coins,
            User.total_tasks_completed: User.total_tasks_completed + tasks_completed,
            User.total_focus_time: User.total_focus_time + focus_minutes,
        }
        if streak is not None:
            values[User.streak] = streak.streak
            values[User.last_active_date] = streak.last_active_date
            values[User.longest_streak] = case(
                (User.longest_streak < streak.longest_streak, streak.longest_streak),
                else_=User.longest_streak,
            )
        elif refresh_longest_streak:
            values[User.longest_streak] = case(
                (User.longest_streak < User.streak, User.streak),
                else_=User.longest_streak,
            )

        result = await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None

        user = await self.find_user_by_id(user_id)
        await self._sync_level(user)
        return user

    async def _sync_level(self, user: User):
        """level = calculate_level(xp), y solo hacia arriba"""
        new_level = calculate_level(user.xp)
        if new_level <= user.level:
            return
        await self.db.execute(
            update(User)
            .where(User.id == user.id, User.level < new_level)
            .values(level=new_level)
            .execution_options(synchronize_session=False)
        )
        user.level = new_level

    async def apply_user_progress(
        self,
        user_id: int,
        xp: int = 0,
        coins: int = 0,
        tasks_completed: int = 0,
        focus_minutes: int = 0,
        streak: Optional[StreakUpdate] = None,
    ) -> Optional[User]:
        """
        Aplica de una vez todas las mutaciones de progreso de un usuario.

        Devuelve el usuario ya actualizado (xp, level, racha...), o None si no existe.
        """
        user = await self._apply(
            user_id,
            xp=xp,
            coins=coins,
            tasks_completed=tasks_completed,
            focus_minutes=focus_minutes,
            streak=streak,
        )
        await self.db.commit()
        return user

    async def increment_user(self, user_id: int, xp: int = 0, coins: int = 0, focus_minutes: int = 0) -> Optional[User]:
        """Solo sumas atómicas (sin tocar la racha)"""
        return await self.apply_user_progress(user_id, xp=xp, coins=coins, focus_minutes=focus_minutes)

    async def sync_level(self, user_id: int) -> Optional[User]:
        user = await self.find_user_by_id(user_id)
        if user is None:
            return None
        await self._sync_level(user)
        await self.db.commit()
        return user

    # ─────────────────────────────────────────────────────────────────────────
    # LOGROS
    # ─────────────────────────────────────────────────────────────────────────

    async def list_active_achievements(self) -> list[Achievement]:
        result = await self.db.execute(
            select(Achievement)
            .where(Achievement.is_active == True)
            .order_by(Achievement.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def find_achievement(self, achievement_id: int) -> Optional[Achievement]:
        return await self.db.get(Achievement, achievement_id)

    async def unlocked_achievement_codes(self, user_id: int) -> set[str]:
        result = await self.db.execute(
            select(Achievement.code)
            .join(UserAchievement, UserAchievement.achievement_id == Achievement.id)
            .where(UserAchievement.user_id == user_id, UserAchievement.is_unlocked == True)
        )
        return set(result.scalars().all())

    async def user_achievements(self, user_id: int) -> dict[int, UserAchievement]:
        """{achievement_id: UserAchievement} de un usuario"""
        result = await self.db.execute(
            select(UserAchievement).where(UserAchievement.user_id == user_id)
        )
        return {ua.achievement_id: ua for ua in result.scalars().all()}

    async def _ensure_user_achievement(self, user_id: int, achievement_id: int):
        """INSERT si no existe (la restricción única decide quién gana)"""
        dialect = self.db.get_bind().dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        await self.db.execute(
            insert(UserAchievement)
            .values(
                user_id=user_id,
                achievement_id=achievement_id,
                progress=0,
                is_unlocked=False,
                last_progress_update=utcnow(),
                progress_history=[],
            )
            .on_conflict_do_nothing(index_elements=["user_id", "achievement_id"])
        )

    async def get_or_create_user_achievement(self, user_id: int, achievement_id: int) -> UserAchievement:
        await self._ensure_user_achievement(user_id, achievement_id)
        result = await self.db.execute(
            select(UserAchievement)
            .where(UserAchievement.user_id == user_id, UserAchievement.achievement_id == achievement_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def record_progress(
        self,
        user_id: int,
        achievement: Achievement,
        value: float,
        action: str,
        cumulative: bool = True,
    ) -> UserAchievement:
        """
        Guarda el progreso medido de un logro y lo anota en el historial.

        - Logro ya desbloqueado → no se toca.
        - Criterio acumulativo → el progreso nunca baja.
        """
        row = await self.get_or_create_user_achievement(user_id, achievement.id)
        if row.is_unlocked:
            await self.db.commit()
            return row

        new_progress = max(row.progress or 0, value) if cumulative else value
        if new_progress != row.progress:
            now = utcnow()
            row.progress = new_progress
            row.last_progress_update = now
            row.progress_history = list(row.progress_history or []) + [
                {"date": now.isoformat(), "value": value, "action": action}
            ]
        await self.db.commit()
        return row

    async def grant_achievement(self, user_id: int, achievement: Achievement) -> bool:
        """
        Desbloquea un logro y suma su recompensa, todo en la misma transacción.

        Devuelve True solo la primera vez. Si ya estaba desbloqueado, no hace nada.
        """
        await self._ensure_user_achievement(user_id, achievement.id)
        now = utcnow()
        result = await self.db.execute(
            update(UserAchievement)
            .where(
                UserAchievement.user_id == user_id,
                UserAchievement.achievement_id == achievement.id,
                UserAchievement.is_unlocked == False,
            )
            .values(is_unlocked=True, unlocked_at=now, progress=achievement.target, last_progress_update=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.commit()
            return False

        await self._apply(
            user_id,
            xp=achievement.xp_reward or 0,
            coins=achievement.coins_reward or 0,
            refresh_longest_streak=True,
        )
        await self.db.commit()
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # SESIONES DE FOCO
    # ─────────────────────────────────────────────────────────────────────────

    async def find_focus_session(self, session_id: int, user_id: Optional[int] = None) -> Optional[FocusSession]:
        query = select(FocusSession).where(FocusSession.id == session_id)
        if user_id is not None:
            query = query.where(FocusSession.user_id == user_id)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def conditional_complete_focus_session(
        self, session_id: int, user_id: int, end_time: datetime
    ) -> Optional[FocusSession]:
        """Igual que con las tareas: solo la primera petición completa la sesión"""
        result = await self.db.execute(
            update(FocusSession)
            .where(
                FocusSession.id == session_id,
                FocusSession.user_id == user_id,
                FocusSession.completed == False,
            )
            .values(completed=True, end_time=end_time)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount != 1:
            return None
        return await self.find_focus_session(session_id)

    # ─────────────────────────────────────────────────────────────────────────
    # RANKING
    # ─────────────────────────────────────────────────────────────────────────

    async def leaderboard(self, limit: int = 50, offset: int = 0) -> list[User]:
        result = await self.db.execute(
            select(User).order_by(User.xp.desc(), User.level.desc(), User.id).offset(offset).limit(limit)
        )
        return list(result.scalars().all())

    async def count_users(self) -> int:
        result = await self.db.execute(select(func.count(User.id)))
        return result.scalar_one()

    async def user_rank(self, user: User) -> int:
        """Posición en el ranking: 1 + usuarios con más XP"""
        result = await self.db.execute(select(func.count(User.id)).where(User.xp > user.xp))
        return result.scalar_one() + 1
