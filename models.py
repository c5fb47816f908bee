"""
=============================================================================
MODELS.PY — Todos los Modelos (Tablas) de la Base de Datos
=============================================================================
Cada clase aquí = una tabla en la base de datos.
Cada atributo de la clase = una columna en esa tabla.

RELACIONES:
  USER
  ├── tasks[]
  ├── focus_sessions[]
  └── user_achievements[] ──→ achievement

  ACHIEVEMENT (catálogo fijo, lo define el sistema)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Union

from sqlalchemy import (
    Column, Integer, String, Boolean, Float, Text, DateTime, ForeignKey,
    JSON, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship

from database import Base, utcnow
import enum


# =============================================================================
# ===================== ENUMS (Tipos predefinidos) ============================
# =============================================================================

class TaskCategory(str, enum.Enum):
    """Categoría de la tarea (da un bonus fijo de XP)"""
    work = "work"
    personal = "personal"
    health = "health"
    learning = "learning"
    other = "other"

class TaskDifficulty(str, enum.Enum):
    """Dificultad de la tarea (multiplica el XP base)"""
    easy = "easy"
    medium = "medium"
    hard = "hard"

class TaskStatus(str, enum.Enum):
    """Estado de una tarea. 'completed' es terminal."""
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"

class TaskPriority(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"

class FocusSessionType(str, enum.Enum):
    pomodoro = "pomodoro"
    custom = "custom"

class AchievementCategory(str, enum.Enum):
    consistency = "consistency"
    productivity = "productivity"
    social = "social"
    special = "special"

class AchievementRarity(str, enum.Enum):
    common = "common"
    rare = "rare"
    epic = "epic"
    legendary = "legendary"

class CriteriaType(str, enum.Enum):
    """Qué mide un logro para decidir si se desbloquea"""
    task_count = "task_count"              # Tareas completadas en total
    streak = "streak"                      # Racha actual de días
    category_tasks = "category_tasks"      # Tareas completadas de una categoría
    focus_time = "focus_time"              # Minutos de foco acumulados
    early_completion = "early_completion"  # Completar antes de las 8:00
    late_completion = "late_completion"    # Completar a partir de las 22:00


# =============================================================================
# ===================== ESTADO DE UNA TAREA ===================================
# =============================================================================
# status + completed_at juntos codifican el estado. Estas clases lo hacen
# explícito: una tarea Completed SIEMPRE tiene fecha de completado.

@dataclass(frozen=True)
class Pending:
    pass

@dataclass(frozen=True)
class InProgress:
    pass

@dataclass(frozen=True)
class Completed:
    at: datetime

TaskState = Union[Pending, InProgress, Completed]


# =============================================================================
# ===================== TABLA 1: USERS ========================================
# =============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # ── Datos básicos ──
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(100), nullable=False)
    timezone = Column(String(50), default="Europe/Madrid")
    # timezone → zona horaria (pytz) para saber qué "día" y qué "hora" es para el usuario

    # ── Gamificación ──
    xp = Column(Integer, default=0, nullable=False)
    coins = Column(Integer, default=0, nullable=False)
    level = Column(Integer, default=1, nullable=False)
    # level → SIEMPRE derivado de xp (gamification.calculate_level)
    streak = Column(Integer, default=0, nullable=False)
    # streak → días consecutivos con al menos una tarea completada
    last_active_date = Column(DateTime, nullable=True)
    # last_active_date → última acción que afectó a la racha

    # ── Estadísticas ──
    total_tasks_completed = Column(Integer, default=0, nullable=False)
    longest_streak = Column(Integer, default=0, nullable=False)
    total_focus_time = Column(Integer, default=0, nullable=False)
    # total_focus_time → minutos de foco acumulados

    # ── Timestamps ──
    created_at = Column(DateTime, default=utcnow)
    last_active = Column(DateTime, default=utcnow)

    # ── Relaciones ──
    tasks = relationship("Task", back_populates="user", cascade="all, delete-orphan")
    focus_sessions = relationship("FocusSession", back_populates="user", cascade="all, delete-orphan")
    user_achievements = relationship("UserAchievement", back_populates="user", cascade="all, delete-orphan")


# =============================================================================
# ===================== TABLA 2: TASKS ========================================
# =============================================================================

class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(20), default=TaskCategory.other, nullable=False)
    difficulty = Column(String(20), default=TaskDifficulty.medium, nullable=False)
    status = Column(String(20), default=TaskStatus.pending, nullable=False)
    priority = Column(String(20), default=TaskPriority.medium, nullable=False)

    deadline = Column(DateTime, nullable=True)
    tags = Column(JSON, nullable=True)
    # tags → ["casa", "urgente"]

    # ── Recompensa (se calcula al crear, se congela) ──
    xp_value = Column(Integer, default=0, nullable=False)
    coins_value = Column(Integer, default=0, nullable=False)
    # Solo se recalculan si cambian category o difficulty

    completed_at = Column(DateTime, nullable=True)
    estimated_duration = Column(Integer, nullable=True)
    actual_duration = Column(Integer, nullable=True)
    # duraciones en minutos

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # ── Una tarea completada tiene fecha, y solo ella ──
    __table_args__ = (
        CheckConstraint(
            "(status = 'completed' AND completed_at IS NOT NULL) OR "
            "(status != 'completed' AND completed_at IS NULL)",
            name="ck_task_completed_at",
        ),
    )

    user = relationship("User", back_populates="tasks")

    @property
    def state(self) -> TaskState:
        if self.status == TaskStatus.completed:
            return Completed(at=self.completed_at)
        if self.status == TaskStatus.in_progress:
            return InProgress()
        return Pending()

    @property
    def is_overdue(self) -> bool:
        if not self.deadline or self.status == TaskStatus.completed:
            return False
        return utcnow() > self.deadline


# =============================================================================
# ===================== TABLA 3: FOCUS_SESSIONS ===============================
# =============================================================================

class FocusSession(Base):
    __tablename__ = "focus_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True)

    type = Column(String(20), default=FocusSessionType.pomodoro, nullable=False)
    duration = Column(Integer, default=25, nullable=False)
    # duration → minutos planificados
    break_duration = Column(Integer, default=5)
    actual_duration = Column(Integer, default=0)
    paused_time = Column(Integer, default=0)
    # paused_time → minutos en pausa (se descuentan)
    productivity = Column(Integer, default=0)
    # productivity → 0 a 100, lo puntúa el usuario al terminar

    completed = Column(Boolean, default=False, nullable=False)
    xp_earned = Column(Integer, default=0)

    start_time = Column(DateTime, default=utcnow, nullable=False)
    end_time = Column(DateTime, nullable=True)
    notes = Column(String(500), nullable=True)

    user = relationship("User", back_populates="focus_sessions")


# =============================================================================
# ===================== TABLA 4: ACHIEVEMENTS =================================
# =============================================================================
# Tabla de logros DISPONIBLES (los define el sistema en achievements.py)

class Achievement(Base):
    __tablename__ = "achievements"

    id = Column(Integer, primary_key=True, autoincrement=True)

    code = Column(String(50), unique=True, nullable=False)
    # code → identificador estable: "rookie_achiever", "night_owl"...
    name = Column(String(100), unique=True, nullable=False)
    description = Column(String(300), nullable=False)
    icon = Column(String(10), default="🏆")
    category = Column(String(20), nullable=False)
    rarity = Column(String(20), nullable=False)

    # ── Criterio ──
    criteria_type = Column(String(30), nullable=False)
    target = Column(Integer, nullable=False)
    criteria_category = Column(String(20), nullable=True)
    # criteria_category → solo para category_tasks ("work", "health"...)
    timeframe = Column(String(20), default="all_time")

    # ── Recompensa ──
    xp_reward = Column(Integer, default=0)
    coins_reward = Column(Integer, default=0)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)


# =============================================================================
# ===================== TABLA 5: USER_ACHIEVEMENTS ============================
# =============================================================================
# Progreso y desbloqueo de cada logro por usuario.
# Una fila por (usuario, logro). is_unlocked solo pasa de False → True.

class UserAchievement(Base):
    __tablename__ = "user_achievements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    achievement_id = Column(Integer, ForeignKey("achievements.id"), nullable=False)

    progress = Column(Float, default=0)
    is_unlocked = Column(Boolean, default=False, nullable=False)
    unlocked_at = Column(DateTime, nullable=True)

    last_progress_update = Column(DateTime, default=utcnow)
    progress_history = Column(JSON, default=list)
    # progress_history → [{"date": "...", "value": 7, "action": "task_completed"}, ...]

    __table_args__ = (
        UniqueConstraint('user_id', 'achievement_id', name='uq_user_achievement'),
    )

    user = relationship("User", back_populates="user_achievements")
    achievement = relationship("Achievement")
