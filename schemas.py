"""
=============================================================================
SCHEMAS.PY — Esquemas de Validación (Pydantic)
=============================================================================
  - Models (SQLAlchemy) → definen las TABLAS de la BD
  - Schemas (Pydantic) → definen qué DATOS acepta/devuelve la API

Convención de nombres:
  XxxCreate → para crear algo nuevo (POST)
  XxxUpdate → para actualizar algo (PATCH)
  XxxResponse → lo que devuelve la API (GET)
"""

from pydantic import BaseModel, Field, EmailStr, field_validator
from datetime import datetime
from typing import Optional

import pytz

from models import FocusSessionType, TaskCategory, TaskDifficulty, TaskPriority, TaskStatus


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """La BD guarda UTC sin tzinfo: una fecha con offset se convierte, no se recorta"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(pytz.utc).replace(tzinfo=None)


# =============================================================================
# ===================== AUTH ==================================================
# =============================================================================

class UserRegister(BaseModel):
    """Datos para registrar un usuario nuevo"""
    email: EmailStr
    password: str = Field(min_length=6, description="Mínimo 6 caracteres")
    name: str = Field(min_length=1, max_length=100)
    timezone: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in pytz.all_timezones_set:
            raise ValueError(f"Zona horaria desconocida: {value}")
        return value

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class TokenResponse(BaseModel):
    """Respuesta con el token JWT"""
    access_token: str
    token_type: str = "bearer"
    user_id: int
    name: str

class UserResponse(BaseModel):
    id: int
    email: str
    name: str
    timezone: str
    xp: int
    coins: int
    level: int
    streak: int
    longest_streak: int
    total_tasks_completed: int
    total_focus_time: int
    last_active_date: Optional[datetime] = None
    created_at: datetime
    model_config = {"from_attributes": True}


# =============================================================================
# ===================== TASKS =================================================
# =============================================================================

class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    category: TaskCategory = TaskCategory.other
    difficulty: TaskDifficulty = TaskDifficulty.medium
    priority: TaskPriority = TaskPriority.medium
    deadline: Optional[datetime] = None
    tags: Optional[list[str]] = None
    estimated_duration: Optional[int] = Field(default=None, ge=0)

    @field_validator("deadline")
    @classmethod
    def deadline_in_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value)

class TaskUpdate(BaseModel):
    """El estado NO se cambia aquí: ver TaskStatusUpdate"""
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[TaskCategory] = None
    difficulty: Optional[TaskDifficulty] = None
    priority: Optional[TaskPriority] = None
    deadline: Optional[datetime] = None
    tags: Optional[list[str]] = None
    estimated_duration: Optional[int] = Field(default=None, ge=0)
    actual_duration: Optional[int] = Field(default=None, ge=0)

    @field_validator("deadline")
    @classmethod
    def deadline_in_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value)

class TaskStatusUpdate(BaseModel):
    status: TaskStatus

class TaskResponse(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    category: str
    difficulty: str
    status: str
    priority: str
    deadline: Optional[datetime] = None
    tags: Optional[list[str]] = None
    xp_value: int
    coins_value: int
    completed_at: Optional[datetime] = None
    estimated_duration: Optional[int] = None
    actual_duration: Optional[int] = None
    is_overdue: bool = False
    created_at: datetime
    updated_at: Optional[datetime] = None
    model_config = {"from_attributes": True}

class CompletionResponse(BaseModel):
    """Resultado de completar una tarea"""
    task: TaskResponse
    xp_awarded: int
    coins_awarded: int
    level_up: bool
    new_level: Optional[int] = None
    new_achievements: list[str] = []
    streak_bonus: int = 0
    early_bonus: bool = False
    model_config = {"from_attributes": True}

class TaskStats(BaseModel):
    total: int
    pending: int
    in_progress: int
    completed: int
    overdue: int
    completion_rate: float
    xp_earned: int
    coins_earned: int
    by_category: dict[str, int]
    by_difficulty: dict[str, int]


# =============================================================================
# ===================== FOCUS =================================================
# =============================================================================

class FocusSessionStart(BaseModel):
    type: FocusSessionType = FocusSessionType.pomodoro
    duration: int = Field(default=25, ge=1, le=480)
    break_duration: int = Field(default=5, ge=0, le=120)
    task_id: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=500)

class FocusSessionComplete(BaseModel):
    productivity: Optional[int] = Field(default=None, ge=0, le=100)
    actual_duration: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = Field(default=None, max_length=500)

class FocusSessionResponse(BaseModel):
    id: int
    task_id: Optional[int] = None
    type: str
    duration: int
    break_duration: Optional[int] = None
    actual_duration: Optional[int] = None
    paused_time: Optional[int] = None
    productivity: Optional[int] = None
    completed: bool
    xp_earned: Optional[int] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    notes: Optional[str] = None
    model_config = {"from_attributes": True}

class FocusCompletionResponse(BaseModel):
    session: FocusSessionResponse
    xp_awarded: int
    level_up: bool
    new_level: Optional[int] = None
    new_achievements: list[str] = []
    model_config = {"from_attributes": True}


# =============================================================================
# ===================== GAMIFICATION ==========================================
# =============================================================================

class LevelInfo(BaseModel):
    level: int
    xp: int
    xp_in_level: int
    xp_next_level: int
    xp_progress: float
    title: str
    coins: int
    streak: int
    longest_streak: int

class AchievementProgress(BaseModel):
    progress: float
    target: int
    completed: bool

class AchievementCheckResponse(BaseModel):
    new_achievements: list[str]

class LeaderboardEntry(BaseModel):
    rank: int
    user_id: int
    name: str
    xp: int
    level: int
    streak: int

class LeaderboardResponse(BaseModel):
    entries: list[LeaderboardEntry]
    total_users: int
    my_rank: int
