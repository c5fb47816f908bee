"""
=============================================================================
GAMIFICATION.PY — Reglas de Gamificación (funciones puras)
=============================================================================
Gestiona:
  - Valor de una tarea (XP y monedas según categoría y dificultad)
  - Recompensa al completar (bonus de racha y de entrega anticipada)
  - Niveles (curva cuadrática)
  - Rachas (días consecutivos, por día de calendario del usuario)
  - XP de sesiones de foco

Nada de este archivo toca la base de datos ni emite eventos.
Mismas entradas → mismas salidas. Por eso se puede testear sin BD.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import pytz

DEFAULT_TIMEZONE = "Europe/Madrid"


# =============================================================================
# ===================== SISTEMA DE NIVELES ====================================
# =============================================================================
# Cada nivel necesita más XP que el anterior: 500 por nivel + un término
# cuadrático que acelera.
# XP acumulado para llegar al nivel L = 500*(L-1) + 500*(L-1)*(L-2)
# Nivel 1 → 0 XP, Nivel 2 → 500, Nivel 3 → 2000, Nivel 4 → 4500...

LEVEL_TITLES = {
    1: "Novato",
    2: "Aprendiz",
    3: "Iniciado",
    5: "Constante",
    7: "Disciplinado",
    10: "Veterano",
    15: "Experto",
    20: "Maestro",
    25: "Gran Maestro",
    30: "Leyenda",
}


def get_level_title(level: int) -> str:
    """Devuelve el título correspondiente al nivel del usuario"""
    title = "Novato"
    for lvl, name in sorted(LEVEL_TITLES.items()):
        if level >= lvl:
            title = name
    return title


def xp_for_level(level: int) -> int:
    """XP acumulado necesario para ALCANZAR un nivel"""
    steps = max(level - 1, 0)
    return 500 * steps + 500 * steps * max(steps - 1, 0)


def xp_for_next_level(level: int) -> int:
    """XP necesario para subir del nivel actual al siguiente"""
    return xp_for_level(level + 1) - xp_for_level(level)


def calculate_level(total_xp: int) -> int:
    """Calcula el nivel basándose en el XP total acumulado"""
    level = 1
    while total_xp >= xp_for_level(level + 1):
        level += 1
    return level


def get_level_info(xp: int) -> dict:
    """Información completa del nivel para un XP dado"""
    level = calculate_level(xp)
    xp_needed = xp_for_next_level(level)
    xp_in_current_level = xp - xp_for_level(level)

    return {
        "level": level,
        "xp": xp,
        "xp_in_level": xp_in_current_level,
        "xp_next_level": xp_needed,
        "xp_progress": round((xp_in_current_level / xp_needed) * 100, 1) if xp_needed > 0 else 100,
        "title": get_level_title(level)
    }


# =============================================================================
# ===================== VALOR DE UNA TAREA ====================================
# =============================================================================
# Se calcula al crear la tarea y se congela.
# Fórmula: xp = floor(10 * multiplicador_dificultad + bonus_categoría)
#          monedas = floor(xp / 5)

BASE_TASK_XP = 10

DIFFICULTY_MULTIPLIERS = {
    "easy": 1.0,
    "medium": 1.5,
    "hard": 2.0,
}

CATEGORY_BONUSES = {
    "work": 2,
    "health": 3,
    "learning": 5,
    "personal": 1,
    "other": 0,
}


def task_reward_values(category: str, difficulty: str) -> tuple[int, int]:
    """Devuelve (xp_value, coins_value) para una categoría y dificultad"""
    xp_value = math.floor(
        BASE_TASK_XP * DIFFICULTY_MULTIPLIERS[difficulty] + CATEGORY_BONUSES[category]
    )
    return xp_value, xp_value // 5


def apply_task_values(task) -> None:
    """Congela en la tarea el XP y las monedas que vale"""
    task.xp_value, task.coins_value = task_reward_values(task.category, task.difficulty)


# =============================================================================
# ===================== RECOMPENSA AL COMPLETAR ===============================
# =============================================================================

STREAK_BONUS_PER_DAY = 5
STREAK_BONUS_CAP = 50
EARLY_COMPLETION_XP = 10
EARLY_COMPLETION_COINS = 2
# No hay penalización por entregar tarde: el bonus solo suma.


@dataclass(frozen=True)
class TaskReward:
    xp: int
    coins: int
    streak_bonus: int = 0
    early_bonus: bool = False


def streak_bonus(streak: int) -> int:
    """+5 XP por día de racha, con tope de 50"""
    return min(max(streak, 0) * STREAK_BONUS_PER_DAY, STREAK_BONUS_CAP)


def calculate_task_reward(
    xp_value: int,
    coins_value: int,
    streak: int,
    deadline: Optional[datetime],
    completed_at: datetime,
) -> TaskReward:
    """
    Calcula lo que se gana al completar una tarea.

    - streak es la racha ANTES de actualizarla por este completado.
    - El bonus de anticipación solo aplica si hay fecha límite y se
      completó estrictamente antes.
    """
    bonus = streak_bonus(streak)
    xp = xp_value + bonus
    coins = coins_value

    early = deadline is not None and completed_at < deadline
    if early:
        xp += EARLY_COMPLETION_XP
        coins += EARLY_COMPLETION_COINS

    return TaskReward(xp=xp, coins=coins, streak_bonus=bonus, early_bonus=early)


# =============================================================================
# ===================== SISTEMA DE RACHAS =====================================
# =============================================================================
# Se compara el DÍA de calendario (en la zona del usuario), no las horas:
#   - Mismo día que la última actividad → no cambia nada
#   - Día anterior → racha +1
#   - Cualquier otro caso (hueco, o nunca activo) → racha = 1

@dataclass(frozen=True)
class StreakUpdate:
    streak: int
    longest_streak: int
    last_active_date: Optional[datetime]
    changed: bool


def to_local(moment: datetime, tz_name: Optional[str] = None) -> datetime:
    """Convierte un datetime UTC (sin tzinfo) a la hora local del usuario"""
    tz = pytz.timezone(tz_name or DEFAULT_TIMEZONE)
    if moment.tzinfo is None:
        moment = pytz.utc.localize(moment)
    return moment.astimezone(tz)


def update_streak(
    last_active_date: Optional[datetime],
    streak: int,
    longest_streak: int,
    now: datetime,
    tz_name: Optional[str] = None,
) -> StreakUpdate:
    """Calcula la nueva racha. last_active_date solo se mueve si la racha cambia."""
    today = to_local(now, tz_name).date()

    if last_active_date is not None and to_local(last_active_date, tz_name).date() == today:
        return StreakUpdate(
            streak=streak,
            longest_streak=max(longest_streak, streak),
            last_active_date=last_active_date,
            changed=False,
        )

    yesterday = today - timedelta(days=1)
    if last_active_date is not None and to_local(last_active_date, tz_name).date() == yesterday:
        new_streak = streak + 1
    else:
        new_streak = 1

    return StreakUpdate(
        streak=new_streak,
        longest_streak=max(longest_streak, new_streak),
        last_active_date=now,
        changed=True,
    )


def local_hour(moment: datetime, tz_name: Optional[str] = None) -> int:
    """Hora (0-23) del usuario en ese instante"""
    return to_local(moment, tz_name).hour


# =============================================================================
# ===================== SESIONES DE FOCO ======================================
# =============================================================================

FOCUS_XP_PER_MINUTE = 5
FOCUS_COMPLETION_BONUS = 20
FOCUS_TYPE_MULTIPLIERS = {
    "pomodoro": 1.2,
    "custom": 1.0,
}


def focus_actual_minutes(start_time: datetime, end_time: datetime, paused_minutes: int = 0) -> int:
    """Minutos reales de foco: lo transcurrido menos las pausas"""
    elapsed = int((end_time - start_time).total_seconds() // 60)
    return max(0, elapsed - (paused_minutes or 0))


def calculate_focus_xp(
    session_type: str,
    planned_duration: int,
    actual_duration: int,
    productivity: int,
    completed: bool = True,
) -> int:
    """
    XP de una sesión de foco.

    5 XP por minuto real × tipo (pomodoro 1.2) × duración (≥25 min → 1.1)
    × productividad (0-100 %) + 20 si se completó.
    """
    duration_multiplier = 1.1 if planned_duration >= 25 else 1.0
    completion_bonus = FOCUS_COMPLETION_BONUS if completed else 0

    total = math.floor(
        FOCUS_XP_PER_MINUTE
        * actual_duration
        * FOCUS_TYPE_MULTIPLIERS.get(session_type, 1.0)
        * duration_multiplier
        * (productivity / 100)
        + completion_bonus
    )
    return max(0, total)
