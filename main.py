"""
=============================================================================
MAIN.PY — La API de TaskQuest
=============================================================================
Este archivo define TODOS los endpoints de la API REST.

Organización por secciones:
  1. AUTH         → Registro, login, perfil
  2. TASKS        → CRUD de tareas, completar, estadísticas
  3. FOCUS        → Sesiones de foco (pomodoro)
  4. GAMIFICATION → Nivel, logros, progreso
  5. LEADERBOARD  → Ranking global

Tiempo real: el servidor Socket.IO envuelve a la app (ver `asgi_app`).
Arrancar con:  uvicorn main:asgi_app
"""

import os
import logging
import traceback
from contextlib import asynccontextmanager
from typing import Optional

import socketio
from fastapi import FastAPI, Depends, HTTPException, status, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db, init_db, SessionLocal, utcnow
from models import FocusSession, Task, TaskStatus, User
from schemas import (
    AchievementCheckResponse, AchievementProgress, CompletionResponse,
    FocusCompletionResponse, FocusSessionComplete, FocusSessionResponse,
    FocusSessionStart, LeaderboardEntry, LeaderboardResponse, LevelInfo,
    TaskCreate, TaskResponse, TaskStats, TaskStatusUpdate, TaskUpdate,
    TokenResponse, UserLogin, UserRegister, UserResponse
)
from auth import hash_password, verify_password, create_access_token, get_current_user
from achievements import AchievementEvaluator, achievement_to_dict, seed_achievements
from gamification import DEFAULT_TIMEZONE, apply_task_values
from progression import (
    FocusSessionNotCompletableError, ProgressionError, ProgressionService,
    RewardApplicationError, TaskNotCompletableError, UserNotFoundError,
    user_level_payload
)
from realtime import EventPublisher, ProgressEvents, SocketIOPublisher, create_socket_server
from store import ProgressionStore

# ─────────────────────────────────────────────────────────────────────────────
# CONFIGURACIÓN Y LOGGING
# ─────────────────────────────────────────────────────────────────────────────

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
STARTING_COINS = int(os.getenv("STARTING_COINS", "100"))

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s"
)
logger = logging.getLogger("taskquest.api")


# ─────────────────────────────────────────────────────────────────────────────
# LIFESPAN (Arranque y apagado)
# ─────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Arranque:
      1. Crear tablas si no existen
      2. Insertar/actualizar el catálogo de logros
    """
    logger.info("🚀 Arrancando TaskQuest...")

    await init_db()
    logger.info("✅ Base de datos inicializada")

    async with SessionLocal() as db:
        await seed_achievements(db)

    logger.info("🎉 TaskQuest operativo")
    yield
    logger.info("👋 Apagado completo")


# ─────────────────────────────────────────────────────────────────────────────
# APLICACIÓN FASTAPI + SOCKET.IO
# ─────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="TaskQuest API",
    description="Tareas, XP, niveles, rachas y logros en tiempo real",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

sio = create_socket_server(CORS_ORIGINS if CORS_ORIGINS != ["*"] else "*")
publisher = SocketIOPublisher(sio)

# /socket.io → Socket.IO, el resto → FastAPI
asgi_app = socketio.ASGIApp(sio, other_asgi_app=app)


def get_publisher() -> EventPublisher:
    return publisher


def get_progression(
    db: AsyncSession = Depends(get_db),
    events: EventPublisher = Depends(get_publisher),
) -> ProgressionService:
    return ProgressionService(ProgressionStore(db), events)


# ─────────────────────────────────────────────────────────────────────────────
# ERRORES
# ─────────────────────────────────────────────────────────────────────────────

def progression_http_error(exc: ProgressionError) -> HTTPException:
    """Traduce los errores del motor de progresión a respuestas HTTP"""
    if isinstance(exc, TaskNotCompletableError):
        return HTTPException(status_code=400, detail="Tarea no encontrada o ya completada")
    if isinstance(exc, FocusSessionNotCompletableError):
        return HTTPException(status_code=400, detail="Sesión no encontrada o ya completada")
    if isinstance(exc, UserNotFoundError):
        return HTTPException(status_code=404, detail="Usuario no encontrado")
    if isinstance(exc, RewardApplicationError):
        return HTTPException(status_code=500, detail="No se pudo aplicar la recompensa")
    return HTTPException(status_code=500, detail=str(exc))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Captura errores no manejados y devuelve detalles útiles"""
    error_msg = str(exc)
    error_trace = traceback.format_exc()
    logger.error(f"❌ Error no manejado en {request.url}: {error_msg}\n{error_trace}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": error_msg,
            "type": type(exc).__name__,
            "path": str(request.url)
        }
    )


# =============================================================================
# ===================== HEALTH CHECK ==========================================
# =============================================================================

@app.get("/", tags=["Health"])
async def health_check():
    return {
        "status": "ok",
        "app": "TaskQuest",
        "version": "1.0.0",
        "timestamp": utcnow().isoformat()
    }


# =============================================================================
# ===================== SECCIÓN 1: AUTH =======================================
# =============================================================================

@app.post("/auth/register", response_model=TokenResponse, tags=["Auth"])
async def register(data: UserRegister, db: AsyncSession = Depends(get_db)):
    """Registra un usuario nuevo (empieza con monedas de regalo)"""
    existing = await db.execute(select(User).where(User.email == data.email))
    if existing.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Ya existe una cuenta con este email"
        )

    user = User(
        email=data.email,
        password_hash=hash_password(data.password),
        name=data.name,
        timezone=data.timezone or DEFAULT_TIMEZONE,
        coins=STARTING_COINS,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)

    logger.info(f"👤 Nuevo usuario registrado: {user.name} ({user.email})")

    return TokenResponse(
        access_token=create_access_token(user.id, user.email),
        user_id=user.id,
        name=user.name
    )


@app.post("/auth/login", response_model=TokenResponse, tags=["Auth"])
async def login(data: UserLogin, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(User).where(User.email == data.email))
    user = result.scalar_one_or_none()

    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Email o contraseña incorrectos"
        )

    return TokenResponse(
        access_token=create_access_token(user.id, user.email),
        user_id=user.id,
        name=user.name
    )


@app.get("/auth/me", response_model=UserResponse, tags=["Auth"])
async def get_me(user: User = Depends(get_current_user)):
    return user


# =============================================================================
# ===================== SECCIÓN 2: TASKS ======================================
# =============================================================================

async def _get_user_task(db: AsyncSession, task_id: int, user_id: int) -> Task:
    task = await ProgressionStore(db).find_task_by_id(task_id, user_id)
    if not task:
        raise HTTPException(status_code=404, detail="Tarea no encontrada")
    return task


@app.post("/tasks", response_model=TaskResponse, tags=["Tasks"])
async def create_task(data: TaskCreate, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    """Crea una tarea. Su XP y monedas se calculan ahora y quedan fijos."""
    task = Task(
        user_id=user.id,
        title=data.title,
        description=data.description,
        category=data.category.value,
        difficulty=data.difficulty.value,
        priority=data.priority.value,
        deadline=data.deadline,
        tags=data.tags,
        estimated_duration=data.estimated_duration,
        status=TaskStatus.pending.value,
    )
    apply_task_values(task)
    db.add(task)
    await db.commit()
    await db.refresh(task)
    return task


@app.get("/tasks", response_model=list[TaskResponse], tags=["Tasks"])
async def list_tasks(
    status_filter: Optional[TaskStatus] = Query(default=None, alias="status"),
    category: Optional[str] = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Lista tareas con filtros opcionales"""
    query = select(Task).where(Task.user_id == user.id)

    if status_filter is not None:
        query = query.where(Task.status == status_filter.value)
    if category:
        query = query.where(Task.category == category)

    result = await db.execute(query.order_by(Task.deadline.asc().nullslast(), Task.created_at.desc()))
    return result.scalars().all()


@app.get("/tasks/stats", response_model=TaskStats, tags=["Tasks"])
async def task_stats(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    """Resumen de las tareas del usuario"""
    result = await db.execute(select(Task).where(Task.user_id == user.id))
    tasks = result.scalars().all()

    completed = [t for t in tasks if t.status == TaskStatus.completed]
    by_category, by_difficulty = {}, {}
    for t in completed:
        by_category[t.category] = by_category.get(t.category, 0) + 1
        by_difficulty[t.difficulty] = by_difficulty.get(t.difficulty, 0) + 1

    return TaskStats(
        total=len(tasks),
        pending=sum(1 for t in tasks if t.status == TaskStatus.pending),
        in_progress=sum(1 for t in tasks if t.status == TaskStatus.in_progress),
        completed=len(completed),
        overdue=sum(1 for t in tasks if t.is_overdue),
        completion_rate=round(len(completed) / len(tasks) * 100, 1) if tasks else 0,
        xp_earned=sum(t.xp_value for t in completed),
        coins_earned=sum(t.coins_value for t in completed),
        by_category=by_category,
        by_difficulty=by_difficulty,
    )


@app.get("/tasks/overdue", response_model=list[TaskResponse], tags=["Tasks"])
async def overdue_tasks(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(Task)
        .where(
            Task.user_id == user.id,
            Task.status != TaskStatus.completed.value,
            Task.deadline.is_not(None),
            Task.deadline < utcnow(),
        )
        .order_by(Task.deadline.asc())
    )
    return result.scalars().all()


@app.get("/tasks/{task_id}", response_model=TaskResponse, tags=["Tasks"])
async def get_task(task_id: int, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await _get_user_task(db, task_id, user.id)


@app.patch("/tasks/{task_id}", response_model=TaskResponse, tags=["Tasks"])
async def update_task(
    task_id: int, data: TaskUpdate,
    user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)
):
    """Actualiza una tarea. Si cambia categoría o dificultad, se recalcula su valor."""
    task = await _get_user_task(db, task_id, user.id)
    update_data = data.model_dump(exclude_unset=True)

    for key, value in update_data.items():
        setattr(task, key, getattr(value, "value", value))

    if "category" in update_data or "difficulty" in update_data:
        apply_task_values(task)

    await db.commit()
    await db.refresh(task)
    return task


@app.patch("/tasks/{task_id}/status", tags=["Tasks"])
async def update_task_status(
    task_id: int, data: TaskStatusUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    progression: ProgressionService = Depends(get_progression),
):
    """
    Cambia el estado de una tarea.
      - completed → pasa por el flujo de recompensas
      - pending / in_progress → cambio simple (nunca desde completed)
    """
    if data.status == TaskStatus.completed:
        return await complete_task(task_id, user, progression)

    await _get_user_task(db, task_id, user.id)
    task = await ProgressionStore(db).conditional_set_task_status(task_id, user.id, data.status)
    if task is None:
        raise HTTPException(status_code=400, detail="Una tarea completada no puede cambiar de estado")
    return TaskResponse.model_validate(task)


@app.post("/tasks/{task_id}/complete", response_model=CompletionResponse, tags=["Tasks"])
async def complete_task(
    task_id: int,
    user: User = Depends(get_current_user),
    progression: ProgressionService = Depends(get_progression),
):
    """Completa una tarea y devuelve las recompensas ganadas"""
    try:
        result = await progression.complete_task(user.id, task_id)
    except ProgressionError as exc:
        raise progression_http_error(exc)
    return CompletionResponse.model_validate(result)


@app.delete("/tasks/{task_id}", tags=["Tasks"])
async def delete_task(task_id: int, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    """Elimina una tarea (las recompensas ya ganadas se quedan)"""
    task = await _get_user_task(db, task_id, user.id)
    await db.delete(task)
    await db.commit()
    return {"message": "Tarea eliminada"}


# =============================================================================
# ===================== SECCIÓN 3: FOCUS ======================================
# =============================================================================

@app.post("/focus/start", response_model=FocusSessionResponse, tags=["Focus"])
async def start_focus(data: FocusSessionStart, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    """Inicia una sesión de foco (opcionalmente ligada a una tarea)"""
    if data.task_id is not None:
        await _get_user_task(db, data.task_id, user.id)

    session = FocusSession(
        user_id=user.id,
        task_id=data.task_id,
        type=data.type.value,
        duration=data.duration,
        break_duration=data.break_duration,
        notes=data.notes,
        start_time=utcnow(),
    )
    db.add(session)
    await db.commit()
    await db.refresh(session)
    return session


@app.patch("/focus/{session_id}/complete", response_model=FocusCompletionResponse, tags=["Focus"])
async def complete_focus(
    session_id: int,
    data: Optional[FocusSessionComplete] = None,
    user: User = Depends(get_current_user),
    progression: ProgressionService = Depends(get_progression),
):
    data = data or FocusSessionComplete()
    try:
        result = await progression.complete_focus_session(
            user.id, session_id,
            productivity=data.productivity,
            actual_duration=data.actual_duration,
            notes=data.notes,
        )
    except ProgressionError as exc:
        raise progression_http_error(exc)
    return FocusCompletionResponse.model_validate(result)


@app.get("/focus", response_model=list[FocusSessionResponse], tags=["Focus"])
async def list_focus_sessions(
    limit: int = Query(default=20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(FocusSession)
        .where(FocusSession.user_id == user.id)
        .order_by(FocusSession.start_time.desc())
        .limit(limit)
    )
    return result.scalars().all()


# =============================================================================
# ===================== SECCIÓN 4: GAMIFICATION ===============================
# =============================================================================

def _evaluator(db: AsyncSession, events: EventPublisher) -> AchievementEvaluator:
    return AchievementEvaluator(ProgressionStore(db), ProgressEvents(events))


@app.get("/gamification/level", response_model=LevelInfo, tags=["Gamification"])
async def get_my_level(user: User = Depends(get_current_user)):
    return user_level_payload(user)


@app.get("/gamification/achievements", tags=["Gamification"])
async def get_my_achievements(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    events: EventPublisher = Depends(get_publisher),
):
    """Logros del usuario: desbloqueados y bloqueados (con progreso)"""
    return await _evaluator(db, events).get_user_achievements(user.id)


@app.get("/gamification/achievements/all", tags=["Gamification"])
async def list_achievements(db: AsyncSession = Depends(get_db)):
    """Catálogo completo de logros activos (no requiere autenticación)"""
    achievements = await ProgressionStore(db).list_active_achievements()
    return [achievement_to_dict(a) for a in achievements]


@app.get(
    "/gamification/achievements/{achievement_id}/progress",
    response_model=AchievementProgress,
    tags=["Gamification"],
)
async def get_achievement_progress(
    achievement_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    events: EventPublisher = Depends(get_publisher),
):
    progress = await _evaluator(db, events).get_progress(user.id, achievement_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="Logro no encontrado")
    return progress


@app.post("/gamification/achievements/check", response_model=AchievementCheckResponse, tags=["Gamification"])
async def check_my_achievements(
    user: User = Depends(get_current_user),
    progression: ProgressionService = Depends(get_progression),
):
    """Fuerza la comprobación de logros del usuario"""
    try:
        unlocked = await progression.check_achievements(user.id)
    except ProgressionError as exc:
        raise progression_http_error(exc)
    return AchievementCheckResponse(new_achievements=[a.name for a in unlocked])


# =============================================================================
# ===================== SECCIÓN 5: LEADERBOARD ================================
# =============================================================================

@app.get("/leaderboard", response_model=LeaderboardResponse, tags=["Leaderboard"])
async def get_leaderboard(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Ranking global por XP (y nivel en caso de empate)"""
    store = ProgressionStore(db)
    users = await store.leaderboard(limit=limit, offset=offset)

    return LeaderboardResponse(
        entries=[
            LeaderboardEntry(
                rank=offset + i + 1,
                user_id=u.id,
                name=u.name,
                xp=u.xp,
                level=u.level,
                streak=u.streak,
            )
            for i, u in enumerate(users)
        ],
        total_users=await store.count_users(),
        my_rank=await store.user_rank(user),
    )
