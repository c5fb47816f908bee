"""
=============================================================================
DATABASE.PY — Configuración de la Base de Datos
=============================================================================
Este archivo configura la conexión (asíncrona) a la base de datos.

En DESARROLLO: usa SQLite (un archivo .db) a través de aiosqlite
En PRODUCCIÓN: usa PostgreSQL con psycopg (v3), que también funciona en modo async

¿Por qué async?
→ Cada lectura/escritura es una operación de E/S. Con async, mientras una
  petición espera a la BD, el servidor atiende otras peticiones.
→ El flujo de recompensas hace varias esperas seguidas (tarea, usuario,
  logros, eventos) y ninguna bloquea el proceso.
"""

import os
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

# ─────────────────────────────────────────────────────────────────────────────
# CONEXIÓN
# ─────────────────────────────────────────────────────────────────────────────

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./taskquest.db")

# Los proveedores dan la URL con "postgres://" pero SQLAlchemy necesita el driver.
# psycopg (v3) sirve tanto para el engine síncrono como para el asíncrono.
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+psycopg://", 1)
elif DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+psycopg://", 1)
elif DATABASE_URL.startswith("sqlite:///"):
    DATABASE_URL = DATABASE_URL.replace("sqlite:///", "sqlite+aiosqlite:///", 1)


# ─────────────────────────────────────────────────────────────────────────────
# ENGINE Y SESIONES
# ─────────────────────────────────────────────────────────────────────────────

def build_engine(url: str):
    """
    Crea un engine asíncrono para la URL dada.

    SQLite: timeout=30 → si otra petición tiene el archivo bloqueado,
    esperamos en vez de fallar al instante (dos completados simultáneos).
    """
    engine_args = {}
    if url.startswith("sqlite"):
        engine_args["connect_args"] = {"timeout": 30}
    return create_async_engine(url, echo=False, **engine_args)


def build_session_factory(engine) -> async_sessionmaker:
    # expire_on_commit=False → los objetos siguen legibles después del commit
    # (los devolvemos en la respuesta sin volver a consultar)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


engine = build_engine(DATABASE_URL)
SessionLocal = build_session_factory(engine)

# ─────────────────────────────────────────────────────────────────────────────
# BASE (Clase base para los modelos)
# ─────────────────────────────────────────────────────────────────────────────

Base = declarative_base()


def utcnow() -> datetime:
    """Hora actual en UTC, sin tzinfo (así se guarda en las columnas DateTime)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def get_db():
    """
    Generador que crea una sesión de BD y la cierra al terminar.

    Se usa como "dependencia" en FastAPI:
      @app.get("/algo")
      async def mi_endpoint(db: AsyncSession = Depends(get_db)):
          ...
    """
    async with SessionLocal() as db:
        yield db


async def init_db(bind=None):
    """
    Crea todas las tablas en la BD si no existen.
    Se llama una vez al arrancar la aplicación (y en los tests con su propio engine).
    """
    # Importar los modelos registra sus tablas en Base.metadata
    import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
