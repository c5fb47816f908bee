"""
=============================================================================
REALTIME.PY — Eventos en tiempo real (Socket.IO)
=============================================================================
El motor de recompensas solo sabe hacer una cosa: publish(topic, payload).
No sabe si hay alguien escuchando ni cómo llega el mensaje.

Topics (= rooms de Socket.IO):
  - "user:{id}"    → eventos personales (xp, monedas, nivel, logros, tareas)
  - "leaderboard"  → eventos que afectan al ranking

El publicador se INYECTA (no hay una instancia global a la que llamar desde
el código de negocio). En los tests se usa uno que solo guarda los eventos.
"""

import logging
from typing import Optional, Protocol

import socketio
from socketio.exceptions import ConnectionRefusedError as SocketConnectionRefused

from auth import decode_token
from database import utcnow

logger = logging.getLogger("taskquest.realtime")

LEADERBOARD_TOPIC = "leaderboard"


def user_topic(user_id) -> str:
    return f"user:{user_id}"


class EventPublisher(Protocol):
    """Contrato: publicar y olvidarse. Nunca lanza excepciones."""

    async def publish(self, topic: str, payload: dict) -> None:
        ...


class SocketIOPublisher:
    """
    Publica en una room de Socket.IO.

    Si no hay servidor de sockets (desarrollo, tests, workers) es un no-op.
    payload["event"] es el nombre del evento que reciben los clientes.
    """

    def __init__(self, sio: Optional[socketio.AsyncServer] = None):
        self.sio = sio

    async def publish(self, topic: str, payload: dict) -> None:
        if self.sio is None:
            return
        event = payload.get("event", "event")
        try:
            await self.sio.emit(event, payload, room=topic)
        except Exception:
            logger.exception(f"⚠️ No se pudo emitir '{event}' a {topic}")


# ─────────────────────────────────────────────────────────────────────────────
# CATÁLOGO DE EVENTOS
# ─────────────────────────────────────────────────────────────────────────────

class ProgressEvents:
    """Los eventos que emite el motor de progresión, con su forma fija"""

    def __init__(self, publisher: EventPublisher):
        self.publisher = publisher

    async def _emit(self, topic: str, event: str, **data):
        payload = {"event": event, **data, "timestamp": utcnow().isoformat()}
        try:
            await self.publisher.publish(topic, payload)
        except Exception:
            # Un evento perdido nunca deshace una recompensa ya aplicada
            logger.exception(f"⚠️ Fallo publicando '{event}' en {topic}")

    async def task_completed(self, user_id: int, task: dict, rewards: dict):
        await self._emit(user_topic(user_id), "task-completed", task=task, rewards=rewards)

    async def xp_gained(self, user_id: int, amount: int, total_xp: int, source: str):
        await self._emit(user_topic(user_id), "xp-gained", amount=amount, total_xp=total_xp, source=source)

    async def coins_earned(self, user_id: int, amount: int, total_coins: int, source: str):
        await self._emit(user_topic(user_id), "coins-earned", amount=amount, total_coins=total_coins, source=source)

    async def level_up(self, user_id: int, level_data: dict):
        await self._emit(user_topic(user_id), "level-up", level_data=level_data)
        await self._emit(LEADERBOARD_TOPIC, "user-level-up", user_id=user_id, level_data=level_data)

    async def achievement_unlocked(self, user_id: int, achievement: dict):
        await self._emit(user_topic(user_id), "achievement-unlocked", achievement=achievement)
        await self._emit(LEADERBOARD_TOPIC, "user-achievement-unlocked", user_id=user_id, achievement=achievement)

    async def focus_session_completed(self, user_id: int, session: dict, rewards: dict):
        await self._emit(user_topic(user_id), "focus-session-completed", session=session, rewards=rewards)


# ─────────────────────────────────────────────────────────────────────────────
# SERVIDOR SOCKET.IO
# ─────────────────────────────────────────────────────────────────────────────
# Flujo de conexión:
#   1. El cliente conecta con auth={"token": "<JWT>"}
#   2. Si el token es válido → entra en su room "user:{id}"
#   3. Puede entrar/salir de "leaderboard" cuando abre/cierra el ranking

def create_socket_server(cors_origins="*") -> socketio.AsyncServer:
    sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=cors_origins)

    @sio.event
    async def connect(sid, environ, auth=None):
        token = (auth or {}).get("token")
        payload = decode_token(token) if token else None
        if payload is None or payload.get("sub") is None:
            raise SocketConnectionRefused("Token inválido o expirado")

        user_id = payload["sub"]
        await sio.save_session(sid, {"user_id": user_id})
        await sio.enter_room(sid, user_topic(user_id))
        logger.info(f"🔌 Usuario {user_id} conectado ({sid})")

    @sio.on("join-leaderboard")
    async def join_leaderboard(sid, *args):
        await sio.enter_room(sid, LEADERBOARD_TOPIC)

    @sio.on("leave-leaderboard")
    async def leave_leaderboard(sid, *args):
        await sio.leave_room(sid, LEADERBOARD_TOPIC)

    @sio.event
    async def disconnect(sid, *args):
        logger.info(f"🔌 Socket {sid} desconectado")

    return sio
