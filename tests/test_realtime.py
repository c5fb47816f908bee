"""Publicación de eventos y adaptador Socket.IO"""

from conftest import RecordingPublisher
from realtime import LEADERBOARD_TOPIC, ProgressEvents, SocketIOPublisher, create_socket_server, user_topic


class FakeSocketServer:
    def __init__(self, fail=False):
        self.emitted = []
        self.fail = fail

    async def emit(self, event, data, room=None):
        if self.fail:
            raise ConnectionError("socket caído")
        self.emitted.append((event, data, room))


class FailingPublisher:
    async def publish(self, topic, payload):
        raise RuntimeError("broker caído")


def test_user_topic():
    assert user_topic(7) == "user:7"


async def test_payload_carries_event_name_and_timestamp():
    publisher = RecordingPublisher()
    await ProgressEvents(publisher).xp_gained(3, 25, 125, "task_completed")

    topic, payload = publisher.published[0]
    assert topic == "user:3"
    assert payload["event"] == "xp-gained"
    assert payload["amount"] == 25
    assert payload["total_xp"] == 125
    assert payload["source"] == "task_completed"
    assert "timestamp" in payload


async def test_level_up_is_broadcast_to_leaderboard():
    publisher = RecordingPublisher()
    await ProgressEvents(publisher).level_up(3, {"level": 4})

    assert [t for t, _ in publisher.published] == ["user:3", LEADERBOARD_TOPIC]
    assert publisher.events() == ["level-up", "user-level-up"]
    assert publisher.payloads("user-level-up")[0]["user_id"] == 3


async def test_publisher_errors_never_reach_the_caller():
    await ProgressEvents(FailingPublisher()).achievement_unlocked(1, {"name": "Night Owl"})


async def test_socketio_publisher_emits_to_room():
    sio = FakeSocketServer()
    await SocketIOPublisher(sio).publish("user:9", {"event": "coins-earned", "amount": 2})

    assert sio.emitted == [("coins-earned", {"event": "coins-earned", "amount": 2}, "user:9")]


async def test_socketio_publisher_swallows_transport_errors():
    await SocketIOPublisher(FakeSocketServer(fail=True)).publish("user:9", {"event": "xp-gained"})


async def test_socketio_publisher_without_server_is_noop():
    await SocketIOPublisher().publish("user:9", {"event": "xp-gained"})


def test_socket_server_registers_handlers():
    sio = create_socket_server()
    handlers = sio.handlers["/"]
    assert {"connect", "disconnect", "join-leaderboard", "leave-leaderboard"} <= set(handlers)
