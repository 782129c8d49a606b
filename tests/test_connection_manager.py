from datetime import timedelta

from taskloop.application.websocket.connection_manager import STALE_SESSION_SECONDS, ConnectionManager
from taskloop.application.websocket.schema.events import TaskStateEvent


class FakeWebSocket:
    def __init__(self, fail_sends=False):
        self.accepted = False
        self.closed = False
        self.sent = []
        self.fail_sends = fail_sends

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail_sends:
            raise RuntimeError("socket gone")
        self.sent.append(data)

    async def close(self):
        self.closed = True


class FakeOrchestrator:
    def __init__(self, tasks=0):
        self.task_stack = [object() for _ in range(tasks)]

    async def clear_task(self):
        self.task_stack.pop()


def state(task_id):
    return TaskStateEvent(task_id=task_id, state="task_started")


async def test_open_session_announces_connection():
    manager = ConnectionManager()
    ws = FakeWebSocket()

    session = await manager.open_session(ws, "s1", FakeOrchestrator())

    assert ws.accepted
    assert ws.sent[0]["type"] == "connection"
    assert ws.sent[0]["session_id"] == "s1"
    assert manager.orchestrator_for("s1") is session.orchestrator
    assert manager.orchestrator_for("missing") is None


async def test_task_events_reach_the_owning_session():
    manager = ConnectionManager()
    first, second = FakeWebSocket(), FakeWebSocket()
    await manager.open_session(first, "s1", FakeOrchestrator())
    await manager.open_session(second, "s2", FakeOrchestrator())
    manager.bind_task("s1", "task-a")
    manager.bind_task("s2", "task-b")

    assert await manager.send_to_task("task-a", state("task-a"))
    assert await manager.send_to_task("task-b", state("task-b"))
    assert not await manager.send_to_task("task-unknown", state("task-unknown"))

    assert [e["task_id"] for e in first.sent[1:]] == ["task-a"]
    assert [e["task_id"] for e in second.sent[1:]] == ["task-b"]
    assert first.sent[1]["session_id"] == "s1"


async def test_rebinding_moves_task_to_latest_session():
    manager = ConnectionManager()
    await manager.open_session(FakeWebSocket(), "s1", FakeOrchestrator())
    await manager.open_session(FakeWebSocket(), "s2", FakeOrchestrator())

    manager.bind_task("s1", "task-a")
    manager.bind_task("s2", "task-a")
    manager.bind_task("nowhere", "task-b")

    assert manager.session_for_task("task-a") == "s2"
    assert manager.session_for_task("task-b") is None

    await manager.close_session("s1")
    assert manager.session_for_task("task-a") == "s2"


async def test_close_session_abandons_tasks_and_unbinds():
    manager = ConnectionManager()
    ws = FakeWebSocket()
    orchestrator = FakeOrchestrator(tasks=2)
    await manager.open_session(ws, "s1", orchestrator)
    manager.bind_task("s1", "task-a")
    assert manager.active_task_count() == 2

    await manager.close_session("s1")

    assert ws.closed
    assert orchestrator.task_stack == []
    assert manager.session_for_task("task-a") is None
    assert manager.active_task_count() == 0
    assert not await manager.send_event("s1", state("task-a"))


async def test_reconnect_replaces_previous_socket():
    manager = ConnectionManager()
    old, new = FakeWebSocket(), FakeWebSocket()
    old_orchestrator = FakeOrchestrator(tasks=1)
    await manager.open_session(old, "s1", old_orchestrator)

    await manager.open_session(new, "s1", FakeOrchestrator())

    assert old.closed and old_orchestrator.task_stack == []
    # The stale connection's cleanup must not tear down the new one.
    await manager.close_session("s1", old)
    assert not new.closed
    assert "s1" in manager.sessions


async def test_failed_send_closes_session():
    manager = ConnectionManager()
    ws = FakeWebSocket()
    await manager.open_session(ws, "s1", FakeOrchestrator())
    ws.fail_sends = True
    manager.bind_task("s1", "task-a")

    assert not await manager.send_to_task("task-a", state("task-a"))
    assert "s1" not in manager.sessions
    assert ws.closed


async def test_stale_sessions():
    manager = ConnectionManager()
    session = await manager.open_session(FakeWebSocket(), "s1", FakeOrchestrator())

    assert manager.stale_sessions() == []
    later = session.last_activity + timedelta(seconds=STALE_SESSION_SECONDS + 1)
    assert manager.stale_sessions(later) == ["s1"]
