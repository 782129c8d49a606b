import asyncio
import pytest

from fakes import wait_until
from taskloop.domain.common.errors import AskIgnoredError, TaskAbortedError
from taskloop.domain.common.events import TaskEvent
from taskloop.domain.models.messages import AskKind, AskResponse, SayKind
from taskloop.domain.models.task_state import TaskActivity
from taskloop.domain.orchestration.core.task import Task


@pytest.fixture
def task(make_orchestrator):
    orchestrator = make_orchestrator()
    return Task(orchestrator, orchestrator.api_handler)


def record(task, event):
    seen = []
    task.on(event, lambda *args: seen.append(args))
    return seen


async def test_partial_burst_coalesces_into_one_message(task):
    messages = record(task, TaskEvent.MESSAGE)

    first = await task.say(SayKind.TEXT, "Hel", partial=True)
    await task.say(SayKind.TEXT, "Hello", partial=True)
    final = await task.say(SayKind.TEXT, "Hello world", partial=False)

    assert len(task.store.ui_messages) == 1
    stored = task.store.ui_messages[0]
    assert stored.ts == first.ts == final.ts
    assert stored.text == "Hello world"
    assert stored.partial is False
    assert [m[0]["action"] for m in messages] == ["created", "updated", "updated"]


async def test_partial_of_another_kind_starts_a_new_message(task):
    await task.say(SayKind.TEXT, "thinking", partial=True)
    await task.say(SayKind.REASONING, "why", partial=True)

    assert [m.say for m in task.store.ui_messages] == [SayKind.TEXT, SayKind.REASONING]


async def test_complete_say_appends_each_time(task):
    await task.say(SayKind.TEXT, "one")
    await task.say(SayKind.TEXT, "two")

    assert [m.text for m in task.store.ui_messages] == ["one", "two"]
    assert task.store.ui_messages[0].ts < task.store.ui_messages[1].ts


@pytest.mark.parametrize("kind", list(AskKind))
async def test_ask_after_abort_fails_immediately(task, kind):
    task.abort = True

    with pytest.raises(TaskAbortedError):
        await asyncio.wait_for(task.ask(kind, "question"), timeout=0.5)

    assert task.store.ui_messages == []


async def test_say_after_abort_fails(task):
    task.abort = True

    with pytest.raises(TaskAbortedError):
        await task.say(SayKind.TEXT, "late")


async def test_partial_ask_is_ignored(task):
    with pytest.raises(AskIgnoredError):
        await task.ask(AskKind.TOOL, '{"tool": "list"}', partial=True)
    with pytest.raises(AskIgnoredError):
        await task.ask(AskKind.TOOL, '{"tool": "list_files"}', partial=True)

    assert len(task.store.ui_messages) == 1
    assert task.store.ui_messages[0].partial is True


async def test_blocking_ask_waits_for_response(task):
    idle = record(task, TaskEvent.TASK_IDLE)
    active = record(task, TaskEvent.TASK_ACTIVE)

    with pytest.raises(AskIgnoredError):
        await task.ask(AskKind.FOLLOWUP, "Which", partial=True)
    partial_ts = task.store.ui_messages[0].ts

    pending = asyncio.create_task(task.ask(AskKind.FOLLOWUP, "Which directory?", partial=False))
    await wait_until(lambda: task.blocking_ask == AskKind.FOLLOWUP)
    assert idle == [(task.task_id,)]
    assert task.activity == TaskActivity.IDLE

    task.handle_ask_response(AskResponse.MESSAGE_RESPONSE, "src")
    result = await asyncio.wait_for(pending, timeout=1)

    assert result.response == AskResponse.MESSAGE_RESPONSE
    assert result.text == "src"
    assert task.blocking_ask is None
    assert active == [(task.task_id,)]
    assert task.activity == TaskActivity.ACTIVE
    assert len(task.store.ui_messages) == 1
    assert task.store.ui_messages[0].ts == partial_ts
    assert task.store.ui_messages[0].partial is False


async def test_non_blocking_ask_does_not_go_idle(task):
    idle = record(task, TaskEvent.TASK_IDLE)

    pending = asyncio.create_task(task.ask(AskKind.COMMAND_OUTPUT, "output"))
    await wait_until(lambda: len(task.store.ui_messages) == 1)
    task.handle_ask_response(AskResponse.YES_BUTTON_CLICKED)
    await asyncio.wait_for(pending, timeout=1)

    assert idle == []


async def test_newer_message_supersedes_pending_ask(task):
    pending = asyncio.create_task(task.ask(AskKind.TOOL, "approve?"))
    await wait_until(lambda: task.blocking_ask == AskKind.TOOL)

    await task.say(SayKind.TEXT, "something newer")

    with pytest.raises(AskIgnoredError):
        await asyncio.wait_for(pending, timeout=1)


async def test_non_interactive_say_keeps_ask_pending(task):
    pending = asyncio.create_task(task.ask(AskKind.TOOL, "approve?"))
    await wait_until(lambda: task.blocking_ask == AskKind.TOOL)

    await task.say(SayKind.CONDENSE_CONTEXT, is_non_interactive=True)
    task.handle_ask_response(AskResponse.YES_BUTTON_CLICKED)

    result = await asyncio.wait_for(pending, timeout=1)
    assert result.response == AskResponse.YES_BUTTON_CLICKED


async def test_abort_while_waiting_releases_ask(task):
    pending = asyncio.create_task(task.ask(AskKind.TOOL, "approve?"))
    await wait_until(lambda: task.blocking_ask == AskKind.TOOL)

    await task.abort_task()

    with pytest.raises(TaskAbortedError):
        await asyncio.wait_for(pending, timeout=1)
    assert task.blocking_ask is None
