import asyncio

from fakes import COMPLETION, FakeApiHandler, list_files_call, make_registry
from taskloop.application.runner import run_task
from taskloop.domain.transport.api_handler import TextChunk, UsageChunk


async def test_run_completes_and_approves_tools(make_orchestrator, clock):
    handler = FakeApiHandler(
        scripts=[
            [TextChunk(text=list_files_call()), UsageChunk(input_tokens=50, output_tokens=5)],
            [TextChunk(text=COMPLETION), UsageChunk(input_tokens=80, output_tokens=7)],
        ],
        clock=clock,
    )
    orchestrator = make_orchestrator(handler, registry=make_registry(list_requires_approval=True))

    result = await run_task(orchestrator, "list the files", timeout=5)

    assert result.completed
    assert not result.timed_out
    assert result.tool_usage["list_files"].attempts == 1
    assert result.tool_usage["attempt_completion"].attempts == 1
    assert result.token_usage.total_tokens_in >= 50
    assert orchestrator.task_stack == []


async def test_run_times_out_and_clears_task(make_orchestrator, clock):
    gate = asyncio.Event()
    handler = FakeApiHandler(scripts=[[gate.wait]], clock=clock)
    orchestrator = make_orchestrator(handler)
    created = []
    orchestrator.on_task_created(created.append)

    result = await run_task(orchestrator, "wait forever", timeout=0.2)

    assert result.timed_out
    assert not result.completed
    assert orchestrator.task_stack == []
    task = created[0]
    assert task.abort and task.abandoned

    gate.set()
    await asyncio.wait_for(task.loop_task, timeout=2)
