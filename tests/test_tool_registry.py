from fakes import COMPLETION, FakeApiHandler, list_files_call, make_registry, shutdown, wait_until
from taskloop.domain.models.messages import AskKind, SayKind
from taskloop.domain.prompts.system import build_system_prompt
from taskloop.domain.tool.tool_registry import ToolDefinition, ToolParameter
from taskloop.domain.transport.api_handler import TextChunk


async def boom(task, block, tool):
    raise RuntimeError("disk on fire")


def make_extended_registry():
    registry = make_registry()
    registry.register_tool(
        ToolDefinition(
            name="draw_diagram",
            description="Draw a diagram.",
            parameters={"source": ToolParameter(description="Diagram source", required=True)},
            requires_approval=False,
            modes=["architect"],
        ),
        boom,
    )
    registry.register_tool(
        ToolDefinition(name="explode", description="Always fails.", requires_approval=False),
        boom,
    )
    return registry


class TestRegistry:

    def test_tools_for_mode(self):
        registry = make_extended_registry()

        code_tools = [tool.name for tool in registry.tools_for_mode("code")]
        architect_tools = [tool.name for tool in registry.tools_for_mode("architect")]

        assert "draw_diagram" not in code_tools
        assert "draw_diagram" in architect_tools
        assert "list_files" in code_tools and "list_files" in architect_tools

    def test_missing_parameters(self):
        registry = make_extended_registry()

        assert registry.missing_parameters("list_files", {}) == ["path"]
        assert registry.missing_parameters("list_files", {"path": "   "}) == ["path"]
        assert registry.missing_parameters("list_files", {"path": "src"}) == []
        assert registry.missing_parameters("nope", {}) == []

    def test_param_names_are_merged(self):
        registry = make_extended_registry()
        names = registry.param_names()

        assert "path" in names and "source" in names
        assert names == sorted(names)


class TestSystemPrompt:

    def test_describes_tools_and_mode(self):
        registry = make_extended_registry()

        prompt = build_system_prompt("code", registry.tools_for_mode("code"), "  Prefer tabs.  ")

        assert "## list_files" in prompt
        assert "- path: (required) Directory to list" in prompt
        assert "<list_files>\n<path>value</path>\n</list_files>" in prompt
        assert "## draw_diagram" not in prompt
        assert "You are currently in 'code' mode." in prompt
        assert prompt.endswith("USER'S CUSTOM INSTRUCTIONS\n\nPrefer tabs.")

    def test_no_custom_instructions_section_when_blank(self):
        prompt = build_system_prompt("ask", [], "   ")
        assert "CUSTOM INSTRUCTIONS" not in prompt


class TestPresenterErrors:

    async def test_missing_parameter_is_reported(self, make_orchestrator, clock):
        handler = FakeApiHandler(
            scripts=[[TextChunk(text="<list_files>\n</list_files>")], [TextChunk(text=COMPLETION)]],
            clock=clock,
        )
        orchestrator = make_orchestrator(handler)
        task = await orchestrator.create_task("list things")

        await wait_until(lambda: task.blocking_ask == AskKind.COMPLETION_RESULT)

        result = handler.calls[1]["messages"][-1].tool_results()[0]
        assert result.is_error
        assert "Missing value for required parameter 'path'" in result.text()
        assert task.tool_usage["list_files"].failures == 1
        errors = [m.text for m in task.store.ui_messages if m.say == SayKind.ERROR]
        assert any("without value for required parameter 'path'" in text for text in errors)
        await shutdown(orchestrator)

    async def test_tool_outside_its_mode_is_rejected(self, make_orchestrator, clock):
        handler = FakeApiHandler(
            scripts=[
                [TextChunk(text="<draw_diagram>\n<source>a -> b</source>\n</draw_diagram>")],
                [TextChunk(text=COMPLETION)],
            ],
            clock=clock,
        )
        orchestrator = make_orchestrator(handler, registry=make_extended_registry())
        task = await orchestrator.create_task("draw it")

        await wait_until(lambda: task.blocking_ask == AskKind.COMPLETION_RESULT)

        result = handler.calls[1]["messages"][-1].tool_results()[0]
        assert result.is_error
        assert "Tool 'draw_diagram' is not allowed in code mode" in result.text()
        assert task.tool_usage["draw_diagram"].attempts == 1
        assert task.tool_usage["draw_diagram"].failures == 1
        await shutdown(orchestrator)

    async def test_handler_exception_becomes_tool_error(self, make_orchestrator, clock):
        handler = FakeApiHandler(
            scripts=[[TextChunk(text="<explode>\n</explode>")], [TextChunk(text=COMPLETION)]],
            clock=clock,
        )
        orchestrator = make_orchestrator(handler, registry=make_extended_registry())
        task = await orchestrator.create_task("blow up")

        await wait_until(lambda: task.blocking_ask == AskKind.COMPLETION_RESULT)

        result = handler.calls[1]["messages"][-1].tool_results()[0]
        assert result.is_error
        assert "Error executing explode: disk on fire" in result.text()
        errors = [m.text for m in task.store.ui_messages if m.say == SayKind.ERROR]
        assert "Error executing explode: disk on fire" in errors
        await shutdown(orchestrator)

    async def test_valid_call_still_runs(self, make_orchestrator, clock):
        handler = FakeApiHandler(
            scripts=[[TextChunk(text=list_files_call("docs"))], [TextChunk(text=COMPLETION)]],
            clock=clock,
        )
        orchestrator = make_orchestrator(handler)
        task = await orchestrator.create_task("list docs")

        await wait_until(lambda: task.blocking_ask == AskKind.COMPLETION_RESULT)

        result = handler.calls[1]["messages"][-1].tool_results()[0]
        assert not result.is_error
        assert task.tool_usage["list_files"].failures == 0
        await shutdown(orchestrator)
