import pytest

from taskloop.domain.models.task_state import TextContent, ToolUseContent
from taskloop.domain.streaming.assistant_parser import clean_display_text, parse_assistant_message

TOOLS = ["read_file", "attempt_completion", "list_files"]
PARAMS = ["path", "result", "recursive"]


def parse(text):
    return parse_assistant_message(text, TOOLS, PARAMS, id_prefix="toolu_42")


def test_plain_text_is_partial():
    blocks = parse("Let me check")
    assert blocks == [TextContent(content="Let me check", partial=True)]


def test_complete_tool_use():
    blocks = parse("I'll read it.\n<read_file>\n<path>src/app.py</path>\n</read_file>")

    assert blocks[0] == TextContent(content="I'll read it.", partial=False)
    assert blocks[1] == ToolUseContent(id="toolu_42_0", name="read_file", params={"path": "src/app.py"}, partial=False)


def test_unclosed_tool_and_param_are_partial():
    blocks = parse("<read_file>\n<path>src/ap")

    assert len(blocks) == 1
    assert blocks[0].partial
    assert blocks[0].params == {"path": "src/ap"}


def test_tool_ids_are_stable_while_streaming():
    message = "<list_files>\n<path>.</path>\n</list_files>\n<read_file>\n<path>a.txt</path>\n</read_file>"
    early = parse(message[:60])
    final = parse(message)

    assert early[0].id == final[0].id == "toolu_42_0"
    assert final[1].id == "toolu_42_1"


def test_text_after_tool_use():
    blocks = parse("<list_files>\n<path>.</path>\n</list_files>\nDone.")
    assert isinstance(blocks[0], ToolUseContent)
    assert blocks[1] == TextContent(content="Done.", partial=True)


def test_unknown_tags_stay_text():
    blocks = parse("<thinking>plan</thinking>")
    assert blocks == [TextContent(content="<thinking>plan</thinking>", partial=True)]


def test_no_registered_tools():
    assert parse_assistant_message("", [], []) == []
    assert parse_assistant_message("<read_file>", [], []) == [TextContent(content="<read_file>", partial=True)]


@pytest.mark.parametrize("text, partial, expected", [
    ("<thinking>plan</thinking> Reading now", False, "plan Reading now"),
    ("Reading now <read_fi", True, "Reading now"),
    ("Reading now <read_fi", False, "Reading now <read_fi"),
])
def test_clean_display_text(text, partial, expected):
    assert clean_display_text(text, partial) == expected
