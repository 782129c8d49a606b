import pytest

from fakes import FakeApiHandler
from taskloop.domain.context.condense import (
    CONTINUE_FROM_SUMMARY, FINAL_SUMMARY_REQUEST, SUMMARY_PROMPT,
    get_messages_since_last_summary, summarize_conversation
)
from taskloop.domain.context.context_manager import (
    INTERRUPTED_TOOL_RESULT, effective_condense_threshold, repair_tool_pairs,
    truncate_conversation, truncate_conversation_if_needed
)
from taskloop.domain.models.messages import ApiMessage, ImageBlock, TextBlock, ToolResultBlock, ToolUseBlock
from taskloop.domain.transport.api_handler import ModelInfo, TextChunk, UsageChunk


def user(text, ts=None):
    return ApiMessage(role="user", content=[TextBlock(text=text)], ts=ts)


def assistant(text, ts=None):
    return ApiMessage(role="assistant", content=[TextBlock(text=text)], ts=ts)


def conversation(turns):
    return [user(f"u{i}", ts=i) if i % 2 == 0 else assistant(f"a{i}", ts=i) for i in range(turns)]


class TestRepairToolPairs:

    def test_missing_result_is_synthesized(self):
        messages = [
            user("task"),
            ApiMessage(role="assistant", content=[ToolUseBlock(id="t1", name="read_file")]),
            user("no result here"),
        ]

        repaired = repair_tool_pairs(messages)

        results = repaired[2].tool_results()
        assert [r.tool_use_id for r in results] == ["t1"]
        assert results[0].text() == INTERRUPTED_TOOL_RESULT
        assert isinstance(repaired[2].content[0], ToolResultBlock)

    def test_orphaned_result_becomes_text(self):
        messages = [
            user("task"),
            assistant("no tools"),
            ApiMessage(role="user", content=[ToolResultBlock(tool_use_id="gone", content=[TextBlock(text="42")])]),
        ]

        repaired = repair_tool_pairs(messages)

        assert repaired[2].tool_results() == []
        assert repaired[2].content[0].text == "[orphaned tool result]\n42"

    def test_duplicate_result_becomes_text(self):
        result = ToolResultBlock(tool_use_id="t1", content=[TextBlock(text="ok")])
        messages = [
            user("task"),
            ApiMessage(role="assistant", content=[ToolUseBlock(id="t1", name="read_file")]),
            ApiMessage(role="user", content=[result, result]),
        ]

        repaired = repair_tool_pairs(messages)

        assert len(repaired[2].tool_results()) == 1

    def test_valid_history_is_unchanged(self):
        messages = [
            user("task"),
            ApiMessage(role="assistant", content=[ToolUseBlock(id="t1", name="read_file")]),
            ApiMessage(role="user", content=[ToolResultBlock(tool_use_id="t1", content=[TextBlock(text="ok")])]),
            ApiMessage(role="assistant", content=[ToolUseBlock(id="t2", name="read_file")]),
        ]

        repaired = repair_tool_pairs(messages)

        assert repaired == messages
        assert repaired[2] is messages[2]


class TestTruncateConversation:

    def test_keeps_first_and_last(self):
        messages = conversation(9)

        truncated = truncate_conversation(messages, 0.5, "task-1")

        assert truncated[0] == messages[0]
        assert truncated[-1] == messages[-1]
        assert len(truncated) == 5
        assert [m.role for m in truncated] == ["user", "assistant", "user", "assistant", "user"]

    def test_removes_even_count_only(self):
        messages = conversation(6)

        truncated = truncate_conversation(messages, 0.5, "task-1")

        assert len(messages) - len(truncated) == 2

    def test_short_history_untouched(self):
        messages = conversation(2)
        assert truncate_conversation(messages, 0.5, "task-1") == messages

    def test_starts_after_last_summary(self):
        messages = conversation(4)
        messages.insert(2, ApiMessage(role="assistant", content=[TextBlock(text="summary")], is_summary=True))
        messages += conversation(6)[4:]

        truncated = truncate_conversation(messages, 1.0, "task-1")

        assert messages[2] in truncated
        assert messages[0] in truncated and messages[1] in truncated


class TestThresholds:

    @pytest.mark.parametrize("profile_thresholds, profile, expected", [
        ({}, None, 75),
        ({"fast": 40}, "fast", 40),
        ({"fast": -1}, "fast", 75),
        ({"fast": 3}, "fast", 75),
        ({"fast": 101}, "fast", 75),
        ({"fast": 40}, "slow", 75),
    ])
    def test_effective_threshold(self, profile_thresholds, profile, expected):
        assert effective_condense_threshold(75, profile_thresholds, profile) == expected


class TestSinceLastSummary:

    def test_without_summary(self):
        messages = conversation(3)
        assert get_messages_since_last_summary(messages) == messages

    def test_opens_with_user_turn(self):
        summary = ApiMessage(role="assistant", content=[TextBlock(text="summary")], ts=7, is_summary=True)
        messages = conversation(3) + [summary, user("next", ts=8)]

        since = get_messages_since_last_summary(messages)

        assert since[0].role == "user"
        assert since[0].content[0].text == CONTINUE_FROM_SUMMARY
        assert since[0].ts == 7
        assert since[1:] == [summary, messages[-1]]


class TestSummarize:

    async def test_summary_replaces_older_turns(self):
        handler = FakeApiHandler(scripts=[[TextChunk(text=" The summary. "), UsageChunk(output_tokens=20, total_cost=0.05)]])
        messages = conversation(7)
        messages[1] = assistant("long answer " * 500, ts=1)

        result = await summarize_conversation(messages, handler, "system", "task-1", 5000)

        assert result.error is None
        assert result.summary == "The summary."
        assert result.cost == 0.05
        assert len(result.messages) == 8
        summary = result.messages[4]
        assert summary.is_summary and summary.ts == messages[4].ts
        assert result.messages[5:] == messages[4:]
        assert result.new_context_tokens < 5000

        request = handler.calls[0]
        assert request["system_prompt"] == SUMMARY_PROMPT
        assert request["messages"][-1].content[0].text == FINAL_SUMMARY_REQUEST
        assert len(request["messages"]) == 5

    async def test_custom_prompt_and_condensing_handler(self):
        main = FakeApiHandler()
        condenser = FakeApiHandler(scripts=[[TextChunk(text="short")]])

        await summarize_conversation(
            conversation(7), main, "system", "task-1", 5000,
            custom_condensing_prompt="  Be brief.  ", condensing_api_handler=condenser,
        )

        assert main.calls == []
        assert condenser.calls[0]["system_prompt"] == "Be brief."

    async def test_too_few_messages(self):
        handler = FakeApiHandler()
        result = await summarize_conversation(conversation(4), handler, "system", "task-1", 5000)

        assert result.error == "Not enough messages to condense the context"
        assert handler.calls == []

    async def test_recent_summary_in_kept_turns(self):
        messages = conversation(6)
        messages[4] = ApiMessage(role="assistant", content=[TextBlock(text="summary")], ts=4, is_summary=True)
        handler = FakeApiHandler()

        result = await summarize_conversation(messages, handler, "system", "task-1", 5000)

        assert result.error == "Context was condensed recently; skipping this attempt"

    async def test_empty_summary(self):
        handler = FakeApiHandler(scripts=[[UsageChunk(total_cost=0.01)]])

        result = await summarize_conversation(conversation(7), handler, "system", "task-1", 5000)

        assert result.error == "Context condensing failed: the summary was empty"
        assert result.cost == 0.01

    async def test_condenser_error_is_reported(self):
        handler = FakeApiHandler(scripts=[RuntimeError("condenser 503")])
        messages = conversation(7)

        result = await summarize_conversation(messages, handler, "system", "task-1", 5000)

        assert result.error == "Context condensing failed: condenser 503"
        assert result.messages == messages
        assert result.summary == ""

    async def test_summary_must_shrink_context(self):
        handler = FakeApiHandler(scripts=[[TextChunk(text="word " * 400)]])

        result = await summarize_conversation(conversation(7), handler, "system", "task-1", 10)

        assert result.error == "Context condensing did not reduce the context size"

    async def test_images_removed_for_text_only_condenser(self):
        info = ModelInfo(context_window=1000, supports_images=False)
        handler = FakeApiHandler(scripts=[[TextChunk(text="summary")]], info=info)
        messages = conversation(7)
        messages[0] = ApiMessage(role="user", content=[TextBlock(text="see"), ImageBlock(data="abc")], ts=0)

        await summarize_conversation(messages, handler, "system", "task-1", 5000)

        sent = handler.calls[0]["messages"][0]
        assert sent.content[1].text == "[Referenced image in conversation]"


class TestTruncateIfNeeded:

    async def test_below_threshold_keeps_messages(self):
        messages = conversation(5)
        handler = FakeApiHandler()

        result = await truncate_conversation_if_needed(
            messages, 100, 10_000, 1000, handler, True, 75, "system", "task-1"
        )

        assert result.messages is messages
        assert result.error is None
        assert handler.calls == []

    async def test_threshold_triggers_summary(self):
        handler = FakeApiHandler(scripts=[[TextChunk(text="summary")]])

        result = await truncate_conversation_if_needed(
            conversation(7), 8000, 10_000, 1000, handler, True, 75, "system", "task-1"
        )

        assert result.summary == "summary"
        assert any(m.is_summary for m in result.messages)
        assert result.prev_context_tokens >= 8000

    async def test_falls_back_to_truncation_when_condensing_fails(self):
        handler = FakeApiHandler(scripts=[[]])
        messages = conversation(9)

        result = await truncate_conversation_if_needed(
            messages, 9500, 10_000, 1000, handler, True, 75, "system", "task-1"
        )

        assert result.error == "Context condensing failed: the summary was empty"
        assert len(result.messages) < len(messages)

    async def test_condenser_error_falls_back_to_truncation(self):
        handler = FakeApiHandler(scripts=[[TextChunk(text="part"), RuntimeError("connection reset")]])
        messages = conversation(9)

        result = await truncate_conversation_if_needed(
            messages, 9500, 10_000, 1000, handler, True, 75, "system", "task-1"
        )

        assert result.error == "Context condensing failed: connection reset"
        assert len(result.messages) == 5
        assert not any(m.is_summary for m in result.messages)

    async def test_truncates_without_auto_condense(self):
        handler = FakeApiHandler()
        messages = conversation(9)

        result = await truncate_conversation_if_needed(
            messages, 9500, 10_000, 1000, handler, False, 75, "system", "task-1"
        )

        assert handler.calls == []
        assert result.summary == ""
        assert len(result.messages) == 5
