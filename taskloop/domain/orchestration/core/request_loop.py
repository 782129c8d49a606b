from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, TypedDict, TYPE_CHECKING
from langgraph.graph import StateGraph, END
import structlog

from taskloop.domain.approval.rate_limit import compute_backoff_seconds, extract_retry_after
from taskloop.domain.common.errors import TaskAbortedError, UserDeclinedError
from taskloop.domain.common.events import TaskEvent
from taskloop.domain.common.waiting import wait_for
from taskloop.domain.context.condense import get_messages_since_last_summary
from taskloop.domain.context.context_manager import repair_tool_pairs, truncate_conversation_if_needed
from taskloop.domain.context.tokens import content_to_text, format_tool_use
from taskloop.domain.conversation.metrics import find_last_response_id
from taskloop.domain.models.messages import (
    ApiMessage, ApiRequestInfo, AskKind, AskResponse, ContextCondense, SayKind,
    TextBlock, ToolUseBlock, UIMessage
)
from taskloop.domain.models.task_state import (
    AssistantContent, LoopPhase, StreamingRound, TextContent, UserContent
)
from taskloop.domain.prompts import responses
from taskloop.domain.streaming.assistant_parser import parse_assistant_message
from taskloop.domain.transport.api_handler import (
    ApiStreamChunk, ReasoningChunk, TextChunk, UsageChunk,
    calculate_api_cost, get_model_max_output_tokens, maybe_remove_image_blocks
)

if TYPE_CHECKING:
    from taskloop.domain.orchestration.core.task import Task

logger = structlog.get_logger(__name__)

INTERRUPTED_BY_USER = "[Response interrupted by user]"
INTERRUPTED_BY_API_ERROR = "[Response interrupted by API Error]"
INTERRUPTED_BY_FEEDBACK = "[Response interrupted by user feedback]"
INTERRUPTED_BY_TOOL_USE = (
    "[Response interrupted by a tool use result. Only one tool may be used at a time "
    "and should be placed at the end of the message.]"
)

EMPTY_RESPONSE_ERROR = (
    "Unexpected API Response: The language model did not provide any assistant messages. "
    "This may indicate an issue with the API or the model's output."
)
EMPTY_RESPONSE_TURN = "Failure: I did not provide a response."


class RoundState(TypedDict, total=False):
    """State flowing through one request round"""
    user_content: UserContent
    include_file_details: bool
    outcome: str
    ended: bool
    next_user_content: UserContent


def assistant_content(blocks: List[AssistantContent], note: Optional[str] = None) -> List:
    """Parsed blocks as they are stored in the model-facing log"""

    content: List = []
    for block in blocks:
        if isinstance(block, TextContent):
            if block.content:
                content.append(TextBlock(text=block.content))
        elif block.partial:
            # Never executed; kept as text so no result is owed for it.
            content.append(TextBlock(text=format_tool_use(ToolUseBlock(id=block.id, name=block.name, input=block.params))))
        else:
            content.append(ToolUseBlock(id=block.id, name=block.name, input=dict(block.params)))

    if note:
        if content and isinstance(content[-1], TextBlock):
            content[-1] = TextBlock(text=f"{content[-1].text}\n\n{note}")
        else:
            content.append(TextBlock(text=note))
    return content


class RequestLoop:
    """Drives a task: one graph invocation per model request.

    Each round checks the mistake counter, waits out a running sub-task,
    records the outbound user turn, streams the reply while the presenter
    runs its tools, and hands the collected tool results to the next round.
    """

    def __init__(self, task: "Task"):
        self.task = task
        self.graph = self._create_graph()

        # Per-round buffers, reset when the request is built
        self.assistant_text = ""
        self.reasoning_text = ""
        self.interruption: Optional[str] = None
        self.request_info = ApiRequestInfo()
        self.api_req_message: Optional[UIMessage] = None

    def _create_graph(self):
        workflow = StateGraph(RoundState)

        workflow.add_node("check_mistakes", self.check_mistakes_node)
        workflow.add_node("await_resume", self.await_resume_node)
        workflow.add_node("build_request", self.build_request_node)
        workflow.add_node("stream_response", self.stream_response_node)
        workflow.add_node("finalize_round", self.finalize_round_node)
        workflow.add_node("handle_empty_response", self.empty_response_node)

        workflow.set_entry_point("check_mistakes")
        workflow.add_edge("check_mistakes", "await_resume")
        workflow.add_edge("await_resume", "build_request")
        workflow.add_edge("build_request", "stream_response")
        workflow.add_conditional_edges(
            "stream_response",
            self.route_after_stream,
            {
                "finalize": "finalize_round",
                "empty": "handle_empty_response",
            }
        )
        workflow.add_edge("finalize_round", END)
        workflow.add_edge("handle_empty_response", END)

        return workflow.compile()

    # Outer loop

    async def run(self, user_content: UserContent, include_file_details: bool = True) -> bool:
        """Run rounds until one ends the task; True means the loop ended"""

        task = self.task
        await task.emit(TaskEvent.TASK_STARTED, task.task_id)

        next_content = user_content
        while not task.abort:
            ended, next_content = await self.run_round(next_content, include_file_details)
            include_file_details = False
            if ended:
                task.phase = LoopPhase.ENDING
                return True
        return False

    async def run_round(self, user_content: UserContent, include_file_details: bool = False) -> Tuple[bool, UserContent]:
        task = self.task
        try:
            result = await self.graph.ainvoke({
                "user_content": list(user_content),
                "include_file_details": include_file_details,
                "ended": False,
            })
        except TaskAbortedError:
            logger.info("Round stopped after abort", task_id=task.task_id, instance_id=task.instance_id)
            return True, []
        except UserDeclinedError as e:
            logger.info("User declined to continue", task_id=task.task_id, reason=str(e))
            return True, []
        except Exception as e:
            logger.error("Round failed", task_id=task.task_id, instance_id=task.instance_id, error=str(e), exc_info=True)
            return True, []

        task.phase = LoopPhase.RECURSING
        return result.get("ended", False), result.get("next_user_content", [])

    # Graph nodes

    async def check_mistakes_node(self, state: RoundState) -> Dict[str, Any]:
        """Ask for guidance once the model keeps failing"""

        task = self.task
        self._ensure_running("check_mistakes")
        user_content = list(state["user_content"])

        if task.consecutive_mistake_limit > 0 and task.consecutive_mistake_count >= task.consecutive_mistake_limit:
            logger.warning("Mistake limit reached", task_id=task.task_id, count=task.consecutive_mistake_count)
            answer = await task.ask(
                AskKind.MISTAKE_LIMIT_REACHED,
                "This may indicate a failure in the model's thought process or inability to use a tool properly, "
                "which can be mitigated with some user guidance (e.g. \"Try breaking down the task into smaller steps\").",
            )
            if answer.response == AskResponse.MESSAGE_RESPONSE:
                await task.say(SayKind.USER_FEEDBACK, answer.text, answer.images)
                user_content.append(TextBlock(text=responses.too_many_mistakes(answer.text)))
                user_content.extend(responses.image_blocks(answer.images))
            task.consecutive_mistake_count = 0

        return {"user_content": user_content}

    async def await_resume_node(self, state: RoundState) -> Dict[str, Any]:
        """Wait for a running sub-task, then restore the mode we paused in"""

        task = self.task
        user_content = list(state["user_content"])

        if task.is_paused:
            logger.info("Waiting for sub-task", task_id=task.task_id)
            await task.wait_for_resume()
            self._ensure_running("await_resume")

            current_mode = task.orchestrator.mode
            if task.paused_mode_slug and current_mode != task.paused_mode_slug:
                await task.orchestrator.handle_mode_switch(task.paused_mode_slug)
                await task.sleep(task.settings.mode_switch_delay)
                logger.info("Restored mode after sub-task", task_id=task.task_id, mode=task.paused_mode_slug)

        user_content.extend(task.take_resume_content())
        return {"user_content": user_content}

    async def build_request_node(self, state: RoundState) -> Dict[str, Any]:
        """Resolve the user turn and record it in the model-facing log"""

        task = self.task
        task.phase = LoopPhase.BUILDING_REQUEST
        task.new_round()
        self.assistant_text = ""
        self.reasoning_text = ""
        self.interruption = None

        self.request_info = ApiRequestInfo(request=content_to_text(state["user_content"]) + "\n\nLoading...")
        self.api_req_message = await task.say(SayKind.API_REQ_STARTED, self._request_json())

        resolved = await task.environment.resolve_mentions(list(state["user_content"]))
        details = await task.environment.environment_details(task, state.get("include_file_details", False))
        final_content = resolved + [TextBlock(text=details)]

        await task.store.add_to_api(ApiMessage(role="user", content=final_content))

        self.request_info.request = content_to_text(final_content)
        await self._write_request_info()
        return {"user_content": final_content}

    async def stream_response_node(self, state: RoundState) -> Dict[str, Any]:
        """Consume the model stream while the presenter works through its blocks"""

        task = self.task
        round = task.round
        registry = task.tool_registry
        id_prefix = f"toolu_{self.api_req_message.ts}"

        task.phase = LoopPhase.STREAMING
        task.is_streaming = True
        task.did_finish_aborting_stream = False

        stream = self.attempt_api_request(round)
        try:
            async for chunk in stream:
                if isinstance(chunk, ReasoningChunk):
                    self.reasoning_text += chunk.text
                    await task.say(SayKind.REASONING, self.reasoning_text, partial=True)
                elif isinstance(chunk, UsageChunk):
                    self._add_usage(chunk)
                elif isinstance(chunk, TextChunk):
                    self.assistant_text += chunk.text
                    previous_count = len(round.blocks)
                    round.blocks = parse_assistant_message(
                        self.assistant_text, registry.tool_names(), registry.param_names(), id_prefix=id_prefix
                    )
                    if len(round.blocks) > previous_count:
                        round.ready = False
                    task.presenter.schedule(round)

                if task.abort:
                    if not task.abandoned:
                        await self.abort_stream(round, "user_cancelled")
                    break

                if round.did_reject_tool:
                    self.interruption = INTERRUPTED_BY_FEEDBACK
                    break

                if round.did_already_use_tool:
                    self.interruption = INTERRUPTED_BY_TOOL_USE
                    break
        except (TaskAbortedError, UserDeclinedError):
            raise
        except Exception as e:
            if not task.abandoned:
                cancel_reason = "user_cancelled" if task.abort else "streaming_failed"
                logger.error("Stream failed", task_id=task.task_id, cancel_reason=cancel_reason, error=str(e))
                await self.abort_stream(round, cancel_reason, str(e))
                if cancel_reason == "streaming_failed":
                    await task.abort_task()
                    await task.orchestrator.restart_from_history(task)
            raise TaskAbortedError(task.task_id, task.instance_id, "stream")
        finally:
            task.is_streaming = False
            await stream.aclose()

        if task.abort:
            if not task.abandoned and not task.did_finish_aborting_stream:
                await self.abort_stream(round, "user_cancelled")
            raise TaskAbortedError(task.task_id, task.instance_id, "stream")

        if self.reasoning_text:
            await task.say(SayKind.REASONING, self.reasoning_text, partial=False)

        # Whatever is still streaming is final now.
        round.did_complete_reading_stream = True
        for block in round.blocks:
            block.partial = False
        task.presenter.schedule(round)

        await self._write_request_info(final=True)

        task.phase = LoopPhase.PRESENTING
        await wait_for(lambda: round.ready or task.abort, interval=task.settings.ask_poll_interval)

        if task.abort:
            if not task.abandoned and not task.did_finish_aborting_stream:
                await self.abort_stream(round, "user_cancelled")
            raise TaskAbortedError(task.task_id, task.instance_id, "present")

        self._capture_completion()
        return {"outcome": "empty" if not self.assistant_text else "finalize"}

    def route_after_stream(self, state: RoundState) -> str:
        return state.get("outcome", "finalize")

    async def finalize_round_node(self, state: RoundState) -> Dict[str, Any]:
        """Persist the assistant turn and collect the next user turn"""

        task = self.task
        round = task.round

        await task.store.add_to_api(ApiMessage(role="assistant", content=assistant_content(round.blocks, self.interruption)))

        next_user_content = list(round.user_message_content)
        if not round.tool_was_used():
            next_user_content.append(TextBlock(text=responses.no_tools_used()))
            task.consecutive_mistake_count += 1

        return {"ended": False, "next_user_content": next_user_content}

    async def empty_response_node(self, state: RoundState) -> Dict[str, Any]:
        task = self.task
        logger.error("Empty model response", task_id=task.task_id)
        await task.say(SayKind.ERROR, EMPTY_RESPONSE_ERROR)
        await task.store.add_to_api(ApiMessage(role="assistant", content=[TextBlock(text=EMPTY_RESPONSE_TURN)]))
        return {"ended": True, "next_user_content": []}

    # Request attempts

    async def attempt_api_request(self, round: StreamingRound) -> AsyncIterator[ApiStreamChunk]:
        """Stream one request, retrying failures that happen before the first chunk"""

        task = self.task
        retry_attempt = 0

        while True:
            state = task.get_state()

            rate_limit_delay = task.rate_limiter.delay_seconds(state.rate_limit_seconds)
            if rate_limit_delay > 0 and retry_attempt == 0:
                await self._countdown(
                    rate_limit_delay,
                    lambda remaining: f"Rate limiting for {remaining} seconds...",
                    "Rate limiting complete",
                )
            task.rate_limiter.mark_request()

            system_prompt = await task.get_system_prompt()
            await self._manage_context(round, system_prompt)

            model = task.api_handler.get_model()
            history = repair_tool_pairs(get_messages_since_last_summary(task.store.api_messages))
            history = maybe_remove_image_blocks(history, model.info.supports_images)

            approval = await task.auto_approval.check_limits(
                state.auto_approval_enabled,
                state.allowed_max_requests,
                state.allowed_max_cost,
                task.store.ui_messages,
                lambda kind, text: task.ask(kind, text),
            )
            if not approval.should_proceed:
                raise UserDeclinedError(f"Auto-approval limit reached and user did not approve continuation ({approval.approval_type})")

            metadata: Dict[str, Any] = {"mode": task.mode, "task_id": task.task_id}
            if round.suppress_previous_response_id:
                metadata["suppress_previous_response_id"] = True
            else:
                previous_response_id = find_last_response_id(task.store.ui_messages)
                if previous_response_id:
                    metadata["previous_response_id"] = previous_response_id

            iterator = task.api_handler.create_message(system_prompt, history, metadata).__aiter__()
            try:
                first_chunk = await iterator.__anext__()
            except StopAsyncIteration:
                self.request_info.response_id = task.api_handler.last_response_id
                return
            except Exception as e:
                logger.warning("First chunk failed", task_id=task.task_id, attempt=retry_attempt, error=str(e))
                if state.auto_approval_enabled and state.always_approve_resubmit:
                    delay = max(
                        compute_backoff_seconds(state.request_delay_seconds, retry_attempt, extract_retry_after(e)),
                        rate_limit_delay,
                    )
                    attempt_label = retry_attempt + 1
                    await self._countdown(
                        delay,
                        lambda remaining: f"{e}\n\nRetry attempt {attempt_label}\nRetrying in {remaining} seconds...",
                        f"{e}\n\nRetry attempt {attempt_label}\nRetrying now...",
                    )
                    retry_attempt += 1
                    continue

                answer = await task.ask(AskKind.API_REQ_FAILED, str(e))
                if answer.response != AskResponse.YES_BUTTON_CLICKED:
                    raise UserDeclinedError("User declined to retry the failed request") from e
                await task.say(SayKind.API_REQ_RETRIED)
                retry_attempt = 0
                continue

            yield first_chunk
            async for chunk in iterator:
                yield chunk
            # No await between the handler finishing and this read.
            self.request_info.response_id = task.api_handler.last_response_id
            return

    async def _countdown(self, seconds: int, render, final_text: str) -> None:
        task = self.task
        for remaining in range(seconds, 0, -1):
            await task.say(SayKind.API_REQ_RETRY_DELAYED, render(remaining), partial=True)
            await task.sleep(1)
        await task.say(SayKind.API_REQ_RETRY_DELAYED, final_text, partial=False)

    async def _manage_context(self, round: StreamingRound, system_prompt: str) -> None:
        """Condense or truncate the history when the window is filling up"""

        task = self.task
        context_tokens = task.get_token_usage().context_tokens
        if not context_tokens:
            return

        state = task.get_state()
        model = task.api_handler.get_model()
        messages = task.store.api_messages

        result = await truncate_conversation_if_needed(
            messages,
            context_tokens,
            model.info.context_window,
            get_model_max_output_tokens(model.id, model.info, task.model_settings),
            task.api_handler,
            state.auto_condense_context,
            state.auto_condense_context_percent,
            system_prompt,
            task.task_id,
            custom_condensing_prompt=state.custom_condensing_prompt,
            condensing_api_handler=task.condensing_api_handler,
            profile_thresholds=state.profile_thresholds,
            current_profile_id=state.current_profile_id,
        )

        if result.messages is not messages:
            await task.store.overwrite_api(result.messages)

        if result.error:
            await task.say(SayKind.CONDENSE_CONTEXT_ERROR, result.error)
        elif result.summary:
            round.suppress_previous_response_id = True
            await task.say(
                SayKind.CONDENSE_CONTEXT,
                context_condense=ContextCondense(
                    prev_context_tokens=result.prev_context_tokens,
                    new_context_tokens=result.new_context_tokens or 0,
                    cost=result.cost,
                    summary=result.summary,
                ),
                is_non_interactive=True,
            )

    # Stream bookkeeping

    async def abort_stream(self, round: StreamingRound, cancel_reason: str, streaming_failed_message: Optional[str] = None) -> None:
        """Persist what streamed so far with an interruption note"""

        task = self.task
        logger.info("Aborting stream", task_id=task.task_id, cancel_reason=cancel_reason)

        try:
            await task.revert_edits()
        except Exception as e:
            logger.error("Failed to revert edits", task_id=task.task_id, error=str(e))

        if task.store.ui_messages and task.store.ui_messages[-1].partial:
            task.store.ui_messages[-1].partial = False

        self.request_info.cancel_reason = cancel_reason
        self.request_info.streaming_failed_message = streaming_failed_message
        await self._write_request_info(final=True)

        note = INTERRUPTED_BY_API_ERROR if cancel_reason == "streaming_failed" else INTERRUPTED_BY_USER
        await task.store.add_to_api(ApiMessage(role="assistant", content=assistant_content(round.blocks, note)))
        task.did_finish_aborting_stream = True

    def _add_usage(self, chunk: UsageChunk) -> None:
        info = self.request_info
        info.tokens_in += chunk.input_tokens
        info.tokens_out += chunk.output_tokens
        info.cache_writes += chunk.cache_write_tokens
        info.cache_reads += chunk.cache_read_tokens
        if chunk.total_cost is not None:
            info.cost = (info.cost or 0.0) + chunk.total_cost

    def _request_json(self) -> str:
        return self.request_info.model_dump_json(exclude_none=True)

    async def _write_request_info(self, final: bool = False) -> None:
        """Refresh the api_req_started entry; a final write always carries a cost"""

        message = self.api_req_message
        if message is None:
            return

        info = self.request_info
        if final and info.cost is None:
            info.cost = calculate_api_cost(
                self.task.api_handler.get_model().info,
                info.tokens_in,
                info.tokens_out,
                info.cache_writes,
                info.cache_reads,
            )
        message.text = self._request_json()
        await self.task.store.save_ui()
        await self.task.store.update_ui(message)

    def _capture_completion(self) -> None:
        info = self.request_info
        try:
            self.task.telemetry.capture_llm_completion(self.task.task_id, {
                "input_tokens": info.tokens_in,
                "output_tokens": info.tokens_out,
                "cache_write_tokens": info.cache_writes,
                "cache_read_tokens": info.cache_reads,
                "cost": info.cost,
            })
        except Exception as e:
            logger.error("Failed to capture completion telemetry", task_id=self.task.task_id, error=str(e))

    def _ensure_running(self, where: str) -> None:
        if self.task.abort:
            raise TaskAbortedError(self.task.task_id, self.task.instance_id, where)
