from typing import Any, Dict, List, Optional, TYPE_CHECKING
import structlog

from taskloop.domain.common.errors import AskIgnoredError, TaskAbortedError
from taskloop.domain.common.events import TaskEvent
from taskloop.domain.common.waiting import wait_for
from taskloop.domain.models.messages import (
    AskKind, SayKind, AskResponse, AskResult, UIMessage, ContextCondense, BLOCKING_ASKS
)
from taskloop.domain.models.task_state import TaskActivity

if TYPE_CHECKING:
    from taskloop.domain.orchestration.core.task import Task

logger = structlog.get_logger(__name__)


class AskSayProtocol:
    """Coalesces streamed partial messages and implements the blocking ask.

    `last_message_ts` is the watermark of the newest interactive message.
    A pending ask whose timestamp no longer matches it has been superseded.
    """

    def __init__(self, task: "Task", poll_interval: float = 0.1):
        self.task = task
        self.store = task.store
        self.poll_interval = poll_interval
        self.last_message_ts: Optional[int] = None
        self._response: Optional[AskResult] = None

    def _ensure_running(self, where: str) -> None:
        if self.task.abort:
            raise TaskAbortedError(self.task.task_id, self.task.instance_id, where)

    def _last_partial(self, message_type: str, kind: Any) -> Optional[UIMessage]:
        if not self.store.ui_messages:
            return None
        last = self.store.ui_messages[-1]
        if not last.partial or last.type != message_type:
            return None
        current = last.ask if message_type == "ask" else last.say
        return last if current == kind else None

    def deliver_response(
        self,
        response: AskResponse,
        text: Optional[str] = None,
        images: Optional[List[str]] = None,
    ) -> None:
        """Answer the currently pending ask"""
        self._response = AskResult(response=response, text=text, images=images)

    async def ask(
        self,
        kind: AskKind,
        text: Optional[str] = None,
        partial: Optional[bool] = None,
        progress_status: Optional[Dict[str, Any]] = None,
    ) -> AskResult:
        self._ensure_running("ask")

        previous = self._last_partial("ask", kind)

        if partial:
            if previous is not None:
                previous.text = text
                previous.partial = True
                previous.progress_status = progress_status
                await self.store.update_ui(previous)
                raise AskIgnoredError("Current ask promise was ignored (#1)")

            ask_ts = self.store.next_ts()
            self.last_message_ts = ask_ts
            await self.store.add_to_ui(UIMessage(ts=ask_ts, type="ask", ask=kind, text=text, partial=True))
            raise AskIgnoredError("Current ask promise was ignored (#2)")

        self._response = None

        if partial is False and previous is not None:
            # Completing a partial keeps its timestamp.
            ask_ts = previous.ts
            self.last_message_ts = ask_ts
            previous.text = text
            previous.partial = False
            previous.progress_status = progress_status
            await self.store.save_ui()
            await self.store.update_ui(previous)
        else:
            ask_ts = self.store.next_ts()
            self.last_message_ts = ask_ts
            await self.store.add_to_ui(UIMessage(ts=ask_ts, type="ask", ask=kind, text=text))

        blocking = kind in BLOCKING_ASKS
        if blocking:
            self.task.blocking_ask = kind
            self.task.activity = TaskActivity.IDLE
            await self.task.emit(TaskEvent.TASK_IDLE, self.task.task_id)

        try:
            await wait_for(
                lambda: self._response is not None or self.last_message_ts != ask_ts or self.task.abort,
                interval=self.poll_interval,
            )
        finally:
            if blocking:
                self.task.blocking_ask = None
                self.task.activity = TaskActivity.ACTIVE
                if not self.task.abort:
                    await self.task.emit(TaskEvent.TASK_ACTIVE, self.task.task_id)

        self._ensure_running("ask")

        if self.last_message_ts != ask_ts:
            # A newer message arrived while waiting.
            raise AskIgnoredError("Current ask promise was ignored")

        result = self._response
        self._response = None
        logger.debug("Ask answered", kind=kind.value, response=result.response.value)
        return result

    async def say(
        self,
        kind: SayKind,
        text: Optional[str] = None,
        images: Optional[List[str]] = None,
        partial: Optional[bool] = None,
        checkpoint: Optional[Dict[str, Any]] = None,
        progress_status: Optional[Dict[str, Any]] = None,
        context_condense: Optional[ContextCondense] = None,
        metadata: Optional[Dict[str, Any]] = None,
        is_non_interactive: bool = False,
    ) -> UIMessage:
        self._ensure_running("say")

        if partial is None:
            say_ts = self.store.next_ts()
            if not is_non_interactive:
                self.last_message_ts = say_ts
            message = UIMessage(
                ts=say_ts,
                type="say",
                say=kind,
                text=text,
                images=images,
                checkpoint=checkpoint,
                context_condense=context_condense,
                metadata=metadata,
            )
            await self.store.add_to_ui(message)
            return message

        previous = self._last_partial("say", kind)

        if previous is not None:
            if not partial and not is_non_interactive:
                self.last_message_ts = previous.ts
            previous.text = text
            previous.images = images
            previous.partial = partial
            previous.progress_status = progress_status
            if not partial:
                await self.store.save_ui()
            await self.store.update_ui(previous)
            return previous

        say_ts = self.store.next_ts()
        if not is_non_interactive:
            self.last_message_ts = say_ts
        message = UIMessage(
            ts=say_ts,
            type="say",
            say=kind,
            text=text,
            images=images,
            partial=partial,
            metadata=metadata,
        )
        await self.store.add_to_ui(message)
        return message
