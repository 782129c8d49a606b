from typing import Callable, List, Optional
import asyncio
import time
import structlog

from taskloop.domain.common.events import EventEmitter, TaskEvent
from taskloop.domain.conversation.metrics import get_api_metrics
from taskloop.domain.models.messages import ApiMessage, UIMessage, HistoryItem, TokenUsage
from taskloop.infrastructure.observability.telemetry import TelemetrySink
from taskloop.infrastructure.persistence.task_storage import TaskStorage

logger = structlog.get_logger(__name__)

HistoryItemBuilder = Callable[[List[UIMessage], TokenUsage], Optional[HistoryItem]]


class ConversationStore:
    """Owns the model-facing and human-facing logs of one task.

    In-memory logs are updated before any await, so callers always observe
    their own writes. Persistence runs under a FIFO lock, which keeps writes
    in call order. A failed write is logged and never raised.
    """

    def __init__(
        self,
        task_id: str,
        storage: TaskStorage,
        emitter: EventEmitter,
        telemetry: TelemetrySink,
        history_item_builder: Optional[HistoryItemBuilder] = None,
    ):
        self.task_id = task_id
        self.storage = storage
        self.emitter = emitter
        self.telemetry = telemetry
        self.history_item_builder = history_item_builder
        self.api_messages: List[ApiMessage] = []
        self.ui_messages: List[UIMessage] = []
        self._lock = asyncio.Lock()
        self._last_ts = 0

    def next_ts(self) -> int:
        """Strictly increasing epoch milliseconds"""
        self._last_ts = max(int(time.time() * 1000), self._last_ts + 1)
        return self._last_ts

    async def load(self) -> None:
        self.api_messages = await self.storage.load_api_messages(self.task_id)
        self.ui_messages = await self.storage.load_ui_messages(self.task_id)
        known = [m.ts for m in self.ui_messages] + [m.ts or 0 for m in self.api_messages]
        self._last_ts = max(known, default=0)

    # Model-facing log

    async def add_to_api(self, message: ApiMessage) -> None:
        if message.ts is None:
            message.ts = self.next_ts()
        self.api_messages.append(message)
        await self.save_api()

    async def overwrite_api(self, messages: List[ApiMessage]) -> None:
        self.api_messages = list(messages)
        await self.save_api()

    async def save_api(self) -> None:
        async with self._lock:
            try:
                await self.storage.save_api_messages(self.task_id, self.api_messages)
            except Exception as e:
                logger.error("Failed to save API conversation history", task_id=self.task_id, error=str(e))

    # Human-facing log

    async def add_to_ui(self, message: UIMessage) -> None:
        self.ui_messages.append(message)
        await self.emitter.emit(TaskEvent.MESSAGE, {"action": "created", "message": message})
        await self.save_ui()
        if not message.partial:
            self._capture(message)

    async def update_ui(self, message: UIMessage) -> None:
        await self.emitter.emit(TaskEvent.MESSAGE, {"action": "updated", "message": message})
        if not message.partial:
            self._capture(message)

    async def overwrite_ui(self, messages: List[UIMessage]) -> None:
        self.ui_messages = list(messages)
        await self.save_ui()

    async def save_ui(self) -> None:
        async with self._lock:
            try:
                await self.storage.save_ui_messages(self.task_id, self.ui_messages)
                usage = get_api_metrics(self.ui_messages)
                await self.emitter.emit(TaskEvent.TASK_TOKEN_USAGE_UPDATED, self.task_id, usage)
                if self.history_item_builder is not None:
                    item = self.history_item_builder(self.ui_messages, usage)
                    if item is not None:
                        await self.storage.save_history_item(item)
            except Exception as e:
                logger.error("Failed to save UI messages", task_id=self.task_id, error=str(e))

    def find_last_ui_index(self, predicate: Callable[[UIMessage], bool]) -> int:
        for index in range(len(self.ui_messages) - 1, -1, -1):
            if predicate(self.ui_messages[index]):
                return index
        return -1

    def _capture(self, message: UIMessage) -> None:
        try:
            self.telemetry.capture_message(self.task_id, message)
        except Exception as e:
            logger.error("Failed to capture message telemetry", task_id=self.task_id, error=str(e))
