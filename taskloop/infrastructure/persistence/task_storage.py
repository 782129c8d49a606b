from typing import Dict, List, Optional, Protocol
from pathlib import Path
import asyncio
import json
import structlog

from taskloop.domain.models.messages import ApiMessage, UIMessage, HistoryItem

logger = structlog.get_logger(__name__)

API_HISTORY_FILE = "api_conversation_history.json"
UI_MESSAGES_FILE = "ui_messages.json"
HISTORY_ITEM_FILE = "history_item.json"


class TaskStorage(Protocol):
    """Reads and writes the two message logs and task metadata"""

    async def load_api_messages(self, task_id: str) -> List[ApiMessage]: ...

    async def save_api_messages(self, task_id: str, messages: List[ApiMessage]) -> None: ...

    async def load_ui_messages(self, task_id: str) -> List[UIMessage]: ...

    async def save_ui_messages(self, task_id: str, messages: List[UIMessage]) -> None: ...

    async def save_history_item(self, item: HistoryItem) -> None: ...

    async def get_history_item(self, task_id: str) -> Optional[HistoryItem]: ...


class InMemoryTaskStorage:
    """Process-local storage, used by tests and the headless runner"""

    def __init__(self):
        self._api: Dict[str, List[ApiMessage]] = {}
        self._ui: Dict[str, List[UIMessage]] = {}
        self._history: Dict[str, HistoryItem] = {}

    async def load_api_messages(self, task_id: str) -> List[ApiMessage]:
        return [m.model_copy(deep=True) for m in self._api.get(task_id, [])]

    async def save_api_messages(self, task_id: str, messages: List[ApiMessage]) -> None:
        self._api[task_id] = [m.model_copy(deep=True) for m in messages]

    async def load_ui_messages(self, task_id: str) -> List[UIMessage]:
        return [m.model_copy(deep=True) for m in self._ui.get(task_id, [])]

    async def save_ui_messages(self, task_id: str, messages: List[UIMessage]) -> None:
        self._ui[task_id] = [m.model_copy(deep=True) for m in messages]

    async def save_history_item(self, item: HistoryItem) -> None:
        self._history[item.id] = item.model_copy()

    async def get_history_item(self, task_id: str) -> Optional[HistoryItem]:
        return self._history.get(task_id)


class FileTaskStorage:
    """One directory per task holding JSON files"""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)

    def _task_dir(self, task_id: str) -> Path:
        path = self.base_dir / "tasks" / task_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _write(self, path: Path, payload) -> None:
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)

    def _read(self, path: Path):
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    async def load_api_messages(self, task_id: str) -> List[ApiMessage]:
        data = await asyncio.to_thread(self._read, self._task_dir(task_id) / API_HISTORY_FILE)
        return [ApiMessage.model_validate(m) for m in data or []]

    async def save_api_messages(self, task_id: str, messages: List[ApiMessage]) -> None:
        payload = [m.model_dump(mode="json") for m in messages]
        await asyncio.to_thread(self._write, self._task_dir(task_id) / API_HISTORY_FILE, payload)

    async def load_ui_messages(self, task_id: str) -> List[UIMessage]:
        data = await asyncio.to_thread(self._read, self._task_dir(task_id) / UI_MESSAGES_FILE)
        return [UIMessage.model_validate(m) for m in data or []]

    async def save_ui_messages(self, task_id: str, messages: List[UIMessage]) -> None:
        payload = [m.model_dump(mode="json", exclude_none=True) for m in messages]
        await asyncio.to_thread(self._write, self._task_dir(task_id) / UI_MESSAGES_FILE, payload)

    async def save_history_item(self, item: HistoryItem) -> None:
        await asyncio.to_thread(self._write, self._task_dir(item.id) / HISTORY_ITEM_FILE, item.model_dump(mode="json"))

    async def get_history_item(self, task_id: str) -> Optional[HistoryItem]:
        data = await asyncio.to_thread(self._read, self._task_dir(task_id) / HISTORY_ITEM_FILE)
        if data is None:
            logger.warning("History item not found", task_id=task_id)
            return None
        return HistoryItem.model_validate(data)
