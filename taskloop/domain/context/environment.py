from typing import List, Optional, Protocol, TYPE_CHECKING
from datetime import datetime
from pathlib import Path
import asyncio

from taskloop.domain.models.task_state import UserContent

if TYPE_CHECKING:
    from taskloop.domain.orchestration.core.task import Task

MAX_LISTED_FILES = 200


class EnvironmentProvider(Protocol):
    """Resolves attachments and describes the environment for each request"""

    async def resolve_mentions(self, content: UserContent) -> UserContent: ...

    async def environment_details(self, task: "Task", include_file_details: bool) -> str: ...


class DefaultEnvironment:
    """Current time, mode and, on the first request, the workspace listing"""

    def __init__(self, workspace: Optional[str] = None):
        self.workspace = workspace

    async def resolve_mentions(self, content: UserContent) -> UserContent:
        return content

    async def environment_details(self, task: "Task", include_file_details: bool) -> str:
        sections = [
            f"# Current Time\n{datetime.now().astimezone().isoformat()}",
            f"# Current Mode\n<slug>{task.mode}</slug>",
        ]
        if include_file_details and self.workspace:
            files = await asyncio.to_thread(self._list_files)
            listing = "\n".join(files) if files else "(No files found)"
            sections.append(f"# Current Workspace Directory ({self.workspace}) Files\n{listing}")
        return "<environment_details>\n" + "\n\n".join(sections) + "\n</environment_details>"

    def _list_files(self) -> List[str]:
        root = Path(self.workspace)
        if not root.is_dir():
            return []
        entries = sorted(root.iterdir(), key=lambda p: (not p.is_dir(), p.name))
        return [p.name + ("/" if p.is_dir() else "") for p in entries[:MAX_LISTED_FILES]]
