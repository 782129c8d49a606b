from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING
from pydantic import BaseModel, Field

from taskloop.domain.models.task_state import ToolUseContent

if TYPE_CHECKING:
    from taskloop.domain.orchestration.core.task import Task
    from taskloop.domain.tool.tool_executor import ToolCallbacks

ToolHandler = Callable[["Task", ToolUseContent, "ToolCallbacks"], Awaitable[None]]


class ToolParameter(BaseModel):
    """One XML parameter of a tool"""
    description: str = ""
    required: bool = False


class ToolDefinition(BaseModel):
    """Tool metadata used for parsing, prompting and approval"""
    name: str
    description: str
    category: str = "general"
    parameters: Dict[str, ToolParameter] = Field(default_factory=dict)
    requires_approval: bool = Field(True, description="Ask the human before executing")
    modes: Optional[List[str]] = Field(None, description="Modes allowed to use the tool; None means all")


class ToolRegistry:
    """Registry for managing available tools"""

    def __init__(self):
        self.tools: Dict[str, ToolDefinition] = {}
        self.handlers: Dict[str, ToolHandler] = {}

    def register_tool(self, definition: ToolDefinition, handler: ToolHandler) -> None:
        """Register a new tool"""

        self.tools[definition.name] = definition
        self.handlers[definition.name] = handler

    def get_tool(self, name: str) -> Optional[ToolDefinition]:
        return self.tools.get(name)

    def get_handler(self, name: str) -> Optional[ToolHandler]:
        return self.handlers.get(name)

    def tools_for_mode(self, mode: str) -> List[ToolDefinition]:
        return [tool for tool in self.tools.values() if tool.modes is None or mode in tool.modes]

    def tool_names(self) -> List[str]:
        return list(self.tools)

    def param_names(self) -> List[str]:
        names = set()
        for tool in self.tools.values():
            names.update(tool.parameters)
        return sorted(names)

    def missing_parameters(self, name: str, params: Dict[str, Any]) -> List[str]:
        """Required parameters absent or empty in a tool call"""

        tool = self.tools.get(name)
        if tool is None:
            return []
        return [
            key for key, spec in tool.parameters.items()
            if spec.required and not str(params.get(key, "")).strip()
        ]
