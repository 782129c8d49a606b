from typing import List

from taskloop.domain.tool.tool_registry import ToolDefinition


def _describe_tool(tool: ToolDefinition) -> str:
    lines = [f"## {tool.name}", f"Description: {tool.description}"]
    if tool.parameters:
        lines.append("Parameters:")
        for name, spec in tool.parameters.items():
            required = "required" if spec.required else "optional"
            lines.append(f"- {name}: ({required}) {spec.description}")
    usage = "\n".join(f"<{name}>value</{name}>" for name in tool.parameters)
    lines.append(f"Usage:\n<{tool.name}>\n{usage}\n</{tool.name}>" if usage else f"Usage:\n<{tool.name}>\n</{tool.name}>")
    return "\n".join(lines)


def build_system_prompt(mode: str, tools: List[ToolDefinition], custom_instructions: str = "") -> str:
    """System prompt for one request in the given mode"""

    sections = [
        "You are an autonomous agent that completes tasks step by step using tools.",
        "====\n\nTOOL USE\n\nYou have access to a set of tools that are executed upon the user's approval. "
        "You can use one tool per message, and will receive the result of that tool use in the user's response.",
        "# Tools\n\n" + "\n\n".join(_describe_tool(tool) for tool in tools),
        f"====\n\nMODE\n\nYou are currently in '{mode}' mode.",
        "====\n\nRULES\n\n"
        "- Use exactly one tool per message and wait for its result before continuing.\n"
        "- When the task is complete, use the attempt_completion tool to present the result.",
    ]
    if custom_instructions.strip():
        sections.append(f"====\n\nUSER'S CUSTOM INSTRUCTIONS\n\n{custom_instructions.strip()}")
    return "\n\n".join(sections)
