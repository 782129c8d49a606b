"""Canned texts fed back to the model"""

from typing import List, Optional

from taskloop.domain.models.messages import ImageBlock, TextBlock

TOOL_USE_INSTRUCTIONS_REMINDER = """# Reminder: Instructions for Tool Use

Tool uses are formatted using XML-style tags. The tool name itself becomes the XML tag name. Each parameter is enclosed within its own set of tags. Here's the structure:

<actual_tool_name>
<parameter1_name>value1</parameter1_name>
<parameter2_name>value2</parameter2_name>
...
</actual_tool_name>

For example, to use the attempt_completion tool:

<attempt_completion>
<result>
I have completed the task...
</result>
</attempt_completion>

Always use the actual tool name as the XML tag name for proper parsing and execution."""


def tool_denied() -> str:
    return "The user denied this operation."


def tool_denied_with_feedback(feedback: Optional[str]) -> str:
    return f"The user denied this operation and provided the following feedback:\n<feedback>\n{feedback}\n</feedback>"


def tool_approved_with_feedback(feedback: Optional[str]) -> str:
    return f"The user approved this operation and provided the following context:\n<feedback>\n{feedback}\n</feedback>"


def tool_error(error: Optional[str]) -> str:
    return f"The tool execution failed with the following error:\n<error>\n{error}\n</error>"


def no_tools_used() -> str:
    return f"""[ERROR] You did not use a tool in your previous response! Please retry with a tool use.

{TOOL_USE_INSTRUCTIONS_REMINDER}

# Next Steps

If you have completed the user's task, use the attempt_completion tool.
If you require additional information from the user, use the ask_followup_question tool.
Otherwise, if you have not completed the task and do not need additional information, then proceed with the next step of the task.
(This is an automated message, so do not respond to it conversationally.)"""


def too_many_mistakes(feedback: Optional[str] = None) -> str:
    return f"You seem to be having trouble proceeding. The user has provided the following feedback to help guide you:\n<feedback>\n{feedback}\n</feedback>"


def missing_tool_parameter_error(param_name: str) -> str:
    return f"Missing value for required parameter '{param_name}'. Please retry with complete response.\n\n{TOOL_USE_INSTRUCTIONS_REMINDER}"


def tool_skipped_after_rejection(tool_name: str, partial: bool) -> str:
    if partial:
        return f"Tool {tool_name} was interrupted and not executed due to user rejecting a previous tool."
    return f"Skipping tool {tool_name} due to user rejecting a previous tool."


def tool_already_used(tool_name: str) -> str:
    return (
        f"Tool [{tool_name}] was not executed because a tool has already been used in this message. "
        "Only one tool may be used per message. You must assess the first tool's result before proceeding to use the next tool."
    )


def image_blocks(images: Optional[List[str]]) -> List[ImageBlock]:
    """Data URLs or bare base64 strings to image blocks"""

    blocks = []
    for image in images or []:
        media_type = "image/png"
        data = image
        if image.startswith("data:") and "," in image:
            header, data = image.split(",", 1)
            media_type = header[len("data:"):].split(";", 1)[0] or media_type
        blocks.append(ImageBlock(media_type=media_type, data=data))
    return blocks


def tool_result(text: str, images: Optional[List[str]] = None) -> List:
    return [TextBlock(text=text)] + image_blocks(images)
