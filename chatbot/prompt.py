"""
Prompt assembly from word blocks and conversation history.
"""

import re
from typing import Iterable

HISTORY_PLACEHOLDER = "{{historyChat}}"
NEW_MESSAGE_PLACEHOLDER = "{{newMessage}}"

_PLACEHOLDER_RE = re.compile(
    "|".join(re.escape(p) for p in (HISTORY_PLACEHOLDER, NEW_MESSAGE_PLACEHOLDER))
)


def format_history(messages: Iterable) -> str:
    """
    Render history rows as 'date;time;sender:message' lines.

    Accepts Message ORM objects or anything exposing message_date,
    message_time, sender_type and message attributes.
    """
    return "\n".join(
        f"{m.message_date};{m.message_time};{m.sender_type}:{m.message}"
        for m in messages
    )


def render_block(text: str, history: str, new_message: str) -> str:
    # Single pass so placeholder text inside the values is left alone
    values = {HISTORY_PLACEHOLDER: history, NEW_MESSAGE_PLACEHOLDER: new_message}
    return _PLACEHOLDER_RE.sub(lambda match: values[match.group(0)], text)


def build_prompt(blocks: Iterable, history: Iterable, new_message: str) -> str:
    """
    Concatenate block texts with newlines, substituting both placeholders.

    Args:
        blocks: Active word blocks, already in arrangement order
        history: Conversation messages, oldest first
        new_message: The message being answered

    Returns:
        The prompt sent to the AI model
    """
    formatted_history = format_history(history)
    return "\n".join(
        render_block(block.text, formatted_history, new_message)
        for block in blocks
    )
