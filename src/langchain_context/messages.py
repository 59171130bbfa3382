"""
Conversion between session messages and LangChain messages.

The model-facing view of a log is its effective history (live messages,
no truncation markers), optionally condensed: thinking/reasoning blocks
stripped from AI messages and tool results truncated to a character limit.
"""

from typing import Optional

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from .types import Message, Role

TRUNCATED_SUFFIX = "\n... (truncated)"


def content_text(content) -> str:
    """Flatten LangChain message content (str or content blocks) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                if block.get("type") in ("thinking", "reasoning"):
                    continue
                text = block.get("text") or ""
                if text:
                    parts.append(text)
        return "\n".join(parts)
    return str(content) if content else ""


def to_langchain(msg: Message) -> BaseMessage:
    if msg.role == Role.USER:
        return HumanMessage(content=msg.content, id=msg.id, name=msg.name)
    if msg.role == Role.ASSISTANT:
        return AIMessage(content=msg.content, id=msg.id, name=msg.name)
    if msg.role == Role.TOOL:
        return ToolMessage(
            content=msg.content,
            tool_call_id=msg.tool_call_id or "",
            name=msg.name,
            id=msg.id,
        )
    return SystemMessage(content=msg.content, id=msg.id)


def from_langchain(msg: BaseMessage, token_count: Optional[int] = None) -> Message:
    """
    Convert a LangChain message. Thinking blocks are dropped from list
    content; unknown message types become user messages.
    """
    kwargs = {}
    if msg.id:
        kwargs["id"] = msg.id

    if isinstance(msg, AIMessage):
        role = Role.ASSISTANT
    elif isinstance(msg, SystemMessage):
        role = Role.SYSTEM
    elif isinstance(msg, ToolMessage):
        role = Role.TOOL
        kwargs["tool_call_id"] = msg.tool_call_id
    else:
        role = Role.USER

    return Message(
        role=role,
        content=content_text(msg.content),
        token_count=token_count,
        name=getattr(msg, "name", None),
        **kwargs,
    )


def condense_message(msg: BaseMessage, max_tool_chars: int = 200) -> BaseMessage:
    """
    Create a condensed copy of a LangChain message.

    - HumanMessage / SystemMessage: kept as-is
    - AIMessage: strip thinking/reasoning blocks, keep text + tool_calls
    - ToolMessage: truncate content to max_tool_chars
    """
    if isinstance(msg, AIMessage):
        return _condense_ai_message(msg)
    if isinstance(msg, ToolMessage):
        return _condense_tool_message(msg, max_tool_chars)
    return msg


def _condense_ai_message(msg: AIMessage) -> AIMessage:
    if not isinstance(msg.content, list):
        return msg

    blocks = [
        block for block in msg.content
        if not (isinstance(block, dict) and block.get("type") in ("thinking", "reasoning"))
    ]
    return AIMessage(
        content=blocks,
        id=msg.id,
        tool_calls=msg.tool_calls,
        additional_kwargs=msg.additional_kwargs,
    )


def _condense_tool_message(msg: ToolMessage, max_chars: int) -> ToolMessage:
    content = str(msg.content) if msg.content else ""
    if len(content) <= max_chars:
        return msg

    return ToolMessage(
        content=content[:max_chars] + TRUNCATED_SUFFIX,
        tool_call_id=msg.tool_call_id,
        name=msg.name,
        id=msg.id,
    )


def to_langchain_messages(
    messages: list[Message],
    max_tool_chars: Optional[int] = None,
) -> list[BaseMessage]:
    """
    The log as the model should see it. Archived messages and truncation
    markers are left out; with ``max_tool_chars`` tool results are condensed.
    """
    converted = [
        to_langchain(m) for m in messages
        if m.is_live and not m.is_truncation_marker
    ]
    if max_tool_chars is None:
        return converted
    return [condense_message(m, max_tool_chars) for m in converted]


def from_langchain_messages(messages: list[BaseMessage]) -> list[Message]:
    return [from_langchain(m) for m in messages]
