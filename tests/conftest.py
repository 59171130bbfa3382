"""
Shared pytest setup: puts ``src`` on sys.path so tests import the package
without an install, and provides small message-building helpers.
"""

import sys
from pathlib import Path

import pytest

# 添加 src 目录到 PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from langchain_context.types import Message, Role  # noqa: E402


def make_conversation(count: int, tokens: int = 100, system: bool = False) -> list[Message]:
    """Alternating user/assistant messages with fixed token counts."""
    messages = []
    if system:
        messages.append(Message(Role.SYSTEM, "You are a helpful assistant.", token_count=tokens))
    for i in range(count):
        role = Role.USER if i % 2 == 0 else Role.ASSISTANT
        messages.append(Message(role, f"message {i}", token_count=tokens))
    return messages


@pytest.fixture
def conversation():
    return make_conversation
