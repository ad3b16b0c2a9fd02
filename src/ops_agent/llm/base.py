"""Chat model interface consumed by the conversation engine."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Any, Protocol

from ops_agent.types import ChatTurn, StreamDelta


class ChatModel(Protocol):
    """Streaming chat completion with OpenAI-style function tools.

    Implementations raise on transport failure; the stream ends when the
    model finishes its turn.
    """

    def stream_chat(
        self, messages: Sequence[ChatTurn], tools: Sequence[dict[str, Any]]
    ) -> AsyncIterator[StreamDelta]: ...
