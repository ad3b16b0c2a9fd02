"""LangChain chat model adapter."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Sequence
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from ops_agent.config import AgentConfig, LLMConfig
from ops_agent.types import ChatTurn, StreamDelta, ToolCallDelta


class LangChainChatModel:
    """Streams a LangChain chat model and converts chunks to `StreamDelta`s."""

    def __init__(self, llm: BaseChatModel) -> None:
        self.llm = llm

    @classmethod
    def from_config(
        cls, config: LLMConfig, agent_config: AgentConfig | None = None
    ) -> "LangChainChatModel":
        from langchain_openai import ChatOpenAI

        agent_config = agent_config or AgentConfig()
        return cls(
            ChatOpenAI(
                model=config.model,
                api_key=config.api_key,
                base_url=config.base_url,
                temperature=agent_config.temperature,
                streaming=True,
            )
        )

    async def stream_chat(
        self, messages: Sequence[ChatTurn], tools: Sequence[dict[str, Any]]
    ) -> AsyncIterator[StreamDelta]:
        runnable: Any = self.llm.bind_tools(list(tools)) if tools else self.llm
        async for chunk in runnable.astream(to_langchain_messages(messages)):
            yield chunk_to_delta(chunk)


def to_langchain_messages(messages: Sequence[ChatTurn]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for turn in messages:
        if turn.role == "system":
            converted.append(SystemMessage(content=turn.content))
        elif turn.role == "user":
            converted.append(HumanMessage(content=turn.content))
        elif turn.role == "assistant":
            converted.append(
                AIMessage(
                    content=turn.content,
                    tool_calls=[
                        {"id": call.id, "name": call.name, "args": _json_args(call.arguments)}
                        for call in turn.tool_calls
                    ],
                )
            )
        else:
            converted.append(
                ToolMessage(
                    content=turn.content,
                    tool_call_id=turn.tool_call_id or "",
                    name=turn.name,
                )
            )
    return converted


def chunk_to_delta(chunk: AIMessageChunk) -> StreamDelta:
    content = chunk.content if isinstance(chunk.content, str) else _flatten(chunk.content)
    deltas = [
        ToolCallDelta(
            index=part.get("index") if part.get("index") is not None else position,
            id=part.get("id"),
            name=part.get("name"),
            arguments=part.get("args") or "",
        )
        for position, part in enumerate(chunk.tool_call_chunks)
    ]
    finish_reason = (chunk.response_metadata or {}).get("finish_reason")
    return StreamDelta(content=content, tool_calls=deltas, finish_reason=finish_reason)


def _flatten(content: list[Any]) -> str:
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def _json_args(arguments: str) -> dict[str, Any]:
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
