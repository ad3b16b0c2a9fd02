"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

Role = Literal["system", "user", "assistant", "tool"]


@dataclass(frozen=True, slots=True)
class ToolCall:
    """A model-requested tool invocation with raw JSON arguments."""

    id: str
    name: str
    arguments: str = ""


@dataclass(frozen=True, slots=True)
class ChatTurn:
    """One message in a request's working message list."""

    role: Role
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None


@dataclass(slots=True)
class ToolCallDelta:
    """A streamed tool-call fragment, matched to its call by `index`."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass(slots=True)
class StreamDelta:
    """One item of an LLM response stream."""

    content: str = ""
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    finish_reason: str | None = None


@dataclass(slots=True)
class ToolDescriptor:
    """A tool as exposed to the model."""

    name: str
    description: str
    input_schema: dict[str, Any]
    provider: str | None = None
    enabled: bool = True

    def to_openai_tool(self) -> dict[str, Any]:
        schema = self.input_schema or {"type": "object", "properties": {}}
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": schema,
            },
        }


@dataclass(slots=True)
class HistoryMessage:
    """A persisted conversation turn."""

    role: Role
    content: str
    created_at: datetime


@dataclass(slots=True)
class UserContext:
    """Sparse per-user key/value context."""

    username: str
    values: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class CacheEntry:
    """A cached answer row from the durable tier."""

    id: int
    question_hash: str
    question: str
    answer: str
    username: str | None
    hit_count: int
    last_hit_at: datetime | None
    embedding: list[float] | None = None


@dataclass(slots=True)
class KnowledgeDocument:
    """A knowledge base document."""

    id: int
    title: str
    content: str
    category: str = ""
    doc_type: str = "manual"
    metadata: dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    embedding: list[float] | None = None
    score: float = 0.0


@dataclass(slots=True)
class ToolCallRecord:
    """Trace record for one tool invocation."""

    provider: str
    tool: str
    username: str
    source: str
    request: dict[str, Any]
    response: str
    latency_ms: float
    success: bool
    error: str | None = None
    timestamp: datetime | None = None


@dataclass(slots=True)
class ChatRequest:
    """One chat request entering the engine."""

    username: str
    message: str
    conversation_id: int
    source: str = "web"
