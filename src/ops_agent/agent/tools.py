"""Built-in tools exposed to the model alongside provider tools."""

from __future__ import annotations

from pydantic import BaseModel, Field

from ops_agent.gateway.builtin import ToolRegistry, ToolSpec
from ops_agent.knowledge.retriever import KnowledgeRetriever
from ops_agent.memory.manager import MemoryManager


class SearchKnowledgeInput(BaseModel):
    query: str = Field(min_length=1)


class GetUserContextInput(BaseModel):
    username: str = Field(min_length=1)


class SetUserContextInput(BaseModel):
    username: str = Field(min_length=1)
    key: str = Field(min_length=1, max_length=128)
    value: str = Field(max_length=2000)


def register_builtin_tools(
    registry: ToolRegistry,
    retriever: KnowledgeRetriever,
    memory: MemoryManager,
) -> None:
    """Register the default in-process tool set.

    Tools:
    - `search_knowledge`: hybrid knowledge-base search with document ids.
    - `get_user_context` / `set_user_context`: per-user preferences such as a
      default region or project.
    """

    async def _search(input_data: SearchKnowledgeInput) -> str:
        docs = await retriever.retrieve(input_data.query)
        if not docs:
            return "NO_RESULTS"
        lines = []
        for doc in docs:
            snippet = _truncate(doc.content.replace("\n", " "), 220)
            lines.append(f"[doc-{doc.id}] {doc.title}: {snippet}")
        return "\n".join(lines)

    async def _get_context(input_data: GetUserContextInput) -> str:
        context = await memory.get_user_context(input_data.username)
        if not context.values:
            return "NOT_FOUND"
        return "\n".join(f"{key}: {value}" for key, value in sorted(context.values.items()))

    async def _set_context(input_data: SetUserContextInput) -> str:
        await memory.update_user_context(input_data.username, input_data.key, input_data.value)
        return "OK"

    registry.register(
        ToolSpec(
            name="search_knowledge",
            description="Search the operations knowledge base and return matching documents.",
            args_schema=SearchKnowledgeInput,
            handler=_search,
            tags=["knowledge"],
        )
    )
    registry.register(
        ToolSpec(
            name="get_user_context",
            description="Read the stored preferences of a user.",
            args_schema=GetUserContextInput,
            handler=_get_context,
            tags=["memory"],
        )
    )
    registry.register(
        ToolSpec(
            name="set_user_context",
            description="Remember a preference (key/value) for a user.",
            args_schema=SetUserContextInput,
            handler=_set_context,
            tags=["memory"],
        )
    )


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
