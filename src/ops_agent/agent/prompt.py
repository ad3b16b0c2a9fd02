"""System prompt and message assembly."""

from __future__ import annotations

from collections.abc import Sequence

from ops_agent.types import ChatTurn, HistoryMessage, KnowledgeDocument, UserContext

_SYSTEM_PROMPT = """
You are an operations assistant. You help users inspect and manage cloud
resources, CI/CD jobs and related infrastructure.
""".strip()

_INSTRUCTIONS = """
When the user asks about live resources, call the matching tool to fetch
accurate data instead of guessing. Keep answers concise and format them with
Markdown.
""".strip()


def build_system_prompt(
    user_context: UserContext | None,
    documents: Sequence[KnowledgeDocument],
    *,
    excerpt_chars: int = 200,
) -> str:
    sections = [_SYSTEM_PROMPT]

    if user_context is not None and user_context.values:
        lines = [f"- {key}: {value}" for key, value in sorted(user_context.values.items())]
        sections.append("User context:\n" + "\n".join(lines))

    if documents:
        lines = [f"- {doc.title}: {doc.content[:excerpt_chars]}" for doc in documents]
        sections.append("Reference material:\n" + "\n".join(lines))

    sections.append(_INSTRUCTIONS)
    return "\n\n".join(sections)


def build_messages(
    system_prompt: str,
    history: Sequence[HistoryMessage],
    message: str,
) -> list[ChatTurn]:
    """System turn, prior turns in chronological order, then the new user turn."""

    turns = [ChatTurn(role="system", content=system_prompt)]
    for item in history:
        role = item.role if item.role in ("user", "assistant") else "user"
        turns.append(ChatTurn(role=role, content=item.content))
    turns.append(ChatTurn(role="user", content=message))
    return turns
