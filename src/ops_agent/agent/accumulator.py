"""Assembles streamed tool-call fragments into complete calls."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from ops_agent.types import ToolCall, ToolCallDelta


@dataclass(slots=True)
class _Partial:
    id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)


class ToolCallAccumulator:
    """Merges fragments by positional index.

    The first non-empty id and name seen for an index win; argument fragments
    are concatenated in arrival order. Calls come out ordered by index.
    """

    def __init__(self) -> None:
        self._partials: dict[int, _Partial] = {}

    def add(self, deltas: Iterable[ToolCallDelta]) -> None:
        for delta in deltas:
            partial = self._partials.setdefault(delta.index, _Partial())
            if delta.id and not partial.id:
                partial.id = delta.id
            if delta.name and not partial.name:
                partial.name = delta.name
            if delta.arguments:
                partial.arguments.append(delta.arguments)

    def __bool__(self) -> bool:
        return bool(self._partials)

    def finalize(self) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for index in sorted(self._partials):
            partial = self._partials[index]
            if not partial.name:
                continue
            calls.append(
                ToolCall(
                    id=partial.id or f"call_{index}",
                    name=partial.name,
                    arguments="".join(partial.arguments),
                )
            )
        return calls
