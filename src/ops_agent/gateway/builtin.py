"""In-process tools declared with Pydantic v2 argument models."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ops_agent.errors import ToolNotFoundError
from ops_agent.types import ToolDescriptor

Handler = Callable[[BaseModel], Awaitable[str] | str]


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: Handler
    tags: list[str] = Field(default_factory=list)

    async def invoke(self, payload: dict[str, Any]) -> str:
        data = self.args_schema.model_validate(payload)
        result = self.handler(data)
        if inspect.isawaitable(result):
            result = await result
        return result

    def descriptor(self) -> ToolDescriptor:
        schema = self.args_schema.model_json_schema()
        schema.pop("title", None)
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            input_schema=schema,
        )


class ToolRegistry:
    """Stores built-in tool specs and runs them by name."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        if "__" in spec.name:
            raise ValueError(f"Built-in tool names may not contain '__': {spec.name}")
        self._tools[spec.name] = spec

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def get(self, name: str) -> ToolSpec:
        spec = self._tools.get(name)
        if spec is None:
            raise ToolNotFoundError(f"Unknown tool: {name}")
        return spec

    async def execute(self, name: str, payload: dict[str, Any]) -> str:
        return await self.get(name).invoke(payload)

    def descriptors(self) -> list[ToolDescriptor]:
        return [spec.descriptor() for spec in self._tools.values()]
