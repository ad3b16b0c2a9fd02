"""Tool gateway: provider registry, tool catalog and call dispatch."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Iterable, Mapping
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any

import structlog
from pydantic import ValidationError

from ops_agent.config import ProviderConfig, validate_provider_name
from ops_agent.errors import (
    ProviderAlreadyRegisteredError,
    ProviderNotFoundError,
    ProviderRegistrationError,
    ToolCallError,
    ToolNotFoundError,
)
from ops_agent.gateway import transports
from ops_agent.gateway.builtin import ToolRegistry
from ops_agent.store.database import Database, utc_now
from ops_agent.types import ToolDescriptor

logger = structlog.get_logger(__name__)

SEPARATOR = "__"
EMPTY_RESULT = "(tool returned no output)"

Connector = Callable[[str, ProviderConfig], AbstractAsyncContextManager[Any]]


def qualify(provider: str | None, tool: str) -> str:
    return tool if provider is None else f"{provider}{SEPARATOR}{tool}"


@dataclass(slots=True)
class ProviderConnection:
    """A live provider session plus its cached catalog.

    The session is opened and closed by a dedicated holder task so that the
    transport's contexts are entered and exited in the same task.
    """

    name: str
    transport: str
    session: Any
    tools: tuple[ToolDescriptor, ...]
    timeout: float
    description: str = ""
    _closing: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _holder: asyncio.Task[None] | None = field(default=None, repr=False)

    def tool_names(self) -> set[str]:
        prefix = f"{self.name}{SEPARATOR}"
        return {tool.name[len(prefix):] for tool in self.tools}

    async def close(self) -> None:
        self._closing.set()
        if self._holder is not None:
            await asyncio.gather(self._holder, return_exceptions=True)


class ToolEnablementStore:
    """Per-tool enabled flags in the `tool_settings` table; absent means enabled."""

    def __init__(self, database: Database) -> None:
        self.db = database

    async def disabled(self) -> set[str]:
        rows = await self.db.fetch_all("SELECT name FROM tool_settings WHERE enabled = 0")
        return {row["name"] for row in rows}

    async def set_enabled(self, name: str, enabled: bool) -> None:
        await self.db.execute(
            "INSERT INTO tool_settings(name, enabled, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(name) DO UPDATE SET enabled = excluded.enabled, "
            "updated_at = excluded.updated_at",
            (name, int(enabled), utc_now()),
        )


class ToolGateway:
    """Registers tool providers and dispatches tool calls.

    Registration and unregistration hold `_lock` and publish a fresh read-only
    snapshot of the provider map. Lookups read whatever snapshot is current
    and never take the lock.
    """

    def __init__(
        self,
        builtin: ToolRegistry | None = None,
        *,
        enablement: ToolEnablementStore | None = None,
        connector: Connector = transports.connect,
    ) -> None:
        self.builtin = builtin or ToolRegistry()
        self.enablement = enablement
        self._connector = connector
        self._lock = asyncio.Lock()
        self._providers: Mapping[str, ProviderConnection] = MappingProxyType({})

    # -- registration ---------------------------------------------------------

    async def register(self, name: str, config: ProviderConfig) -> ProviderConnection:
        try:
            validate_provider_name(name)
        except ValueError as exc:
            raise ProviderRegistrationError(str(exc)) from exc

        async with self._lock:
            if name in self._providers:
                raise ProviderAlreadyRegisteredError(f"Provider already registered: {name}")
            connection = await self._open(name, config)
            self._publish({**self._providers, name: connection})

        logger.info(
            "provider_registered",
            provider=name,
            transport=connection.transport,
            tools=len(connection.tools),
        )
        return connection

    async def load_providers(self, configs: Mapping[str, ProviderConfig]) -> list[str]:
        """Register every active provider, skipping the ones that fail."""

        registered: list[str] = []
        for name, config in configs.items():
            if not config.is_active:
                logger.info("provider_skipped_inactive", provider=name)
                continue
            try:
                await self.register(name, config)
            except ProviderRegistrationError as exc:
                logger.error("provider_registration_failed", provider=name, error=str(exc))
                continue
            registered.append(name)
        return registered

    async def unregister(self, name: str) -> None:
        async with self._lock:
            connection = self._providers.get(name)
            if connection is None:
                raise ProviderNotFoundError(f"Provider not registered: {name}")
            remaining = dict(self._providers)
            del remaining[name]
            self._publish(remaining)
        await connection.close()
        logger.info("provider_unregistered", provider=name)

    async def close(self) -> None:
        async with self._lock:
            connections = list(self._providers.values())
            self._publish({})
        for connection in connections:
            await connection.close()

    async def refresh_tools(self, name: str) -> list[ToolDescriptor]:
        async with self._lock:
            connection = self._get_provider(name)
            try:
                listing = await asyncio.wait_for(
                    connection.session.list_tools(), timeout=connection.timeout
                )
            except Exception as exc:
                raise ProviderRegistrationError(
                    f"Provider {name}: tool refresh failed: {exc}"
                ) from exc
            refreshed = replace(connection, tools=_descriptors(name, listing.tools))
            self._publish({**self._providers, name: refreshed})
        logger.info("provider_tools_refreshed", provider=name, tools=len(refreshed.tools))
        return list(refreshed.tools)

    def _publish(self, providers: dict[str, ProviderConnection]) -> None:
        self._providers = MappingProxyType(providers)

    async def _open(self, name: str, config: ProviderConfig) -> ProviderConnection:
        loop = asyncio.get_running_loop()
        ready: asyncio.Future[tuple[Any, Any]] = loop.create_future()
        closing = asyncio.Event()

        async def _hold() -> None:
            try:
                async with self._connector(name, config) as session:
                    initialized = await session.initialize()
                    if not initialized:
                        raise ProviderRegistrationError(
                            f"Provider {name}: empty initialize response"
                        )
                    listing = await session.list_tools()
                    if not ready.done():
                        ready.set_result((session, listing.tools))
                    await closing.wait()
            except asyncio.CancelledError:
                if not ready.done():
                    ready.cancel()
                raise
            except Exception as exc:
                if not ready.done():
                    ready.set_exception(exc)
                else:
                    logger.warning("provider_connection_closed_with_error", provider=name, error=str(exc))

        holder = asyncio.create_task(_hold(), name=f"provider:{name}")
        try:
            session, tools = await asyncio.wait_for(asyncio.shield(ready), timeout=config.timeout)
        except BaseException as exc:
            closing.set()
            holder.cancel()
            await asyncio.gather(holder, return_exceptions=True)
            if isinstance(exc, asyncio.TimeoutError):
                raise ProviderRegistrationError(
                    f"Provider {name}: registration timed out after {config.timeout}s"
                ) from exc
            if isinstance(exc, ProviderRegistrationError):
                raise
            if isinstance(exc, Exception):
                raise ProviderRegistrationError(f"Provider {name}: {exc}") from exc
            raise

        return ProviderConnection(
            name=name,
            transport=config.transport,
            session=session,
            tools=_descriptors(name, tools),
            timeout=config.timeout,
            description=config.description,
            _closing=closing,
            _holder=holder,
        )

    # -- catalog --------------------------------------------------------------

    def _get_provider(self, name: str) -> ProviderConnection:
        connection = self._providers.get(name)
        if connection is None:
            raise ProviderNotFoundError(f"Provider not registered: {name}")
        return connection

    def providers(self) -> list[dict[str, Any]]:
        return [
            {
                "name": conn.name,
                "type": conn.transport,
                "tool_count": len(conn.tools),
                "description": conn.description,
            }
            for conn in self._providers.values()
        ]

    async def list_tools(self) -> list[ToolDescriptor]:
        disabled = await self._disabled()
        tools = list(self.builtin.descriptors())
        for connection in self._providers.values():
            tools.extend(connection.tools)
        return [replace(tool, enabled=tool.name not in disabled) for tool in tools]

    async def list_enabled_tools(self) -> list[ToolDescriptor]:
        return [tool for tool in await self.list_tools() if tool.enabled]

    async def set_tool_enabled(self, name: str, enabled: bool) -> None:
        if self.enablement is None:
            raise RuntimeError("No tool enablement store configured")
        if name not in {tool.name for tool in await self.list_tools()}:
            raise ToolNotFoundError(f"Unknown tool: {name}")
        await self.enablement.set_enabled(name, enabled)
        logger.info("tool_enablement_changed", tool=name, enabled=enabled)

    async def _disabled(self) -> set[str]:
        if self.enablement is None:
            return set()
        return await self.enablement.disabled()

    def resolve(self, qualified_name: str) -> tuple[str | None, str]:
        """Split a qualified tool name into `(provider, tool)`.

        Built-in tools resolve to `(None, name)`.
        """

        if qualified_name in self.builtin:
            return None, qualified_name
        provider, sep, tool = qualified_name.partition(SEPARATOR)
        if sep and tool and provider in self._providers:
            return provider, tool
        raise ToolNotFoundError(f"Unknown tool: {qualified_name}")

    # -- dispatch -------------------------------------------------------------

    async def call_tool(
        self, provider: str | None, tool: str, arguments: Mapping[str, Any] | str | None
    ) -> Any:
        """Invoke one tool and return its raw result.

        Built-in tools return text; provider tools return the MCP
        `CallToolResult`. Failures and timeouts raise `ToolCallError`.
        """

        payload = _parse_arguments(arguments)

        if provider is None:
            if tool not in self.builtin:
                raise ToolNotFoundError(f"Unknown tool: {tool}")
            try:
                return await self.builtin.execute(tool, payload)
            except ValidationError as exc:
                raise ToolCallError(f"Invalid arguments for {tool}: {exc}") from exc
            except Exception as exc:
                raise ToolCallError(f"{tool}: {exc}") from exc

        connection = self._get_provider(provider)
        if tool not in connection.tool_names():
            raise ToolNotFoundError(f"Unknown tool: {qualify(provider, tool)}")
        try:
            return await asyncio.wait_for(
                connection.session.call_tool(tool, payload), timeout=connection.timeout
            )
        except asyncio.TimeoutError as exc:
            raise ToolCallError(
                f"{qualify(provider, tool)} timed out after {connection.timeout}s"
            ) from exc
        except Exception as exc:
            raise ToolCallError(f"{qualify(provider, tool)}: {exc}") from exc

    async def execute(self, qualified_name: str, arguments: Mapping[str, Any] | str | None) -> str:
        """Resolve, call and render; an error result raises `ToolCallError`."""

        provider, tool = self.resolve(qualified_name)
        result = await self.call_tool(provider, tool, arguments)
        text = render_result(result)
        if getattr(result, "isError", False):
            raise ToolCallError(text)
        return text


def render_result(result: Any) -> str:
    """Flatten a tool result into text."""

    if isinstance(result, str):
        return result or EMPTY_RESULT

    parts: list[str] = []
    for item in getattr(result, "content", None) or []:
        kind = getattr(item, "type", None)
        if kind == "text":
            parts.append(item.text)
        elif kind == "image":
            parts.append(f"[image: {getattr(item, 'mimeType', 'unknown')}]")
        elif kind == "resource":
            resource = item.resource
            text = getattr(resource, "text", None)
            parts.append(text if text is not None else f"[resource: {resource.uri}]")
        else:
            parts.append(str(item))

    structured = getattr(result, "structuredContent", None)
    if not parts and structured:
        parts.append(json.dumps(structured, ensure_ascii=False))

    text = "\n".join(part for part in parts if part) or EMPTY_RESULT
    if getattr(result, "isError", False):
        return f"Tool returned an error: {text}"
    return text


def _descriptors(provider: str, tools: Iterable[Any]) -> tuple[ToolDescriptor, ...]:
    return tuple(
        ToolDescriptor(
            name=qualify(provider, tool.name),
            description=tool.description or "",
            input_schema=dict(tool.inputSchema or {}),
            provider=provider,
        )
        for tool in tools
    )


def _parse_arguments(arguments: Mapping[str, Any] | str | None) -> dict[str, Any]:
    if arguments is None or arguments == "":
        return {}
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError as exc:
            raise ToolCallError(f"Tool arguments are not valid JSON: {exc}") from exc
    if not isinstance(arguments, Mapping):
        raise ToolCallError("Tool arguments must be a JSON object")
    return dict(arguments)
