"""MCP transport openers for the three provider kinds."""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import timedelta

import structlog
from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import Implementation

from ops_agent import __version__
from ops_agent.config import ProviderConfig
from ops_agent.errors import ProviderRegistrationError

logger = structlog.get_logger(__name__)

CLIENT_NAME = "ops-agent"
SSE_SETTLE_SECONDS = 0.5
STREAMABLE_HTTP_SETTLE_SECONDS = 1.0


async def open_session(
    name: str, config: ProviderConfig, stack: AsyncExitStack
) -> ClientSession:
    """Create the transport for `config` and an uninitialised client session.

    Every context entered here is pushed onto `stack`; closing the stack tears
    the connection down.
    """

    transport = config.transport
    if transport == "stdio":
        if not config.command:
            raise ProviderRegistrationError(f"Provider {name}: stdio transport needs a command")
        params = StdioServerParameters(
            command=config.command,
            args=list(config.args),
            env={**os.environ, **config.env},
        )
        read, write = await stack.enter_async_context(stdio_client(params))
    elif transport == "sse":
        if not config.base_url:
            raise ProviderRegistrationError(f"Provider {name}: sse transport needs baseUrl")
        read, write = await stack.enter_async_context(
            sse_client(config.base_url, headers=config.headers or None, sse_read_timeout=config.timeout)
        )
        await asyncio.sleep(SSE_SETTLE_SECONDS)
    elif transport == "streamable-http":
        if not config.base_url:
            raise ProviderRegistrationError(
                f"Provider {name}: streamable-http transport needs baseUrl"
            )
        read, write, _ = await stack.enter_async_context(
            streamablehttp_client(
                config.base_url,
                headers=config.headers or None,
                timeout=timedelta(seconds=config.timeout),
            )
        )
        await asyncio.sleep(STREAMABLE_HTTP_SETTLE_SECONDS)
    else:
        raise ProviderRegistrationError(f"Provider {name}: unsupported transport {transport!r}")

    logger.debug("provider_transport_open", provider=name, transport=transport)
    return await stack.enter_async_context(
        ClientSession(
            read,
            write,
            read_timeout_seconds=timedelta(seconds=config.timeout),
            client_info=Implementation(name=CLIENT_NAME, version=__version__),
        )
    )


@asynccontextmanager
async def connect(name: str, config: ProviderConfig) -> AsyncIterator[ClientSession]:
    """Yield an uninitialised session; leaving the context closes the transport."""
    async with AsyncExitStack() as stack:
        yield await open_session(name, config, stack)
