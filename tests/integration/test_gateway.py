import asyncio
from types import SimpleNamespace

import pytest
from pydantic import BaseModel

from ops_agent.config import ProviderConfig
from ops_agent.errors import (
    ProviderAlreadyRegisteredError,
    ProviderNotFoundError,
    ProviderRegistrationError,
    ToolCallError,
    ToolNotFoundError,
)
from ops_agent.gateway.builtin import ToolRegistry, ToolSpec
from ops_agent.gateway.gateway import ToolEnablementStore, ToolGateway, render_result
from ops_agent.store.database import Database

from fakes import FakeSession, fake_connector


class PingInput(BaseModel):
    host: str


def _builtin_registry() -> ToolRegistry:
    registry = ToolRegistry()

    async def _ping(data: PingInput) -> str:
        return f"pong {data.host}"

    registry.register(
        ToolSpec(name="ping", description="ping a host", args_schema=PingInput, handler=_ping)
    )
    return registry


def _gateway(sessions: dict[str, FakeSession], **kwargs) -> ToolGateway:
    return ToolGateway(_builtin_registry(), connector=fake_connector(sessions), **kwargs)


async def test_register_qualifies_provider_tools() -> None:
    sessions = {"aliyun": FakeSession({"list_ecs": "3 instances", "list_rds": "1 instance"})}
    gateway = _gateway(sessions)

    await gateway.register("aliyun", ProviderConfig(command="aliyun-mcp"))

    names = [tool.name for tool in await gateway.list_tools()]
    assert names == ["ping", "aliyun__list_ecs", "aliyun__list_rds"]
    assert gateway.resolve("aliyun__list_ecs") == ("aliyun", "list_ecs")
    assert gateway.resolve("ping") == (None, "ping")
    assert gateway.providers() == [
        {"name": "aliyun", "type": "stdio", "tool_count": 2, "description": ""}
    ]
    await gateway.close()
    assert sessions["aliyun"].closed


async def test_duplicate_registration_is_rejected() -> None:
    gateway = _gateway({"aliyun": FakeSession({"list_ecs": "ok"})})
    await gateway.register("aliyun", ProviderConfig(command="x"))

    with pytest.raises(ProviderAlreadyRegisteredError):
        await gateway.register("aliyun", ProviderConfig(command="x"))
    with pytest.raises(ValueError):
        await gateway.register("aliyun", ProviderConfig(command="x"))
    await gateway.close()


async def test_invalid_provider_name_is_rejected() -> None:
    gateway = _gateway({})

    with pytest.raises(ProviderRegistrationError):
        await gateway.register("bad__name", ProviderConfig(command="x"))


async def test_failed_handshake_does_not_block_other_providers() -> None:
    sessions = {
        "aliyun": FakeSession({"list_ecs": "ok"}),
        "tencent": FakeSession({"list_cvm": "ok"}, fail_initialize=True),
        "jenkins": FakeSession({"list_jobs": "ok"}),
    }
    gateway = _gateway(sessions)
    configs = {name: ProviderConfig(command=name) for name in sessions}

    registered = await gateway.load_providers(configs)

    assert registered == ["aliyun", "jenkins"]
    assert sessions["tencent"].closed
    names = {tool.name for tool in await gateway.list_tools()}
    assert {"aliyun__list_ecs", "jenkins__list_jobs"} <= names
    assert not any(name.startswith("tencent__") for name in names)
    await gateway.close()


async def test_inactive_providers_are_skipped() -> None:
    sessions = {"aliyun": FakeSession({"list_ecs": "ok"})}
    gateway = _gateway(sessions)

    assert await gateway.load_providers({"aliyun": ProviderConfig(command="x", isActive=False)}) == []
    assert gateway.providers() == []


async def test_registration_timeout_tears_down() -> None:
    class HangingSession(FakeSession):
        async def initialize(self):
            await asyncio.sleep(3600)

    sessions = {"slow": HangingSession({})}
    gateway = _gateway(sessions)

    with pytest.raises(ProviderRegistrationError):
        await gateway.register("slow", ProviderConfig(command="x", timeout=0.05))
    assert sessions["slow"].closed
    assert gateway.providers() == []


async def test_call_tool_dispatches_and_renders() -> None:
    sessions = {"aliyun": FakeSession({"list_ecs": "i-1\ni-2"})}
    gateway = _gateway(sessions)
    await gateway.register("aliyun", ProviderConfig(command="x"))

    assert await gateway.execute("aliyun__list_ecs", '{"region": "cn-hangzhou"}') == "i-1\ni-2"
    assert sessions["aliyun"].calls == [("list_ecs", {"region": "cn-hangzhou"})]
    assert await gateway.execute("ping", {"host": "db-1"}) == "pong db-1"
    await gateway.close()


async def test_call_tool_errors() -> None:
    sessions = {"aliyun": FakeSession({"list_ecs": "ok"}, call_delay=1.0)}
    gateway = _gateway(sessions)
    await gateway.register("aliyun", ProviderConfig(command="x", timeout=0.05))

    with pytest.raises(ToolCallError):
        await gateway.call_tool("aliyun", "list_ecs", {})
    with pytest.raises(ToolNotFoundError):
        await gateway.call_tool("aliyun", "drop_db", {})
    with pytest.raises(ProviderNotFoundError):
        await gateway.call_tool("tencent", "list_cvm", {})
    with pytest.raises(ToolCallError):
        await gateway.call_tool(None, "ping", {"wrong": 1})
    with pytest.raises(ToolCallError):
        await gateway.call_tool("aliyun", "list_ecs", "[1, 2]")
    with pytest.raises(ToolNotFoundError):
        gateway.resolve("tencent__list_cvm")
    await gateway.close()


async def test_unregister_removes_tools() -> None:
    sessions = {"aliyun": FakeSession({"list_ecs": "ok"})}
    gateway = _gateway(sessions)
    await gateway.register("aliyun", ProviderConfig(command="x"))

    await gateway.unregister("aliyun")

    assert [tool.name for tool in await gateway.list_tools()] == ["ping"]
    assert sessions["aliyun"].closed
    with pytest.raises(ProviderNotFoundError):
        await gateway.unregister("aliyun")


async def test_refresh_tools_picks_up_new_catalog() -> None:
    session = FakeSession({"list_ecs": "ok"})
    gateway = _gateway({"aliyun": session})
    await gateway.register("aliyun", ProviderConfig(command="x"))

    session.tools["list_slb"] = "ok"
    refreshed = await gateway.refresh_tools("aliyun")

    assert [tool.name for tool in refreshed] == ["aliyun__list_ecs", "aliyun__list_slb"]
    assert gateway.resolve("aliyun__list_slb") == ("aliyun", "list_slb")
    await gateway.close()


async def test_concurrent_calls_share_one_connection() -> None:
    session = FakeSession({"list_ecs": "ok"}, call_delay=0.05)
    gateway = _gateway({"aliyun": session})
    await gateway.register("aliyun", ProviderConfig(command="x"))

    results = await asyncio.gather(
        *(gateway.execute("aliyun__list_ecs", {}) for _ in range(5))
    )

    assert results == ["ok"] * 5
    assert len(session.calls) == 5
    await gateway.close()


async def test_disabled_tools_are_hidden_from_enabled_catalog(database: Database) -> None:
    sessions = {"aliyun": FakeSession({"list_ecs": "ok", "delete_ecs": "ok"})}
    gateway = _gateway(sessions, enablement=ToolEnablementStore(database))
    await gateway.register("aliyun", ProviderConfig(command="x"))

    await gateway.set_tool_enabled("aliyun__delete_ecs", False)

    enabled = [tool.name for tool in await gateway.list_enabled_tools()]
    assert "aliyun__delete_ecs" not in enabled
    assert "aliyun__list_ecs" in enabled
    flags = {tool.name: tool.enabled for tool in await gateway.list_tools()}
    assert flags["aliyun__delete_ecs"] is False

    with pytest.raises(ToolNotFoundError):
        await gateway.set_tool_enabled("aliyun__missing", False)
    await gateway.close()


def test_render_result_flattens_content() -> None:
    result = SimpleNamespace(
        content=[
            SimpleNamespace(type="text", text="line 1"),
            SimpleNamespace(type="image", mimeType="image/png"),
            SimpleNamespace(type="resource", resource=SimpleNamespace(text="doc body", uri="file://a")),
        ],
        isError=False,
        structuredContent=None,
    )

    assert render_result(result) == "line 1\n[image: image/png]\ndoc body"
    assert render_result(SimpleNamespace(content=[], isError=False)) == "(tool returned no output)"
    failed = SimpleNamespace(content=[SimpleNamespace(type="text", text="denied")], isError=True)
    assert render_result(failed) == "Tool returned an error: denied"
