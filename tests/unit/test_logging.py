import asyncio

from ops_agent import __version__
from ops_agent.obs.logging import service_fields


def test_service_fields_stamp_every_event() -> None:
    add = service_fields("ops-agent-test")

    event = add(None, "info", {"event": "chat_completed"})

    assert event["service"] == "ops-agent-test"
    assert event["version"] == __version__
    assert "environment" in event


def test_service_fields_do_not_override_bound_values() -> None:
    add = service_fields("ops-agent-test")

    assert add(None, "info", {"event": "x", "service": "gateway"})["service"] == "gateway"


async def test_service_fields_reach_other_tasks() -> None:
    add = service_fields("ops-agent-test")

    async def _in_request_task() -> dict:
        return dict(add(None, "info", {"event": "tool_call_finished"}))

    event = await asyncio.create_task(_in_request_task())

    assert event["service"] == "ops-agent-test"
