from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_core.messages.tool import tool_call_chunk

from ops_agent.agent.accumulator import ToolCallAccumulator
from ops_agent.llm.langchain import LangChainChatModel, chunk_to_delta, to_langchain_messages
from ops_agent.types import ChatTurn, ToolCall

LIST_ECS = {
    "type": "function",
    "function": {"name": "aliyun__list_ecs", "description": "", "parameters": {"type": "object"}},
}


def _tool_chunks() -> list[AIMessageChunk]:
    return [
        AIMessageChunk(
            content="",
            tool_call_chunks=[
                tool_call_chunk(name="aliyun__list_ecs", args='{"region": ', id="call_1", index=0)
            ],
        ),
        AIMessageChunk(
            content="",
            tool_call_chunks=[tool_call_chunk(name=None, args='"cn-hangzhou"}', id=None, index=0)],
        ),
        AIMessageChunk(content="", response_metadata={"finish_reason": "tool_calls"}),
    ]


class _BindingModel:
    """Records bound tools and replays prepared chunks."""

    def __init__(self, chunks: list[AIMessageChunk]) -> None:
        self.chunks = chunks
        self.bound: list[dict] | None = None
        self.received: list = []

    def bind_tools(self, tools: list[dict]) -> "_BindingModel":
        self.bound = tools
        return self

    async def astream(self, messages: list):
        self.received = messages
        for chunk in self.chunks:
            yield chunk


def test_split_tool_call_chunks_accumulate_into_one_call() -> None:
    deltas = [chunk_to_delta(chunk) for chunk in _tool_chunks()]
    accumulator = ToolCallAccumulator()
    for delta in deltas:
        accumulator.add(delta.tool_calls)

    assert [delta.tool_calls[0].index for delta in deltas[:2]] == [0, 0]
    assert deltas[-1].finish_reason == "tool_calls"
    assert accumulator.finalize() == [
        ToolCall(id="call_1", name="aliyun__list_ecs", arguments='{"region": "cn-hangzhou"}')
    ]


def test_content_blocks_are_flattened_to_text() -> None:
    chunk = AIMessageChunk(content=[{"type": "text", "text": "web-1 "}, "running"])

    delta = chunk_to_delta(chunk)

    assert delta.content == "web-1 running"
    assert delta.tool_calls == []
    assert delta.finish_reason is None


def test_assistant_and_tool_turns_convert_to_langchain_messages() -> None:
    turns = [
        ChatTurn(role="system", content="sys"),
        ChatTurn(role="user", content="list ECS"),
        ChatTurn(
            role="assistant",
            tool_calls=(ToolCall(id="call_1", name="aliyun__list_ecs", arguments='{"region": "cn"}'),),
        ),
        ChatTurn(role="tool", content="i-001", tool_call_id="call_1", name="aliyun__list_ecs"),
    ]

    system, user, assistant, tool = to_langchain_messages(turns)

    assert isinstance(system, SystemMessage)
    assert isinstance(user, HumanMessage)
    assert isinstance(assistant, AIMessage)
    assert assistant.tool_calls[0]["id"] == "call_1"
    assert assistant.tool_calls[0]["name"] == "aliyun__list_ecs"
    assert assistant.tool_calls[0]["args"] == {"region": "cn"}
    assert isinstance(tool, ToolMessage)
    assert tool.tool_call_id == "call_1"
    assert tool.content == "i-001"


def test_malformed_arguments_convert_to_empty_args() -> None:
    turn = ChatTurn(role="assistant", tool_calls=(ToolCall(id="c", name="t", arguments="{oops"),))

    [message] = to_langchain_messages([turn])

    assert message.tool_calls[0]["args"] == {}


async def test_stream_chat_binds_tools_and_yields_deltas() -> None:
    llm = _BindingModel(_tool_chunks())
    model = LangChainChatModel(llm)  # type: ignore[arg-type]

    deltas = [delta async for delta in model.stream_chat([ChatTurn(role="user", content="hi")], [LIST_ECS])]

    assert llm.bound == [LIST_ECS]
    assert isinstance(llm.received[0], HumanMessage)
    assert len(deltas) == 3
    assert deltas[-1].finish_reason == "tool_calls"


async def test_stream_chat_without_tools_streams_text() -> None:
    llm = GenericFakeChatModel(messages=iter([AIMessage(content="all instances running")]))
    model = LangChainChatModel(llm)

    deltas = [delta async for delta in model.stream_chat([ChatTurn(role="user", content="status")], [])]

    assert "".join(delta.content for delta in deltas) == "all instances running"
    assert all(delta.tool_calls == [] for delta in deltas)
