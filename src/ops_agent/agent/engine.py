"""Tool-augmented streaming conversation loop."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from ops_agent.agent.accumulator import ToolCallAccumulator
from ops_agent.agent.prompt import build_messages, build_system_prompt
from ops_agent.agent.stream import ChatStream
from ops_agent.config import AgentConfig, RetrievalConfig
from ops_agent.errors import OpsAgentError, RetrievalError, StoreError
from ops_agent.gateway.gateway import ToolGateway
from ops_agent.knowledge.retriever import KnowledgeRetriever
from ops_agent.llm.base import ChatModel
from ops_agent.memory.classify import CANCELLED_NOTICE, ITERATION_LIMIT_WARNING
from ops_agent.memory.manager import MemoryManager
from ops_agent.obs.tracing import Timer, ToolCallLogger
from ops_agent.types import ChatRequest, ChatTurn, KnowledgeDocument, ToolCall, ToolCallRecord

logger = structlog.get_logger(__name__)

Emit = Callable[[str], Awaitable[None]]

TOOL_CALL_NOTICE = "> 🔧 Calling tool: **{name}**\n"
TOOL_SUCCESS_NOTICE = "✅ Tool finished\n\n"
TOOL_FAILURE_NOTICE = "❌ Tool call failed: {error}\n\n"
LLM_FAILURE_NOTICE = "❌ LLM call failed: {error}"


class ConversationEngine:
    """Answers chat requests from the caches, or by driving the model/tool loop.

    Each request runs in its own task and owns its message list. The only
    state shared between requests lives in the gateway, memory and retriever.
    """

    def __init__(
        self,
        *,
        model: ChatModel,
        gateway: ToolGateway,
        memory: MemoryManager,
        retriever: KnowledgeRetriever | None = None,
        tool_logger: ToolCallLogger | None = None,
        config: AgentConfig | None = None,
        retrieval_config: RetrievalConfig | None = None,
    ) -> None:
        self.model = model
        self.gateway = gateway
        self.memory = memory
        self.retriever = retriever
        self.tool_logger = tool_logger
        self.config = config or AgentConfig()
        self.retrieval_config = retrieval_config or RetrievalConfig()

    def chat_stream(
        self, request: ChatRequest, cancel_event: asyncio.Event | None = None
    ) -> ChatStream:
        """Start answering `request` and return the stream of text fragments."""

        async def _produce(emit: Emit) -> None:
            await self._handle(request, emit)

        return ChatStream(_produce, cancel_event=cancel_event, cancelled_notice=CANCELLED_NOTICE)

    async def chat(self, request: ChatRequest) -> str:
        return await self.chat_stream(request).collect()

    async def _handle(self, request: ChatRequest, emit: Emit) -> None:
        with structlog.contextvars.bound_contextvars(
            username=request.username,
            conversation_id=request.conversation_id,
        ):
            try:
                await self._converse(request, emit)
            except asyncio.CancelledError:
                logger.info("chat_cancelled")
                await emit(CANCELLED_NOTICE)
                raise

    async def _converse(self, request: ChatRequest, emit: Emit) -> None:
        cached = await self._cached_answer(request)
        if cached is not None:
            await emit(cached)
            await self._save_history(request, cached)
            return

        messages = await self._assemble(request)
        with Timer() as timer:
            answer = await self._run_loop(request, messages, emit)
        logger.info("chat_completed", latency_ms=round(timer.elapsed_ms, 1), answer_chars=len(answer))

        await self._save_history(request, answer)
        await self._update_cache(request, answer)

    # -- states ---------------------------------------------------------------

    async def _cached_answer(self, request: ChatRequest) -> str | None:
        answer = await self.memory.get_semantic_cached_answer(request.username, request.message)
        if answer is not None:
            logger.info("semantic_cache_answered")
            return answer
        answer = await self.memory.get_cached_answer(request.username, request.message)
        if answer is not None:
            logger.info("qa_cache_answered")
        return answer

    async def _assemble(self, request: ChatRequest) -> list[ChatTurn]:
        history = await self.memory.get_conversation_history(
            request.conversation_id, self.config.history_limit
        )
        user_context = await self.memory.get_user_context(request.username)
        documents = await self._knowledge(request.message)
        system_prompt = build_system_prompt(
            user_context,
            documents,
            excerpt_chars=self.retrieval_config.excerpt_chars,
        )
        return build_messages(system_prompt, history, request.message)

    async def _knowledge(self, question: str) -> list[KnowledgeDocument]:
        if self.retriever is None:
            return []
        try:
            documents = await self.retriever.retrieve(question)
        except (RetrievalError, StoreError) as exc:
            logger.warning("knowledge_retrieval_failed", error=str(exc))
            return []
        return documents[: self.retrieval_config.max_results]

    async def _tool_definitions(self) -> list[dict[str, Any]]:
        try:
            tools = await self.gateway.list_enabled_tools()
        except OpsAgentError as exc:
            logger.warning("tool_catalog_unavailable", error=str(exc))
            return []
        return [tool.to_openai_tool() for tool in tools]

    async def _run_loop(
        self, request: ChatRequest, messages: list[ChatTurn], emit: Emit
    ) -> str:
        tools = await self._tool_definitions()
        answer: list[str] = []
        limit = self.config.max_iterations

        for iteration in range(1, limit + 1):
            logger.debug("model_iteration", iteration=iteration, max_iterations=limit)
            accumulator = ToolCallAccumulator()
            content: list[str] = []

            stream = self.model.stream_chat(messages, tools)
            try:
                async for delta in stream:
                    if delta.content:
                        content.append(delta.content)
                        answer.append(delta.content)
                        await emit(delta.content)
                    if delta.tool_calls:
                        accumulator.add(delta.tool_calls)
                    if delta.finish_reason:
                        break
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("llm_stream_failed", iteration=iteration, error=str(exc))
                failure = LLM_FAILURE_NOTICE.format(error=exc)
                await emit(failure)
                return failure
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()

            calls = accumulator.finalize()
            if not calls:
                return "".join(answer)

            if iteration == limit:
                warning = ITERATION_LIMIT_WARNING.format(limit=limit)
                logger.warning("iteration_limit_reached", max_iterations=limit, pending_calls=len(calls))
                await emit(("\n\n" if answer else "") + warning)
                return warning

            messages.append(
                ChatTurn(role="assistant", content="".join(content), tool_calls=tuple(calls))
            )
            await emit("\n\n")
            for call in calls:
                await emit(TOOL_CALL_NOTICE.format(name=call.name))
                try:
                    result = await self._dispatch(request, call)
                except OpsAgentError as exc:
                    error = _describe(exc)
                    await emit(TOOL_FAILURE_NOTICE.format(error=error))
                    result = f"Tool call failed: {error}"
                else:
                    await emit(TOOL_SUCCESS_NOTICE)
                messages.append(
                    ChatTurn(role="tool", content=result, tool_call_id=call.id, name=call.name)
                )

        return "".join(answer)

    async def _dispatch(self, request: ChatRequest, call: ToolCall) -> str:
        """Run one tool call and report it to the tool-call logger."""

        provider = "unknown"
        tool = call.name
        result = ""
        error: OpsAgentError | None = None
        with Timer() as timer:
            try:
                resolved, tool = self.gateway.resolve(call.name)
                provider = resolved or "builtin"
                result = await self.gateway.execute(call.name, call.arguments)
            except OpsAgentError as exc:
                error = exc

        logger.info(
            "tool_call_finished",
            tool=call.name,
            latency_ms=round(timer.elapsed_ms, 1),
            success=error is None,
        )
        if self.tool_logger is not None:
            await self.tool_logger.record(
                ToolCallRecord(
                    provider=provider,
                    tool=tool,
                    username=request.username,
                    source=request.source,
                    request=_request_payload(call.arguments),
                    response=result,
                    latency_ms=timer.elapsed_ms,
                    success=error is None,
                    error=None if error is None else _describe(error),
                    timestamp=datetime.now(timezone.utc),
                )
            )
        if error is not None:
            raise error
        return result

    # -- finalize -------------------------------------------------------------

    async def _save_history(self, request: ChatRequest, answer: str) -> None:
        try:
            await self.memory.save_message(
                request.conversation_id, "user", request.message, request.username
            )
            await self.memory.save_message(
                request.conversation_id, "assistant", answer, request.username
            )
        except StoreError as exc:
            logger.warning("history_save_failed", error=str(exc))

    async def _update_cache(self, request: ChatRequest, answer: str) -> None:
        try:
            await self.memory.update_qa_cache(request.username, request.message, answer)
        except StoreError as exc:
            logger.warning("qa_cache_update_failed", error=str(exc))


def _describe(exc: BaseException) -> str:
    if isinstance(exc, KeyError) and exc.args:
        return str(exc.args[0])
    return str(exc)


def _request_payload(arguments: str) -> dict[str, Any]:
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        return {"raw": arguments}
    return parsed if isinstance(parsed, dict) else {"value": parsed}
