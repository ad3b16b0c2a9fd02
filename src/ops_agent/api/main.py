"""FastAPI entrypoint: streaming chat plus admin endpoints over the core."""

from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ops_agent import __version__
from ops_agent.config import AppConfig, ProviderConfig, load_config
from ops_agent.context import AppContext
from ops_agent.errors import (
    ProviderAlreadyRegisteredError,
    ProviderRegistrationError,
    RetrievalError,
)
from ops_agent.obs.logging import setup_logging
from ops_agent.types import ChatRequest, KnowledgeDocument

logger = structlog.get_logger(__name__)

ContextFactory = Callable[[AppConfig], Awaitable[AppContext]]


class ChatBody(BaseModel):
    username: str = Field(min_length=1)
    message: str = Field(min_length=1)
    conversation_id: int = Field(ge=0)
    source: str = "web"


class ToolEnabledBody(BaseModel):
    enabled: bool


class ProviderBody(BaseModel):
    name: str = Field(min_length=1)
    config: ProviderConfig


class DocumentBody(BaseModel):
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    category: str = ""
    doc_type: str = "manual"
    metadata: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True


class DocumentPatch(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    content: str | None = Field(default=None, min_length=1)
    category: str | None = None
    doc_type: str | None = None
    metadata: dict[str, str] | None = None
    enabled: bool | None = None


class SearchBody(BaseModel):
    query: str = Field(min_length=1)


def create_app(
    config: AppConfig | None = None,
    *,
    context_factory: ContextFactory | None = None,
) -> FastAPI:
    """Build the app; the context is created on startup and closed on shutdown."""

    config = config or load_config(os.getenv("OPS_AGENT_CONFIG"))
    factory = context_factory or AppContext.create

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(config.log_level, config.log_format)
        context = await factory(config)
        app.state.context = context
        try:
            yield
        finally:
            await context.close()

    app = FastAPI(title="Ops Agent", version=__version__, lifespan=lifespan)

    def _ctx(request: Request) -> AppContext:
        return request.app.state.context

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        ctx = _ctx(request)
        return {
            "status": "ok",
            "version": __version__,
            "providers": len(ctx.gateway.providers()),
            "semantic_cache": ctx.memory.semantic_enabled,
        }

    # -- chat -----------------------------------------------------------------

    @app.post("/chat")
    async def chat(body: ChatBody, request: Request) -> StreamingResponse:
        stream = _ctx(request).engine.chat_stream(_to_request(body))

        async def _events() -> AsyncIterator[str]:
            async for fragment in stream:
                yield f"data: {json.dumps({'content': fragment}, ensure_ascii=False)}\n\n"
            yield "data: [DONE]\n\n"

        return StreamingResponse(
            _events(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.post("/chat/complete")
    async def chat_complete(body: ChatBody, request: Request) -> dict[str, Any]:
        answer = await _ctx(request).engine.chat(_to_request(body))
        return {"answer": answer}

    # -- tools and providers --------------------------------------------------

    @app.get("/tools")
    async def tools(request: Request) -> dict[str, Any]:
        items = await _ctx(request).gateway.list_tools()
        return {"items": [asdict(tool) for tool in items]}

    @app.put("/tools/{name}/enabled")
    async def set_tool_enabled(name: str, body: ToolEnabledBody, request: Request) -> dict[str, Any]:
        try:
            await _ctx(request).gateway.set_tool_enabled(name, body.enabled)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=_detail(exc)) from exc
        return {"name": name, "enabled": body.enabled}

    @app.get("/providers")
    async def providers(request: Request) -> dict[str, Any]:
        return {"items": _ctx(request).gateway.providers()}

    @app.post("/providers", status_code=201)
    async def register_provider(body: ProviderBody, request: Request) -> dict[str, Any]:
        try:
            connection = await _ctx(request).gateway.register(body.name, body.config)
        except ProviderAlreadyRegisteredError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ProviderRegistrationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"name": connection.name, "tool_count": len(connection.tools)}

    @app.delete("/providers/{name}")
    async def unregister_provider(name: str, request: Request) -> dict[str, Any]:
        try:
            await _ctx(request).gateway.unregister(name)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=_detail(exc)) from exc
        return {"name": name, "removed": True}

    @app.post("/providers/{name}/refresh")
    async def refresh_provider(name: str, request: Request) -> dict[str, Any]:
        try:
            items = await _ctx(request).gateway.refresh_tools(name)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=_detail(exc)) from exc
        except ProviderRegistrationError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"name": name, "tool_count": len(items)}

    # -- knowledge ------------------------------------------------------------

    @app.get("/knowledge")
    async def list_documents(
        request: Request, category: str | None = None, enabled: bool | None = None
    ) -> dict[str, Any]:
        docs = await _ctx(request).retriever.list_documents(category=category, enabled=enabled)
        return {"items": [_document_json(doc) for doc in docs]}

    @app.post("/knowledge", status_code=201)
    async def add_document(body: DocumentBody, request: Request) -> dict[str, Any]:
        doc_id = await _ctx(request).retriever.add_document(
            body.title,
            body.content,
            category=body.category,
            doc_type=body.doc_type,
            metadata=body.metadata,
            enabled=body.enabled,
        )
        return {"id": doc_id}

    @app.get("/knowledge/stats")
    async def knowledge_stats(request: Request) -> dict[str, Any]:
        return await _ctx(request).retriever.stats()

    @app.post("/knowledge/search")
    async def search_knowledge(body: SearchBody, request: Request) -> dict[str, Any]:
        try:
            docs = await _ctx(request).retriever.retrieve(body.query)
        except RetrievalError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"items": [_document_json(doc) for doc in docs]}

    @app.get("/knowledge/{doc_id}")
    async def get_document(doc_id: int, request: Request) -> dict[str, Any]:
        try:
            doc = await _ctx(request).retriever.get_document(doc_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=_detail(exc)) from exc
        return _document_json(doc)

    @app.put("/knowledge/{doc_id}")
    async def update_document(doc_id: int, body: DocumentPatch, request: Request) -> dict[str, Any]:
        fields = body.model_dump(exclude_none=True)
        try:
            doc = await _ctx(request).retriever.update_document(doc_id, **fields)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=_detail(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _document_json(doc)

    @app.delete("/knowledge/{doc_id}")
    async def delete_document(doc_id: int, request: Request) -> dict[str, Any]:
        try:
            await _ctx(request).retriever.delete_document(doc_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=_detail(exc)) from exc
        return {"id": doc_id, "removed": True}

    # -- observability and cache maintenance ----------------------------------

    @app.get("/tool-calls")
    async def tool_calls(request: Request, limit: int = 20) -> dict[str, Any]:
        records = await _ctx(request).tool_log.list_recent(limit=limit)
        return {"items": [asdict(record) for record in records]}

    @app.get("/metrics")
    async def metrics(request: Request) -> dict[str, Any]:
        ctx = _ctx(request)
        return {
            "tool_calls": await ctx.tool_log.summary(),
            "cache": await ctx.memory.cache_stats(),
            "fast_tier": await ctx.fast.stats(),
        }

    @app.delete("/cache")
    async def clear_cache(
        request: Request, username: str | None = None, question_hash: str | None = None
    ) -> dict[str, Any]:
        deleted = await _ctx(request).memory.clear_cache(username, question_hash)
        return {"deleted": deleted}

    @app.delete("/cache/errors")
    async def clear_error_cache(request: Request) -> dict[str, Any]:
        deleted = await _ctx(request).memory.clear_error_cache()
        return {"deleted": deleted}

    return app


def _to_request(body: ChatBody) -> ChatRequest:
    return ChatRequest(
        username=body.username,
        message=body.message,
        conversation_id=body.conversation_id,
        source=body.source,
    )


def _document_json(doc: KnowledgeDocument) -> dict[str, Any]:
    data = asdict(doc)
    data.pop("embedding", None)
    return data


def _detail(exc: KeyError) -> str:
    return str(exc.args[0]) if exc.args else str(exc)
