"""Application wiring."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from ops_agent.agent.engine import ConversationEngine
from ops_agent.agent.tools import register_builtin_tools
from ops_agent.config import AppConfig
from ops_agent.gateway.builtin import ToolRegistry
from ops_agent.gateway.gateway import ToolEnablementStore, ToolGateway
from ops_agent.knowledge.retriever import KnowledgeRetriever
from ops_agent.llm.base import ChatModel
from ops_agent.memory.embedder import CachedEmbedder, Embedder, OpenAIEmbedder
from ops_agent.memory.fast_tier import TTLCache
from ops_agent.memory.manager import MemoryManager
from ops_agent.obs.tracing import SQLiteToolCallLog
from ops_agent.store.database import Database

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class AppContext:
    """Everything one running instance owns; built by `create`, released by `close`."""

    config: AppConfig
    database: Database
    fast: TTLCache
    gateway: ToolGateway
    memory: MemoryManager
    retriever: KnowledgeRetriever
    tool_log: SQLiteToolCallLog
    engine: ConversationEngine

    @classmethod
    async def create(
        cls,
        config: AppConfig,
        *,
        model: ChatModel | None = None,
        embedder: Embedder | None = None,
        gateway: ToolGateway | None = None,
        load_providers: bool = True,
    ) -> "AppContext":
        database = Database(config.database_path)
        await database.connect()
        try:
            return await cls._build(
                config,
                database,
                model=model,
                embedder=embedder,
                gateway=gateway,
                load_providers=load_providers,
            )
        except BaseException:
            await database.close()
            raise

    @classmethod
    async def _build(
        cls,
        config: AppConfig,
        database: Database,
        *,
        model: ChatModel | None,
        embedder: Embedder | None,
        gateway: ToolGateway | None,
        load_providers: bool,
    ) -> "AppContext":
        fast = TTLCache(default_ttl=config.cache.ttl_seconds)

        if embedder is None and config.llm.embedding_model:
            embedder = CachedEmbedder(
                OpenAIEmbedder(
                    config.llm.embedding_model,
                    api_key=config.llm.api_key,
                    base_url=config.llm.base_url,
                ),
                fast,
                ttl=config.cache.ttl_seconds,
            )

        memory = MemoryManager(
            database,
            fast,
            config=config.cache,
            embedder=embedder,
            history_limit=config.agent.history_limit,
        )
        retriever = KnowledgeRetriever(database, embedder=embedder, config=config.retrieval)

        if gateway is None:
            gateway = ToolGateway(ToolRegistry(), enablement=ToolEnablementStore(database))
        try:
            register_builtin_tools(gateway.builtin, retriever, memory)
            if load_providers and config.providers:
                await gateway.load_providers(config.providers)

            if model is None:
                from ops_agent.llm.langchain import LangChainChatModel

                model = LangChainChatModel.from_config(config.llm, config.agent)
        except BaseException:
            await gateway.close()
            raise

        tool_log = SQLiteToolCallLog(database)
        engine = ConversationEngine(
            model=model,
            gateway=gateway,
            memory=memory,
            retriever=retriever,
            tool_logger=tool_log,
            config=config.agent,
            retrieval_config=config.retrieval,
        )
        logger.info(
            "app_context_ready",
            providers=len(gateway.providers()),
            semantic_cache=memory.semantic_enabled,
        )
        return cls(
            config=config,
            database=database,
            fast=fast,
            gateway=gateway,
            memory=memory,
            retriever=retriever,
            tool_log=tool_log,
            engine=engine,
        )

    async def close(self) -> None:
        await self.gateway.close()
        await self.memory.drain()
        await self.database.close()
