"""Two-tier memory: conversation history, user context and answer caches."""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from ops_agent.config import CacheConfig
from ops_agent.errors import StoreError
from ops_agent.memory.classify import ErrorResponseClassifier
from ops_agent.memory.embedder import Embedder, cosine_similarity
from ops_agent.memory.fast_tier import TTLCache
from ops_agent.store.database import (
    Database,
    json_to_vector,
    parse_timestamp,
    utc_now,
    vector_to_json,
)
from ops_agent.types import CacheEntry, HistoryMessage, UserContext

logger = structlog.get_logger(__name__)

_GLOBAL_SCOPE = "*"


def question_hash(question: str) -> str:
    """First 8 bytes of the SHA-256 digest of the raw question, hex-encoded."""
    return hashlib.sha256(question.encode("utf-8")).digest()[:8].hex()


@dataclass(slots=True)
class _Candidate:
    id: int
    question: str
    answer: str
    embedding: list[float]


class MemoryManager:
    """Reads try the fast tier first and refill it from SQLite on a miss.

    Lookups never raise: store failures are logged and reported as misses.
    Writes go to the durable tier first and raise `StoreError` on failure,
    then update the fast tier.
    """

    def __init__(
        self,
        database: Database,
        fast: TTLCache | None = None,
        *,
        config: CacheConfig | None = None,
        embedder: Embedder | None = None,
        classifier: Callable[[str], bool] | None = None,
        history_limit: int = 10,
    ) -> None:
        self.db = database
        self.config = config or CacheConfig()
        self.fast = fast or TTLCache(default_ttl=self.config.ttl_seconds)
        self.embedder = embedder
        self.is_error_response = classifier or ErrorResponseClassifier()
        self.history_limit = history_limit
        self._background: set[asyncio.Task[Any]] = set()
        self._hits = 0
        self._misses = 0

    @property
    def semantic_enabled(self) -> bool:
        return self.config.semantic_enabled and self.embedder is not None

    # -- conversation history -------------------------------------------------

    async def get_conversation_history(
        self, conversation_id: int, limit: int | None = None
    ) -> list[HistoryMessage]:
        limit = self.history_limit if limit is None else limit
        if limit <= 0:
            return []
        key = _history_key(conversation_id)

        cached = await self.fast.get_list(key)
        if cached:
            logger.debug("history_fast_hit", conversation_id=conversation_id)
            return [_history_from_dict(item) for item in cached[-limit:]]

        try:
            rows = await self.db.fetch_all(
                "SELECT role, content, created_at FROM chat_logs "
                "WHERE conversation_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                (conversation_id, limit),
            )
        except StoreError as exc:
            logger.warning("history_load_failed", conversation_id=conversation_id, error=str(exc))
            return []

        history = [
            HistoryMessage(
                role=row["role"],
                content=row["content"],
                created_at=parse_timestamp(row["created_at"]) or datetime.min,
            )
            for row in reversed(rows)
        ]
        if history:
            await self.fast.set_list(key, [_history_to_dict(msg) for msg in history])
        return history

    async def save_message(
        self, conversation_id: int, role: str, content: str, username: str | None
    ) -> None:
        created_at = utc_now()
        await self.db.insert(
            "INSERT INTO chat_logs(conversation_id, role, content, username, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (conversation_id, role, content, username, created_at),
        )
        await self.fast.append(
            _history_key(conversation_id),
            {"role": role, "content": content, "created_at": created_at},
            max_length=self.history_limit,
            create=False,
        )

    # -- user context ---------------------------------------------------------

    async def get_user_context(self, username: str) -> UserContext:
        key = _user_context_key(username)
        cached = await self.fast.get(key)
        if cached:
            return UserContext(username=username, values=dict(cached))

        try:
            rows = await self.db.fetch_all(
                "SELECT context_key, context_value FROM user_contexts WHERE username = ?",
                (username,),
            )
        except StoreError as exc:
            logger.warning("user_context_load_failed", username=username, error=str(exc))
            return UserContext(username=username)

        values = {row["context_key"]: row["context_value"] for row in rows}
        if values:
            await self.fast.update_mapping(key, values)
        return UserContext(username=username, values=values)

    async def update_user_context(self, username: str, key: str, value: str) -> None:
        await self.db.execute(
            "INSERT INTO user_contexts(username, context_key, context_value, updated_at) "
            "VALUES (?, ?, ?, ?) ON CONFLICT(username, context_key) "
            "DO UPDATE SET context_value = excluded.context_value, updated_at = excluded.updated_at",
            (username, key, value, utc_now()),
        )
        await self.fast.delete(_user_context_key(username))

    # -- exact cache ----------------------------------------------------------

    async def get_cached_answer(self, username: str | None, question: str) -> str | None:
        """Exact-match lookup.

        The fast tier checks the user's own entry before the global one, so a
        user-scoped answer shadows a global answer until its TTL lapses. The
        durable tier, consulted on a fast miss, prefers the entry with more
        hits regardless of scope and refills the fast tier with it.
        """

        digest = question_hash(question)

        for scope in _scopes(username):
            cached = await self.fast.get(_qa_key(scope, digest))
            if cached is not None:
                logger.debug("qa_cache_fast_hit", question_hash=digest)
                self._record_hit(cached["id"])
                return cached["answer"]

        try:
            row = await self.db.fetch_one(
                "SELECT id, answer, username FROM qa_cache "
                "WHERE question_hash = ? AND (username = ? OR username IS NULL) "
                "ORDER BY hit_count DESC, id ASC LIMIT 1",
                (digest, username),
            )
        except StoreError as exc:
            logger.warning("qa_cache_lookup_failed", error=str(exc))
            return None

        if row is None:
            self._misses += 1
            return None

        self._record_hit(row["id"])
        await self.fast.set(
            _qa_key(row["username"] or _GLOBAL_SCOPE, digest),
            {"id": row["id"], "answer": row["answer"]},
        )
        return row["answer"]

    # -- semantic cache -------------------------------------------------------

    async def get_semantic_cached_answer(
        self, username: str | None, question: str
    ) -> str | None:
        embedder = self.embedder
        if embedder is None or not self.config.semantic_enabled:
            return None

        try:
            query_vector = await embedder.embed(question)
        except Exception as exc:
            logger.warning("semantic_cache_embedding_failed", error=str(exc))
            return None

        candidates = await self._load_candidates(username)
        best: _Candidate | None = None
        best_score = 0.0
        for candidate in candidates:
            if len(candidate.embedding) != len(query_vector):
                continue
            score = cosine_similarity(query_vector, candidate.embedding)
            if score < self.config.similarity_threshold:
                continue
            if best is None or score > best_score:
                best, best_score = candidate, score

        if best is None:
            return None

        logger.info(
            "semantic_cache_hit",
            similarity=round(best_score, 3),
            cached_question=_preview(best.question),
        )
        self._record_hit(best.id)
        return best.answer

    async def _load_candidates(self, username: str | None) -> list[_Candidate]:
        key = _semantic_key(username)
        cached = await self.fast.get_list(key)
        if cached:
            return cached

        try:
            rows = await self.db.fetch_all(
                "SELECT id, question, answer, embedding FROM qa_cache "
                "WHERE embedding IS NOT NULL AND embedding != '' "
                "AND (username = ? OR username IS NULL OR username = '') "
                "ORDER BY hit_count DESC, updated_at DESC LIMIT ?",
                (username, self.config.max_candidates),
            )
        except StoreError as exc:
            logger.warning("semantic_candidates_load_failed", error=str(exc))
            return []

        candidates: list[_Candidate] = []
        for row in rows:
            vector = json_to_vector(row["embedding"])
            if not vector:
                continue
            candidates.append(
                _Candidate(
                    id=row["id"],
                    question=row["question"],
                    answer=row["answer"],
                    embedding=vector,
                )
            )
        if candidates:
            await self.fast.set_list(key, candidates)
        return candidates

    # -- cache writes ---------------------------------------------------------

    def is_cacheable(self, answer: str) -> bool:
        """Error-classified and too-short answers are never cached."""
        if self.is_error_response(answer):
            return False
        return len(answer) >= self.config.min_answer_length

    async def update_qa_cache(self, username: str | None, question: str, answer: str) -> bool:
        """Store an answer; returns False when the answer is not cacheable."""

        if not self.is_cacheable(answer):
            logger.debug("qa_cache_skip_uncacheable", length=len(answer))
            return False

        digest = question_hash(question)
        embedding: list[float] | None = None
        embedding_model: str | None = None
        embedder = self.embedder
        if embedder is not None and self.config.semantic_enabled:
            try:
                embedding = await embedder.embed(question)
                embedding_model = embedder.model
            except Exception as exc:
                logger.warning("qa_cache_embedding_failed", error=str(exc))

        now = utc_now()
        updated = await self.db.execute(
            "UPDATE qa_cache SET answer = ?, updated_at = ?, "
            "embedding = COALESCE(?, embedding), embedding_model = COALESCE(?, embedding_model) "
            "WHERE question_hash = ? AND username IS ?",
            (answer, now, vector_to_json(embedding), embedding_model, digest, username),
        )
        if updated:
            row = await self.db.fetch_one(
                "SELECT id FROM qa_cache WHERE question_hash = ? AND username IS ?",
                (digest, username),
            )
            entry_id = row["id"] if row is not None else 0
        else:
            entry_id = await self.db.insert(
                "INSERT INTO qa_cache(question_hash, question, answer, username, hit_count, "
                "last_hit_at, embedding, embedding_model, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?, ?)",
                (
                    digest,
                    question,
                    answer,
                    username,
                    now,
                    vector_to_json(embedding),
                    embedding_model,
                    now,
                    now,
                ),
            )

        await self.fast.set(
            _qa_key(username or _GLOBAL_SCOPE, digest), {"id": entry_id, "answer": answer}
        )
        if embedding is not None:
            await self.fast.delete_prefix("qa:semantic:")
        logger.debug("qa_cache_saved", question_hash=digest, semantic=embedding is not None)
        return True

    async def get_cache_entries(self, username: str | None = None) -> list[CacheEntry]:
        sql = (
            "SELECT id, question_hash, question, answer, username, hit_count, last_hit_at, "
            "embedding FROM qa_cache"
        )
        params: tuple[Any, ...] = ()
        if username is not None:
            sql += " WHERE username = ?"
            params = (username,)
        rows = await self.db.fetch_all(sql + " ORDER BY hit_count DESC, id ASC", params)
        return [
            CacheEntry(
                id=row["id"],
                question_hash=row["question_hash"],
                question=row["question"],
                answer=row["answer"],
                username=row["username"],
                hit_count=row["hit_count"],
                last_hit_at=parse_timestamp(row["last_hit_at"]),
                embedding=json_to_vector(row["embedding"]),
            )
            for row in rows
        ]

    async def clear_cache(
        self, username: str | None = None, question_hash: str | None = None
    ) -> int:
        clauses: list[str] = []
        params: list[Any] = []
        if username:
            clauses.append("username = ?")
            params.append(username)
        if question_hash:
            clauses.append("question_hash = ?")
            params.append(question_hash)
        sql = "DELETE FROM qa_cache"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        deleted = await self.db.execute(sql, params)
        await self.fast.delete_prefix("qa:")
        logger.info("qa_cache_cleared", username=username, question_hash=question_hash, deleted=deleted)
        return deleted

    async def clear_error_cache(self) -> int:
        rows = await self.db.fetch_all("SELECT id, answer FROM qa_cache")
        doomed = [row["id"] for row in rows if self.is_error_response(row["answer"])]
        if doomed:
            await self.db.execute_many(
                ("DELETE FROM qa_cache WHERE id = ?", (entry_id,)) for entry_id in doomed
            )
            await self.fast.delete_prefix("qa:")
        logger.info("qa_error_cache_cleared", deleted=len(doomed))
        return len(doomed)

    async def cache_stats(self) -> dict[str, float | int]:
        row = await self.db.fetch_one(
            "SELECT COUNT(*) AS entries, COALESCE(SUM(hit_count - 1), 0) AS stored_hits, "
            "COALESCE(SUM(CASE WHEN embedding IS NOT NULL AND embedding != '' THEN 1 ELSE 0 END), 0) "
            "AS semantic_entries FROM qa_cache"
        )
        lookups = self._hits + self._misses
        return {
            "entries": row["entries"] if row else 0,
            "semantic_entries": row["semantic_entries"] if row else 0,
            "stored_hits": row["stored_hits"] if row else 0,
            "session_hits": self._hits,
            "session_misses": self._misses,
            "hit_rate": (self._hits / lookups) if lookups else 0.0,
        }

    # -- background hit accounting --------------------------------------------

    def _record_hit(self, entry_id: int) -> None:
        self._hits += 1
        self._spawn(self._increment_hit(entry_id))

    async def _increment_hit(self, entry_id: int) -> None:
        try:
            await self.db.execute(
                "UPDATE qa_cache SET hit_count = hit_count + 1, last_hit_at = ? WHERE id = ?",
                (utc_now(), entry_id),
            )
        except StoreError as exc:
            logger.warning("qa_cache_hit_update_failed", entry_id=entry_id, error=str(exc))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for pending background hit updates."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


def _scopes(username: str | None) -> list[str]:
    return [username, _GLOBAL_SCOPE] if username else [_GLOBAL_SCOPE]


def _qa_key(scope: str, digest: str) -> str:
    return f"qa:{scope}:{digest}"


def _semantic_key(username: str | None) -> str:
    return f"qa:semantic:{username or _GLOBAL_SCOPE}"


def _history_key(conversation_id: int) -> str:
    return f"conv:{conversation_id}:history"


def _user_context_key(username: str) -> str:
    return f"user:{username}:context"


def _history_to_dict(message: HistoryMessage) -> dict[str, str]:
    return {
        "role": message.role,
        "content": message.content,
        "created_at": message.created_at.isoformat(),
    }


def _history_from_dict(item: dict[str, str]) -> HistoryMessage:
    return HistoryMessage(
        role=item["role"],  # type: ignore[arg-type]
        content=item["content"],
        created_at=parse_timestamp(item.get("created_at")) or datetime.min,
    )


def _preview(text: str, limit: int = 20) -> str:
    return text if len(text) <= limit else text[:limit] + "..."
