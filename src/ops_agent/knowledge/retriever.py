"""Hybrid knowledge retrieval: FTS5 lexical search plus vector similarity."""

from __future__ import annotations

import json
from typing import Any

import structlog

from ops_agent.config import RetrievalConfig
from ops_agent.errors import RetrievalError
from ops_agent.knowledge.fusion import reciprocal_rank_fusion
from ops_agent.memory.embedder import Embedder, cosine_similarity
from ops_agent.store.database import Database, json_to_vector, utc_now, vector_to_json
from ops_agent.types import KnowledgeDocument

logger = structlog.get_logger(__name__)

_DOC_COLUMNS = "d.id, d.title, d.content, d.doc_type, d.category, d.metadata, d.enabled"


def sanitize_fts_query(query: str) -> str:
    """Keep letters, digits and spaces and quote each term for FTS5.

    Quoting stops user text from being parsed as FTS operators. Terms are
    ORed so that bm25 ranks partial matches of a natural-language question.
    Returns "" when nothing searchable is left.
    """

    cleaned = "".join(ch if ch.isalnum() or ch == " " else " " for ch in query)
    terms = cleaned.split()
    return " OR ".join(f'"{term}"' for term in terms)


class KnowledgeRetriever:
    """Searches enabled knowledge documents and manages the document store."""

    def __init__(
        self,
        database: Database,
        *,
        embedder: Embedder | None = None,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.db = database
        self.embedder = embedder
        self.config = config or RetrievalConfig()

    async def retrieve(self, query: str) -> list[KnowledgeDocument]:
        if self.embedder is not None:
            return await self.hybrid_search(query)
        return await self.lexical_search(query)

    async def lexical_search(
        self, query: str, limit: int | None = None
    ) -> list[KnowledgeDocument]:
        match = sanitize_fts_query(query)
        if not match:
            logger.debug("fts_query_empty", query=query)
            return []

        rows = await self.db.fetch_all(
            f"SELECT {_DOC_COLUMNS}, bm25(knowledge_fts) AS score "
            "FROM knowledge_fts f JOIN knowledge_documents d ON d.id = f.rowid "
            "WHERE knowledge_fts MATCH ? AND d.enabled = 1 "
            "ORDER BY score, d.id LIMIT ?",
            (match, limit or self.config.max_results),
        )
        documents = [_row_to_document(row, score=-float(row["score"])) for row in rows]
        logger.debug("fts_search_done", results=len(documents))
        return documents

    async def vector_search(
        self, query: str, limit: int | None = None
    ) -> list[KnowledgeDocument]:
        if self.embedder is None:
            return []
        query_vector = await self.embedder.embed(query)

        rows = await self.db.fetch_all(
            f"SELECT {_DOC_COLUMNS}, d.embedding FROM knowledge_documents d "
            "WHERE d.enabled = 1 AND d.embedding IS NOT NULL AND d.embedding != ''"
        )
        scored: list[KnowledgeDocument] = []
        for row in rows:
            vector = json_to_vector(row["embedding"])
            if not vector or len(vector) != len(query_vector):
                continue
            scored.append(
                _row_to_document(row, score=cosine_similarity(query_vector, vector))
            )
        scored.sort(key=lambda doc: (-doc.score, doc.id))
        return scored[: limit or self.config.max_results]

    async def hybrid_search(self, query: str) -> list[KnowledgeDocument]:
        """Run both paths and merge them with RRF.

        A failing path is logged and contributes nothing; only when both fail
        is `RetrievalError` raised.
        """

        limit = self.config.max_results
        results: list[list[KnowledgeDocument]] = []
        errors: list[Exception] = []

        for name, search in (("lexical", self.lexical_search), ("vector", self.vector_search)):
            try:
                results.append(await search(query, limit))
            except Exception as exc:
                logger.warning("retrieval_path_failed", path=name, error=str(exc))
                errors.append(exc)

        if not results:
            raise RetrievalError(f"All retrieval paths failed: {errors[0]}") from errors[0]
        if len(results) == 1:
            return results[0]
        return reciprocal_rank_fusion(results, k=self.config.rrf_k, limit=limit)

    # -- document management --------------------------------------------------

    async def add_document(
        self,
        title: str,
        content: str,
        *,
        category: str = "",
        doc_type: str = "manual",
        metadata: dict[str, str] | None = None,
        enabled: bool = True,
    ) -> int:
        embedding, model = await self._embed_document(title, content)
        now = utc_now()
        doc_id = await self.db.insert(
            "INSERT INTO knowledge_documents(title, content, doc_type, category, metadata, "
            "enabled, embedding, embedding_model, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                title,
                content,
                doc_type,
                category,
                json.dumps(metadata or {}, ensure_ascii=False),
                int(enabled),
                vector_to_json(embedding),
                model,
                now,
                now,
            ),
        )
        logger.info("knowledge_document_added", doc_id=doc_id, embedded=embedding is not None)
        return doc_id

    async def update_document(self, doc_id: int, **fields: Any) -> KnowledgeDocument:
        current = await self.get_document(doc_id)
        allowed = {"title", "content", "category", "doc_type", "metadata", "enabled"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown document fields: {sorted(unknown)}")

        title = fields.get("title", current.title)
        content = fields.get("content", current.content)
        embedding, model = current.embedding, None
        if "title" in fields or "content" in fields:
            embedding, model = await self._embed_document(title, content)

        await self.db.execute(
            "UPDATE knowledge_documents SET title = ?, content = ?, category = ?, doc_type = ?, "
            "metadata = ?, enabled = ?, embedding = ?, "
            "embedding_model = COALESCE(?, embedding_model), updated_at = ? WHERE id = ?",
            (
                title,
                content,
                fields.get("category", current.category),
                fields.get("doc_type", current.doc_type),
                json.dumps(fields.get("metadata", current.metadata), ensure_ascii=False),
                int(fields.get("enabled", current.enabled)),
                vector_to_json(embedding),
                model,
                utc_now(),
                doc_id,
            ),
        )
        return await self.get_document(doc_id)

    async def delete_document(self, doc_id: int) -> None:
        deleted = await self.db.execute("DELETE FROM knowledge_documents WHERE id = ?", (doc_id,))
        if not deleted:
            raise KeyError(f"Document not found: {doc_id}")
        logger.info("knowledge_document_deleted", doc_id=doc_id)

    async def set_enabled(self, doc_id: int, enabled: bool) -> None:
        updated = await self.db.execute(
            "UPDATE knowledge_documents SET enabled = ?, updated_at = ? WHERE id = ?",
            (int(enabled), utc_now(), doc_id),
        )
        if not updated:
            raise KeyError(f"Document not found: {doc_id}")

    async def get_document(self, doc_id: int) -> KnowledgeDocument:
        row = await self.db.fetch_one(
            f"SELECT {_DOC_COLUMNS}, d.embedding FROM knowledge_documents d WHERE d.id = ?",
            (doc_id,),
        )
        if row is None:
            raise KeyError(f"Document not found: {doc_id}")
        doc = _row_to_document(row)
        doc.embedding = json_to_vector(row["embedding"])
        return doc

    async def list_documents(
        self, *, category: str | None = None, enabled: bool | None = None
    ) -> list[KnowledgeDocument]:
        clauses: list[str] = []
        params: list[Any] = []
        if category is not None:
            clauses.append("d.category = ?")
            params.append(category)
        if enabled is not None:
            clauses.append("d.enabled = ?")
            params.append(int(enabled))
        sql = f"SELECT {_DOC_COLUMNS} FROM knowledge_documents d"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        rows = await self.db.fetch_all(sql + " ORDER BY d.id", params)
        return [_row_to_document(row) for row in rows]

    async def stats(self) -> dict[str, Any]:
        row = await self.db.fetch_one(
            "SELECT COUNT(*) AS total, COALESCE(SUM(enabled), 0) AS enabled, "
            "COALESCE(SUM(CASE WHEN embedding IS NOT NULL AND embedding != '' THEN 1 ELSE 0 END), 0) "
            "AS embedded FROM knowledge_documents"
        )
        categories = await self.db.fetch_all(
            "SELECT DISTINCT category FROM knowledge_documents WHERE category != '' ORDER BY category"
        )
        return {
            "total_count": row["total"] if row else 0,
            "enabled_count": row["enabled"] if row else 0,
            "embedded_count": row["embedded"] if row else 0,
            "categories": [r["category"] for r in categories],
        }

    async def _embed_document(
        self, title: str, content: str
    ) -> tuple[list[float] | None, str | None]:
        if self.embedder is None:
            return None, None
        try:
            return await self.embedder.embed(f"{title}\n{content}"), self.embedder.model
        except Exception as exc:
            logger.warning("knowledge_embedding_failed", title=title, error=str(exc))
            return None, None


def _row_to_document(row: Any, score: float = 0.0) -> KnowledgeDocument:
    try:
        metadata = json.loads(row["metadata"] or "{}")
    except json.JSONDecodeError:
        logger.warning("knowledge_metadata_invalid", doc_id=row["id"])
        metadata = {}
    return KnowledgeDocument(
        id=row["id"],
        title=row["title"],
        content=row["content"],
        category=row["category"],
        doc_type=row["doc_type"],
        metadata=metadata,
        enabled=bool(row["enabled"]),
        score=score,
    )

