"""Reciprocal Rank Fusion over ranked document lists."""

from __future__ import annotations

from collections.abc import Sequence

from ops_agent.types import KnowledgeDocument


def rrf_scores(result_lists: Sequence[Sequence[KnowledgeDocument]], k: int = 60) -> dict[int, float]:
    scores: dict[int, float] = {}
    for items in result_lists:
        for rank, item in enumerate(items, start=1):
            scores[item.id] = scores.get(item.id, 0.0) + 1.0 / (k + rank)
    return scores


def reciprocal_rank_fusion(
    result_lists: Sequence[Sequence[KnowledgeDocument]],
    *,
    k: int = 60,
    limit: int | None = None,
) -> list[KnowledgeDocument]:
    """Merge ranked lists by summing `1 / (rank + k)` per document.

    Ties are broken by ascending document id, so the output does not depend on
    the order of `result_lists`. The returned documents carry their fused score.
    """

    scores = rrf_scores(result_lists, k)
    documents: dict[int, KnowledgeDocument] = {}
    for items in result_lists:
        for item in items:
            documents.setdefault(item.id, item)

    ordered = sorted(scores, key=lambda doc_id: (-scores[doc_id], doc_id))
    if limit is not None:
        ordered = ordered[:limit]

    fused: list[KnowledgeDocument] = []
    for doc_id in ordered:
        doc = documents[doc_id]
        fused.append(
            KnowledgeDocument(
                id=doc.id,
                title=doc.title,
                content=doc.content,
                category=doc.category,
                doc_type=doc.doc_type,
                metadata=dict(doc.metadata),
                enabled=doc.enabled,
                embedding=doc.embedding,
                score=scores[doc_id],
            )
        )
    return fused
