"""Per-project knowledge base aggregates.

A knowledge base counts what is indexed for a project: documents, chunks,
tokens, and content type, language and tag distributions. A rebuild
re-derives everything from the vector store's current entries; an incremental
update folds in one content item without touching the rest.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import uuid4

from noteai_rag.core.errors import KnowledgeBaseNotFoundError
from noteai_rag.rag.models import (
    ContentChunk,
    ContentMetadata,
    ContentOverview,
    ContentType,
    ContentTypeCount,
    KnowledgeBase,
    KnowledgeBaseRecommendation,
    KnowledgeBaseSummary,
    RecommendationPriority,
    RecommendationType,
    TagFrequency,
    VectorSearchResult,
    utcnow,
)
from noteai_rag.rag.tokens import estimate_tokens

logger = logging.getLogger(__name__)

RECENT_CONTENT_LIMIT = 10
TOP_TAGS_LIMIT = 10

# Recommendation rules
MIN_HEALTHY_DOCUMENTS = 5
MAX_AVERAGE_CHUNKS = 50
UNTAGGED_SHARE_LIMIT = 0.5
STALE_AFTER = timedelta(days=30)


@dataclass
class _ContentStats:
    metadata: ContentMetadata
    chunk_count: int
    tokens: int

    @classmethod
    def from_chunks(cls, metadata: ContentMetadata, chunks: list[ContentChunk]) -> "_ContentStats":
        return cls(metadata, len(chunks), sum(estimate_tokens(c.text) for c in chunks))


@dataclass
class _Entry:
    knowledge_base: KnowledgeBase
    contents: dict[str, _ContentStats] = field(default_factory=dict)


def _bump(version: str, major: bool) -> str:
    parts = [int(p) for p in version.split(".")]
    if major:
        return f"{parts[0] + 1}.0.0"
    return f"{parts[0]}.{parts[1] + 1}.0"


class KnowledgeBaseRegistry:
    """In-process registry of per-project knowledge bases."""

    def __init__(self):
        self._entries: dict[str, _Entry] = {}

    def get(self, project_id: str) -> KnowledgeBase:
        return self._entry(project_id).knowledge_base

    def _entry(self, project_id: str) -> _Entry:
        entry = self._entries.get(project_id)
        if entry is None:
            raise KnowledgeBaseNotFoundError(project_id)
        return entry

    def rebuild(self, project_id: str, entries: list[VectorSearchResult]) -> KnowledgeBase:
        """Re-derive the project's aggregate from scanned vector store entries."""
        chunks: dict[str, list[ContentChunk]] = {}
        metadata: dict[str, ContentMetadata] = {}
        for entry in entries:
            chunks.setdefault(entry.content_id, []).append(entry.chunk)
            metadata[entry.content_id] = entry.metadata
        contents = {cid: _ContentStats.from_chunks(metadata[cid], chunks[cid]) for cid in chunks}

        existing = self._entries.get(project_id)
        if existing is None:
            kb = KnowledgeBase(id=str(uuid4()), project_id=project_id, version="1.0.0")
        else:
            kb = existing.knowledge_base
            kb.version = _bump(kb.version, major=True)

        self._entries[project_id] = _Entry(kb, contents)
        self._recount(self._entries[project_id])
        logger.info(
            f"[KnowledgeBase] Rebuilt '{project_id}' v{kb.version}: "
            f"{kb.total_documents} documents, {kb.total_chunks} chunks"
        )
        return kb

    def update(self, project_id: str, metadata: ContentMetadata, chunks: list[ContentChunk]) -> KnowledgeBase:
        """Fold one indexed content item into an existing knowledge base."""
        entry = self._entry(project_id)
        entry.contents[metadata.content_id] = _ContentStats.from_chunks(metadata, chunks)
        kb = entry.knowledge_base
        kb.version = _bump(kb.version, major=False)
        self._recount(entry)
        return kb

    def has(self, project_id: str) -> bool:
        return project_id in self._entries

    def discard(self, content_id: str) -> None:
        """Drop a removed content item from every aggregate that counts it."""
        for entry in self._entries.values():
            if entry.contents.pop(content_id, None) is not None:
                self._recount(entry)

    @staticmethod
    def _recount(entry: _Entry) -> None:
        # Derived from per-content stats only; the vector store is not consulted
        kb = entry.knowledge_base
        stats = entry.contents.values()
        kb.total_documents = len(entry.contents)
        kb.total_chunks = sum(s.chunk_count for s in stats)
        kb.total_tokens = sum(s.tokens for s in stats)
        kb.content_type_distribution = dict(Counter(s.metadata.content_type.value for s in stats))
        kb.language_distribution = dict(Counter(s.metadata.language.value for s in stats))
        kb.tag_counts = dict(Counter(tag for s in stats for tag in set(s.metadata.tags)))
        kb.last_updated = utcnow()

    def summarize(self, project_id: str, now: datetime | None = None) -> KnowledgeBaseSummary:
        entry = self._entry(project_id)
        kb = entry.knowledge_base
        stats = sorted(
            entry.contents.values(),
            key=lambda s: (s.metadata.timestamp, s.metadata.content_id),
            reverse=True,
        )

        recent = [
            ContentOverview(
                content_id=s.metadata.content_id,
                title=s.metadata.title,
                content_type=s.metadata.content_type,
                chunk_count=s.chunk_count,
                timestamp=s.metadata.timestamp,
            )
            for s in stats[:RECENT_CONTENT_LIMIT]
        ]

        documents = kb.total_documents
        top_tags = [
            TagFrequency(tag=tag, count=count, percentage=count / documents * 100 if documents else 0.0)
            for tag, count in sorted(kb.tag_counts.items(), key=lambda kv: (-kv[1], kv[0]))[:TOP_TAGS_LIMIT]
        ]
        distribution = [
            ContentTypeCount(
                content_type=ContentType(name),
                count=count,
                percentage=count / documents * 100 if documents else 0.0,
            )
            for name, count in sorted(kb.content_type_distribution.items(), key=lambda kv: (-kv[1], kv[0]))
        ]

        return KnowledgeBaseSummary(
            knowledge_base=kb,
            recent_content=recent,
            top_tags=top_tags,
            content_distribution=distribution,
            recommendations=self.recommend(entry, now or utcnow()),
        )

    @staticmethod
    def recommend(entry: _Entry, now: datetime) -> list[KnowledgeBaseRecommendation]:
        kb = entry.knowledge_base
        recommendations = []

        if kb.total_documents == 0:
            recommendations.append(
                KnowledgeBaseRecommendation(
                    type=RecommendationType.EXPANSION,
                    title="Knowledge base is empty",
                    description="No content is indexed for this project yet.",
                    priority=RecommendationPriority.HIGH,
                    action="Index recordings or documents for this project",
                )
            )
            return recommendations

        if kb.total_documents < MIN_HEALTHY_DOCUMENTS:
            recommendations.append(
                KnowledgeBaseRecommendation(
                    type=RecommendationType.EXPANSION,
                    title="Add more content",
                    description=f"Only {kb.total_documents} items are indexed; answers may lack coverage.",
                    priority=RecommendationPriority.MEDIUM,
                    action="Index additional recordings or documents",
                )
            )

        average_chunks = kb.total_chunks / kb.total_documents
        if average_chunks > MAX_AVERAGE_CHUNKS:
            recommendations.append(
                KnowledgeBaseRecommendation(
                    type=RecommendationType.OPTIMIZATION,
                    title="Very large content items",
                    description=f"Items average {average_chunks:.0f} chunks each.",
                    priority=RecommendationPriority.MEDIUM,
                    action="Index summaries alongside long transcriptions",
                )
            )

        untagged = sum(1 for s in entry.contents.values() if not s.metadata.tags)
        if untagged / kb.total_documents > UNTAGGED_SHARE_LIMIT:
            recommendations.append(
                KnowledgeBaseRecommendation(
                    type=RecommendationType.CLEANUP,
                    title="Untagged content",
                    description=f"{untagged} of {kb.total_documents} items have no tags.",
                    priority=RecommendationPriority.LOW,
                    action="Tag content to improve filtered search",
                )
            )

        if now - kb.last_updated > STALE_AFTER:
            recommendations.append(
                KnowledgeBaseRecommendation(
                    type=RecommendationType.REINDEXING,
                    title="Knowledge base is stale",
                    description=f"Last updated {kb.last_updated.date().isoformat()}.",
                    priority=RecommendationPriority.LOW,
                    action="Rebuild the knowledge base",
                )
            )

        return recommendations
