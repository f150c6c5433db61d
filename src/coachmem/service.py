"""MemoryService: the single owner of the memory engine.

The service wires the store, providers, caches, pipeline components and the
background scheduler together and exposes the engine's operations. It is
constructed explicitly and injected wherever it is needed (scheduler
handlers, MCP tools); nothing in the package holds global state.

Example:
    >>> async with MemoryService(CoachmemSettings()) as service:
    ...     service.submit_message_for_detection("u1", "I'm allergic to peanuts", "c1")
    ...     memories = await service.get_contextual_memories("u1", "snack ideas")
"""

import asyncio
import hashlib
import logging
from datetime import datetime
from typing import Any, Callable, Optional, Sequence, TypeVar

from coachmem.cache import TTLCache
from coachmem.classification import ClassificationProvider, create_classification_provider
from coachmem.classification.heuristic import extract_keywords, extract_labels
from coachmem.config import CoachmemSettings
from coachmem.embedding import EmbeddingProvider, provider_from_settings
from coachmem.errors import (
    MemoryNotFoundError,
    ProviderUnavailable,
    StorageFailure,
    ValidationRejected,
)
from coachmem.history import ConversationHistory, InMemoryConversationHistory
from coachmem.memory.consolidator import (
    Consolidator,
    compute_graph_metrics,
    follow_supersede_chain,
)
from coachmem.memory.deduplicator import Deduplicator
from coachmem.memory.detector import MemoryDetector
from coachmem.memory.facts import FactExtractor
from coachmem.memory.locks import UserLocks
from coachmem.memory.prompt import build_system_prompt
from coachmem.memory.relationships import RelationshipEngine
from coachmem.memory.retrieval import RetrievalPipeline, temporal_score
from coachmem.memory.similarity import compute_semantic_hash, normalize_embedding
from coachmem.scheduler import BackgroundScheduler, Task, TaskKind
from coachmem.storage import SQLiteStore
from coachmem.types.memory import (
    AccessLogEntry,
    ConsolidationReport,
    DedupAction,
    GraphMetrics,
    MemoryCategory,
    MemoryEntry,
    MemoryNode,
    StoreResult,
    utcnow,
)
from coachmem.types.retrieval import ConversationContext, QueryExpansion, RelevantMemory
from coachmem.validation import check_content

logger = logging.getLogger(__name__)

__all__ = ["MemoryService"]

T = TypeVar("T")

# Base delay between synchronous storage retries (doubled per attempt)
STORAGE_RETRY_DELAY = 0.05


class MemoryService:
    """Personalization memory engine for a coaching assistant.

    Args:
        settings: Engine settings (defaults are read from the environment)
        store: Memory store (created from settings.sqlite_path when omitted)
        embedder: Embedding provider (created from settings when omitted)
        classifier: Classification provider (created from settings when omitted)
        history: Conversation history source
        clock: Returns the current time (timezone-aware)
    """

    def __init__(
        self,
        settings: Optional[CoachmemSettings] = None,
        *,
        store: Optional[SQLiteStore] = None,
        embedder: Optional[EmbeddingProvider] = None,
        classifier: Optional[ClassificationProvider] = None,
        history: Optional[ConversationHistory] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or CoachmemSettings()
        s = self.settings

        self._owns_store = store is None
        self._owns_embedder = embedder is None
        self._owns_classifier = classifier is None
        self.store = store or SQLiteStore(db_path=s.get_sqlite_path())
        self.embedder = embedder or provider_from_settings(s)
        self.classifier = classifier or create_classification_provider(s)
        self.history = history if history is not None else InMemoryConversationHistory()
        self._clock = clock

        self.locks = UserLocks()
        self.expansion_cache: TTLCache[QueryExpansion] = TTLCache(
            ttl_seconds=s.expansion_cache_ttl_seconds
        )

        self.detector = MemoryDetector(
            self.classifier,
            self.history,
            history_limit=s.history_limit,
            timeout=s.provider_timeout_seconds,
        )
        self.deduplicator = Deduplicator(
            self.store,
            skip_threshold=s.dedup_skip_threshold,
            merge_threshold=s.dedup_merge_threshold,
            update_threshold=s.dedup_update_threshold,
            fuzzy_update_threshold=s.dedup_fuzzy_update_threshold,
            recency_window_hours=s.dedup_recency_window_hours,
            temporal_update_window_hours=s.temporal_update_window_hours,
            clock=clock,
        )
        self.facts = FactExtractor(self.store, self.classifier, timeout=s.provider_timeout_seconds)
        self.relationships = RelationshipEngine(
            self.store,
            self.classifier,
            min_confidence=s.relationship_min_confidence,
            candidate_limit=s.relationship_candidate_limit,
            prefilter_similarity=s.relationship_prefilter_similarity,
            timeout=s.provider_timeout_seconds,
        )
        self.consolidator = Consolidator(
            self.store,
            self.classifier,
            contradiction_min_confidence=s.contradiction_min_confidence,
            merge_strength_threshold=s.merge_strength_threshold,
            timeout=s.provider_timeout_seconds,
            clock=clock,
        )
        self.retrieval = RetrievalPipeline(
            self.store,
            self.classifier,
            embed_query=self._embed_query,
            expansion_cache=self.expansion_cache,
            default_max_results=s.default_max_results,
            timeout=s.retrieval_timeout_seconds,
            provider_timeout=s.provider_timeout_seconds,
            near_duplicate_threshold=s.near_duplicate_threshold,
            category_cap_ratio=s.category_cap_ratio,
            clock=clock,
        )
        self.scheduler = BackgroundScheduler(
            self._handle_task,
            worker_count=s.worker_count,
            max_size=s.queue_max_size,
            max_retries=s.task_max_retries,
            base_delay=s.retry_base_delay,
            max_delay=s.retry_max_delay,
            task_timeout=s.task_timeout_seconds,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start background processing."""
        self.scheduler.start()
        logger.info(
            f"MemoryService started (embedding={self.embedder.name}, "
            f"classification={self.classifier.name})"
        )

    async def stop(self) -> None:
        """Stop background processing and release owned resources."""
        await self.scheduler.stop()
        if self._owns_classifier:
            await self.classifier.close()
        if self._owns_embedder:
            self.embedder.close()
        if self._owns_store:
            self.store.close()
        logger.info("MemoryService stopped")

    async def wait_idle(self) -> None:
        """Wait until all queued background work has finished."""
        await self.scheduler.wait_idle()

    async def __aenter__(self) -> "MemoryService":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # =========================================================================
    # Writes
    # =========================================================================

    async def create_memory_manual(
        self,
        user_id: str,
        content: str,
        category: MemoryCategory | str,
        importance: float = 0.5,
        keywords: Optional[list[str]] = None,
        labels: Optional[list[str]] = None,
    ) -> StoreResult:
        """Validate, deduplicate and store a memory synchronously.

        Raises:
            ValidationRejected: If the content fails validation
            StorageFailure: If the store keeps failing after retries
        """
        return await self._store_candidate(
            user_id,
            content,
            category,
            importance=importance,
            confidence=1.0,
            keywords=keywords,
            labels=labels,
        )

    def submit_message_for_detection(
        self, user_id: str, message: str, conversation_id: Optional[str] = None
    ) -> Optional[Task]:
        """Queue a message for background detection. Never raises.

        Returns:
            The queued (or dropped) task, None when there was nothing to queue
        """
        if not message or not message.strip() or not self.classifier.enabled:
            return None
        try:
            return self._submit(
                Task(
                    kind=TaskKind.DETECT,
                    user_id=user_id,
                    payload={"message": message, "conversation_id": conversation_id},
                )
            )
        except Exception as e:
            logger.error(f"Failed to queue detection for user {user_id}: {e}")
            return None

    async def delete_memory(self, user_id: str, memory_id: str) -> bool:
        """Soft-delete one memory.

        Returns:
            True if the memory was active; False if it was already inactive

        Raises:
            MemoryNotFoundError: If the user has no memory with this id
        """
        async with self.locks.for_user(user_id):
            entry = await self._storage(self.store.get_memory, memory_id)
            if entry is None or entry.user_id != user_id:
                raise MemoryNotFoundError(memory_id, user_id)
            changed = await self._storage(self.store.deactivate_memory, memory_id)
            self._invalidate(user_id)
        if changed:
            logger.info(f"Deleted memory {memory_id} for user {user_id}")
        return changed

    async def bulk_delete(self, user_id: str, memory_ids: Sequence[str]) -> int:
        """Soft-delete several memories; unknown ids are ignored.

        Returns:
            Number of memories that went from active to inactive
        """
        deleted = 0
        async with self.locks.for_user(user_id):
            for memory_id in dict.fromkeys(memory_ids):
                entry = await self._storage(self.store.get_memory, memory_id)
                if entry is None or entry.user_id != user_id:
                    logger.debug(f"bulk_delete: ignoring unknown memory {memory_id}")
                    continue
                if await self._storage(self.store.deactivate_memory, memory_id):
                    deleted += 1
            self._invalidate(user_id)
        logger.info(f"Bulk deleted {deleted}/{len(memory_ids)} memories for user {user_id}")
        return deleted

    async def consolidate(self, user_id: str) -> ConsolidationReport:
        """Collapse duplicates, then run a consolidation sweep for a user."""
        async with self.locks.for_user(user_id):
            swept = await self._storage(self.deduplicator.sweep, user_id)
            report = await self.consolidator.consolidate_user(user_id)
            report.actions[:0] = swept
            self._invalidate(user_id)
        self._enrich_created(user_id, report)
        return report

    async def record_memory_usage(
        self,
        user_id: str,
        memories: Sequence[RelevantMemory | MemoryEntry | str],
        conversation_id: Optional[str] = None,
        access_type: str = "retrieval",
    ) -> int:
        """Record that memories were used in a response.

        Writes one access log row per memory and bumps its access count.
        Memories of other users and unknown ids are ignored.

        Returns:
            Number of access rows written
        """
        now = self._clock()
        rows = []
        async with self.locks.for_user(user_id):
            for item in memories:
                score = None
                if isinstance(item, RelevantMemory):
                    memory_id, score = item.memory.id, item.score
                elif isinstance(item, MemoryEntry):
                    memory_id = item.id
                else:
                    memory_id = item
                entry = await self._storage(self.store.get_memory, memory_id)
                if entry is None or entry.user_id != user_id:
                    continue
                rows.append(
                    AccessLogEntry(
                        memory_id=memory_id,
                        user_id=user_id,
                        conversation_id=conversation_id,
                        access_type=access_type,
                        relevance_score=score,
                        accessed_at=now,
                    )
                )
            written = await self._storage(self.store.record_access, rows) if rows else 0
            self._invalidate(user_id)
        return written

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_contextual_memories(
        self,
        user_id: str,
        query: str,
        context: Optional[ConversationContext] = None,
        max_results: Optional[int] = None,
        timeout: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> list[RelevantMemory]:
        """Retrieve the memories most relevant to a query. Never raises.

        Scores are reproducible for a fixed ``now`` (defaults to the clock).
        """
        return await self.retrieval.retrieve(
            user_id,
            query,
            context=context,
            max_results=max_results,
            timeout=timeout,
            now=now,
        )

    async def get_overview(self, user_id: str) -> dict[str, int]:
        """Count active memories per category; every category is present."""
        counts = await self._storage(self.store.count_by_category, user_id)
        return {category.value: counts.get(category.value, 0) for category in MemoryCategory}

    async def list_memories(
        self,
        user_id: str,
        category: Optional[MemoryCategory | str] = None,
        include_inactive: bool = False,
        limit: Optional[int] = None,
    ) -> list[MemoryEntry]:
        """List a user's memories, most important first."""
        category_value = MemoryCategory(category).value if category else None
        entries = await self._storage(
            self.store.list_memories,
            user_id,
            active_only=not include_inactive,
            category=category_value,
        )
        entries.sort(key=lambda m: (-m.importance, -m.created_at.timestamp(), m.id))
        return entries[:limit] if limit is not None else entries

    async def get_memory_node(self, user_id: str, memory_id: str) -> MemoryNode:
        """A memory with its atomic facts and active relationships.

        Raises:
            MemoryNotFoundError: If the user has no memory with this id
        """
        entry = await self._storage(self.store.get_memory, memory_id)
        if entry is None or entry.user_id != user_id:
            raise MemoryNotFoundError(memory_id, user_id)
        facts = await self._storage(self.store.list_facts, memory_id)
        relationships = await self._storage(
            self.store.list_relationships, user_id, memory_id=memory_id
        )
        confidences = [entry.confidence] + [f.confidence for f in facts]
        return MemoryNode(
            memory=entry,
            facts=facts,
            relationships=relationships,
            temporal_weight=temporal_score(entry, self._clock()),
            aggregate_confidence=sum(confidences) / len(confidences),
        )

    async def resolve_current(self, user_id: str, memory_id: str) -> MemoryEntry:
        """Follow supersession links to the memory currently holding the information.

        Raises:
            MemoryNotFoundError: If the user has no memory with this id
        """
        entry = await self._storage(follow_supersede_chain, self.store, memory_id)
        if entry is None or entry.user_id != user_id:
            raise MemoryNotFoundError(memory_id, user_id)
        return entry

    async def get_graph_metrics(self, user_id: str, refresh: bool = False) -> GraphMetrics:
        """Latest graph metrics snapshot, computed on demand when none exists."""
        metrics = None if refresh else await self._storage(self.store.get_graph_metrics, user_id)
        if metrics is None:
            metrics = await self._storage(
                compute_graph_metrics, self.store, user_id, self._clock()
            )
            await self._storage(self.store.save_graph_metrics, metrics)
        return metrics

    def build_system_prompt(
        self,
        memories: Sequence[RelevantMemory | MemoryEntry],
        persona: Optional[str] = None,
    ) -> str:
        """Render memories into a system prompt for the coaching assistant."""
        return build_system_prompt(memories, persona)

    def stats(self) -> dict[str, Any]:
        """Get engine statistics."""
        return {
            "embedding_backend": self.embedder.name,
            "embedding_model": self.embedder.model,
            "classification_backend": self.classifier.name,
            "expansion_cache": self.expansion_cache.stats(),
            "retrieval": self.retrieval.stats.to_dict(),
            "scheduler": self.scheduler.stats(),
            "users_locked": len(self.locks),
        }

    # =========================================================================
    # Background task handling
    # =========================================================================

    def _submit(self, task: Task) -> Task:
        return self.scheduler.submit(task)

    async def _handle_task(self, task: Task) -> Any:
        payload = task.payload
        match task.kind:
            case TaskKind.DETECT:
                result = await self.detector.detect(
                    task.user_id, payload["message"], payload.get("conversation_id")
                )
                if result.should_remember:
                    self._submit(
                        Task(
                            kind=TaskKind.STORE,
                            user_id=task.user_id,
                            payload={
                                "content": result.content,
                                "category": result.category.value,
                                "importance": result.importance,
                                "confidence": result.confidence,
                                "keywords": result.keywords,
                                "labels": result.labels,
                                "conversation_id": payload.get("conversation_id"),
                            },
                        )
                    )
                return result.reason

            case TaskKind.STORE:
                try:
                    stored = await self._store_candidate(
                        task.user_id,
                        payload["content"],
                        payload["category"],
                        importance=payload.get("importance", 0.5),
                        confidence=payload.get("confidence", 0.8),
                        keywords=payload.get("keywords"),
                        labels=payload.get("labels"),
                        conversation_id=payload.get("conversation_id"),
                    )
                except ValidationRejected as e:
                    logger.warning(f"Discarded candidate for user {task.user_id}: {e}")
                    return "rejected"
                return stored.decision.action.value

            case TaskKind.ENRICH:
                return await self._enrich(
                    task.user_id,
                    payload["memory_id"],
                    with_relationships=payload.get("relationships", True),
                )

            case TaskKind.CONSOLIDATE:
                report = await self.consolidate(task.user_id)
                return len(report.actions)

            case _:
                raise ValueError(f"Unknown task kind: {task.kind}")

    async def _enrich(self, user_id: str, memory_id: str, with_relationships: bool = True) -> str:
        entry = self.store.get_memory(memory_id)
        if entry is None or not entry.is_active:
            return "skipped"

        has_facts = await self._extract_facts(entry)
        if not with_relationships:
            return "facts" if has_facts else "no_facts"

        relationships = await self.relationships.detect(entry)
        if not relationships:
            return "facts" if has_facts else "no_facts"

        async with self.locks.for_user(user_id):
            report = await self.consolidator.consolidate_entry(user_id, memory_id)
            self._invalidate(user_id)
        self._enrich_created(user_id, report)
        return "consolidated" if report.actions else "related"

    async def _extract_facts(self, entry: MemoryEntry) -> bool:
        # The memory stays usable without facts; relationships still run
        try:
            await self.facts.extract(entry)
        except (ProviderUnavailable, asyncio.TimeoutError) as e:
            logger.warning(
                f"Fact extraction failed for memory {entry.id}, storing without facts: "
                f"{type(e).__name__}: {e}"
            )
            return False
        return True

    def _enrich_created(self, user_id: str, report: ConsolidationReport) -> None:
        # Merged entries get facts only; relationships come from later memories
        for memory_id in report.created_memory_ids:
            self._submit(
                Task(
                    kind=TaskKind.ENRICH,
                    user_id=user_id,
                    payload={"memory_id": memory_id, "relationships": False},
                )
            )

    # =========================================================================
    # Internals
    # =========================================================================

    async def _store_candidate(
        self,
        user_id: str,
        content: str,
        category: MemoryCategory | str,
        *,
        importance: float,
        confidence: float,
        keywords: Optional[list[str]] = None,
        labels: Optional[list[str]] = None,
        conversation_id: Optional[str] = None,
    ) -> StoreResult:
        content = (content or "").strip()
        verdict = check_content(content, category)
        if not verdict.valid:
            logger.warning(
                f"Rejected memory for user {user_id} ({verdict.rule}): {content!r}"
            )
            raise ValidationRejected(verdict.rule, content)

        embedding = await self._embed_document(content)
        entry = MemoryEntry(
            user_id=user_id,
            content=content,
            category=MemoryCategory(category),
            labels=labels if labels is not None else extract_labels(content),
            keywords=keywords if keywords else extract_keywords(content),
            importance=importance,
            confidence=confidence,
            embedding=embedding,
            semantic_hash=compute_semantic_hash(embedding, content),
            created_at=self._clock(),
            source_conversation_id=conversation_id,
        )

        async with self.locks.for_user(user_id):
            result = await self._storage(self.deduplicator.resolve, entry)
            self._invalidate(user_id)

        if result.decision.action != DedupAction.SKIP:
            self._submit(
                Task(
                    kind=TaskKind.ENRICH,
                    user_id=user_id,
                    payload={"memory_id": result.memory.id},
                )
            )
        return result

    async def _storage(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call a store operation, retrying StorageFailure with backoff."""
        retries = self.settings.storage_retries
        for attempt in range(retries + 1):
            try:
                return fn(*args, **kwargs)
            except StorageFailure as e:
                if attempt >= retries:
                    logger.error(f"Storage operation failed after {attempt + 1} attempts: {e}")
                    raise
                logger.debug(f"Storage operation failed (attempt {attempt + 1}), retrying: {e}")
                await asyncio.sleep(STORAGE_RETRY_DELAY * 2**attempt)
        raise AssertionError("unreachable")

    def _invalidate(self, user_id: str) -> None:
        self.expansion_cache.invalidate_prefix(f"{user_id}|")

    async def _embed_document(self, text: str) -> Optional[list[float]]:
        return await self._embed(text, query=False)

    async def _embed_query(self, text: str) -> Optional[list[float]]:
        return await self._embed(text, query=True)

    async def _embed(self, text: str, query: bool) -> Optional[list[float]]:
        """Unit embedding for a text, via the persistent cache; None when unavailable."""
        if not text.strip():
            return None
        kind = "query" if query else "document"
        content_hash = hashlib.sha256(f"{kind}:{text}".encode("utf-8")).hexdigest()
        provider, model = self.embedder.name, self.embedder.model

        try:
            cached = self.store.get_cached_embedding(content_hash, provider, model)
        except StorageFailure as e:
            logger.warning(f"Embedding cache read failed: {e}")
            cached = None
        if cached is not None:
            logger.debug(f"Embedding cache hit ({kind})")
            return cached

        loop = asyncio.get_running_loop()
        fn = self.embedder.embed_query if query else self.embedder.embed_texts
        arg: Any = text if query else [text]
        try:
            raw = await asyncio.wait_for(
                loop.run_in_executor(None, fn, arg),
                timeout=self.settings.provider_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.debug("Embedding timed out; falling back to lexical matching")
            return None
        except Exception as e:
            logger.debug(f"Embedding unavailable ({e}); falling back to lexical matching")
            return None

        embedding = normalize_embedding(raw if query else raw[0])
        if embedding is None:
            return None
        try:
            self.store.cache_embedding(content_hash, provider, model, embedding)
        except StorageFailure as e:
            logger.warning(f"Embedding cache write failed: {e}")
        return embedding
