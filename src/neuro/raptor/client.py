import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Collection, Iterable
from pathlib import Path
from typing import Any

from neuro.raptor.config import AppConfig, Config
from neuro.raptor.embeddings import EmbedderBase, EmbeddingCache, get_embedder
from neuro.raptor.exceptions import CorruptIndexError
from neuro.raptor.reader import SourceFile
from neuro.raptor.store.engine import Store
from neuro.raptor.store.models import Snapshot
from neuro.raptor.store.repositories.snapshot import SnapshotRepository
from neuro.raptor.store.snapshots import SnapshotStore
from neuro.raptor.tree.builder import TreeBuilder
from neuro.raptor.tree.clustering import Clusterer, get_clusterer
from neuro.raptor.tree.incremental import IncrementalUpdater
from neuro.raptor.tree.models import (
    BuildProgress,
    BuildStats,
    SearchResult,
    UpdateStats,
)
from neuro.raptor.tree.retriever import (
    TreeRetriever,
    fallback_context,
    format_context,
)
from neuro.raptor.tree.summarizer import (
    ClusterSummarizer,
    LLMSummarizer,
    SummarizerBase,
)

logger = logging.getLogger(__name__)

FALLBACK_HEADING = "Additional context from the corpus:"

ProgressCallback = Callable[[BuildProgress], None]


class RaptorIndex:
    """High-level client for a summary-tree index over one corpus.

    Builds and updates are serialized: starting one cancels the one in flight,
    whose result is then never published. Queries run against a snapshot and
    are unaffected by concurrent rebuilds.
    """

    def __init__(
        self,
        config: AppConfig = Config,
        *,
        embedder: EmbedderBase | None = None,
        summarizer: SummarizerBase | None = None,
        clusterer: Clusterer | None = None,
        persist_path: Path | None = None,
        on_progress: ProgressCallback | None = None,
    ):
        """Initialize the index.

        Args:
            config: Configuration to use. Defaults to global Config.
            embedder: Embedding backend. If None, built from config.embeddings.
            summarizer: Summarization backend. If None, an LLM summarizer built
                        from config.summarization.
            clusterer: Clustering strategy. If None, chosen by config.index.
            persist_path: lancedb directory to restore from and save to.
            on_progress: Called with every progress event of builds and updates.

        Raises:
            ConfigError: If the index settings are invalid.
        """
        config.index.check()
        self._config = config
        self.cache = EmbeddingCache.from_config(
            embedder or get_embedder(config), config
        )
        self.summarizer = ClusterSummarizer.from_config(
            summarizer or LLMSummarizer(config), config
        )
        self.builder = TreeBuilder(
            config,
            self.cache,
            self.summarizer,
            clusterer or get_clusterer(config.index),
        )
        self.updater = IncrementalUpdater(self.builder)
        self.retriever = TreeRetriever(self.cache)
        self.snapshots = SnapshotStore()
        self.store = Store(persist_path) if persist_path is not None else None
        self.repository = SnapshotRepository(self.store) if self.store else None
        self.on_progress = on_progress
        self._task: asyncio.Task | None = None
        self._save_lock = asyncio.Lock()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):  # noqa: ARG002
        """Async context manager exit."""
        await self.aclose()
        return False

    @property
    def current(self) -> Snapshot | None:
        return self.snapshots.current

    async def build(self, files: Iterable[SourceFile]) -> tuple[Snapshot, BuildStats]:
        """Build a tree from scratch and publish it.

        Node ids continue after the ids of the published snapshot, if any.

        Raises:
            ConfigError: On invalid configuration.
            asyncio.CancelledError: If a newer build or update superseded this one.
        """
        files = list(files)

        async def work() -> tuple[Snapshot, BuildStats]:
            current = self.snapshots.current
            async for event in self.builder.build(
                files,
                version=self.snapshots.version + 1,
                first_id=current.next_id if current else 1,
            ):
                self._report(event)
            snapshot, stats = self.builder.snapshot, self.builder.stats
            assert snapshot is not None and stats is not None
            stats.warnings.extend(await self._commit(snapshot))
            return snapshot, stats

        return await self._run(work)

    async def update(
        self, snapshot: Snapshot | None, files: Iterable[SourceFile]
    ) -> tuple[Snapshot, UpdateStats]:
        """Bring `snapshot` in line with `files`, reusing unchanged subtrees.

        The result is published when it is newer than the published snapshot.
        When nothing changed the given snapshot is returned as-is.

        Raises:
            ConfigError: On invalid configuration.
            asyncio.CancelledError: If a newer build or update superseded this one.
        """
        files = list(files)

        async def work() -> tuple[Snapshot, UpdateStats]:
            async for event in self.updater.update(snapshot, files):
                self._report(event)
            updated, stats = self.updater.snapshot, self.updater.stats
            assert updated is not None and stats is not None
            if updated is not snapshot:
                stats.warnings.extend(await self._commit(updated))
            return updated, stats

        return await self._run(work)

    async def reindex(
        self, files: Iterable[SourceFile]
    ) -> tuple[Snapshot, UpdateStats]:
        """Update the published snapshot, building one if there is none."""
        return await self.update(self.snapshots.current, files)

    async def query(
        self,
        snapshot: Snapshot | None,
        query_text: str,
        top_k: int | None = None,
        levels: Collection[int] | None = None,
    ) -> list[SearchResult]:
        """Search a snapshot (the published one when None) across all levels.

        Raises:
            EmbeddingError: If the query cannot be embedded.
        """
        snapshot = snapshot or self.snapshots.current
        if snapshot is None:
            return []
        if top_k is None:
            top_k = self._config.search.top_k
        return await self.retriever.search(snapshot, query_text, top_k, levels)

    async def retrieve_with_context(
        self,
        query_text: str,
        snapshot: Snapshot | None = None,
        top_k: int | None = None,
        expand_k: int | None = None,
    ) -> list[SearchResult]:
        """Search the summaries, then the chunks beneath the best of them."""
        snapshot = snapshot or self.snapshots.current
        if snapshot is None:
            return []
        search = self._config.search
        return await self.retriever.retrieve_with_context(
            snapshot,
            query_text,
            top_k=search.top_k if top_k is None else top_k,
            expand_k=search.expand_k if expand_k is None else expand_k,
            chunk_threshold=search.chunk_threshold,
        )

    async def context(self, query_text: str, snapshot: Snapshot | None = None) -> str:
        """Retrieve with context and render the results for a prompt.

        When the rendered results are shorter than `search.min_context_chars`,
        raw chunks in corpus order are appended up to the context budget.
        """
        snapshot = snapshot or self.snapshots.current
        results = await self.retrieve_with_context(query_text, snapshot)
        search = self._config.search
        context = format_context(results, search.max_context_chars)
        if snapshot is None or len(context) >= search.min_context_chars:
            return context

        extra = fallback_context(
            snapshot,
            exclude={result.node_id for result in results},
            limit=search.fallback_chunks,
            chunk_chars=search.fallback_chunk_chars,
        )
        if not extra:
            return context
        combined = f"{context}\n{FALLBACK_HEADING}\n{extra}" if context else extra
        return combined[: search.max_context_chars]

    async def load(self) -> Snapshot | None:
        """Restore and publish the persisted snapshot.

        Returns None when nothing was persisted or the persisted index is
        corrupt, in which case the caller is expected to build from scratch.
        """
        if self.repository is None:
            return None
        try:
            snapshot = await asyncio.to_thread(self.repository.load)
        except CorruptIndexError as e:
            logger.warning(f"{e.warning()}; the index will be rebuilt")
            return None
        if snapshot is None:
            return None
        if snapshot.settings != self.builder.settings:
            logger.warning(
                f"Persisted snapshot version {snapshot.version} was built with "
                "other index or embedding settings; the index will be rebuilt"
            )
            return None
        if snapshot.version > self.snapshots.version:
            await self.snapshots.publish(snapshot)
        logger.info(
            f"Loaded snapshot version {snapshot.version} "
            f"with {snapshot.node_count} nodes"
        )
        return snapshot

    def info(self, snapshot: Snapshot | None = None) -> dict[str, Any]:
        """Describe a snapshot (the published one when None)."""
        snapshot = snapshot or self.snapshots.current or Snapshot.empty()
        return {
            "version": snapshot.version,
            "nodes": snapshot.node_count,
            "depth": snapshot.depth,
            "levels": snapshot.level_counts(),
            "files": len(snapshot.file_records),
            "roots": list(snapshot.root_ids),
            "degraded_files": sorted(
                path
                for path, record in snapshot.file_records.items()
                if record.degraded
            ),
            "settings": snapshot.settings,
            "created_at": snapshot.created_at,
            "cache": self.cache.stats(),
        }

    async def cancel(self) -> bool:
        """Cancel the build or update in flight and wait for it to stop."""
        task = self._task
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.wait([task])
        logger.info("Cancelled the running index operation")
        return True

    async def clear(self) -> None:
        """Cancel running work and drop the published and persisted snapshots."""
        await self.cancel()
        await self.snapshots.reset()
        if self.repository is not None:
            async with self._save_lock:
                await asyncio.to_thread(self.repository.clear)
        self.cache.clear()
        logger.info("Cleared the index")

    async def aclose(self) -> None:
        await self.cancel()
        # A save outlives the cancelled task that started it
        async with self._save_lock:
            pass
        if self.store is not None:
            self.store.close()

    async def _run[T](self, work: Callable[[], Awaitable[T]]) -> T:
        await self.cancel()
        task = asyncio.create_task(work())
        self._task = task
        try:
            return await task
        finally:
            if self._task is task:
                self._task = None

    async def _commit(self, snapshot: Snapshot) -> list[str]:
        """Publish a snapshot and persist it, returning persistence warnings."""
        if snapshot.version <= self.snapshots.version:
            logger.debug(
                f"Not publishing version {snapshot.version}, "
                f"version {self.snapshots.version} is current"
            )
            return []
        await self.snapshots.publish(snapshot)
        if self.repository is None or not self._config.storage.persist:
            return []
        # A save thread cannot be interrupted; the lock stays held until it ends
        return await asyncio.shield(asyncio.ensure_future(self._persist(snapshot)))

    async def _persist(self, snapshot: Snapshot) -> list[str]:
        assert self.repository is not None
        async with self._save_lock:
            started = time.perf_counter()
            try:
                await asyncio.to_thread(self.repository.save, snapshot)
            except Exception as e:
                logger.error(
                    f"Failed to persist snapshot version {snapshot.version}: {e}"
                )
                return [f"IoError: Cannot persist snapshot: {e}"]
        logger.debug(
            f"Persisted version {snapshot.version} "
            f"in {time.perf_counter() - started:.2f}s"
        )
        return []

    def _report(self, event: BuildProgress) -> None:
        if self.on_progress is not None:
            self.on_progress(event)
