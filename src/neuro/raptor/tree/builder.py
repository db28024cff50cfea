import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from functools import partial

from neuro.raptor.chunker import Chunker
from neuro.raptor.config.models import AppConfig
from neuro.raptor.embeddings.cache import EmbeddingCache, Vector
from neuro.raptor.exceptions import (
    ClusteringError,
    EmbeddingError,
    RaptorError,
    SourceReadError,
    SummarizationError,
)
from neuro.raptor.reader import SourceFile
from neuro.raptor.store.models import FileRecord, Node, Snapshot
from neuro.raptor.tree.clustering import Clusterer, ThresholdClusterer, is_malformed
from neuro.raptor.tree.models import BuildProgress, BuildStats
from neuro.raptor.tree.summarizer import ClusterSummarizer, extractive_summary
from neuro.raptor.utils import content_hash

logger = logging.getLogger(__name__)


@dataclass
class BuildState:
    """Bookkeeping of a single build or update pass."""

    next_id: int
    warnings: list[str] = field(default_factory=list)
    created: int = 0
    records: dict[str, FileRecord] = field(default_factory=dict)
    leaves: list[Node] = field(default_factory=list)
    registry: dict[int, Node] = field(default_factory=dict)
    parent_of: dict[int, int] = field(default_factory=dict)
    stale: set[int] = field(default_factory=set)
    reported: set[int] = field(default_factory=set)
    roots: list[Node] = field(default_factory=list)
    rounds: int = 0

    def allocate(self) -> int:
        node_id = self.next_id
        self.next_id += 1
        return node_id

    def warn(self, error: RaptorError) -> None:
        message = error.warning()
        self.warnings.append(message)
        logger.warning(message)


def in_working_set(snapshot: Snapshot, node: Node, round_: int) -> bool:
    """Whether `node` was clustered in round `round_` when `snapshot` was grown.

    A node stays in the working set from the round it was created in until it
    is merged into a parent, which is created one round later.
    """
    if node.level > round_:
        return False
    if node.parent_id is None:
        return True
    parent = snapshot.nodes.get(node.parent_id)
    return parent is None or parent.level > round_


def prior_cluster(snapshot: Snapshot, node: Node, round_: int) -> set[int]:
    """The cluster `node` belonged to in round `round_` of `snapshot`."""
    if node.parent_id is not None:
        parent = snapshot.nodes.get(node.parent_id)
        if parent is not None and parent.level == round_ + 1:
            return set(parent.children_ids)
    return {node.id}


def prior_clusters(
    snapshot: Snapshot, working: Sequence[Node], round_: int
) -> tuple[set[int], list[set[int]]]:
    """Split a working set against the clusters of a previous tree.

    Returns the dirty node ids (new to this round, or whose previous cluster
    lost a member) and the previous clusters that are still fully present.
    """
    present = {node.id for node in working}
    dirty: set[int] = set()
    intact: dict[frozenset[int], set[int]] = {}

    for node in working:
        previous = snapshot.nodes.get(node.id)
        if previous is None or not in_working_set(snapshot, previous, round_):
            dirty.add(node.id)
            continue
        group = prior_cluster(snapshot, previous, round_)
        if not group <= present:
            dirty.add(node.id)
            continue
        intact.setdefault(frozenset(group), group)

    return dirty, list(intact.values())


class TreeBuilder:
    """Builds the hierarchical summary tree over a stream of source files.

    Leaves are the chunks of every file. Each round clusters the current
    working set; clusters of two or more nodes get a summary parent one level
    up, singletons are carried to the next round unchanged. Growth stops at a
    single node, after `max_depth` rounds or after a round without merges,
    leaving a forest of roots.

    `build` is an async generator of progress events that yields control every
    `yield_every` units of work. The result is available on `snapshot` and
    `stats` once the generator is exhausted.
    """

    def __init__(
        self,
        config: AppConfig,
        cache: EmbeddingCache,
        summarizer: ClusterSummarizer,
        clusterer: Clusterer | None = None,
    ):
        config.index.check()
        self.config = config
        self.cache = cache
        self.summarizer = summarizer
        self.clusterer = clusterer or ThresholdClusterer()
        self.chunker = Chunker(config.index)
        self._semaphore = asyncio.Semaphore(config.index.max_concurrency)
        self.snapshot: Snapshot | None = None
        self.stats: BuildStats | None = None

    @property
    def settings(self) -> str:
        """Fingerprint of the tree-shaping settings and the embedding model.

        Vectors of different models are not comparable, so a snapshot built
        under other settings is never updated in place.
        """
        embedder = self.cache.embedder
        return (
            f"{self.config.index.fingerprint()}|"
            f"{self.config.embeddings.model.provider}:{embedder.model}:"
            f"{embedder.vector_dim}"
        )

    async def build(
        self,
        files: Iterable[SourceFile],
        version: int = 1,
        first_id: int = 1,
    ) -> AsyncIterator[BuildProgress]:
        """Build a complete tree from scratch.

        Unreadable files are skipped with a warning. Embedding and summary
        failures degrade single nodes; the build always completes.

        Args:
            files: Pre-filtered source files
            version: Version of the resulting snapshot
            first_id: First node id to allocate
        """
        started = time.perf_counter()
        self.snapshot = None
        self.stats = None
        state = BuildState(next_id=first_id)

        unique = {file.path: file for file in files}
        items: list[tuple[SourceFile, str]] = []
        for path in sorted(unique):
            try:
                items.append((unique[path], unique[path].read()))
            except SourceReadError as e:
                state.warn(e)
        yield BuildProgress(stage="read", current=len(items), total=len(unique))

        async for event in self.index_files(state, items):
            yield event
        async for event in self.grow(state, state.leaves, None):
            yield event

        snapshot = self.assemble(state, version)
        self.snapshot = snapshot
        self.stats = BuildStats(
            node_count=snapshot.node_count,
            depth=snapshot.depth,
            duration=time.perf_counter() - started,
            warnings=state.warnings,
        )
        logger.info(
            f"Built tree version {version} with {snapshot.node_count} nodes "
            f"in {state.rounds} rounds"
        )
        yield BuildProgress(
            stage="commit",
            current=snapshot.node_count,
            total=snapshot.node_count,
            detail=f"version {version}",
        )

    async def index_files(
        self, state: BuildState, items: Sequence[tuple[SourceFile, str]]
    ) -> AsyncIterator[BuildProgress]:
        """Chunk and embed files, adding their leaves and records to `state`."""
        chunked = [
            (file, text, self.chunker.chunk(file.path, text)) for file, text in items
        ]
        jobs = [
            partial(self._embed, state, chunk.text)
            for _, _, chunks in chunked
            for chunk in chunks
        ]
        vectors: list[Vector | None] = []
        async for event in self._batched("embed", jobs, vectors):
            yield event

        position = 0
        for file, text, chunks in chunked:
            leaves: list[Node] = []
            for chunk in chunks:
                leaves.append(
                    Node(
                        id=state.allocate(),
                        level=0,
                        text=chunk.text,
                        embedding=vectors[position],
                        source_paths=frozenset({file.path}),
                        anchor=(file.path, chunk.byte_range[0]),
                        byte_range=chunk.byte_range,
                        content_hash=chunk.content_hash,
                    )
                )
                position += 1
            state.records[file.path] = FileRecord(
                path=file.path,
                mtime=file.mtime,
                content_hash=content_hash(text),
                leaf_ids=tuple(leaf.id for leaf in leaves),
                degraded=any(leaf.embedding is None for leaf in leaves),
            )
            state.leaves.extend(leaves)
            state.created += len(leaves)

    async def grow(
        self,
        state: BuildState,
        leaves: Sequence[Node],
        previous: Snapshot | None,
    ) -> AsyncIterator[BuildProgress]:
        """Run the cluster and summarize rounds over `leaves`.

        With a `previous` snapshot, clusters whose members are unchanged keep
        their previous parent node and only the dirty nodes are compared against
        the rest of their round.
        """
        index = self.config.index
        working = sorted(leaves, key=lambda n: n.id)
        state.registry.update((node.id, node) for node in working)
        round_ = 0

        while len(working) > 1 and round_ < index.max_depth:
            self._report_malformed(state, working)
            clusters = self._cluster(working, round_, previous)
            round_ += 1
            if all(len(members) == 1 for members in clusters):
                break

            by_id = {node.id: node for node in working}
            next_working: list[Node] = []
            jobs: list[Callable[[], Awaitable[Node]]] = []

            for members in clusters:
                if len(members) == 1:
                    next_working.append(by_id[next(iter(members))])
                    continue

                parent = self._reusable_parent(state, previous, members, round_)
                if parent is None:
                    children = sorted(
                        (by_id[m] for m in members), key=lambda n: (n.anchor, n.id)
                    )
                    parent_id = state.allocate()
                    jobs.append(
                        partial(self._make_parent, state, parent_id, round_, children)
                    )
                else:
                    parent_id = parent.id
                    next_working.append(parent)
                for member in members:
                    state.parent_of[member] = parent_id

            created: list[Node] = []
            async for event in self._batched("summarize", jobs, created):
                yield event
            state.created += len(created)
            next_working.extend(created)

            working = sorted(next_working, key=lambda n: n.id)
            state.registry.update((node.id, node) for node in working)
            logger.debug(
                f"Round {round_}: {len(clusters)} clusters, "
                f"{len(created)} new summaries, {len(working)} nodes remain"
            )
            yield BuildProgress(
                stage="cluster",
                current=round_,
                total=index.max_depth,
                detail=f"{len(working)} nodes after round {round_}",
            )

        state.rounds = round_
        state.roots = working

    def assemble(self, state: BuildState, version: int) -> Snapshot:
        """Collect the nodes reachable from the roots into a new snapshot.

        Nodes reused from a previous tree are shared as-is unless their parent
        changed, in which case a copy with the new parent is stored.
        """
        nodes: dict[int, Node] = {}
        stack = [root.id for root in state.roots]
        while stack:
            node_id = stack.pop()
            node = state.registry[node_id]
            parent_id = state.parent_of.get(node_id)
            if node.parent_id != parent_id:
                node = node.model_copy(update={"parent_id": parent_id})
            nodes[node_id] = node
            stack.extend(node.children_ids)

        return Snapshot(
            version=version,
            root_ids=tuple(root.id for root in state.roots),
            nodes=nodes,
            file_records=state.records,
            next_id=state.next_id,
            rounds=state.rounds,
            settings=self.settings,
            created_at=time.time(),
        )

    def _cluster(
        self, working: Sequence[Node], round_: int, previous: Snapshot | None
    ) -> list[set[int]]:
        threshold = self.config.index.similarity_threshold
        if (
            previous is not None
            and self.clusterer.supports_incremental
            and round_ < previous.rounds
        ):
            dirty, intact = prior_clusters(previous, working, round_)
            return self.clusterer.recluster(working, threshold, dirty, intact)
        return self.clusterer.cluster(working, threshold)

    def _report_malformed(self, state: BuildState, working: Sequence[Node]) -> None:
        # Degraded nodes were already reported as embedding failures.
        for node in working:
            if node.id in state.reported or node.embedding is None:
                continue
            if is_malformed(node):
                state.reported.add(node.id)
                state.warn(
                    ClusteringError(
                        f"Node {node.id} has a malformed embedding, "
                        "kept as a singleton"
                    )
                )

    def _reusable_parent(
        self,
        state: BuildState,
        previous: Snapshot | None,
        members: set[int],
        level: int,
    ) -> Node | None:
        if previous is None:
            return None
        first = previous.nodes.get(min(members))
        if first is None or first.parent_id is None:
            return None
        parent = previous.nodes.get(first.parent_id)
        if (
            parent is None
            or parent.id in state.stale
            or parent.embedding is None
            or parent.level != level
            or set(parent.children_ids) != members
        ):
            return None
        return parent

    async def _make_parent(
        self,
        state: BuildState,
        parent_id: int,
        level: int,
        children: Sequence[Node],
    ) -> Node:
        texts = [child.text for child in children]
        try:
            text = await self.summarizer.summarize(texts)
        except SummarizationError as e:
            state.warn(e)
            text = extractive_summary(texts, self.summarizer.max_summary_chars)

        return Node(
            id=parent_id,
            level=level,
            text=text,
            embedding=await self._embed(state, text),
            children_ids=tuple(child.id for child in children),
            source_paths=frozenset().union(*(c.source_paths for c in children)),
            anchor=min(child.anchor for child in children),
        )

    async def _embed(self, state: BuildState, text: str) -> Vector | None:
        try:
            return await self.cache.get_or_compute(text)
        except EmbeddingError as e:
            state.warn(e)
            return None

    async def _bounded[T](self, job: Callable[[], Awaitable[T]]) -> T:
        async with self._semaphore:
            return await job()

    async def _batched[T](
        self,
        stage: str,
        jobs: Sequence[Callable[[], Awaitable[T]]],
        results: list[T],
    ) -> AsyncIterator[BuildProgress]:
        """Run jobs concurrently in batches, yielding control after each batch."""
        step = self.config.index.yield_every
        total = len(jobs)
        for start in range(0, total, step):
            batch = jobs[start : start + step]
            results.extend(await asyncio.gather(*(self._bounded(j) for j in batch)))
            await asyncio.sleep(0)
            yield BuildProgress(
                stage=stage, current=min(start + step, total), total=total
            )
