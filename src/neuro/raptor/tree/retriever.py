from collections.abc import Collection, Sequence

import numpy as np

from neuro.raptor.embeddings.cache import EmbeddingCache
from neuro.raptor.store.models import Snapshot
from neuro.raptor.tree.models import SearchResult


def rank(
    snapshot: Snapshot,
    query_embedding: Sequence[float],
    top_k: int,
    levels: Collection[int] | None = None,
    node_ids: Collection[int] | None = None,
) -> list[SearchResult]:
    """Rank the nodes of a snapshot by cosine similarity to a query embedding.

    Results are ordered by descending score, ties broken by ascending node id.
    Degraded nodes are never returned.

    Args:
        snapshot: Snapshot to search
        query_embedding: Embedding of the query
        top_k: Maximum number of results
        levels: Restrict the search to these levels (all levels when None)
        node_ids: Restrict the search to these nodes
    """
    index = snapshot.vector_index
    if top_k <= 0 or index.ids.size == 0:
        return []

    query = np.asarray(query_embedding, dtype=np.float64)
    norm = np.linalg.norm(query)
    if not np.isfinite(norm) or norm == 0:
        return []
    if query.shape[0] != index.matrix.shape[1]:
        raise ValueError(
            f"Query embedding has dimension {query.shape[0]}, "
            f"index has {index.matrix.shape[1]}"
        )

    mask = np.ones(index.ids.size, dtype=bool)
    if levels is not None:
        mask &= np.isin(index.levels, list(levels))
    if node_ids is not None:
        mask &= np.isin(index.ids, list(node_ids))
    candidates = np.flatnonzero(mask)
    if candidates.size == 0:
        return []

    scores = index.matrix[candidates] @ (query / norm)
    order = np.lexsort((index.ids[candidates], -scores))[:top_k]

    results: list[SearchResult] = []
    for position in order:
        node = snapshot.nodes[int(index.ids[candidates[position]])]
        results.append(
            SearchResult(
                text=node.text,
                source_paths=sorted(node.source_paths),
                score=float(scores[position]),
                node_id=node.id,
                level=node.level,
            )
        )
    return results


class TreeRetriever:
    """Answers queries against committed snapshots."""

    def __init__(self, cache: EmbeddingCache):
        self.cache = cache

    async def search(
        self,
        snapshot: Snapshot,
        query: str,
        top_k: int = 5,
        levels: Collection[int] | None = None,
    ) -> list[SearchResult]:
        """Search all levels (or the given ones) for the best matching nodes.

        Raises:
            EmbeddingError: If the query cannot be embedded.
        """
        if not query.strip() or top_k <= 0:
            return []
        embedding = await self.cache.embed_query(query)
        return rank(snapshot, embedding, top_k, levels)

    async def retrieve_with_context(
        self,
        snapshot: Snapshot,
        query: str,
        top_k: int = 5,
        expand_k: int = 5,
        chunk_threshold: float = 0.5,
    ) -> list[SearchResult]:
        """Retrieve summaries and the chunks that back them.

        Summaries are searched first. When the best summary scores at least
        `chunk_threshold` the chunk search is restricted to the leaves below the
        matched summaries; otherwise, or when the tree has no summaries, all
        leaves are searched. Summaries come first, followed by chunks.
        """
        if not query.strip() or top_k <= 0:
            return []
        embedding = await self.cache.embed_query(query)

        levels = {n.level for n in snapshot.nodes.values() if n.level > 0}
        summaries = rank(snapshot, embedding, top_k, levels) if levels else []

        scope: set[int] | None = None
        if summaries and summaries[0].score >= chunk_threshold:
            scope = set()
            for hit in summaries:
                scope |= snapshot.descendants(hit.node_id)

        chunks = rank(snapshot, embedding, expand_k, levels={0}, node_ids=scope)
        return summaries + chunks


def format_context(results: Sequence[SearchResult], max_chars: int = 10000) -> str:
    """Render search results as a bounded context block for a prompt."""
    sections: list[str] = []
    used = 0
    for result in results:
        kind = "chunk" if result.level == 0 else f"summary (level {result.level})"
        paths = ", ".join(result.source_paths)
        header = f"### {paths} [{kind}, score {result.score:.3f}]"
        section = f"{header}\n{result.text.strip()}\n"
        separator = 1 if sections else 0
        if used + separator + len(section) > max_chars:
            remaining = max_chars - used - separator
            if remaining > len(header) + 1:
                sections.append(section[:remaining])
            break
        sections.append(section)
        used += separator + len(section)
    return "\n".join(sections)


def fallback_context(
    snapshot: Snapshot,
    exclude: Collection[int] = (),
    limit: int = 5,
    chunk_chars: int = 1200,
) -> str:
    """Raw chunk text in corpus order, for when the ranked context is thin.

    Degraded chunks are included: they have text even without an embedding.
    """
    leaves = sorted(
        (n for n in snapshot.nodes.values() if n.level == 0 and n.id not in exclude),
        key=lambda n: (n.anchor, n.id),
    )
    return "\n---\n".join(leaf.text.strip()[:chunk_chars] for leaf in leaves[:limit])
