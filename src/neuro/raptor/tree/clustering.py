import warnings
from collections.abc import Iterable, Sequence
from typing import Protocol

import numpy as np

from neuro.raptor.config.models import IndexConfig
from neuro.raptor.store.models.node import Node

RANDOM_SEED = 42

_UMAP = None
_GaussianMixture = None
_import_error: ImportError | None = None

try:
    from sklearn.mixture import GaussianMixture as _GaussianMixture

    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=ImportWarning)
        from umap import UMAP as _UMAP
except ImportError as e:
    _import_error = e


def _check_dependencies() -> None:
    """Check if the mixture-model clustering dependencies are installed."""
    if _import_error is not None:
        raise ImportError(
            "Mixture-model clustering requires additional dependencies. "
            "Install them with: pip install 'neuro.raptor[gmm]'"
        ) from _import_error


class Clusterer(Protocol):
    """Partitions same-round nodes into clusters of node ids.

    `recluster` may reuse `prior_groups` (clusters from the previous tree whose
    members are all still present and unchanged) and only compare the `dirty`
    nodes against the rest; the result must equal `cluster` on the same input.
    """

    supports_incremental: bool

    def cluster(self, nodes: Sequence[Node], threshold: float) -> list[set[int]]: ...

    def recluster(
        self,
        nodes: Sequence[Node],
        threshold: float,
        dirty: set[int],
        prior_groups: Iterable[set[int]],
    ) -> list[set[int]]: ...


def is_malformed(node: Node) -> bool:
    """A node whose embedding cannot take part in similarity comparisons."""
    if node.embedding is None:
        return True
    vector = np.asarray(node.embedding, dtype=np.float64)
    return not np.all(np.isfinite(vector)) or not np.any(vector)


def split_malformed(nodes: Sequence[Node]) -> tuple[list[Node], list[Node]]:
    """Split nodes into (comparable, malformed), both in ascending id order."""
    valid: list[Node] = []
    malformed: list[Node] = []
    for node in sorted(nodes, key=lambda n: n.id):
        (malformed if is_malformed(node) else valid).append(node)
    return valid, malformed


def normalized_matrix(nodes: Sequence[Node]) -> np.ndarray:
    matrix = np.asarray([node.embedding for node in nodes], dtype=np.float64)
    return matrix / np.linalg.norm(matrix, axis=1, keepdims=True)


class _UnionFind:
    def __init__(self, ids: Iterable[int]):
        self._parent = {i: i for i in ids}

    def find(self, item: int) -> int:
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: int, b: int) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return
        # The smaller id always represents the set.
        if root_b < root_a:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a

    def groups(self) -> list[set[int]]:
        grouped: dict[int, set[int]] = {}
        for item in sorted(self._parent):
            grouped.setdefault(self.find(item), set()).add(item)
        return list(grouped.values())


def _sorted_partition(groups: Iterable[set[int]]) -> list[set[int]]:
    return sorted((set(g) for g in groups if g), key=min)


class ThresholdClusterer:
    """Single-linkage clustering over the cosine similarity threshold graph.

    Nodes connected, directly or transitively, by a similarity of at least the
    threshold end up in the same cluster. Nodes with malformed embeddings are
    always singletons.
    """

    supports_incremental = True

    def cluster(self, nodes: Sequence[Node], threshold: float) -> list[set[int]]:
        return self.recluster(nodes, threshold, {n.id for n in nodes}, [])

    def recluster(
        self,
        nodes: Sequence[Node],
        threshold: float,
        dirty: set[int],
        prior_groups: Iterable[set[int]],
    ) -> list[set[int]]:
        valid, malformed = split_malformed(nodes)
        valid_ids = {n.id for n in valid}
        forest = _UnionFind(valid_ids)

        for group in prior_groups:
            members = sorted(m for m in group if m in valid_ids and m not in dirty)
            for a, b in zip(members, members[1:]):
                forest.union(a, b)

        rows = [i for i, node in enumerate(valid) if node.id in dirty]
        if rows and len(valid) > 1:
            matrix = normalized_matrix(valid)
            similarities = matrix[rows] @ matrix.T
            for r, c in zip(*np.nonzero(similarities >= threshold)):
                i = rows[r]
                if i != c:
                    forest.union(valid[i].id, valid[c].id)

        return _sorted_partition(forest.groups() + [{n.id} for n in malformed])


def reduce_embeddings(
    embeddings: np.ndarray,
    n_components: int,
    n_neighbors: int | None = None,
    min_dist: float = 0.0,
    metric: str = "cosine",
) -> np.ndarray:
    """Reduce embedding dimensionality using UMAP.

    Args:
        embeddings: High-dimensional embeddings (n_samples, n_features)
        n_components: Target dimensionality
        n_neighbors: UMAP neighborhood size. If None, uses sqrt(n_samples)
        min_dist: UMAP minimum distance parameter
        metric: Distance metric for UMAP

    Returns:
        Reduced embeddings (n_samples, n_components)
    """
    _check_dependencies()
    assert _UMAP is not None

    if n_neighbors is None:
        n_neighbors = max(2, int((len(embeddings) - 1) ** 0.5))
    n_neighbors = min(n_neighbors, len(embeddings) - 1)

    reducer = _UMAP(
        n_neighbors=n_neighbors,
        n_components=n_components,
        min_dist=min_dist,
        metric=metric,
        random_state=RANDOM_SEED,
    )
    return reducer.fit_transform(embeddings)  # type: ignore[return-value]


def optimal_cluster_count(embeddings: np.ndarray, max_clusters: int = 50) -> int:
    """Pick the component count with the lowest BIC."""
    _check_dependencies()
    assert _GaussianMixture is not None

    max_clusters = min(max_clusters, len(embeddings))
    if max_clusters <= 1:
        return 1

    bics = []
    for n in range(1, max_clusters):
        gm = _GaussianMixture(n_components=n, random_state=RANDOM_SEED)
        gm.fit(embeddings)
        bics.append(gm.bic(embeddings))
    return int(np.argmin(bics) + 1)


def mixture_labels(embeddings: np.ndarray) -> np.ndarray:
    """Hard GMM assignment: the most probable component of every row."""
    _check_dependencies()
    assert _GaussianMixture is not None

    n_clusters = optimal_cluster_count(embeddings)
    gm = _GaussianMixture(n_components=n_clusters, random_state=RANDOM_SEED)
    gm.fit(embeddings)
    return gm.predict(embeddings)


class GaussianMixtureClusterer:
    """UMAP reduction followed by a Gaussian mixture, assigned hard.

    The threshold argument is ignored; the number of clusters is chosen by
    BIC. Results are deterministic for a fixed input order (ascending id) but
    depend on the whole node set, so incremental reuse is not offered.
    """

    supports_incremental = False

    def __init__(
        self,
        reduction_dim: int = 10,
        n_neighbors: int = 10,
        min_dist: float = 0.0,
    ):
        _check_dependencies()
        self.reduction_dim = reduction_dim
        self.n_neighbors = n_neighbors
        self.min_dist = min_dist

    def cluster(self, nodes: Sequence[Node], threshold: float) -> list[set[int]]:
        valid, malformed = split_malformed(nodes)
        singletons = [{n.id} for n in malformed]

        if len(valid) <= 2:
            # Too few points to reduce; fall back to the similarity graph.
            return _sorted_partition(
                ThresholdClusterer().cluster(valid, threshold) + singletons
            )

        embeddings = normalized_matrix(valid)
        reduced = reduce_embeddings(
            embeddings,
            n_components=min(self.reduction_dim, len(valid) - 2),
            n_neighbors=min(self.n_neighbors, len(valid) - 1),
            min_dist=self.min_dist,
        )
        labels = mixture_labels(reduced)

        grouped: dict[int, set[int]] = {}
        for node, label in zip(valid, labels.tolist()):
            grouped.setdefault(int(label), set()).add(node.id)
        return _sorted_partition(list(grouped.values()) + singletons)

    def recluster(
        self,
        nodes: Sequence[Node],
        threshold: float,
        dirty: set[int],
        prior_groups: Iterable[set[int]],
    ) -> list[set[int]]:
        return self.cluster(nodes, threshold)


def get_clusterer(config: IndexConfig) -> Clusterer:
    if config.clustering == "gmm":
        return GaussianMixtureClusterer(
            n_neighbors=config.umap_n_neighbors,
            min_dist=config.umap_min_dist,
        )
    return ThresholdClusterer()
