import numpy as np
import pytest

from neuro.raptor.config import IndexConfig
from neuro.raptor.store.models import Node
from neuro.raptor.tree.clustering import (
    ThresholdClusterer,
    get_clusterer,
    is_malformed,
    split_malformed,
)


def make_node(node_id: int, embedding, level: int = 0) -> Node:
    return Node(
        id=node_id,
        level=level,
        text=f"node {node_id}",
        embedding=None if embedding is None else tuple(embedding),
        source_paths=frozenset({f"{node_id}.py"}),
        anchor=(f"{node_id}.py", 0),
    )


@pytest.fixture
def nodes() -> list[Node]:
    return [
        make_node(1, [1.0, 0.0, 0.0]),
        make_node(2, [0.99, 0.05, 0.0]),
        make_node(3, [0.0, 1.0, 0.0]),
        make_node(4, [0.0, 0.98, 0.1]),
        make_node(5, [0.0, 0.0, 1.0]),
    ]


class TestMalformed:
    def test_detects_missing_and_degenerate_embeddings(self):
        assert is_malformed(make_node(1, None))
        assert is_malformed(make_node(2, [0.0, 0.0]))
        assert is_malformed(make_node(3, [float("inf"), 1.0]))
        assert not is_malformed(make_node(4, [0.1, 0.2]))

    def test_split_orders_by_id(self):
        valid, malformed = split_malformed(
            [make_node(3, [1.0]), make_node(1, None), make_node(2, [0.5])]
        )
        assert [n.id for n in valid] == [2, 3]
        assert [n.id for n in malformed] == [1]


class TestThresholdClusterer:
    def test_groups_similar_nodes(self, nodes):
        clusters = ThresholdClusterer().cluster(nodes, 0.9)
        assert clusters == [{1, 2}, {3, 4}, {5}]

    def test_partition_covers_every_node_once(self, nodes):
        clusters = ThresholdClusterer().cluster(nodes, 0.5)
        members = [m for cluster in clusters for m in cluster]
        assert sorted(members) == [1, 2, 3, 4, 5]

    def test_threshold_above_one_gives_singletons(self, nodes):
        clusters = ThresholdClusterer().cluster(nodes, 1.0 + 1e-9)
        assert clusters == [{1}, {2}, {3}, {4}, {5}]

    def test_negative_threshold_merges_everything(self, nodes):
        assert ThresholdClusterer().cluster(nodes, -1.0) == [{1, 2, 3, 4, 5}]

    def test_transitive_links(self):
        chain = [
            make_node(1, [1.0, 0.0]),
            make_node(2, [0.9, 0.44]),
            make_node(3, [0.6, 0.8]),
        ]
        # 1~2 and 2~3 pass the threshold, 1~3 alone does not
        assert ThresholdClusterer().cluster(chain, 0.85) == [{1, 2, 3}]

    def test_malformed_nodes_stay_singletons(self, nodes):
        broken = [*nodes, make_node(6, None), make_node(7, [0.0, 0.0, 0.0])]
        clusters = ThresholdClusterer().cluster(broken, -1.0)
        assert {6} in clusters
        assert {7} in clusters
        assert {1, 2, 3, 4, 5} in clusters

    def test_independent_of_input_order(self, nodes):
        clusterer = ThresholdClusterer()
        assert clusterer.cluster(nodes, 0.9) == clusterer.cluster(nodes[::-1], 0.9)

    def test_recluster_matches_full_clustering(self, nodes):
        clusterer = ThresholdClusterer()
        moved = [*nodes[:3], make_node(4, [1.0, 0.02, 0.0]), nodes[4]]

        full = clusterer.cluster(moved, 0.9)
        partial = clusterer.recluster(moved, 0.9, dirty={4}, prior_groups=[{1, 2}])

        assert partial == full == [{1, 2, 4}, {3}, {5}]

    def test_recluster_without_dirty_nodes_keeps_prior_groups(self, nodes):
        clusters = ThresholdClusterer().recluster(
            nodes, 0.9, dirty=set(), prior_groups=[{1, 2}, {3, 4}]
        )
        assert clusters == [{1, 2}, {3, 4}, {5}]


class TestGetClusterer:
    def test_default_is_threshold(self):
        assert isinstance(get_clusterer(IndexConfig()), ThresholdClusterer)


class TestGaussianMixtureClusterer:
    @pytest.fixture(autouse=True)
    def _requires_gmm(self):
        pytest.importorskip("umap")
        pytest.importorskip("sklearn")

    def test_partitions_every_node(self):
        from neuro.raptor.tree.clustering import GaussianMixtureClusterer

        rng = np.random.default_rng(0)
        centers = np.eye(8)[:3]
        embeddings = [centers[i % 3] + rng.normal(0, 0.01, 8) for i in range(24)]
        nodes = [make_node(i + 1, e) for i, e in enumerate(embeddings)]

        clusters = GaussianMixtureClusterer(reduction_dim=2).cluster(nodes, 0.0)
        members = sorted(m for cluster in clusters for m in cluster)
        assert members == list(range(1, 25))

    def test_deterministic(self):
        from neuro.raptor.tree.clustering import GaussianMixtureClusterer

        rng = np.random.default_rng(1)
        nodes = [make_node(i + 1, rng.random(6)) for i in range(15)]
        clusterer = GaussianMixtureClusterer(reduction_dim=2)
        assert clusterer.cluster(nodes, 0.0) == clusterer.cluster(nodes, 0.0)

    def test_small_input_falls_back_to_threshold(self):
        from neuro.raptor.tree.clustering import GaussianMixtureClusterer

        pair = [make_node(1, [1.0, 0.0]), make_node(2, [1.0, 0.01])]
        assert GaussianMixtureClusterer().cluster(pair, 0.9) == [{1, 2}]

    def test_selected_by_config(self):
        from neuro.raptor.tree.clustering import GaussianMixtureClusterer

        clusterer = get_clusterer(IndexConfig(clustering="gmm"))
        assert isinstance(clusterer, GaussianMixtureClusterer)
