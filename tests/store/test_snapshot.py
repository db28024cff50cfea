import pytest

from neuro.raptor.exceptions import CorruptIndexError
from neuro.raptor.store.models import FileRecord, Node, Snapshot
from neuro.raptor.store.snapshots import SnapshotStore
from tests.fakes import run_build


def leaf(node_id: int, path: str, parent_id: int | None = None) -> Node:
    return Node(
        id=node_id,
        level=0,
        text=f"chunk {node_id}",
        embedding=(1.0, float(node_id)),
        parent_id=parent_id,
        source_paths=frozenset({path}),
        anchor=(path, 0),
        byte_range=(0, 10),
        content_hash="h",
    )


def small_snapshot(**overrides) -> Snapshot:
    nodes = {
        1: leaf(1, "a.py", parent_id=3),
        2: leaf(2, "b.py", parent_id=3),
        3: Node(
            id=3,
            level=1,
            text="summary",
            embedding=(1.0, 1.0),
            children_ids=(1, 2),
            source_paths=frozenset({"a.py", "b.py"}),
            anchor=("a.py", 0),
        ),
    }
    records = {
        "a.py": FileRecord(path="a.py", mtime=1.0, content_hash="a", leaf_ids=(1,)),
        "b.py": FileRecord(path="b.py", mtime=1.0, content_hash="b", leaf_ids=(2,)),
    }
    values = {
        "version": 1,
        "root_ids": (3,),
        "nodes": nodes,
        "file_records": records,
        "next_id": 4,
        "rounds": 1,
    }
    values.update(overrides)
    return Snapshot(**values)


def with_node(snapshot: Snapshot, node: Node) -> Snapshot:
    nodes = dict(snapshot.nodes)
    nodes[node.id] = node
    return small_snapshot(nodes=nodes)


class TestSnapshot:
    def test_valid_snapshot(self):
        snapshot = small_snapshot()
        snapshot.validate_integrity()
        assert snapshot.node_count == 3
        assert snapshot.depth == 1
        assert snapshot.level_counts() == {0: 2, 1: 1}
        assert snapshot.descendants(3) == {1, 2}
        assert [n.id for n in snapshot.leaves_of("b.py")] == [2]
        assert snapshot.leaves_of("missing.py") == []

    def test_is_immutable(self):
        snapshot = small_snapshot()
        with pytest.raises(TypeError):
            snapshot.nodes[9] = leaf(9, "c.py")  # type: ignore[index]
        with pytest.raises(AttributeError):
            snapshot.version = 2  # type: ignore[misc]

    def test_root_ids_are_sorted(self):
        snapshot = Snapshot(
            version=1,
            root_ids=(2, 1),
            nodes={1: leaf(1, "a.py"), 2: leaf(2, "b.py")},
            file_records={},
            next_id=3,
        )
        assert snapshot.root_ids == (1, 2)

    def test_empty(self):
        snapshot = Snapshot.empty(settings="s")
        snapshot.validate_integrity()
        assert snapshot.node_count == 0
        assert snapshot.vector_index.ids.size == 0

    def test_vector_index_skips_degraded_nodes(self):
        degraded = leaf(2, "b.py", parent_id=3).model_copy(update={"embedding": None})
        snapshot = with_node(small_snapshot(), degraded)
        snapshot.validate_integrity()
        assert snapshot.vector_index.ids.tolist() == [1, 3]

    def test_missing_child(self):
        snapshot = small_snapshot(nodes={
            1: leaf(1, "a.py", parent_id=3),
            3: small_snapshot().nodes[3],
        })
        with pytest.raises(CorruptIndexError):
            snapshot.validate_integrity()

    def test_parent_not_reciprocated(self):
        snapshot = with_node(small_snapshot(), leaf(2, "b.py", parent_id=None))
        with pytest.raises(CorruptIndexError):
            snapshot.validate_integrity()

    def test_child_not_below_parent(self):
        raised = small_snapshot().nodes[1].model_copy(update={"level": 1})
        with pytest.raises(CorruptIndexError):
            with_node(small_snapshot(), raised).validate_integrity()

    def test_summary_with_one_child(self):
        only = small_snapshot().nodes[3].model_copy(update={"children_ids": (1,)})
        with pytest.raises(CorruptIndexError):
            with_node(small_snapshot(), only).validate_integrity()

    def test_source_paths_must_cover_children(self):
        narrow = small_snapshot().nodes[3].model_copy(
            update={"source_paths": frozenset({"a.py"})}
        )
        with pytest.raises(CorruptIndexError):
            with_node(small_snapshot(), narrow).validate_integrity()

    def test_roots_must_match(self):
        with pytest.raises(CorruptIndexError):
            small_snapshot(root_ids=(1, 3)).validate_integrity()

    def test_ids_below_counter(self):
        with pytest.raises(CorruptIndexError):
            small_snapshot(next_id=3).validate_integrity()

    def test_file_records_own_their_leaves(self):
        records = {
            "a.py": FileRecord(path="a.py", mtime=1.0, content_hash="a", leaf_ids=(2,)),
            "b.py": FileRecord(path="b.py", mtime=1.0, content_hash="b", leaf_ids=(1,)),
        }
        with pytest.raises(CorruptIndexError):
            small_snapshot(file_records=records).validate_integrity()

    def test_orphan_leaf(self):
        records = {
            "a.py": FileRecord(path="a.py", mtime=1.0, content_hash="a", leaf_ids=(1,))
        }
        with pytest.raises(CorruptIndexError):
            small_snapshot(file_records=records).validate_integrity()

    async def test_built_snapshots_are_valid(self, make_builder, corpus):
        snapshot, _, _ = await run_build(make_builder(), corpus)
        snapshot.validate_integrity()


@pytest.mark.asyncio
class TestSnapshotStore:
    async def test_publish_newer_versions(self):
        store = SnapshotStore()
        assert store.current is None
        assert store.version == 0

        first = small_snapshot()
        await store.publish(first)
        assert store.current is first

        second = small_snapshot(version=2)
        await store.publish(second)
        assert store.current is second
        assert store.version == 2

    async def test_rejects_older_versions(self):
        store = SnapshotStore(small_snapshot(version=3))
        with pytest.raises(ValueError):
            await store.publish(small_snapshot(version=3))
        with pytest.raises(ValueError):
            await store.publish(small_snapshot(version=1))
        assert store.version == 3

    async def test_readers_keep_their_snapshot(self):
        store = SnapshotStore(small_snapshot())
        held = store.current
        await store.publish(small_snapshot(version=2))
        assert held.version == 1
        held.validate_integrity()

    async def test_republishing_current_is_a_noop(self):
        snapshot = small_snapshot()
        store = SnapshotStore(snapshot)
        await store.publish(snapshot)
        assert store.current is snapshot
