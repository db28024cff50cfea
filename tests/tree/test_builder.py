import pytest

from neuro.raptor.reader import SourceFile
from neuro.raptor.tree.summarizer import extractive_summary
from tests.fakes import (
    FailingSummarizer,
    PoisonEmbedder,
    run_build,
    source,
    topic_text,
)


@pytest.mark.asyncio
class TestTreeBuilder:
    async def test_builds_one_summary_per_topic(self, make_builder, corpus, summarizer):
        snapshot, stats, _ = await run_build(make_builder(), corpus)

        snapshot.validate_integrity()
        assert snapshot.version == 1
        assert snapshot.level_counts() == {0: 12, 1: 2}
        assert snapshot.rounds == 2
        assert snapshot.depth == 1
        assert stats.node_count == 14
        assert stats.depth == 1
        assert stats.warnings == []
        assert summarizer.calls == 2

        roots = [snapshot.nodes[i] for i in snapshot.root_ids]
        assert {frozenset(r.source_paths) for r in roots} == {
            frozenset({"a.py", "b.py"}),
            frozenset({"c.py", "d.py"}),
        }
        assert all(len(root.children_ids) == 6 for root in roots)

    async def test_leaves_follow_file_records(self, make_builder, corpus):
        snapshot, _, _ = await run_build(make_builder(), corpus)

        assert sorted(snapshot.file_records) == ["a.py", "b.py", "c.py", "d.py"]
        for path, record in snapshot.file_records.items():
            leaves = snapshot.leaves_of(path)
            assert len(leaves) == 3
            assert [leaf.byte_range for leaf in leaves] == [
                (0, 200),
                (180, 380),
                (360, 500),
            ]
            assert all(leaf.source_paths == {path} for leaf in leaves)
            assert not record.degraded

    async def test_ids_are_allocated_in_path_order(self, make_builder, corpus):
        snapshot, _, _ = await run_build(make_builder(), corpus, first_id=100)

        assert snapshot.file_records["a.py"].leaf_ids == (100, 101, 102)
        assert snapshot.file_records["d.py"].leaf_ids == (109, 110, 111)
        assert min(snapshot.nodes) == 100
        assert snapshot.next_id == 114

    async def test_parent_above_children(self, make_builder, app_config, corpus):
        config = app_config.model_copy(
            update={
                "index": app_config.index.model_copy(
                    update={"similarity_threshold": 0.05}
                )
            }
        )
        snapshot, _, _ = await run_build(make_builder(config), corpus)

        snapshot.validate_integrity()
        assert len(snapshot.root_ids) == 1
        root = snapshot.nodes[snapshot.root_ids[0]]
        assert root.level == 2
        assert root.source_paths == {"a.py", "b.py", "c.py", "d.py"}
        assert root.anchor == ("a.py", 0)

    async def test_max_depth_limits_rounds(self, make_builder, app_config, corpus):
        config = app_config.model_copy(
            update={
                "index": app_config.index.model_copy(
                    update={"similarity_threshold": 0.05, "max_depth": 1}
                )
            }
        )
        snapshot, _, _ = await run_build(make_builder(config), corpus)

        assert snapshot.depth == 1
        assert len(snapshot.root_ids) == 2
        assert snapshot.rounds == 1

    async def test_zero_depth_keeps_only_leaves(self, make_builder, app_config, corpus):
        config = app_config.model_copy(
            update={"index": app_config.index.model_copy(update={"max_depth": 0})}
        )
        snapshot, _, _ = await run_build(make_builder(config), corpus)

        assert snapshot.level_counts() == {0: 12}
        assert len(snapshot.root_ids) == 12

    async def test_singletons_are_carried_unchanged(self, make_builder, corpus):
        files = [*corpus, source("e.py", "parser parser parser\n")]
        snapshot, _, _ = await run_build(make_builder(), files)

        snapshot.validate_integrity()
        (leaf_id,) = snapshot.file_records["e.py"].leaf_ids
        leaf = snapshot.nodes[leaf_id]
        assert leaf.parent_id is None
        assert leaf.level == 0
        assert leaf_id in snapshot.root_ids

    async def test_single_chunk_corpus(self, make_builder):
        snapshot, stats, _ = await run_build(
            make_builder(), [source("main.py", "print('render')\n")]
        )

        assert snapshot.node_count == 1
        assert snapshot.rounds == 0
        assert snapshot.root_ids == snapshot.file_records["main.py"].leaf_ids

    async def test_empty_corpus(self, make_builder):
        snapshot, stats, events = await run_build(make_builder(), [])

        assert snapshot.node_count == 0
        assert snapshot.root_ids == ()
        assert stats.node_count == 0
        assert events[-1].stage == "commit"

    async def test_empty_file_has_no_leaves(self, make_builder):
        snapshot, _, _ = await run_build(make_builder(), [source("empty.py", "")])

        assert snapshot.file_records["empty.py"].leaf_ids == ()
        assert snapshot.node_count == 0

    async def test_deterministic(self, make_builder, corpus):
        first, _, _ = await run_build(make_builder(), corpus)
        second, _, _ = await run_build(make_builder(), list(reversed(corpus)))

        assert first == second

    async def test_progress_events(self, make_builder, corpus):
        _, _, events = await run_build(make_builder(), corpus)

        stages = [event.stage for event in events]
        assert stages[0] == "read"
        assert stages[-1] == "commit"
        assert {"embed", "summarize", "cluster"} <= set(stages)
        embed_events = [e for e in events if e.stage == "embed"]
        assert [e.current for e in embed_events] == [4, 8, 12]
        assert all(e.total == 12 for e in embed_events)

    async def test_embedding_failures_degrade_nodes(
        self, make_builder, app_config, corpus
    ):
        files = [*corpus, source("e.py", "poison pill\n")]
        builder = make_builder(embedder_=PoisonEmbedder(app_config))
        snapshot, stats, _ = await run_build(builder, files)

        snapshot.validate_integrity()
        (leaf_id,) = snapshot.file_records["e.py"].leaf_ids
        assert snapshot.nodes[leaf_id].degraded
        assert snapshot.nodes[leaf_id].parent_id is None
        assert snapshot.file_records["e.py"].degraded
        assert any(w.startswith("EmbeddingError: ") for w in stats.warnings)
        assert snapshot.level_counts() == {0: 13, 1: 2}

    async def test_summary_failures_fall_back_to_extracts(self, make_builder, corpus):
        builder = make_builder(summarizer_=FailingSummarizer())
        snapshot, stats, _ = await run_build(builder, corpus)

        snapshot.validate_integrity()
        assert len(stats.warnings) == 2
        assert all(w.startswith("SummarizationError: ") for w in stats.warnings)
        for root_id in snapshot.root_ids:
            root = snapshot.nodes[root_id]
            children = [snapshot.nodes[c].text for c in root.children_ids]
            assert root.text == extractive_summary(children, 1200)
            assert not root.degraded

    async def test_unreadable_files_are_skipped(self, make_builder, corpus, tmp_path):
        missing = SourceFile(path="gone.py", mtime=1.0, location=tmp_path / "gone.py")
        snapshot, stats, _ = await run_build(make_builder(), [*corpus, missing])

        assert "gone.py" not in snapshot.file_records
        assert any(w.startswith("IoError: ") for w in stats.warnings)

    async def test_duplicate_paths_are_indexed_once(self, make_builder):
        files = [
            source("a.py", topic_text("render")),
            source("a.py", topic_text("render")),
        ]
        snapshot, _, _ = await run_build(make_builder(), files)

        assert list(snapshot.file_records) == ["a.py"]
        assert snapshot.level_counts()[0] == 3
