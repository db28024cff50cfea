import logging
import time
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass, field

from neuro.raptor.exceptions import CorruptIndexError, SourceReadError
from neuro.raptor.reader import SourceFile
from neuro.raptor.store.models import FileRecord, Node, Snapshot
from neuro.raptor.tree.builder import BuildState, TreeBuilder
from neuro.raptor.tree.models import BuildProgress, UpdateStats
from neuro.raptor.utils import content_hash

logger = logging.getLogger(__name__)


@dataclass
class ChangeSet:
    """Classification of an incoming file stream against the file records."""

    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    touched: dict[str, FileRecord] = field(default_factory=dict)
    sources: dict[str, tuple[SourceFile, str]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.modified or self.deleted)

    @property
    def changed(self) -> list[str]:
        return sorted(self.added + self.modified)


class FileTracker:
    """Detects added, modified and deleted files."""

    def classify(
        self, records: Mapping[str, FileRecord], files: Iterable[SourceFile]
    ) -> ChangeSet:
        """Compare incoming files with the records of the current snapshot.

        A known file whose mtime did not change is unchanged without being read,
        unless its text was supplied in memory. A changed mtime with identical
        content only refreshes the record. Files whose leaves lack embeddings
        are treated as modified so they are retried. A known file that cannot
        be read keeps its previous leaves.
        """
        changes = ChangeSet()
        incoming = {file.path: file for file in files}

        for path in sorted(incoming):
            file = incoming[path]
            record = records.get(path)

            if (
                record is not None
                and not record.degraded
                and file.text is None
                and file.mtime == record.mtime
            ):
                changes.unchanged.append(path)
                continue

            try:
                text = file.read()
            except SourceReadError as e:
                changes.warnings.append(e.warning())
                logger.warning(e.warning())
                if record is not None:
                    changes.unchanged.append(path)
                continue

            if record is None:
                changes.added.append(path)
            elif record.degraded or content_hash(text) != record.content_hash:
                changes.modified.append(path)
            else:
                changes.unchanged.append(path)
                if file.mtime != record.mtime:
                    changes.touched[path] = record.model_copy(
                        update={"mtime": file.mtime}
                    )
                continue
            changes.sources[path] = (file, text)

        changes.deleted = sorted(set(records) - set(incoming))
        return changes


def dirty_ancestors(snapshot: Snapshot, leaf_ids: Iterable[int]) -> set[int]:
    """Collect every ancestor of the given leaves.

    Raises:
        CorruptIndexError: If a parent link is missing, is not reciprocated,
            or does not lead strictly upward.
    """
    dirty: set[int] = set()
    for leaf_id in leaf_ids:
        node = snapshot.nodes.get(leaf_id)
        if node is None:
            raise CorruptIndexError(f"File record references missing leaf {leaf_id}")
        while node.parent_id is not None:
            parent = snapshot.nodes.get(node.parent_id)
            if parent is None:
                raise CorruptIndexError(
                    f"Node {node.id} claims missing parent {node.parent_id}"
                )
            if node.id not in parent.children_ids:
                raise CorruptIndexError(
                    f"Node {node.id} claims parent {parent.id}, which does not list it"
                )
            if parent.level <= node.level:
                raise CorruptIndexError(
                    f"Parent link {node.id} -> {parent.id} does not lead upward"
                )
            if parent.id in dirty:
                break
            dirty.add(parent.id)
            node = parent
    return dirty


def retained_leaves(snapshot: Snapshot, paths: Iterable[str]) -> list[Node]:
    """Leaves of files carried over unchanged.

    Raises:
        CorruptIndexError: If a record points at a node that is not its leaf.
    """
    leaves: list[Node] = []
    for path in paths:
        for leaf_id in snapshot.file_records[path].leaf_ids:
            leaf = snapshot.nodes.get(leaf_id)
            if leaf is None or leaf.level != 0 or leaf.source_paths != {path}:
                raise CorruptIndexError(
                    f"Leaf {leaf_id} of {path} is missing or foreign"
                )
            leaves.append(leaf)
    return leaves


class IncrementalUpdater:
    """Applies file changes to a snapshot, rebuilding only the dirty paths.

    Leaves of changed files are replaced, every ancestor of a replaced leaf is
    dirty, and the cluster and summarize rounds reuse every cluster whose
    members are unchanged along with its summary node. Structural
    inconsistencies, a settings change or a missing snapshot fall back to a
    full rebuild.
    """

    def __init__(self, builder: TreeBuilder, tracker: FileTracker | None = None):
        self.builder = builder
        self.tracker = tracker or FileTracker()
        self.snapshot: Snapshot | None = None
        self.stats: UpdateStats | None = None

    async def update(
        self, snapshot: Snapshot | None, files: Iterable[SourceFile]
    ) -> AsyncIterator[BuildProgress]:
        """Produce the next snapshot for the given file stream.

        When nothing changed the given snapshot itself is the result.
        """
        started = time.perf_counter()
        self.snapshot = None
        self.stats = None
        files = list(files)

        if snapshot is None:
            async for event in self._rebuild(None, files, started, []):
                yield event
            return

        if snapshot.settings != self.builder.settings:
            logger.info("Index settings changed, rebuilding from scratch")
            async for event in self._rebuild(snapshot, files, started, []):
                yield event
            return

        changes = self.tracker.classify(snapshot.file_records, files)
        if not changes.has_changes and not changes.touched:
            self.snapshot = snapshot
            self.stats = UpdateStats(
                duration=time.perf_counter() - started, warnings=changes.warnings
            )
            return

        carried = [p for p in changes.unchanged if p in snapshot.file_records]
        discarded = [
            leaf_id
            for path in changes.modified + changes.deleted
            for leaf_id in snapshot.file_records[path].leaf_ids
        ]
        try:
            stale = dirty_ancestors(snapshot, discarded)
            leaves = retained_leaves(snapshot, carried)
        except CorruptIndexError as e:
            warnings = [*changes.warnings, e.warning()]
            logger.warning(f"{e.warning()}; falling back to a full rebuild")
            async for event in self._rebuild(snapshot, files, started, warnings):
                yield event
            return

        state = BuildState(
            next_id=snapshot.next_id,
            warnings=list(changes.warnings),
            stale=stale,
            leaves=leaves,
        )
        state.records = {
            path: changes.touched.get(path, snapshot.file_records[path])
            for path in carried
        }

        yield BuildProgress(
            stage="read",
            current=len(changes.sources),
            total=len(files),
            detail=(
                f"{len(changes.added)} added, {len(changes.modified)} modified, "
                f"{len(changes.deleted)} deleted"
            ),
        )
        async for event in self.builder.index_files(
            state, [changes.sources[path] for path in changes.changed]
        ):
            yield event
        async for event in self.builder.grow(state, state.leaves, snapshot):
            yield event

        updated = self.builder.assemble(state, snapshot.version + 1)
        self.snapshot = updated
        self.stats = UpdateStats(
            files_added=len(changes.added),
            files_modified=len(changes.modified),
            files_deleted=len(changes.deleted),
            nodes_rebuilt=state.created,
            duration=time.perf_counter() - started,
            warnings=state.warnings,
        )
        logger.info(
            f"Updated tree to version {updated.version}: "
            f"{state.created} nodes rebuilt, {len(stale)} stale ancestors replaced"
        )
        yield BuildProgress(
            stage="commit",
            current=updated.node_count,
            total=updated.node_count,
            detail=f"version {updated.version}",
        )

    async def _rebuild(
        self,
        snapshot: Snapshot | None,
        files: list[SourceFile],
        started: float,
        warnings: list[str],
    ) -> AsyncIterator[BuildProgress]:
        version = snapshot.version + 1 if snapshot else 1
        first_id = snapshot.next_id if snapshot else 1
        async for event in self.builder.build(
            files, version=version, first_id=first_id
        ):
            yield event

        rebuilt = self.builder.snapshot
        assert rebuilt is not None and self.builder.stats is not None
        before = snapshot.file_records if snapshot else {}
        after = rebuilt.file_records

        self.snapshot = rebuilt
        self.stats = UpdateStats(
            files_added=sum(1 for path in after if path not in before),
            files_modified=sum(
                1
                for path, record in after.items()
                if path in before and before[path].content_hash != record.content_hash
            ),
            files_deleted=sum(1 for path in before if path not in after),
            nodes_rebuilt=rebuilt.node_count,
            duration=time.perf_counter() - started,
            warnings=[*warnings, *self.builder.stats.warnings],
            full_rebuild=True,
        )
