from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import cached_property
from types import MappingProxyType

import numpy as np

from neuro.raptor.exceptions import CorruptIndexError
from neuro.raptor.store.models.file_record import FileRecord
from neuro.raptor.store.models.node import Node


@dataclass(frozen=True)
class VectorIndex:
    """Normalized embedding matrix of the non-degraded nodes of a snapshot."""

    ids: np.ndarray
    levels: np.ndarray
    matrix: np.ndarray

    @classmethod
    def from_nodes(cls, nodes: Mapping[int, Node]) -> "VectorIndex":
        rows = [
            node
            for _, node in sorted(nodes.items())
            if node.embedding is not None
        ]
        if not rows:
            return cls(
                ids=np.empty(0, dtype=np.int64),
                levels=np.empty(0, dtype=np.int64),
                matrix=np.empty((0, 0), dtype=np.float64),
            )

        matrix = np.asarray([node.embedding for node in rows], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return cls(
            ids=np.asarray([node.id for node in rows], dtype=np.int64),
            levels=np.asarray([node.level for node in rows], dtype=np.int64),
            matrix=matrix / norms,
        )


@dataclass(frozen=True)
class Snapshot:
    """A complete, immutable tree state.

    Attributes:
        version: Monotonic version within a lineage
        root_ids: Ids of the nodes without a parent
        nodes: Node table keyed by id
        file_records: File records keyed by path
        next_id: First id not yet allocated in this lineage
        rounds: Number of cluster passes the tree was grown with
        settings: Fingerprint of the settings the tree was built under
    """

    version: int
    root_ids: tuple[int, ...]
    nodes: Mapping[int, Node]
    file_records: Mapping[str, FileRecord]
    next_id: int
    rounds: int = 0
    settings: str = ""
    created_at: float = field(default=0.0, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "root_ids", tuple(sorted(self.root_ids)))
        object.__setattr__(self, "nodes", MappingProxyType(dict(self.nodes)))
        object.__setattr__(
            self, "file_records", MappingProxyType(dict(self.file_records))
        )

    @classmethod
    def empty(cls, settings: str = "", version: int = 0) -> "Snapshot":
        return cls(
            version=version,
            root_ids=(),
            nodes={},
            file_records={},
            next_id=1,
            settings=settings,
        )

    @cached_property
    def vector_index(self) -> VectorIndex:
        return VectorIndex.from_nodes(self.nodes)

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    @property
    def depth(self) -> int:
        return max((node.level for node in self.nodes.values()), default=0)

    def level_counts(self) -> dict[int, int]:
        return dict(sorted(Counter(n.level for n in self.nodes.values()).items()))

    def leaves_of(self, path: str) -> list[Node]:
        record = self.file_records.get(path)
        if record is None:
            return []
        return [self.nodes[leaf_id] for leaf_id in record.leaf_ids]

    def descendants(self, node_id: int) -> set[int]:
        """Ids of every node below `node_id`."""
        found: set[int] = set()
        stack = list(self.nodes[node_id].children_ids)
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(self.nodes[current].children_ids)
        return found

    def validate_integrity(self) -> None:
        """Check the referential integrity of the tree.

        Raises:
            CorruptIndexError: On the first inconsistency found.
        """
        nodes = self.nodes

        for node_id, node in nodes.items():
            if node.id != node_id:
                raise CorruptIndexError(f"Node stored under {node_id} has id {node.id}")
            if node.id >= self.next_id:
                raise CorruptIndexError(
                    f"Node {node.id} is beyond the id counter {self.next_id}"
                )

            if node.level == 0:
                if node.children_ids:
                    raise CorruptIndexError(f"Leaf {node.id} has children")
                if len(node.source_paths) != 1:
                    raise CorruptIndexError(f"Leaf {node.id} must own exactly one file")
            elif len(node.children_ids) < 2:
                raise CorruptIndexError(
                    f"Summary node {node.id} has fewer than two children"
                )

            covered: set[str] = set()
            for child_id in node.children_ids:
                child = nodes.get(child_id)
                if child is None:
                    raise CorruptIndexError(
                        f"Node {node.id} references missing child {child_id}"
                    )
                if child.parent_id != node.id:
                    raise CorruptIndexError(
                        f"Child {child_id} does not point back to parent {node.id}"
                    )
                if child.level >= node.level:
                    raise CorruptIndexError(
                        f"Child {child_id} is not below its parent {node.id}"
                    )
                covered |= child.source_paths
            if node.children_ids and covered != node.source_paths:
                raise CorruptIndexError(
                    f"Node {node.id} source paths differ from its children"
                )

            if node.parent_id is not None:
                parent = nodes.get(node.parent_id)
                if parent is None:
                    raise CorruptIndexError(
                        f"Node {node.id} references missing parent {node.parent_id}"
                    )
                if node.id not in parent.children_ids:
                    raise CorruptIndexError(
                        f"Parent {parent.id} does not list child {node.id}"
                    )

        roots = {node.id for node in nodes.values() if node.parent_id is None}
        if roots != set(self.root_ids):
            raise CorruptIndexError("Root list does not match parentless nodes")

        for path, record in self.file_records.items():
            if record.path != path:
                raise CorruptIndexError(
                    f"File record stored under {path} is for {record.path}"
                )
            for leaf_id in record.leaf_ids:
                leaf = nodes.get(leaf_id)
                if leaf is None:
                    raise CorruptIndexError(
                        f"File {path} references missing leaf {leaf_id}"
                    )
                if leaf.level != 0 or leaf.source_paths != {path}:
                    raise CorruptIndexError(f"Leaf {leaf_id} is not owned by {path}")

        owned = sum(len(record.leaf_ids) for record in self.file_records.values())
        leaves = sum(1 for node in nodes.values() if node.level == 0)
        if owned != leaves:
            raise CorruptIndexError("Leaves are not owned by exactly one file record")
