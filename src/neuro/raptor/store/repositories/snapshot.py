import json
import logging
from typing import Any

from pydantic import ValidationError

from neuro.raptor.exceptions import CorruptIndexError
from neuro.raptor.store.engine import (
    META_TABLE,
    FileRecordRow,
    SnapshotMetaRecord,
    Store,
    create_node_model,
)
from neuro.raptor.store.models import FileRecord, Node, Snapshot

logger = logging.getLogger(__name__)


def _vector_dim(snapshot: Snapshot) -> int:
    for node in snapshot.nodes.values():
        if node.embedding is not None:
            return len(node.embedding)
    return 1


class SnapshotRepository:
    """Repository for persisting and restoring snapshots."""

    def __init__(self, store: Store) -> None:
        self.store = store

    def exists(self) -> bool:
        return self.store.has_meta()

    def clear(self) -> None:
        """Delete every persisted snapshot."""
        self.store.drop_all()

    def save(self, snapshot: Snapshot) -> None:
        """Write a snapshot and make it the current one.

        The node and file tables of the new version are written first; the
        meta record is switched last, after which older versions are dropped.
        """
        vector_dim = _vector_dim(snapshot)
        NodeRecord = create_node_model(vector_dim)
        version = snapshot.version

        node_rows = [
            self._node_to_record(NodeRecord, node, vector_dim)
            for _, node in sorted(snapshot.nodes.items())
        ]
        nodes_table = self.store.db.create_table(
            self.store.nodes_table_name(version), schema=NodeRecord, mode="overwrite"
        )
        if node_rows:
            nodes_table.add(node_rows)

        file_rows = [
            FileRecordRow(
                path=record.path,
                mtime=record.mtime,
                content_hash=record.content_hash,
                leaf_ids=json.dumps(list(record.leaf_ids)),
                degraded=record.degraded,
            )
            for _, record in sorted(snapshot.file_records.items())
        ]
        files_table = self.store.db.create_table(
            self.store.files_table_name(version), schema=FileRecordRow, mode="overwrite"
        )
        if file_rows:
            files_table.add(file_rows)

        meta_table = self.store.db.create_table(
            META_TABLE, schema=SnapshotMetaRecord, mode="overwrite"
        )
        meta_table.add(
            [
                SnapshotMetaRecord(
                    version=version,
                    next_id=snapshot.next_id,
                    rounds=snapshot.rounds,
                    root_ids=json.dumps(list(snapshot.root_ids)),
                    settings=snapshot.settings,
                    vector_dim=vector_dim,
                    created_at=snapshot.created_at,
                )
            ]
        )
        self.store.drop_versions_except(version)
        logger.debug(
            f"Saved snapshot version {version} with {len(node_rows)} nodes "
            f"to {self.store.db_path}"
        )

    def load(self) -> Snapshot | None:
        """Restore the current snapshot, or None when nothing was saved.

        Raises:
            CorruptIndexError: If the stored data is incomplete, unreadable or
                fails the integrity check.
        """
        if not self.exists():
            return None

        try:
            snapshot = self._read()
        except CorruptIndexError:
            raise
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            raise CorruptIndexError(f"Unreadable index at {self.store.db_path}: {e}")

        snapshot.validate_integrity()
        return snapshot

    def _read(self) -> Snapshot:
        meta_rows = self._rows(META_TABLE)
        if len(meta_rows) != 1:
            raise CorruptIndexError(
                f"Expected one snapshot meta record, found {len(meta_rows)}"
            )
        meta = meta_rows[0]
        version = int(meta["version"])

        nodes: dict[int, Node] = {}
        for row in self._rows(self.store.nodes_table_name(version)):
            node = self._record_to_node(row)
            if node.id in nodes:
                raise CorruptIndexError(f"Duplicate node id {node.id}")
            nodes[node.id] = node

        file_records: dict[str, FileRecord] = {}
        for row in self._rows(self.store.files_table_name(version)):
            file_records[row["path"]] = FileRecord(
                path=row["path"],
                mtime=row["mtime"],
                content_hash=row["content_hash"],
                leaf_ids=tuple(json.loads(row["leaf_ids"])),
                degraded=row["degraded"],
            )

        return Snapshot(
            version=version,
            root_ids=tuple(json.loads(meta["root_ids"])),
            nodes=nodes,
            file_records=file_records,
            next_id=int(meta["next_id"]),
            rounds=int(meta["rounds"]),
            settings=meta["settings"],
            created_at=float(meta["created_at"]),
        )

    def _rows(self, name: str) -> list[dict[str, Any]]:
        if name not in self.store.table_names():
            raise CorruptIndexError(f"Table {name} is missing from the index")
        return self.store.db.open_table(name).to_arrow().to_pylist()

    @staticmethod
    def _node_to_record(NodeRecord, node: Node, vector_dim: int):
        byte_range = node.byte_range or (-1, -1)
        return NodeRecord(
            id=node.id,
            level=node.level,
            text=node.text,
            vector=list(node.embedding) if node.embedding else [0.0] * vector_dim,
            degraded=node.embedding is None,
            parent_id=-1 if node.parent_id is None else node.parent_id,
            children_ids=json.dumps(list(node.children_ids)),
            source_paths=json.dumps(sorted(node.source_paths)),
            anchor_path=node.anchor[0],
            anchor_offset=node.anchor[1],
            range_start=byte_range[0],
            range_end=byte_range[1],
            content_hash=node.content_hash or "",
        )

    @staticmethod
    def _record_to_node(row: dict[str, Any]) -> Node:
        has_range = row["range_start"] >= 0
        return Node(
            id=row["id"],
            level=row["level"],
            text=row["text"],
            embedding=None if row["degraded"] else tuple(row["vector"]),
            parent_id=None if row["parent_id"] < 0 else row["parent_id"],
            children_ids=tuple(json.loads(row["children_ids"])),
            source_paths=frozenset(json.loads(row["source_paths"])),
            anchor=(row["anchor_path"], row["anchor_offset"]),
            byte_range=(row["range_start"], row["range_end"]) if has_range else None,
            content_hash=row["content_hash"] or None,
        )
