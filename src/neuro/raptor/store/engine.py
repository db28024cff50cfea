import logging
from pathlib import Path

import lancedb
import pyarrow as pa
from lancedb.pydantic import LanceModel, Vector
from pydantic import Field

logger = logging.getLogger(__name__)

META_TABLE = "snapshot_meta"
NODES_PREFIX = "nodes_v"
FILES_PREFIX = "file_records_v"


def create_node_model(vector_dim: int):
    """Create a NodeRecord model with the specified vector dimension."""

    class NodeRecord(LanceModel):
        id: int
        level: int
        text: str
        vector: Vector(vector_dim, value_type=pa.float64())  # type: ignore
        degraded: bool = False
        parent_id: int = -1
        children_ids: str = Field(default="[]")
        source_paths: str = Field(default="[]")
        anchor_path: str
        anchor_offset: int
        range_start: int = -1
        range_end: int = -1
        content_hash: str = ""

    return NodeRecord


class FileRecordRow(LanceModel):
    path: str
    mtime: float
    content_hash: str
    leaf_ids: str = Field(default="[]")
    degraded: bool = False


class SnapshotMetaRecord(LanceModel):
    id: str = Field(default="current")
    version: int
    next_id: int
    rounds: int = 0
    root_ids: str = Field(default="[]")
    settings: str = ""
    vector_dim: int
    created_at: float = 0.0


class Store:
    """A lancedb database holding the persisted snapshot of one corpus.

    Node and file tables are written per version; `snapshot_meta` names the
    version that is current, so a partially written version is never read.
    """

    def __init__(self, db_path: Path):
        self.db_path: Path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db = lancedb.connect(self.db_path)

    def table_names(self) -> list[str]:
        return list(self.db.table_names())

    def has_meta(self) -> bool:
        return META_TABLE in self.table_names()

    def nodes_table_name(self, version: int) -> str:
        return f"{NODES_PREFIX}{version}"

    def files_table_name(self, version: int) -> str:
        return f"{FILES_PREFIX}{version}"

    def drop_versions_except(self, version: int) -> None:
        """Drop the node and file tables of every other version."""
        keep = {self.nodes_table_name(version), self.files_table_name(version)}
        for name in self.table_names():
            if name in keep or not name.startswith((NODES_PREFIX, FILES_PREFIX)):
                continue
            self.db.drop_table(name)
            logger.debug(f"Dropped stale table {name}")

    def drop_all(self) -> None:
        """Drop the meta record first, then every version table."""
        names = self.table_names()
        if META_TABLE in names:
            self.db.drop_table(META_TABLE)
        for name in names:
            if name.startswith((NODES_PREFIX, FILES_PREFIX)):
                self.db.drop_table(name)
        logger.debug(f"Dropped all index tables in {self.db_path}")

    def close(self):
        """Close the database connection."""
        # LanceDB connections are automatically managed
        pass
