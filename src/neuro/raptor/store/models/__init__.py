from .chunk import Chunk
from .file_record import FileRecord
from .node import Node
from .snapshot import Snapshot, VectorIndex

__all__ = [
    "Chunk",
    "FileRecord",
    "Node",
    "Snapshot",
    "VectorIndex",
]
