from neuro.raptor.store.engine import Store
from neuro.raptor.store.repositories import SnapshotRepository
from neuro.raptor.store.snapshots import SnapshotStore

__all__ = ["SnapshotRepository", "SnapshotStore", "Store"]
