from neuro.raptor.store.repositories.snapshot import SnapshotRepository

__all__ = ["SnapshotRepository"]
