import asyncio
import logging

from neuro.raptor.store.models import Snapshot

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Holds the currently published snapshot.

    Readers take `current` without locking and keep using the snapshot they
    got; a publish swaps the reference, so no reader ever sees a partial tree.
    """

    def __init__(self, snapshot: Snapshot | None = None):
        self._current = snapshot
        self._lock = asyncio.Lock()

    @property
    def current(self) -> Snapshot | None:
        return self._current

    @property
    def version(self) -> int:
        return self._current.version if self._current else 0

    async def publish(self, snapshot: Snapshot) -> None:
        """Make `snapshot` the current one.

        Publishing the snapshot that is already current is a no-op.

        Raises:
            ValueError: If the snapshot is not newer than the current one.
        """
        async with self._lock:
            if snapshot is self._current:
                return
            if self._current is not None and snapshot.version <= self._current.version:
                raise ValueError(
                    f"Snapshot version {snapshot.version} is not newer than "
                    f"the published version {self._current.version}"
                )
            self._current = snapshot
            logger.debug(f"Published snapshot version {snapshot.version}")

    async def reset(self) -> None:
        """Drop the published snapshot; the next publish may start at any version."""
        async with self._lock:
            self._current = None
            logger.debug("Reset the published snapshot")
