import logging
from pathlib import Path

from watchfiles import Change, DefaultFilter, awatch

from neuro.raptor.client import RaptorIndex
from neuro.raptor.config.models import CorpusConfig
from neuro.raptor.reader import read_corpus
from neuro.raptor.tree.models import UpdateStats

logger = logging.getLogger(__name__)


class SourceFilter(DefaultFilter):
    def __init__(self, config: CorpusConfig) -> None:
        self.extensions = tuple(ext.lower() for ext in config.extensions)
        super().__init__(ignore_dirs=(*DefaultFilter.ignore_dirs, *config.skip_dirs))

    def __call__(self, change: Change, path: str) -> bool:
        return path.lower().endswith(self.extensions) and super().__call__(
            change, path
        )


class FileWatcher:
    """Keeps an index in line with a directory.

    Every batch of file system changes triggers a rescan of the corpus and an
    incremental update; the scan itself is cheap as unchanged files are not
    read again.
    """

    def __init__(self, root: Path, index: RaptorIndex, config: CorpusConfig):
        self.root = Path(root)
        self.index = index
        self.config = config

    async def observe(self):
        logger.info(f"Watching files in {self.root}")
        await self.refresh()

        async for changes in awatch(self.root, watch_filter=SourceFilter(self.config)):
            await self.handler(changes)

    async def handler(self, changes: set[tuple[Change, str]]):
        logger.debug(f"{len(changes)} file system changes in {self.root}")
        await self.refresh()

    async def refresh(self) -> UpdateStats | None:
        try:
            files = read_corpus(self.root, self.config)
            snapshot, stats = await self.index.reindex(files)
        except Exception as e:
            logger.error(f"Failed to update the index for {self.root}: {e}")
            return None

        if stats.files_added or stats.files_modified or stats.files_deleted:
            logger.info(
                f"Index version {snapshot.version}: {stats.files_added} added, "
                f"{stats.files_modified} modified, {stats.files_deleted} deleted"
            )
        return stats
