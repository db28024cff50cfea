import logging
import os
from dataclasses import dataclass
from pathlib import Path

from neuro.raptor.config.models import CorpusConfig
from neuro.raptor.exceptions import ConfigError, SourceReadError

logger = logging.getLogger(__name__)


@dataclass
class SourceFile:
    """One entry of the file stream fed to build and update.

    Either `text` is given directly or it is read lazily from `location`.
    """

    path: str
    mtime: float
    text: str | None = None
    location: Path | None = None

    def read(self) -> str:
        if self.text is not None:
            return self.text
        if self.location is None:
            raise SourceReadError(f"No content available for {self.path}")
        try:
            self.text = self.location.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise SourceReadError(f"Cannot read {self.path}: {e}") from e
        return self.text


def read_corpus(root: Path, config: CorpusConfig | None = None) -> list[SourceFile]:
    """Collect the indexable files below `root`, sorted by relative path.

    Raises:
        ConfigError: If `root` is not a readable directory.
    """
    config = config or CorpusConfig()
    root = Path(root)
    if not root.is_dir():
        raise ConfigError(f"Corpus root {root} is not a directory")

    extensions = tuple(ext.lower() for ext in config.extensions)
    skip_dirs = set(config.skip_dirs)
    files: list[SourceFile] = []

    def on_error(error: OSError) -> None:
        if Path(error.filename or "") == root:
            raise ConfigError(f"Cannot read corpus root {root}: {error}") from error
        logger.warning(f"Skipping unreadable directory {error.filename}: {error}")

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        dirnames[:] = sorted(
            d for d in dirnames if d not in skip_dirs and not d.startswith(".")
        )
        for name in sorted(filenames):
            if name.startswith(".") or not name.lower().endswith(extensions):
                continue
            location = Path(dirpath) / name
            try:
                stat = location.stat()
            except OSError as e:
                logger.warning(f"Skipping {location}: {e}")
                continue
            if stat.st_size > config.max_file_bytes:
                logger.debug(
                    f"Skipping {location}: larger than {config.max_file_bytes} bytes"
                )
                continue
            files.append(
                SourceFile(
                    path=location.relative_to(root).as_posix(),
                    mtime=stat.st_mtime,
                    location=location,
                )
            )

    files.sort(key=lambda f: f.path)
    return files
