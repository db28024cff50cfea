from neuro.raptor.config.models import IndexConfig
from neuro.raptor.exceptions import ConfigError
from neuro.raptor.store.models.chunk import Chunk
from neuro.raptor.utils import content_hash


def _find_boundary(text: str, floor: int, end: int) -> int | None:
    """Position after the last newline, else the last whitespace, in [floor, end)."""
    if floor >= end:
        return None

    newline = text.rfind("\n", floor, end)
    if newline != -1:
        return newline + 1

    for i in range(end - 1, floor - 1, -1):
        if text[i].isspace():
            return i + 1
    return None


def chunk_text(
    path: str,
    text: str,
    max_chars: int,
    overlap: int = 0,
    lookback: int = 200,
) -> list[Chunk]:
    """Split a file's text into bounded, overlapping chunks.

    Chunks cover the whole text without gaps, none is longer than `max_chars`
    and consecutive chunks share exactly `overlap` characters. A cut is moved
    back to the nearest newline (or, failing that, whitespace) within
    `lookback` characters of the hard limit.

    Args:
        path: Path recorded on every chunk
        text: Text to split
        max_chars: Maximum chunk length
        overlap: Characters shared by consecutive chunks
        lookback: How far before the hard limit to look for a boundary

    Returns:
        Chunks in text order; empty for empty text.

    Raises:
        ConfigError: If the parameters are inconsistent.
    """
    if max_chars <= 0:
        raise ConfigError(f"max_chars must be positive, got {max_chars}")
    if not 0 <= overlap < max_chars:
        raise ConfigError(
            f"overlap must satisfy 0 <= overlap < max_chars "
            f"(overlap={overlap}, max_chars={max_chars})"
        )
    if lookback < 0:
        raise ConfigError(f"lookback must not be negative, got {lookback}")

    chunks: list[Chunk] = []
    length = len(text)
    start = 0

    while start < length:
        end = min(start + max_chars, length)
        cut = end
        if end < length:
            # Cuts must stay past the overlap so the next chunk starts later.
            floor = max(start + overlap + 1, end - lookback)
            cut = _find_boundary(text, floor, end) or end

        span = text[start:cut]
        chunks.append(
            Chunk(
                source_path=path,
                byte_range=(start, cut),
                text=span,
                content_hash=content_hash(span),
            )
        )
        if cut >= length:
            break
        start = cut - overlap

    return chunks


class Chunker:
    """Chunks source files with the configured size, overlap and lookback."""

    def __init__(self, config: IndexConfig | None = None):
        config = config or IndexConfig()
        self.max_chars = config.max_chars
        self.overlap = config.overlap
        self.lookback = config.boundary_lookback

    def chunk(self, path: str, text: str) -> list[Chunk]:
        return chunk_text(path, text, self.max_chars, self.overlap, self.lookback)
