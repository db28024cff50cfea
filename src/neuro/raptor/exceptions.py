class RaptorError(Exception):
    """Base class for all index errors."""

    kind = "RaptorError"

    def warning(self) -> str:
        """Render the error as an entry for the stats warning list."""
        return f"{self.kind}: {self}"


class ConfigError(RaptorError, ValueError):
    """Invalid configuration or unusable corpus root. Always fatal."""

    kind = "ConfigError"


class SourceReadError(RaptorError, OSError):
    """A source file could not be read during a scan."""

    kind = "IoError"


class EmbeddingError(RaptorError):
    """The embedding backend failed after all retries."""

    kind = "EmbeddingError"


class SummarizationError(RaptorError):
    """The summarizer failed or returned nothing after all retries."""

    kind = "SummarizationError"


class ClusteringError(RaptorError):
    """Malformed similarity input for a node."""

    kind = "ClusteringError"


class CorruptIndexError(RaptorError):
    """A snapshot failed its referential integrity check."""

    kind = "CorruptIndexError"
