from pydantic import BaseModel


class BuildProgress(BaseModel):
    """Progress event emitted at every yield checkpoint of a build or update.

    `stage` is one of "read", "embed", "cluster", "summarize" or "commit".
    """

    stage: str
    current: int
    total: int
    detail: str = ""


class BuildStats(BaseModel):
    node_count: int = 0
    depth: int = 0
    duration: float = 0.0
    warnings: list[str] = []


class UpdateStats(BaseModel):
    files_added: int = 0
    files_modified: int = 0
    files_deleted: int = 0
    nodes_rebuilt: int = 0
    duration: float = 0.0
    warnings: list[str] = []
    full_rebuild: bool = False


class SearchResult(BaseModel):
    """A ranked node returned by a query."""

    text: str
    source_paths: list[str]
    score: float
    node_id: int
    level: int
