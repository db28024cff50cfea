from pydantic import BaseModel, ConfigDict


class FileRecord(BaseModel):
    """Indexing state of one source file.

    `degraded` is set when any of the file's leaves has no embedding, so the
    next update retries the file.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    mtime: float
    content_hash: str
    leaf_ids: tuple[int, ...] = ()
    degraded: bool = False
