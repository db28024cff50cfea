from pydantic import BaseModel, ConfigDict


class Chunk(BaseModel):
    """A contiguous span of one source file.

    Attributes:
        source_path: Path of the owning file, relative to the corpus root
        byte_range: (start, end) offsets of the span in the decoded text
        text: The span itself
        content_hash: SHA-256 of `text`
    """

    model_config = ConfigDict(frozen=True)

    source_path: str
    byte_range: tuple[int, int]
    text: str
    content_hash: str
