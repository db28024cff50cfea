from pydantic import BaseModel, ConfigDict


class Node(BaseModel):
    """A node of the summary tree.

    Level 0 nodes are chunks of a single file. Higher levels are summaries whose
    text is derived only from their children. A node whose embedding could not
    be computed carries `embedding=None` and is considered degraded.

    Attributes:
        id: Identifier, unique within a snapshot lineage and never reused
        level: Round at which the node was created (0 for leaves)
        text: Chunk text or summary text
        embedding: Vector embedding of `text`, None when degraded
        parent_id: Parent node id, None for roots
        children_ids: Child node ids, empty for leaves
        source_paths: Files covered by the subtree rooted at this node
        anchor: (path, offset) of the earliest chunk covered by the subtree
        byte_range: Span of the chunk in its file (leaves only)
        content_hash: SHA-256 of the chunk text (leaves only)
    """

    model_config = ConfigDict(frozen=True)

    id: int
    level: int
    text: str
    embedding: tuple[float, ...] | None = None
    parent_id: int | None = None
    children_ids: tuple[int, ...] = ()
    source_paths: frozenset[str]
    anchor: tuple[str, int]
    byte_range: tuple[int, int] | None = None
    content_hash: str | None = None

    @property
    def degraded(self) -> bool:
        return self.embedding is None
