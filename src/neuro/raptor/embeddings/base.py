from neuro.raptor.config import AppConfig, Config


class EmbedderBase:
    """Capability that turns text into vectors.

    Implementations provide `embed_documents` and `embed_query`; `embed` is the
    single-text document form used by the embedding cache.
    """

    _model: str = ""
    _vector_dim: int = 0

    def __init__(self, model: str, vector_dim: int, config: AppConfig = Config):
        self._model = model
        self._vector_dim = vector_dim
        self._config = config

    @property
    def model(self) -> str:
        return self._model

    @property
    def vector_dim(self) -> int:
        return self._vector_dim

    async def embed_query(self, text: str) -> list[float]:
        raise NotImplementedError

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_documents([text])
        if not vectors:
            raise ValueError("Embedding backend returned no vectors")
        return vectors[0]
