try:
    from voyageai import AsyncClient  # type: ignore

    from neuro.raptor.config import AppConfig, Config
    from neuro.raptor.embeddings.base import EmbedderBase

    class Embedder(EmbedderBase):
        """VoyageAI embedder with explicit query/document input types."""

        def __init__(self, model: str, vector_dim: int, config: AppConfig = Config):
            super().__init__(model, vector_dim, config)
            self._client = AsyncClient()

        async def embed_query(self, text: str) -> list[float]:
            res = await self._client.embed(
                [text], model=self._model, input_type="query", output_dtype="float"
            )
            return res.embeddings[0]  # type: ignore[return-value]

        async def embed_documents(self, texts: list[str]) -> list[list[float]]:
            if not texts:
                return []
            res = await self._client.embed(
                texts, model=self._model, input_type="document", output_dtype="float"
            )
            return res.embeddings  # type: ignore[return-value]

except ImportError:
    pass
