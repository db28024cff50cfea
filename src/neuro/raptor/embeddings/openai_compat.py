import os

import httpx

from neuro.raptor.config import AppConfig, Config
from neuro.raptor.embeddings.base import EmbedderBase

OPENAI_BASE_URL = "https://api.openai.com"


class Embedder(EmbedderBase):
    """Embedder for servers exposing OpenAI-compatible `POST /v1/embeddings`.

    Serves the ollama, openai, vllm and lm_studio providers; only the base URL
    and credentials differ between them.
    """

    def __init__(self, model: str, vector_dim: int, config: AppConfig = Config):
        super().__init__(model, vector_dim, config)
        embedding_model = config.embeddings.model
        base_url = embedding_model.base_url or self._provider_base_url(
            embedding_model.provider, config
        )
        # Accept base_url with or without a trailing /v1.
        cleaned = base_url.rstrip("/")
        if cleaned.endswith("/v1"):
            cleaned = cleaned[: -len("/v1")]
        self.base_url = cleaned
        self.timeout = config.embeddings.timeout
        self._api_key = (
            os.environ.get("OPENAI_API_KEY", "")
            if embedding_model.provider == "openai"
            else ""
        )

    @staticmethod
    def _provider_base_url(provider: str, config: AppConfig) -> str:
        if provider == "ollama":
            return config.providers.ollama.base_url
        if provider == "vllm":
            return config.providers.vllm.base_url
        if provider == "lm_studio":
            return config.providers.lm_studio.base_url
        return OPENAI_BASE_URL

    async def _post(self, inputs: list[str]) -> list[list[float]]:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        payload = {"model": self._model, "input": inputs, "encoding_format": "float"}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(
                f"{self.base_url}/v1/embeddings", json=payload, headers=headers
            )
            resp.raise_for_status()
            data = resp.json()

        rows = sorted(data.get("data") or [], key=lambda r: r.get("index", 0))
        embeddings = [list(r["embedding"]) for r in rows if r.get("embedding")]
        if len(embeddings) != len(inputs):
            raise ValueError(
                f"Expected {len(inputs)} embeddings, got {len(embeddings)}"
            )
        for embedding in embeddings:
            if len(embedding) != self._vector_dim:
                raise ValueError(
                    f"Unexpected embedding dimension: got {len(embedding)}, "
                    f"expected {self._vector_dim}"
                )
        return embeddings

    async def embed_query(self, text: str) -> list[float]:
        return (await self._post([text]))[0]

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await self._post(texts)
