from neuro.raptor.config import AppConfig, Config
from neuro.raptor.embeddings.base import EmbedderBase
from neuro.raptor.embeddings.cache import EmbeddingCache

__all__ = ["EmbedderBase", "EmbeddingCache", "get_embedder"]

OPENAI_COMPATIBLE_PROVIDERS = ("ollama", "openai", "vllm", "lm_studio")


def get_embedder(config: AppConfig = Config) -> EmbedderBase:
    """
    Factory function to get the appropriate embedder based on the configuration.

    Args:
        config: Configuration to use. Defaults to global Config.

    Returns:
        An embedder instance configured according to the config.
    """
    embedding_model = config.embeddings.model

    if embedding_model.provider in OPENAI_COMPATIBLE_PROVIDERS:
        from neuro.raptor.embeddings.openai_compat import Embedder

        return Embedder(embedding_model.name, embedding_model.vector_dim, config)

    if embedding_model.provider == "voyageai":
        try:
            from neuro.raptor.embeddings.voyageai import Embedder as VoyageAIEmbedder
        except ImportError:
            raise ImportError(
                "VoyageAI embedder requires the 'voyageai' package. "
                "Please install neuro.raptor with the 'voyageai' extra: "
                "pip install 'neuro.raptor[voyageai]'"
            )
        return VoyageAIEmbedder(
            embedding_model.name, embedding_model.vector_dim, config
        )

    raise ValueError(f"Unsupported embedding provider: {embedding_model.provider}")
