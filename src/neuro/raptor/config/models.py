import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from neuro.raptor.exceptions import ConfigError
from neuro.raptor.utils import get_default_data_dir


class ModelConfig(BaseModel):
    """Configuration for a language model.

    Attributes:
        provider: Model provider (ollama, openai, anthropic, vllm, lm_studio)
        name: Model name/identifier
        enable_thinking: Control reasoning behavior (true/false/None for default)
        temperature: Sampling temperature
        max_tokens: Maximum tokens to generate
    """

    provider: str = "ollama"
    name: str = "gpt-oss"

    enable_thinking: bool | None = None
    temperature: float | None = None
    max_tokens: int | None = None


class EmbeddingModelConfig(BaseModel):
    """Configuration for an embedding model.

    Attributes:
        provider: Model provider (ollama, openai, vllm, lm_studio, voyageai)
        name: Model name/identifier
        vector_dim: Vector dimensions produced by the model
        base_url: Optional base URL overriding the provider default
    """

    provider: str = "ollama"
    name: str = "qwen3-embedding:0.6b"
    vector_dim: int = 1024
    base_url: str | None = None


class EmbeddingsConfig(BaseModel):
    model: EmbeddingModelConfig = Field(default_factory=EmbeddingModelConfig)
    timeout: float = 30.0


class SummarizationConfig(BaseModel):
    model: ModelConfig = Field(
        default_factory=lambda: ModelConfig(
            provider="ollama",
            name="gpt-oss",
            enable_thinking=False,
        )
    )
    max_input_chars: int = 8000
    max_summary_chars: int = 1200
    timeout: float = 120.0


class IndexConfig(BaseModel):
    """Tree construction settings.

    `max_chars`, `overlap` and `boundary_lookback` drive the chunker,
    `similarity_threshold` and `max_depth` the cluster/summarize rounds.
    Retry counts are the number of extra attempts after the first failure.
    """

    max_chars: int = 2000
    overlap: int = 200
    boundary_lookback: int = 200
    similarity_threshold: float = 0.82
    max_depth: int = 5
    embedding_retry_count: int = 3
    summarizer_retry_count: int = 2
    embedding_cache_capacity: int = 1000
    retry_backoff_seconds: float = 0.5
    yield_every: int = 32
    max_concurrency: int = 4
    clustering: Literal["threshold", "gmm"] = "threshold"
    umap_n_neighbors: int = 10
    umap_min_dist: float = 0.0

    def check(self) -> None:
        """Raise ConfigError if the settings cannot drive a build."""
        if self.max_chars <= 0:
            raise ConfigError(f"max_chars must be positive, got {self.max_chars}")
        if not 0 <= self.overlap < self.max_chars:
            raise ConfigError(
                f"overlap must satisfy 0 <= overlap < max_chars "
                f"(overlap={self.overlap}, max_chars={self.max_chars})"
            )
        if self.boundary_lookback < 0:
            raise ConfigError("boundary_lookback must not be negative")
        if not -1.0 <= self.similarity_threshold <= 1.0:
            raise ConfigError(
                f"similarity_threshold must be within [-1, 1], "
                f"got {self.similarity_threshold}"
            )
        if self.max_depth < 0:
            raise ConfigError("max_depth must not be negative")
        if self.embedding_retry_count < 0 or self.summarizer_retry_count < 0:
            raise ConfigError("retry counts must not be negative")
        if self.embedding_cache_capacity <= 0:
            raise ConfigError("embedding_cache_capacity must be positive")
        if self.yield_every <= 0 or self.max_concurrency <= 0:
            raise ConfigError("yield_every and max_concurrency must be positive")

    @model_validator(mode="after")
    def _validate(self) -> "IndexConfig":
        self.check()
        return self

    def fingerprint(self) -> str:
        """Settings that change the shape of a tree.

        Snapshots built under a different fingerprint are rebuilt from scratch.
        """
        return (
            f"{self.max_chars}:{self.overlap}:{self.boundary_lookback}:"
            f"{self.similarity_threshold}:{self.max_depth}:{self.clustering}"
        )


class SearchConfig(BaseModel):
    top_k: int = 5
    expand_k: int = 5
    chunk_threshold: float = 0.5
    max_context_chars: int = 10000
    min_context_chars: int = 1000
    fallback_chunks: int = 5
    fallback_chunk_chars: int = 1200


class CorpusConfig(BaseModel):
    extensions: list[str] = [
        ".py", ".rs", ".ts", ".tsx", ".js", ".jsx", ".go", ".java", ".kt",
        ".c", ".h", ".cpp", ".hpp", ".cs", ".rb", ".php", ".swift", ".scala",
        ".sh", ".sql", ".toml", ".yaml", ".yml", ".json", ".md", ".txt",
    ]  # fmt: skip
    skip_dirs: list[str] = [
        ".git", "node_modules", "target", "dist", "build", "__pycache__",
        ".venv", "venv", ".tox", ".mypy_cache", ".pytest_cache", ".idea",
        ".vscode", "vendor",
    ]  # fmt: skip
    max_file_bytes: int = 1_000_000


class StorageConfig(BaseModel):
    data_dir: Path = Field(default_factory=get_default_data_dir)
    persist: bool = True


class OllamaConfig(BaseModel):
    base_url: str = Field(
        default_factory=lambda: os.environ.get(
            "OLLAMA_BASE_URL", "http://localhost:11434"
        )
    )


class VLLMConfig(BaseModel):
    base_url: str = "http://localhost:8000"


class LMStudioConfig(BaseModel):
    base_url: str = "http://localhost:1234"


class ProvidersConfig(BaseModel):
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    vllm: VLLMConfig = Field(default_factory=VLLMConfig)
    lm_studio: LMStudioConfig = Field(default_factory=LMStudioConfig)


class AppConfig(BaseModel):
    environment: str = "production"
    index: IndexConfig = Field(default_factory=IndexConfig)
    embeddings: EmbeddingsConfig = Field(default_factory=EmbeddingsConfig)
    summarization: SummarizationConfig = Field(default_factory=SummarizationConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    corpus: CorpusConfig = Field(default_factory=CorpusConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
