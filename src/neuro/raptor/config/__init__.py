from neuro.raptor.config.loader import (
    find_config_file,
    generate_default_config,
    load_config,
    load_yaml_config,
)
from neuro.raptor.config.models import (
    AppConfig,
    CorpusConfig,
    EmbeddingModelConfig,
    EmbeddingsConfig,
    IndexConfig,
    ModelConfig,
    OllamaConfig,
    ProvidersConfig,
    SearchConfig,
    StorageConfig,
    SummarizationConfig,
)

__all__ = [
    "Config",
    "AppConfig",
    "CorpusConfig",
    "EmbeddingModelConfig",
    "EmbeddingsConfig",
    "IndexConfig",
    "ModelConfig",
    "OllamaConfig",
    "ProvidersConfig",
    "SearchConfig",
    "StorageConfig",
    "SummarizationConfig",
    "find_config_file",
    "generate_default_config",
    "load_config",
    "load_yaml_config",
    "set_config",
]


class ConfigProxy:
    """Proxy for the global configuration that allows runtime updates."""

    def __init__(self):
        self._config = load_config(None)

    def __getattr__(self, name):
        return getattr(self._config, name)

    def set(self, config: AppConfig) -> None:
        """Replace the current configuration."""
        self._config = config

    def get(self) -> AppConfig:
        return self._config


Config = ConfigProxy()


def set_config(config: AppConfig) -> None:
    """Set the global configuration programmatically.

    Example:
        >>> from neuro.raptor.config import set_config, AppConfig
        >>> set_config(AppConfig(index={"similarity_threshold": 0.75}))
    """
    Config.set(config)
