import os
import tempfile
from pathlib import Path

# Prevent tests from loading a local neuro.raptor.yaml by pointing the config
# env var at an empty file BEFORE any neuro.raptor imports.
_test_config_dir = tempfile.mkdtemp()
_test_config_path = Path(_test_config_dir) / "test-defaults.yaml"
_test_config_path.write_text("{}")  # Empty YAML = use all defaults
os.environ["NEURO_RAPTOR_CONFIG_PATH"] = str(_test_config_path)

import pytest  # noqa: E402

from neuro.raptor.config import AppConfig, IndexConfig  # noqa: E402
from neuro.raptor.embeddings.base import EmbedderBase  # noqa: E402
from neuro.raptor.embeddings.cache import EmbeddingCache  # noqa: E402
from neuro.raptor.reader import SourceFile  # noqa: E402
from neuro.raptor.tree.builder import TreeBuilder  # noqa: E402
from neuro.raptor.tree.summarizer import ClusterSummarizer, SummarizerBase  # noqa: E402
from tests.fakes import (  # noqa: E402
    TopicEmbedder,
    WordSetSummarizer,
    source,
    topic_text,
)


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    return AppConfig(
        index=IndexConfig(
            max_chars=200,
            overlap=20,
            boundary_lookback=0,
            similarity_threshold=0.9,
            max_depth=5,
            retry_backoff_seconds=0,
            yield_every=4,
        ),
        storage={"data_dir": tmp_path / "data"},
    )


@pytest.fixture
def embedder(app_config) -> TopicEmbedder:
    return TopicEmbedder(app_config)


@pytest.fixture
def summarizer() -> WordSetSummarizer:
    return WordSetSummarizer()


@pytest.fixture
def make_builder(app_config, embedder, summarizer):
    def factory(
        config: AppConfig | None = None,
        embedder_: EmbedderBase | None = None,
        summarizer_: SummarizerBase | None = None,
    ) -> TreeBuilder:
        config = config or app_config
        cache = EmbeddingCache.from_config(embedder_ or embedder, config)
        return TreeBuilder(
            config,
            cache,
            ClusterSummarizer.from_config(summarizer_ or summarizer, config),
        )

    return factory


@pytest.fixture
def corpus() -> list[SourceFile]:
    return [
        source("a.py", topic_text("database")),
        source("b.py", topic_text("database")),
        source("c.py", topic_text("network")),
        source("d.py", topic_text("network")),
    ]


