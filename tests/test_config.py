import pytest
from pydantic import ValidationError

from neuro.raptor.config import AppConfig, Config, IndexConfig, set_config
from neuro.raptor.exceptions import ConfigError


class TestIndexConfig:
    def test_defaults_are_valid(self):
        config = IndexConfig()
        config.check()
        assert config.max_chars == 2000
        assert config.overlap == 200
        assert config.max_depth == 5

    @pytest.mark.parametrize(
        "values",
        [
            {"max_chars": 0},
            {"max_chars": 100, "overlap": 100},
            {"overlap": -1},
            {"boundary_lookback": -1},
            {"similarity_threshold": 1.5},
            {"max_depth": -1},
            {"embedding_retry_count": -1},
            {"embedding_cache_capacity": 0},
            {"yield_every": 0},
            {"max_concurrency": 0},
        ],
    )
    def test_invalid_values_are_rejected(self, values):
        with pytest.raises(ValidationError):
            IndexConfig(**values)

    def test_check_raises_config_error(self):
        config = IndexConfig.model_construct(max_chars=10, overlap=10)
        with pytest.raises(ConfigError):
            config.check()

    def test_fingerprint_tracks_tree_shape_settings(self):
        base = IndexConfig()
        assert base.fingerprint() == IndexConfig(max_concurrency=8).fingerprint()
        assert base.fingerprint() != IndexConfig(max_chars=1000).fingerprint()
        assert (
            base.fingerprint()
            != IndexConfig(similarity_threshold=0.5).fingerprint()
        )


class TestAppConfig:
    def test_nested_dicts(self):
        config = AppConfig(index={"max_chars": 400, "overlap": 40})
        assert config.index.max_chars == 400
        assert config.search.top_k == 5

    def test_thin_context_defaults(self):
        search = AppConfig().search
        assert search.min_context_chars == 1000
        assert search.fallback_chunks == 5
        assert search.fallback_chunk_chars == 1200

    def test_set_config(self):
        original = Config.get()
        try:
            set_config(AppConfig(search={"top_k": 11}))
            assert Config.search.top_k == 11
        finally:
            set_config(original)
        assert Config.search.top_k == original.search.top_k
