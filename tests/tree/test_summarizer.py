import asyncio

import pytest
from pydantic_ai.models.test import TestModel

from neuro.raptor.exceptions import ConfigError, SummarizationError
from neuro.raptor.tree.summarizer import (
    ClusterSummarizer,
    LLMSummarizer,
    SummarizerBase,
    extractive_summary,
)


class ScriptedSummarizer(SummarizerBase):
    """Returns the scripted outputs in order; exceptions are raised."""

    def __init__(self, *outputs):
        self.outputs = list(outputs)
        self.prompts: list[str] = []

    async def summarize(self, text: str) -> str:
        self.prompts.append(text)
        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        return output


class SlowSummarizer(SummarizerBase):
    async def summarize(self, text: str) -> str:
        await asyncio.sleep(1)
        return "too late"


@pytest.mark.asyncio
class TestClusterSummarizer:
    async def test_joins_texts_in_order(self):
        backend = ScriptedSummarizer("summary")
        summarizer = ClusterSummarizer(backend, backoff=0)

        assert await summarizer.summarize(["first", "second"]) == "summary"
        assert backend.prompts == ["Excerpt 1:\nfirst\n\n---\n\nExcerpt 2:\nsecond"]

    async def test_truncates_input_and_output(self):
        backend = ScriptedSummarizer("y" * 50)
        summarizer = ClusterSummarizer(
            backend, max_input_chars=30, max_summary_chars=10, backoff=0
        )

        assert await summarizer.summarize(["x" * 100, "z" * 100]) == "y" * 10
        assert len(backend.prompts[0]) == 30

    async def test_retries_failures_and_empty_results(self):
        backend = ScriptedSummarizer(RuntimeError("boom"), "   ", "finally")
        summarizer = ClusterSummarizer(backend, retry_count=2, backoff=0)

        assert await summarizer.summarize(["text"]) == "finally"
        assert len(backend.prompts) == 3

    async def test_raises_after_all_attempts(self):
        backend = ScriptedSummarizer(RuntimeError("a"), "")
        summarizer = ClusterSummarizer(backend, retry_count=1, backoff=0)

        with pytest.raises(SummarizationError) as exc_info:
            await summarizer.summarize(["text"])
        assert exc_info.value.warning().startswith("SummarizationError: ")

    async def test_timeout_is_a_failure(self):
        summarizer = ClusterSummarizer(
            SlowSummarizer(), retry_count=0, backoff=0, timeout=0.01
        )
        with pytest.raises(SummarizationError):
            await summarizer.summarize(["text"])

    async def test_empty_input(self):
        with pytest.raises(ValueError):
            await ClusterSummarizer(ScriptedSummarizer()).summarize([])


def test_invalid_limits():
    with pytest.raises(ConfigError):
        ClusterSummarizer(ScriptedSummarizer(), max_input_chars=0)
    with pytest.raises(ConfigError):
        ClusterSummarizer(ScriptedSummarizer(), retry_count=-1)


def test_from_config(app_config):
    summarizer = ClusterSummarizer.from_config(ScriptedSummarizer(), app_config)
    assert summarizer.max_input_chars == app_config.summarization.max_input_chars
    assert summarizer.retry_count == app_config.index.summarizer_retry_count
    assert summarizer.timeout == app_config.summarization.timeout


class TestExtractiveSummary:
    def test_first_and_last_sentence(self):
        texts = ["Parses tokens. Builds the tree.", "Emits bytecode. Runs it."]
        assert extractive_summary(texts) == "Parses tokens. Runs it."

    def test_single_sentence(self):
        assert extractive_summary(["only one line"]) == "only one line"

    def test_respects_limit(self):
        assert len(extractive_summary(["a" * 50 + ".", "b" * 50], 20)) == 20

    def test_deterministic(self):
        texts = ["def a(): pass\ndef b(): pass", "class C: ..."]
        assert extractive_summary(texts) == extractive_summary(texts)


@pytest.mark.asyncio
class TestLLMSummarizer:
    async def test_uses_agent_output(self, app_config):
        summarizer = LLMSummarizer(
            app_config, model=TestModel(custom_output_text="Handles the database.")
        )
        assert await summarizer.summarize("Excerpt 1:\nSELECT 1") == (
            "Handles the database."
        )

    async def test_plugs_into_cluster_summarizer(self, app_config):
        backend = LLMSummarizer(app_config, model=TestModel(custom_output_text="ok"))
        summarizer = ClusterSummarizer.from_config(backend, app_config)
        assert await summarizer.summarize(["a", "b"]) == "ok"
