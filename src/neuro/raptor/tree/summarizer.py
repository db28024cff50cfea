import asyncio
import logging
import re
from collections.abc import Sequence
from typing import Any

from pydantic_ai import Agent

from neuro.raptor.config.models import AppConfig, ModelConfig
from neuro.raptor.exceptions import ConfigError, SummarizationError
from neuro.raptor.tree.prompts import CLUSTER_SUMMARY_PROMPT
from neuro.raptor.utils import get_model

logger = logging.getLogger(__name__)

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+|\n+")


class SummarizerBase:
    """Capability that condenses text into a shorter text."""

    async def summarize(self, text: str) -> str:
        raise NotImplementedError


class LLMSummarizer(SummarizerBase):
    """Summarizes with a pydantic-ai agent."""

    def __init__(
        self,
        config: AppConfig,
        model_config: ModelConfig | None = None,
        model: Any | None = None,
    ):
        """Initialize the summarizer.

        Args:
            config: Application configuration
            model_config: Optional model config override. If None, uses
                         config.summarization.model
            model: Optional ready-made pydantic-ai model, bypassing model_config
        """
        if model is None:
            model = get_model(model_config or config.summarization.model, config)
        self._agent: Agent[None, str] = Agent(
            model=model,
            output_type=str,
            retries=2,
        )

    async def summarize(self, text: str) -> str:
        result = await self._agent.run(CLUSTER_SUMMARY_PROMPT.format(chunks=text))
        return result.output


def extractive_summary(texts: Sequence[str], max_chars: int = 1200) -> str:
    """Deterministic fallback: the first and the last sentence of the input."""
    joined = "\n".join(t.strip() for t in texts if t.strip())
    sentences = [s.strip() for s in _SENTENCE_END.split(joined) if s.strip()]
    if not sentences:
        return joined[:max_chars]
    if len(sentences) == 1:
        return sentences[0][:max_chars]
    return f"{sentences[0]} {sentences[-1]}"[:max_chars]


class ClusterSummarizer:
    """Summarizes the texts of a cluster through a backend, with retries.

    The texts are joined in the order given and truncated to
    `max_input_chars` before the backend sees them. Timeouts, exceptions and
    empty results count as failed attempts; attempts back off exponentially.
    """

    def __init__(
        self,
        backend: SummarizerBase,
        max_input_chars: int = 8000,
        max_summary_chars: int = 1200,
        retry_count: int = 2,
        backoff: float = 0.5,
        timeout: float | None = None,
    ):
        if max_input_chars <= 0 or max_summary_chars <= 0:
            raise ConfigError("Summary input and output limits must be positive")
        if retry_count < 0:
            raise ConfigError(f"retry_count must not be negative, got {retry_count}")
        self.backend = backend
        self.max_input_chars = max_input_chars
        self.max_summary_chars = max_summary_chars
        self.retry_count = retry_count
        self.backoff = backoff
        self.timeout = timeout

    @classmethod
    def from_config(
        cls, backend: SummarizerBase, config: AppConfig
    ) -> "ClusterSummarizer":
        return cls(
            backend,
            max_input_chars=config.summarization.max_input_chars,
            max_summary_chars=config.summarization.max_summary_chars,
            retry_count=config.index.summarizer_retry_count,
            backoff=config.index.retry_backoff_seconds,
            timeout=config.summarization.timeout,
        )

    def prepare(self, texts: Sequence[str]) -> str:
        joined = "\n\n---\n\n".join(
            f"Excerpt {i + 1}:\n{text}" for i, text in enumerate(texts)
        )
        return joined[: self.max_input_chars]

    async def summarize(self, texts: Sequence[str]) -> str:
        """Summarize a cluster of texts.

        Raises:
            ValueError: If texts is empty
            SummarizationError: If every attempt failed
        """
        if not texts:
            raise ValueError("Cannot summarize empty list of texts")

        prompt_text = self.prepare(texts)
        attempts = self.retry_count + 1
        last_error: Exception | None = None

        for attempt in range(attempts):
            call = self.backend.summarize(prompt_text)
            try:
                if self.timeout:
                    summary = await asyncio.wait_for(call, self.timeout)
                else:
                    summary = await call
            except Exception as e:
                last_error = e
            else:
                summary = (summary or "").strip()
                if summary:
                    return summary[: self.max_summary_chars]
                last_error = ValueError("summarizer returned an empty result")

            logger.debug(
                f"Summary attempt {attempt + 1}/{attempts} failed: {last_error!r}"
            )
            if attempt + 1 < attempts and self.backoff > 0:
                await asyncio.sleep(self.backoff * 2**attempt)

        raise SummarizationError(
            f"Summarization failed after {attempts} attempts: {last_error!r}"
        ) from last_error
