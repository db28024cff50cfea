import asyncio
import logging
import math
from collections import OrderedDict
from collections.abc import Sequence

from neuro.raptor.config.models import AppConfig
from neuro.raptor.embeddings.base import EmbedderBase
from neuro.raptor.exceptions import ConfigError, EmbeddingError
from neuro.raptor.utils import content_hash

logger = logging.getLogger(__name__)

Vector = tuple[float, ...]


def _as_vector(values: Sequence[float]) -> Vector:
    vector = tuple(float(v) for v in values)
    if not vector:
        raise ValueError("Embedding backend returned an empty vector")
    if not all(math.isfinite(v) for v in vector):
        raise ValueError("Embedding backend returned a non-finite vector")
    return vector


class EmbeddingCache:
    """Memoizes embeddings by content hash with least-recently-used eviction.

    Lookups are safe to run concurrently. A miss is computed once per key:
    concurrent requests for the same text wait on the first computation instead
    of calling the backend again. Backend failures are retried with
    exponential backoff and surface as EmbeddingError.
    """

    def __init__(
        self,
        embedder: EmbedderBase,
        capacity: int = 1000,
        retry_count: int = 3,
        backoff: float = 0.5,
        timeout: float | None = None,
    ):
        if capacity <= 0:
            raise ConfigError(f"Cache capacity must be positive, got {capacity}")
        if retry_count < 0:
            raise ConfigError(f"retry_count must not be negative, got {retry_count}")
        self.embedder = embedder
        self.capacity = capacity
        self.retry_count = retry_count
        self.backoff = backoff
        self.timeout = timeout
        self._entries: OrderedDict[str, Vector] = OrderedDict()
        self._inflight: dict[str, asyncio.Future[Vector]] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @classmethod
    def from_config(cls, embedder: EmbedderBase, config: AppConfig) -> "EmbeddingCache":
        return cls(
            embedder,
            capacity=config.index.embedding_cache_capacity,
            retry_count=config.index.embedding_retry_count,
            backoff=config.index.retry_backoff_seconds,
            timeout=config.embeddings.timeout,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, text: str) -> bool:
        return content_hash(text) in self._entries

    def get(self, text: str) -> Vector | None:
        """Return the cached vector for `text`, marking it most recently used."""
        key = content_hash(text)
        vector = self._entries.get(key)
        if vector is not None:
            self._entries.move_to_end(key)
        return vector

    async def get_or_compute(self, text: str) -> Vector:
        """Return the embedding of `text`, computing and caching it on a miss.

        Raises:
            EmbeddingError: If the backend keeps failing after all retries.
        """
        key = content_hash(text)
        cached = self._entries.get(key)
        if cached is not None:
            self._entries.move_to_end(key)
            self.hits += 1
            return cached

        pending = self._inflight.get(key)
        if pending is not None:
            self.hits += 1
            return await asyncio.shield(pending)

        self.misses += 1
        future: asyncio.Future[Vector] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            vector = await self._compute(text, query=False)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Waiters re-raise it; without waiters it must not be reported as lost.
            future.exception()
            raise
        else:
            self._store(key, vector)
            future.set_result(vector)
            return vector
        finally:
            self._inflight.pop(key, None)

    async def embed_query(self, text: str) -> Vector:
        """Embed a search query with retries, without caching it."""
        return await self._compute(text, query=True)

    def _store(self, key: str, vector: Vector) -> None:
        self._entries[key] = vector
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)
            self.evictions += 1

    async def _compute(self, text: str, query: bool) -> Vector:
        attempts = self.retry_count + 1
        last_error: Exception | None = None

        for attempt in range(attempts):
            call = (
                self.embedder.embed_query(text) if query else self.embedder.embed(text)
            )
            try:
                if self.timeout:
                    values = await asyncio.wait_for(call, self.timeout)
                else:
                    values = await call
                return _as_vector(values)
            except Exception as e:
                last_error = e
                logger.debug(
                    f"Embedding attempt {attempt + 1}/{attempts} failed: {e!r}"
                )
                if attempt + 1 < attempts and self.backoff > 0:
                    await asyncio.sleep(self.backoff * 2**attempt)

        raise EmbeddingError(
            f"Embedding failed after {attempts} attempts: {last_error!r}"
        ) from last_error

    def stats(self) -> dict[str, int]:
        return {
            "entries": len(self._entries),
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }

    def clear(self) -> None:
        self._entries.clear()
        self.hits = self.misses = self.evictions = 0
