"""
Embedding Generator  —  Sequential Batches with Backpressure
══════════════════════════════════════════════════════════════

Design goals:
  • One provider call per batch of `batch_size` texts (default 20)
  • Batches run one after another with a short fixed delay in between;
    this is the rate-limit backpressure for the provider
  • A failed provider call fails the whole batch (ProviderError); nothing
    is dropped or reordered, the caller decides whether to retry
  • Provider chosen once from EmbeddingConfig (openai | azure_openai | mock)

Providers:
  openai        → text-embedding-3-small, 1536 dims
  azure_openai  → embedding deployment on an Azure OpenAI resource
  mock          → 768 dims, deterministic pseudo-embeddings seeded from a
                  hash of the text; used when no credentials are configured

Token accounting:
  The provider reports one usage total per call. Per-item token counts are
  estimated as ceil(len / 4) — the same estimate the chunker uses.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import time
from dataclasses import dataclass
from typing import Sequence

from documind.core.config import EmbeddingConfig, Provider
from documind.core.exceptions import ProviderError, ValidationError
from documind.processing.chunking import estimate_tokens

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

EMBEDDING_BATCH_SIZE   = 20     # texts per provider call
BATCH_DELAY_SECONDS    = 0.1    # pause between consecutive batches
CLIENT_MAX_RETRIES     = 2      # handled inside the openai client
CLIENT_TIMEOUT_SECONDS = 30.0

# Linear congruential generator constants for mock vectors
_LCG_MULTIPLIER = 1103515245
_LCG_INCREMENT  = 12345
_LCG_MODULUS    = 0x7FFFFFFF


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingBatch:
    """
    Output for one list of input texts, in input order.

    vectors       : one vector per input text
    token_counts  : estimated tokens per input text
    total_tokens  : provider-reported usage (sum of estimates for mock)
    """
    vectors:      list[list[float]]
    token_counts: list[int]
    total_tokens: int
    elapsed_ms:   float = 0.0
    batches:      int = 1


@dataclass
class _ProviderResponse:
    vectors:      list[list[float]]
    total_tokens: int


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------

def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    dot(a, b) / (|a| · |b|), or 0.0 when either vector is all zeros.
    Clamped to [-1, 1] to absorb floating-point drift.
    """
    if len(a) != len(b):
        raise ValidationError(f"Vector dimension mismatch: {len(a)} != {len(b)}")

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


def mock_embedding(text: str, dimensions: int) -> list[float]:
    """Deterministic unit-length pseudo-embedding for `text`."""
    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:4], "big")
    state = seed & _LCG_MODULUS

    values: list[float] = []
    for _ in range(dimensions):
        state = (state * _LCG_MULTIPLIER + _LCG_INCREMENT) & _LCG_MODULUS
        values.append(state / _LCG_MODULUS * 2.0 - 1.0)

    norm = math.sqrt(sum(v * v for v in values))
    if norm == 0.0:
        return values
    return [v / norm for v in values]


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class EmbeddingGenerator:
    """
    Batched embedding generation for one configured provider.

    Usage:
        generator = EmbeddingGenerator(resolve_embedding_config(settings))
        batch     = await generator.generate(["chunk one", "chunk two"])
        vector    = await generator.embed_query("what did Acme report in Q3?")
    """

    def __init__(
        self,
        config:      EmbeddingConfig,
        batch_size:  int   = EMBEDDING_BATCH_SIZE,
        batch_delay: float = BATCH_DELAY_SECONDS,
    ) -> None:
        if batch_size <= 0:
            raise ValidationError(f"batch_size must be positive, got {batch_size}")
        self._config      = config
        self._batch_size  = batch_size
        self._batch_delay = batch_delay
        self._client      = None

    @property
    def config(self) -> EmbeddingConfig:
        return self._config

    @property
    def is_configured(self) -> bool:
        """True when a real provider (not the mock) is in use."""
        return self._config.is_configured

    @property
    def dimensions(self) -> int:
        return self._config.dimensions

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def generate(self, texts: Sequence[str]) -> EmbeddingBatch:
        """
        Embed all `texts`, `batch_size` at a time, sequentially.

        Raises:
            ProviderError if any batch fails — no partial result is returned.
        """
        if not texts:
            return EmbeddingBatch(vectors=[], token_counts=[], total_tokens=0, batches=0)

        t0 = time.monotonic()
        batches = [
            list(texts[i : i + self._batch_size])
            for i in range(0, len(texts), self._batch_size)
        ]

        vectors: list[list[float]] = []
        total_tokens = 0

        for batch_idx, batch in enumerate(batches):
            if batch_idx > 0 and self._batch_delay > 0:
                await asyncio.sleep(self._batch_delay)

            response = await self._embed_batch(batch, batch_idx)
            vectors.extend(response.vectors)
            total_tokens += response.total_tokens

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Embeddings | provider=%s texts=%d batches=%d tokens=%d elapsed_ms=%.0f",
            self._config.provider.value, len(texts), len(batches), total_tokens, elapsed_ms,
        )

        return EmbeddingBatch(
            vectors=vectors,
            token_counts=[estimate_tokens(t) for t in texts],
            total_tokens=total_tokens,
            elapsed_ms=elapsed_ms,
            batches=len(batches),
        )

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single query string with the same model as the documents."""
        response = await self._embed_batch([text], batch_idx=0)
        return response.vectors[0]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # Provider dispatch
    # ------------------------------------------------------------------

    async def _embed_batch(self, batch: list[str], batch_idx: int) -> _ProviderResponse:
        if self._config.provider is Provider.MOCK:
            return _ProviderResponse(
                vectors=[mock_embedding(t, self._config.dimensions) for t in batch],
                total_tokens=sum(estimate_tokens(t) for t in batch),
            )

        try:
            response = await self._call_openai(batch, batch_idx)
        except ProviderError:
            raise
        except Exception as exc:
            logger.error(
                "Embedding batch failed | provider=%s batch=%d size=%d error=%s: %s",
                self._config.provider.value, batch_idx, len(batch), type(exc).__name__, exc,
            )
            raise ProviderError(f"Embedding provider call failed: {exc}", original_error=exc) from exc

        if len(response.vectors) != len(batch):
            raise ProviderError(
                f"Embedding provider returned {len(response.vectors)} vectors for {len(batch)} inputs"
            )
        return response

    def _get_client(self):
        if self._client is not None:
            return self._client

        if self._config.provider is Provider.AZURE_OPENAI:
            from openai import AsyncAzureOpenAI
            self._client = AsyncAzureOpenAI(
                api_key=self._config.api_key,
                azure_endpoint=self._config.endpoint,
                api_version=self._config.api_version,
                max_retries=CLIENT_MAX_RETRIES,
                timeout=CLIENT_TIMEOUT_SECONDS,
            )
        else:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(
                api_key=self._config.api_key,
                max_retries=CLIENT_MAX_RETRIES,
                timeout=CLIENT_TIMEOUT_SECONDS,
            )
        return self._client

    async def _call_openai(self, batch: list[str], batch_idx: int) -> _ProviderResponse:
        """
        Single embeddings API call (OpenAI or Azure OpenAI).

        response.data is sorted by `index` before use; the API does not
        promise to return items in input order.
        """
        client = self._get_client()
        t_api  = time.monotonic()

        response = await client.embeddings.create(
            model=self._config.model,
            input=batch,
        )

        api_ms = (time.monotonic() - t_api) * 1000
        ordered = sorted(response.data, key=lambda item: item.index)

        # Extract usage (OpenAI returns actual token count)
        tokens_used = response.usage.total_tokens if response.usage else sum(
            estimate_tokens(t) for t in batch
        )

        logger.debug(
            "OpenAI embeddings | batch=%d size=%d tokens=%d api_ms=%.0f",
            batch_idx, len(batch), tokens_used, api_ms,
        )
        return _ProviderResponse(
            vectors=[list(item.embedding) for item in ordered],
            total_tokens=tokens_used,
        )
