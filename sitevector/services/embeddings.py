"""Embedding generation service."""

import asyncio
import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any

from openai import AsyncOpenAI

from sitevector.config import Settings

logger = logging.getLogger(__name__)

# Output dimensions per model
MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

# USD per 1K tokens
MODEL_PRICING = {
    "text-embedding-3-small": 0.00002,
    "text-embedding-3-large": 0.00013,
    "text-embedding-ada-002": 0.0001,
}


@dataclass
class EmbeddingResult:
    """Embedding outcome for one input text."""
    index: int
    success: bool
    embedding: list[float] | None = None
    tokens: int = 0
    error: str | None = None


@dataclass
class BatchEmbeddingResult:
    """Embedding outcome for a list of texts, in input order."""
    results: list[EmbeddingResult] = field(default_factory=list)
    model: str = ""
    total_tokens: int = 0
    cost_estimate: float = 0.0
    success_count: int = 0
    failure_count: int = 0
    api_calls: int = 0
    processing_time_ms: int = 0


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors of the same dimension."""
    if len(a) != len(b):
        raise ValueError(f"Vector dimensions differ: {len(a)} != {len(b)}")

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def validate_embedding(vector: Any, dimensions: int) -> bool:
    """Check that a vector has the expected length and only finite numbers."""
    if vector is None or len(vector) != dimensions:
        return False
    return all(isinstance(x, (int, float)) and math.isfinite(x) for x in vector)


def estimate_cost(model: str, tokens: int) -> float:
    return tokens / 1000 * MODEL_PRICING.get(model, MODEL_PRICING["text-embedding-3-small"])


class EmbeddingService:
    """Generate embeddings in rate-limited batches.

    One failing batch never aborts the others: its items are reported as
    failures and the remaining batches still run.
    """

    def __init__(self, settings: Settings, client: AsyncOpenAI):
        self.settings = settings
        self.client = client
        self.model = settings.embedding_model
        self.dimensions = settings.embedding_dimensions
        self.batch_size = settings.embedding_batch_size
        self.batch_delay = settings.embedding_batch_delay_seconds
        self.max_input_chars = settings.embedding_max_input_chars

    def prepare_text(self, text: str) -> str:
        """Collapse whitespace and cap length at the model's input limit."""
        text = re.sub(r"\s+", " ", text or "").strip()
        return text[: self.max_input_chars]

    async def embed(self, text: str, model: str | None = None) -> EmbeddingResult:
        """Embed a single text."""
        batch = await self.embed_batch([text], model=model)
        return batch.results[0]

    async def embed_batch(
        self,
        texts: list[str],
        model: str | None = None,
        batch_size: int | None = None,
    ) -> BatchEmbeddingResult:
        """Embed a list of texts.

        Returns:
            BatchEmbeddingResult whose ``results`` has exactly one entry per
            input text, in input order.
        """
        model = model or self.model
        batch_size = batch_size or self.batch_size
        started = time.perf_counter()

        results: list[EmbeddingResult | None] = [None] * len(texts)
        pending: list[tuple[int, str]] = []
        for index, text in enumerate(texts):
            prepared = self.prepare_text(text)
            if prepared:
                pending.append((index, prepared))
            else:
                results[index] = EmbeddingResult(index=index, success=False, error="Text is empty")

        outcome = BatchEmbeddingResult(model=model)
        for start in range(0, len(pending), batch_size):
            if start > 0 and self.batch_delay:
                await asyncio.sleep(self.batch_delay)

            batch = pending[start:start + batch_size]
            outcome.api_calls += 1
            batch_results, tokens = await self._embed_chunk(batch, model)
            outcome.total_tokens += tokens
            for result in batch_results:
                results[result.index] = result

        outcome.results = [r for r in results if r is not None]
        outcome.success_count = sum(1 for r in outcome.results if r.success)
        outcome.failure_count = len(outcome.results) - outcome.success_count
        outcome.cost_estimate = estimate_cost(model, outcome.total_tokens)
        outcome.processing_time_ms = int((time.perf_counter() - started) * 1000)

        logger.info(
            f"Embedded {outcome.success_count}/{len(texts)} texts with {model} "
            f"in {outcome.api_calls} calls ({outcome.total_tokens} tokens, ${outcome.cost_estimate:.6f})"
        )
        return outcome

    async def _embed_chunk(
        self,
        batch: list[tuple[int, str]],
        model: str,
    ) -> tuple[list[EmbeddingResult], int]:
        """Make one API call for a batch, mapping failures onto every item."""
        dimensions = MODEL_DIMENSIONS.get(model, self.dimensions)
        try:
            kwargs: dict[str, Any] = {"model": model, "input": [text for _, text in batch]}
            if model.startswith("text-embedding-3") and self.dimensions != dimensions:
                kwargs["dimensions"] = self.dimensions
                dimensions = self.dimensions
            response = await self.client.embeddings.create(**kwargs)
        except Exception as e:
            # Rate limits, timeouts and API errors fail this batch only
            logger.error(f"Embedding batch of {len(batch)} failed: {e}")
            return [
                EmbeddingResult(index=index, success=False, error=str(e) or type(e).__name__)
                for index, _ in batch
            ], 0

        data = sorted(response.data, key=lambda item: item.index)
        total_tokens = response.usage.total_tokens if response.usage else 0
        # The API reports usage per call; spread it evenly across the items
        per_item = total_tokens // len(batch) if batch else 0

        results = []
        for position, (index, _) in enumerate(batch):
            if position >= len(data):
                results.append(EmbeddingResult(index=index, success=False, error="Missing embedding in response"))
                continue
            vector = list(data[position].embedding)
            if not validate_embedding(vector, dimensions):
                results.append(
                    EmbeddingResult(
                        index=index,
                        success=False,
                        error=f"Invalid embedding: expected {dimensions} dimensions, got {len(vector)}",
                    )
                )
                continue
            results.append(EmbeddingResult(index=index, success=True, embedding=vector, tokens=per_item))

        # Remainder of integer division goes to the first item
        if results and total_tokens:
            results[0].tokens += total_tokens - per_item * len(batch)
        return results, total_tokens
