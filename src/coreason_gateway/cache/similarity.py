# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

import hashlib
import math
import re
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from litellm import aembedding

from coreason_gateway.config import SimilarityConfig, SimilarityMetric
from coreason_gateway.errors import CacheError
from coreason_gateway.models import CacheEntry, CacheLayer

_TOKEN = re.compile(r"\w+")


class HashingEmbedder:
    """
    Local bag-of-words embedder using the hashing trick.
    Deterministic and dependency-free, good enough to catch near-duplicate prompts.
    """

    def __init__(self, dimensions: int = 256) -> None:
        self.dimensions = dimensions

    async def embed(self, text: str) -> List[float]:
        return self.embed_sync(text)

    def embed_sync(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for token in _TOKEN.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:4], "big") % self.dimensions] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]


class LiteLLMEmbedder:
    """Embedder backed by `litellm.aembedding`, for any embedding model litellm can reach."""

    def __init__(self, model: str, **kwargs: Any) -> None:
        self.model = model
        self.kwargs = kwargs

    async def embed(self, text: str) -> List[float]:
        try:
            response = await aembedding(model=self.model, input=[text], **self.kwargs)
        except Exception as e:
            raise CacheError(f"Embedding with {self.model} failed: {e}", layer=CacheLayer.SIMILARITY.value) from e
        item = response.data[0]
        embedding = item["embedding"] if isinstance(item, dict) else item.embedding
        return [float(v) for v in embedding]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot_similarity(a, b) / (norm_a * norm_b)


def dot_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    return float(sum(x * y for x, y in zip(a, b)))


def euclidean_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Maps euclidean distance into (0, 1]; identical vectors score 1."""
    distance = math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))
    return 1.0 / (1.0 + distance)


METRICS: Dict[SimilarityMetric, Callable[[Sequence[float], Sequence[float]], float]] = {
    SimilarityMetric.COSINE: cosine_similarity,
    SimilarityMetric.DOT: dot_similarity,
    SimilarityMetric.EUCLIDEAN: euclidean_similarity,
}


def jaccard_similarity(a: str, b: str) -> float:
    """Overlap of the word sets of two texts."""
    left = set(_TOKEN.findall(a.lower()))
    right = set(_TOKEN.findall(b.lower()))
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


def levenshtein_similarity(a: str, b: str) -> float:
    """1 - edit distance / longer length; two empty texts score 1."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i] + [0] * len(b)
        for j, cb in enumerate(b, start=1):
            current[j] = min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + (ca != cb))
        previous = current
    return 1.0 - previous[-1] / longest


TEXT_METRICS: Dict[SimilarityMetric, Callable[[str, str], float]] = {
    SimilarityMetric.JACCARD: jaccard_similarity,
    SimilarityMetric.LEVENSHTEIN: levenshtein_similarity,
}


class SimilarityIndex:
    """
    Bounded index of recent responses with their embeddings and request text.

    Entries are partitioned by scope (the request options that change an answer),
    and a search only considers entries of the same scope. Vector metrics score
    embeddings; text metrics score the normalized request text and need no embedder.
    The oldest entry is dropped once `max_entries` is reached.
    """

    layer = CacheLayer.SIMILARITY

    def __init__(self, config: SimilarityConfig) -> None:
        self.threshold = config.threshold
        self.ttl = config.ttl
        self.uses_text = config.metric in TEXT_METRICS
        self._vector_metric = METRICS.get(config.metric)
        self._text_metric = TEXT_METRICS.get(config.metric)
        self._lock = threading.Lock()
        self._entries: Deque[Tuple[str, CacheEntry, str]] = deque(maxlen=config.max_entries)
        self.evictions = 0

    def add(self, scope: str, entry: CacheEntry, text: str = "") -> int:
        if not self.uses_text and entry.embedding is None:
            raise ValueError("Similarity entries need an embedding")
        entry = entry.model_copy(update={"layer": self.layer})
        evicted = 0
        with self._lock:
            # Replace an older answer for the same key.
            stale = [item for item in self._entries if item[1].key == entry.key]
            for item in stale:
                self._entries.remove(item)
            if self._entries.maxlen is not None and len(self._entries) == self._entries.maxlen:
                evicted = 1
            self._entries.append((scope, entry, text))
            self.evictions += evicted
        return evicted

    def search(
        self, scope: str, embedding: Optional[Sequence[float]] = None, text: str = ""
    ) -> Optional[Tuple[CacheEntry, float]]:
        """
        Returns the best-scoring live entry at or above the threshold, with its score.
        """
        now = time.time()
        with self._lock:
            candidates = [(entry, t) for s, entry, t in self._entries if s == scope and not entry.is_expired(now)]

        best: Optional[Tuple[CacheEntry, float]] = None
        for entry, entry_text in candidates:
            if self._text_metric is not None:
                score = self._text_metric(text, entry_text)
            elif self._vector_metric is not None and embedding is not None:
                score = self._vector_metric(embedding, entry.embedding or [])
            else:
                continue
            if score >= self.threshold and (best is None or score > best[1]):
                best = (entry, score)
        return best

    def delete(self, key: str) -> bool:
        with self._lock:
            stale = [item for item in self._entries if item[1].key == key]
            for item in stale:
                self._entries.remove(item)
        return bool(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        now = time.time()
        with self._lock:
            live = [item for item in self._entries if not item[1].is_expired(now)]
            purged = len(self._entries) - len(live)
            self._entries.clear()
            self._entries.extend(live)
        return purged

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
