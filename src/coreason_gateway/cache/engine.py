# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

import threading
import time
from collections import Counter, deque
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from coreason_gateway.cache.keys import request_text, similarity_scope
from coreason_gateway.cache.layers import MemoryLayer, RedisLayer, SQLiteLayer
from coreason_gateway.cache.similarity import HashingEmbedder, LiteLLMEmbedder, SimilarityIndex
from coreason_gateway.config import CacheConfig
from coreason_gateway.errors import CacheError
from coreason_gateway.events import EventEmitter, EventType
from coreason_gateway.interfaces import Embedder, RemoteCacheClient
from coreason_gateway.models import CacheEntry, CacheLayer, GatewayRequest, GatewayResponse, StreamDelta
from coreason_gateway.utils.logger import logger

ExactLayer = Union[MemoryLayer, SQLiteLayer, RedisLayer]


class CacheStats(BaseModel):
    """Read-only snapshot of the cache counters."""

    model_config = ConfigDict(frozen=True)

    hits: Dict[str, int] = Field(default_factory=dict)
    misses: int = 0
    evictions: int = 0
    writes: int = 0
    errors: Dict[str, int] = Field(default_factory=dict)

    @property
    def total_hits(self) -> int:
        return sum(self.hits.values())

    @property
    def hit_rate(self) -> float:
        lookups = self.total_hits + self.misses
        return self.total_hits / lookups if lookups else 0.0


class CacheEngine:
    """
    Multi-tier response cache.

    Lookup order is memory -> persistent -> remote -> similarity; the first hit wins
    and is promoted into the faster exact layers. Writes go through to every enabled
    exact layer and to the similarity index. A failing layer is logged, counted and
    bypassed; callers never see a CacheError.
    """

    def __init__(
        self,
        config: CacheConfig,
        events: Optional[EventEmitter] = None,
        embedder: Optional[Embedder] = None,
        remote_client: Optional[RemoteCacheClient] = None,
    ) -> None:
        self.config = config
        self._events = events
        self._lock = threading.Lock()
        self._hits: Counter[str] = Counter()
        self._errors: Counter[str] = Counter()
        self._misses = 0
        self._writes = 0
        self._recent: Deque[Tuple[float, str, Optional[str]]] = deque(maxlen=config.analytics_window)

        self.memory: Optional[MemoryLayer] = None
        self.persistent: Optional[SQLiteLayer] = None
        self.remote: Optional[RedisLayer] = None
        self.similarity: Optional[SimilarityIndex] = None
        self.embedder: Optional[Embedder] = None

        if not config.enabled:
            logger.info("Response cache disabled")
            return

        if config.memory.enabled:
            self.memory = MemoryLayer(config.memory)
        if config.persistent.enabled:
            try:
                self.persistent = SQLiteLayer(config.persistent)
            except CacheError as e:
                self._absorb(CacheLayer.PERSISTENT, e)
        if config.remote.enabled:
            self.remote = RedisLayer(config.remote, client=remote_client)
        if config.similarity.enabled:
            self.similarity = SimilarityIndex(config.similarity)
            if embedder is not None:
                self.embedder = embedder
            elif config.similarity.embedding_model:
                self.embedder = LiteLLMEmbedder(config.similarity.embedding_model)
            else:
                self.embedder = HashingEmbedder(config.similarity.dimensions)

        layers = [layer.layer.value for layer in self._exact_layers()]
        if self.similarity is not None:
            layers.append(CacheLayer.SIMILARITY.value)
        logger.info(f"Response cache layers: {layers}")

    @property
    def enabled(self) -> bool:
        return bool(self._exact_layers()) or self.similarity is not None

    @property
    def stats(self) -> CacheStats:
        evictions = sum(layer.evictions for layer in self._exact_layers())
        if self.similarity is not None:
            evictions += self.similarity.evictions
        with self._lock:
            return CacheStats(
                hits=dict(self._hits),
                misses=self._misses,
                evictions=evictions,
                writes=self._writes,
                errors=dict(self._errors),
            )

    async def lookup(self, request: GatewayRequest) -> Optional[GatewayResponse]:
        """
        Returns a cached response tagged with the layer that served it, or None on a miss.
        """
        if not self.enabled:
            return None

        key = request.cache_key
        found = await self._lookup_exact(key)
        score: Optional[float] = None
        if found is None and self.similarity is not None:
            match = await self._lookup_similar(request)
            if match is not None:
                found = (match[0], CacheLayer.SIMILARITY)
                score = match[1]

        if found is None:
            self._record(key, None)
            logger.debug(f"Cache miss for request {request.request_id}")
            self._emit(EventType.CACHE_MISS, request_id=request.request_id, key=key)
            return None

        entry, layer = found
        self._record(key, layer)
        response = entry.response.model_copy(update={"cache_layer": layer, "similarity": score})
        logger.info(f"Cache hit ({layer.value}) for request {request.request_id}")
        self._emit(
            EventType.CACHE_HIT,
            request_id=request.request_id,
            key=key,
            layer=layer.value,
            tag=response.cache_tag,
            similarity=score,
        )
        return response

    async def store(self, request: GatewayRequest, response: GatewayResponse) -> None:
        """
        Writes a dispatched response through to every enabled layer.
        """
        if not self.enabled:
            return

        clean = response.model_copy(update={"cache_layer": None, "similarity": None})
        now = time.time()
        for layer in self._exact_layers():
            entry = CacheEntry(key=request.cache_key, response=clean, layer=layer.layer, created_at=now, ttl=layer.ttl)
            if await self._put(layer, entry):
                with self._lock:
                    self._writes += 1

        if self.similarity is not None:
            embedding: Optional[List[float]] = None
            if not self.similarity.uses_text:
                embedding = await self._embed(request)
                if embedding is None:
                    return
            self.similarity.add(
                similarity_scope(request.options),
                CacheEntry(
                    key=request.cache_key,
                    response=clean,
                    layer=CacheLayer.SIMILARITY,
                    created_at=now,
                    ttl=self.similarity.ttl,
                    embedding=embedding,
                ),
                text=request_text(request.messages),
            )

    async def invalidate(self, key: str) -> bool:
        removed = False
        for layer in self._exact_layers():
            try:
                if isinstance(layer, RedisLayer):
                    removed = await layer.delete(key) or removed
                else:
                    removed = layer.delete(key) or removed
            except CacheError as e:
                self._absorb(layer.layer, e)
        if self.similarity is not None:
            removed = self.similarity.delete(key) or removed
        return removed

    async def clear(self) -> None:
        for layer in self._exact_layers():
            try:
                if isinstance(layer, RedisLayer):
                    await layer.clear()
                else:
                    layer.clear()
            except CacheError as e:
                self._absorb(layer.layer, e)
        if self.similarity is not None:
            self.similarity.clear()
        with self._lock:
            self._recent.clear()
        logger.info("Response cache cleared")

    def purge_expired(self) -> Dict[str, int]:
        """Drops expired entries from the local layers. Redis expires its own keys."""
        purged: Dict[str, int] = {}
        for layer in (self.memory, self.persistent, self.similarity):
            if layer is None:
                continue
            try:
                purged[layer.layer.value] = layer.purge_expired()
            except CacheError as e:
                self._absorb(layer.layer, e)
        return purged

    def analytics(self, top: int = 10) -> Dict[str, Any]:
        """
        Hit/miss breakdown over the most recent lookups and the most requested keys.
        """
        with self._lock:
            recent = list(self._recent)

        most_requested = Counter(key for _, key, _ in recent).most_common(top)
        by_layer: Counter[str] = Counter(layer for _, _, layer in recent if layer is not None)
        hits = sum(by_layer.values())
        return {
            "lookups": len(recent),
            "hits": hits,
            "misses": len(recent) - hits,
            "hit_rate": hits / len(recent) if recent else 0.0,
            "hits_by_layer": dict(by_layer),
            "top_keys": [{"key": key, "requests": count} for key, count in most_requested],
        }

    @staticmethod
    async def replay(response: GatewayResponse) -> AsyncIterator[Union[StreamDelta, GatewayResponse]]:
        """Replays a cached response as a stream: one delta, then the response itself."""
        if response.content:
            yield StreamDelta(content=response.content, index=0, provider=response.provider, model=response.model)
        yield response

    async def close(self) -> None:
        if self.persistent is not None:
            self.persistent.close()
        if self.remote is not None:
            try:
                await self.remote.close()
            except Exception as e:
                logger.warning(f"Failed to close remote cache client: {e}")

    def _exact_layers(self) -> List[ExactLayer]:
        return [layer for layer in (self.memory, self.persistent, self.remote) if layer is not None]

    async def _lookup_exact(self, key: str) -> Optional[Tuple[CacheEntry, CacheLayer]]:
        faster: List[ExactLayer] = []
        for layer in self._exact_layers():
            entry = await self._get(layer, key)
            if entry is not None:
                await self._promote(faster, entry)
                return entry, layer.layer
            faster.append(layer)
        return None

    async def _promote(self, faster: List[ExactLayer], entry: CacheEntry) -> None:
        # A promoted copy never outlives the entry it was read from or the upper layer ttl.
        now = time.time()
        remaining = entry.ttl - (now - entry.created_at)
        if remaining <= 0:
            return
        for upper in faster:
            await self._put(upper, entry.model_copy(update={"created_at": now, "ttl": min(remaining, upper.ttl)}))

    async def _lookup_similar(self, request: GatewayRequest) -> Optional[Tuple[CacheEntry, float]]:
        assert self.similarity is not None
        scope = similarity_scope(request.options)
        if self.similarity.uses_text:
            return self.similarity.search(scope, text=request_text(request.messages))
        embedding = await self._embed(request)
        if embedding is None:
            return None
        return self.similarity.search(scope, embedding)

    async def _get(self, layer: ExactLayer, key: str) -> Optional[CacheEntry]:
        try:
            if isinstance(layer, RedisLayer):
                return await layer.get(key)
            return layer.get(key)
        except (CacheError, ValueError) as e:
            self._absorb(layer.layer, e)
            return None

    async def _put(self, layer: ExactLayer, entry: CacheEntry) -> bool:
        try:
            if isinstance(layer, RedisLayer):
                await layer.put(entry)
            else:
                layer.put(entry)
            return True
        except (CacheError, ValueError) as e:
            self._absorb(layer.layer, e)
            return False

    async def _embed(self, request: GatewayRequest) -> Optional[List[float]]:
        assert self.embedder is not None
        try:
            return await self.embedder.embed(request_text(request.messages))
        except Exception as e:
            self._absorb(CacheLayer.SIMILARITY, e)
            return None

    def _absorb(self, layer: CacheLayer, error: Exception) -> None:
        with self._lock:
            self._errors[layer.value] += 1
        logger.warning(f"Cache layer {layer.value} failed and was bypassed: {error}")

    def _record(self, key: str, layer: Optional[CacheLayer]) -> None:
        with self._lock:
            self._recent.append((time.time(), key, layer.value if layer is not None else None))
            if layer is None:
                self._misses += 1
            else:
                self._hits[layer.value] += 1

    def _emit(self, event_type: EventType, **payload: Any) -> None:
        if self._events is not None:
            self._events.emit(event_type, **payload)
