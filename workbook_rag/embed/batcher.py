"""
Deduplicating, batching front end to the embedding provider.

All batching policy lives here: requests are coalesced by content hash,
cut into batches by size or time window, dispatched on the ingestion pool
and retried with exponential backoff. Hashes whose embedding cannot be
produced (provider exhausted, timeout, cancellation) are reported back as
pending instead of failing the ingestion.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..concurrency import BoundedExecutor, CancelToken, wait_future
from ..errors import EmbeddingProviderError, PoolSaturated, RetrievalTimeout
from .cache import EmbeddingCache
from .providers import EmbeddingProvider

logger = logging.getLogger(__name__)


@dataclass
class _Request:
    content_hash: str
    text: str
    future: Future


class EmbeddingBatcher:
    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: EmbeddingCache,
        pool: BoundedExecutor,
        *,
        batch_size: int = 32,
        max_wait_ms: float = 20.0,
        max_queue: int = 1024,
        max_attempts: int = 4,
        backoff_initial_s: float = 0.2,
        backoff_max_s: float = 5.0,
        block_when_full: bool = True,
    ) -> None:
        self.provider = provider
        self.cache = cache
        self.batch_size = max(1, int(batch_size))
        self.max_wait_s = max(0.0, float(max_wait_ms)) / 1000.0
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_initial_s = backoff_initial_s
        self.backoff_max_s = backoff_max_s
        self.block_when_full = block_when_full

        self._pool = pool
        self._queue: "queue.Queue[_Request]" = queue.Queue(maxsize=max_queue)
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._collector = threading.Thread(
            target=self._collect_loop, name="embedding-batcher", daemon=True
        )
        self._collector.start()

    # ---------- submission ----------
    def submit(self, content_hash: str, text: str) -> Future:
        if self._stop.is_set():
            raise RuntimeError("embedding batcher is closed")
        cached = self.cache.get(content_hash)
        if cached is not None:
            done: Future = Future()
            done.set_result(cached)
            return done

        with self._lock:
            fut = self._inflight.get(content_hash)
            if fut is not None:
                return fut
            fut = Future()
            self._inflight[content_hash] = fut

        try:
            self._queue.put(_Request(content_hash, text, fut), block=self.block_when_full)
        except queue.Full:
            with self._lock:
                self._inflight.pop(content_hash, None)
            exc = PoolSaturated("embedding queue is full")
            fut.set_exception(exc)
            raise exc
        return fut

    def embed_many(
        self,
        items: Iterable[Tuple[str, str]],
        cancel: Optional[CancelToken] = None,
    ) -> Tuple[Dict[str, np.ndarray], Set[str]]:
        """
        Embed (content_hash, text) pairs. Returns the vectors that became
        available and the hashes that stay pending.
        """
        futures: Dict[str, Future] = {}
        pending: Set[str] = set()
        for content_hash, text in items:
            if content_hash in futures or content_hash in pending:
                continue
            if cancel is not None and cancel.cancelled:
                pending.add(content_hash)
                continue
            try:
                futures[content_hash] = self.submit(content_hash, text)
            except PoolSaturated:
                logger.warning("embedding queue full; %s left pending", content_hash[:12])
                pending.add(content_hash)

        ready: Dict[str, np.ndarray] = {}
        for content_hash, fut in futures.items():
            try:
                ready[content_hash] = wait_future(fut, cancel)
            except RetrievalTimeout:
                pending.add(content_hash)
            except (EmbeddingProviderError, PoolSaturated) as exc:
                logger.warning("embedding for %s left pending: %s", content_hash[:12], exc)
                pending.add(content_hash)
        if pending:
            logger.info("%d embeddings pending, %d ready", len(pending), len(ready))
        return ready, pending

    # ---------- collection / dispatch ----------
    def _collect_loop(self) -> None:
        while not self._stop.is_set():
            try:
                first = self._queue.get(timeout=0.05)
            except queue.Empty:
                continue
            batch = [first]
            deadline = time.monotonic() + self.max_wait_s
            while len(batch) < self.batch_size:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    batch.append(self._queue.get(timeout=remaining))
                except queue.Empty:
                    break
            try:
                self._pool.submit(self._dispatch, batch)
            except (PoolSaturated, RuntimeError) as exc:
                self._fail(batch, EmbeddingProviderError(f"could not dispatch batch: {exc}"))
        self._drain(EmbeddingProviderError("embedding batcher closed"))

    def _call_provider(self, texts: List[str]) -> np.ndarray:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_initial_s, max=self.backoff_max_s),
            retry=retry_if_exception_type(Exception),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    raw = self.provider.embed(texts)
                    vecs = np.asarray(raw, dtype=np.float32)
                    if vecs.ndim != 2 or vecs.shape[0] != len(texts):
                        raise EmbeddingProviderError(
                            f"provider returned shape {vecs.shape} for {len(texts)} texts"
                        )
                    self.cache.check_dim(vecs)
                    return vecs
        except Exception as exc:
            raise EmbeddingProviderError(
                f"embedding failed after {self.max_attempts} attempts: {exc}"
            ) from exc
        raise EmbeddingProviderError("embedding retry loop ended without a result")

    def _dispatch(self, batch: List[_Request]) -> None:
        texts = [r.text for r in batch]
        try:
            vecs = self._call_provider(texts)
        except EmbeddingProviderError as exc:
            logger.warning("embedding batch of %d failed: %s", len(batch), exc)
            self._fail(batch, exc)
            return
        for req, vec in zip(batch, vecs):
            try:
                canonical = self.cache.put(req.content_hash, vec)
            except EmbeddingProviderError as exc:
                self._fail([req], exc)
                continue
            self._finish(req, result=canonical)
        logger.debug("embedded batch of %d texts", len(batch))

    def _finish(self, req: _Request, result=None, error: Optional[BaseException] = None) -> None:
        with self._lock:
            if self._inflight.get(req.content_hash) is req.future:
                del self._inflight[req.content_hash]
        if req.future.done():
            return
        if error is not None:
            req.future.set_exception(error)
        else:
            req.future.set_result(result)

    def _fail(self, batch: Sequence[_Request], exc: BaseException) -> None:
        for req in batch:
            self._finish(req, error=exc)

    def _drain(self, exc: BaseException) -> None:
        while True:
            try:
                req = self._queue.get_nowait()
            except queue.Empty:
                return
            self._finish(req, error=exc)

    def close(self) -> None:
        self._stop.set()
        self._collector.join(timeout=2.0)
        self._drain(EmbeddingProviderError("embedding batcher closed"))
