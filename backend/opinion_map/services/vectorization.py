"""Embedding lookup, backfill and loading for sampled posts.

Classes:
    EmbeddingStats: Cached versus missing embedding counts for a set of posts.
    VectorizationResult: Outcome of making sure every requested post has an embedding.
    EmbeddingMatrix: Ordered post identifiers, texts and their stacked vectors.
    VectorStore: Reads stored embeddings and fills the gaps through the embedding service.

Functions:
    parse_embedding(raw, expected_dim): Decode a stored embedding into a float32 vector.
    enrich_post_content(post): Build the text sent to the embedding service for a post.
    check_vectorization_threshold(result, min_ratio): Fail when too few posts have embeddings.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence
from uuid import UUID

import numpy as np
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from opinion_map.core.config import Settings, get_settings
from opinion_map.core.exceptions import InsufficientEmbeddingsError, MalformedEmbedding
from opinion_map.models import Post
from opinion_map.services.openai_client import OpenAIService
from opinion_map.utils.text import collapse_whitespace, join_nonempty, truncate

_LOGGER = logging.getLogger(__name__)

_DELIMITERS = re.compile(r"[\s,]+")


@dataclass(slots=True)
class EmbeddingStats:
    total: int = 0
    cached: int = 0
    needs_embedding: int = 0

    @property
    def cache_hit_rate(self) -> float:
        return (self.cached / self.total * 100.0) if self.total else 0.0


@dataclass(slots=True)
class VectorizationResult:
    requested: int = 0
    already_vectorized: int = 0
    newly_vectorized: int = 0
    failed: int = 0

    @property
    def vectorized(self) -> int:
        return self.already_vectorized + self.newly_vectorized

    @property
    def success_rate(self) -> float:
        return (self.vectorized / self.requested * 100.0) if self.requested else 0.0

    @property
    def cache_hit_rate(self) -> float:
        return (self.already_vectorized / self.vectorized * 100.0) if self.vectorized else 0.0


@dataclass(slots=True)
class EmbeddingMatrix:
    post_ids: list[str] = field(default_factory=list)
    texts: list[str] = field(default_factory=list)
    vectors: np.ndarray = field(default_factory=lambda: np.zeros((0, 0), dtype=np.float32))
    skipped: int = 0

    def __len__(self) -> int:
        return len(self.post_ids)


def parse_embedding(raw: Any, expected_dim: Optional[int] = None) -> np.ndarray:
    """Decode a stored embedding into a one-dimensional float32 vector.

    Accepts native sequences and arrays, JSON array text (``"[0.1, 0.2]"``) and
    comma or whitespace separated numbers. Anything else, a length that does not
    match ``expected_dim``, or a non-finite component raises ``MalformedEmbedding``.
    """

    if raw is None:
        raise MalformedEmbedding("embedding is missing")

    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="strict")

    if isinstance(raw, np.ndarray):
        values: Any = raw
    elif isinstance(raw, (list, tuple)):
        if any(isinstance(value, (bool, str)) for value in raw):
            raise MalformedEmbedding("embedding contains non-numeric components")
        values = raw
    elif isinstance(raw, str):
        values = _parse_embedding_text(raw)
    else:
        raise MalformedEmbedding(f"unsupported embedding type {type(raw).__name__}")

    try:
        arr = np.asarray(values, dtype=np.float32)
    except (TypeError, ValueError) as exc:
        raise MalformedEmbedding(f"embedding is not numeric: {exc}") from exc

    if arr.ndim != 1 or arr.size == 0:
        raise MalformedEmbedding(f"embedding must be a non-empty vector, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise MalformedEmbedding("embedding contains non-finite values")
    if expected_dim and arr.size != expected_dim:
        raise MalformedEmbedding(f"embedding has {arr.size} dimensions, expected {expected_dim}")
    return arr


def _parse_embedding_text(text: str) -> list[Any]:
    stripped = text.strip()
    if not stripped:
        raise MalformedEmbedding("embedding text is empty")
    if stripped.startswith("["):
        try:
            decoded = json.loads(stripped)
        except json.JSONDecodeError:
            if not stripped.endswith("]"):
                raise MalformedEmbedding("unterminated embedding array") from None
            stripped = stripped[1:-1]
        else:
            if not isinstance(decoded, list):
                raise MalformedEmbedding("embedding JSON is not an array")
            return decoded
    tokens = [token for token in _DELIMITERS.split(stripped) if token]
    try:
        return [float(token) for token in tokens]
    except ValueError as exc:
        raise MalformedEmbedding(f"embedding text is not numeric: {exc}") from exc


def enrich_post_content(post: Post, max_chars: Optional[int] = None) -> str:
    """Post text plus author and hashtag context, truncated for the embedding service."""

    limit = max_chars or get_settings().embedding_max_chars
    author = None
    author_parts = []
    if post.author_name:
        author_parts.append(post.author_name)
    if post.author_username:
        author_parts.append(f"(@{post.author_username})")
    if author_parts:
        author = "Author: " + " ".join(author_parts)

    hashtags = None
    if post.hashtags:
        hashtags = "Hashtags: " + " ".join(f"#{tag.lstrip('#')}" for tag in post.hashtags if tag)

    content = join_nonempty([collapse_whitespace(post.text or ""), author, hashtags])
    return truncate(content, limit)


def check_vectorization_threshold(result: VectorizationResult, min_ratio: Optional[float] = None) -> None:
    """Raise ``InsufficientEmbeddingsError`` unless enough posts were vectorized."""

    ratio = get_settings().min_vectorization_ratio if min_ratio is None else min_ratio
    achieved = (result.vectorized / result.requested) if result.requested else 0.0
    if achieved < ratio:
        raise InsufficientEmbeddingsError(
            vectorized=result.vectorized,
            requested=result.requested,
            failed=result.failed,
            min_ratio=ratio,
        )
    if result.vectorized < result.requested:
        _LOGGER.warning(
            "Partial vectorization: %s/%s posts embedded (%.1f%%), continuing with %s failures",
            result.vectorized,
            result.requested,
            result.success_rate,
            result.failed,
        )


def _as_uuid(value: Any) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


def _chunks(items: Sequence[Any], size: int):
    for start in range(0, len(items), size):
        yield items[start : start + size]


class VectorStore:
    def __init__(
        self,
        openai_service: Optional[OpenAIService] = None,
        *,
        settings: Optional[Settings] = None,
        expected_dim: Optional[int] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._openai = openai_service or OpenAIService()
        self._expected_dim = expected_dim if expected_dim is not None else self._settings.embedding_dim

    def _decode(self, post: Post) -> Optional[np.ndarray]:
        if post.embedding is None:
            return None
        try:
            return parse_embedding(post.embedding, self._expected_dim)
        except MalformedEmbedding as exc:
            _LOGGER.warning("Stored embedding for post %s is malformed: %s", post.id, exc)
            return None

    async def _fetch_posts(self, session, ids: Sequence[UUID]) -> dict[UUID, Post]:
        if not ids:
            return {}
        result = await session.exec(select(Post).where(Post.id.in_(list(ids))))
        return {post.id: post for post in result.scalars().all()}

    async def get_embedding_stats(self, session, post_ids: Sequence[Any]) -> EmbeddingStats:
        ids = [uuid for uuid in (_as_uuid(pid) for pid in post_ids) if uuid is not None]
        stats = EmbeddingStats(total=len(post_ids))
        for batch in _chunks(ids, self._settings.embedding_lookup_batch_size):
            posts = await self._fetch_posts(session, batch)
            stats.cached += sum(1 for post in posts.values() if self._decode(post) is not None)
        stats.needs_embedding = stats.total - stats.cached
        return stats

    async def ensure_embeddings(self, session, post_ids: Sequence[Any]) -> VectorizationResult:
        """Make sure every requested post carries a valid embedding.

        Lookups and embedding calls run in sequential batches. A batch that fails
        upstream marks only its own posts as failed; unknown post ids count as
        failures too.
        """

        result = VectorizationResult(requested=len(post_ids))
        if not post_ids:
            return result

        ids: list[UUID] = []
        for raw_id in post_ids:
            uuid = _as_uuid(raw_id)
            if uuid is None:
                _LOGGER.warning("Ignoring invalid post id %r", raw_id)
                result.failed += 1
            else:
                ids.append(uuid)

        pending: list[Post] = []
        for batch in _chunks(ids, self._settings.embedding_lookup_batch_size):
            posts = await self._fetch_posts(session, batch)
            missing = len(batch) - len(posts)
            if missing:
                _LOGGER.warning("%s sampled posts no longer exist", missing)
                result.failed += missing
            for post in posts.values():
                if self._decode(post) is not None:
                    result.already_vectorized += 1
                else:
                    pending.append(post)

        _LOGGER.info(
            "Vectorization lookup: %s cached, %s to embed, %s missing",
            result.already_vectorized,
            len(pending),
            result.failed,
        )

        model = self._settings.openai_embedding_model
        timeout = self._settings.openai_timeout_seconds
        batch_size = self._settings.embedding_batch_size
        for index, batch in enumerate(_chunks(pending, batch_size)):
            texts = [enrich_post_content(post, self._settings.embedding_max_chars) for post in batch]
            try:
                embedded = await asyncio.wait_for(self._openai.embed_texts(texts, model=model), timeout=timeout)
            except Exception as exc:
                _LOGGER.error(
                    "Embedding batch %s (%s posts) failed: %s", index + 1, len(batch), exc, exc_info=True
                )
                result.failed += len(batch)
                continue

            result.newly_vectorized += await self._store_batch(
                session, batch, embedded.vectors, embedded.model or model, result
            )

        _LOGGER.info(
            "Vectorization finished: %s/%s embedded (%s new, %s failed)",
            result.vectorized,
            result.requested,
            result.newly_vectorized,
            result.failed,
        )
        return result

    async def _store_batch(
        self,
        session,
        posts: Sequence[Post],
        vectors: Sequence[Any],
        model: str,
        result: VectorizationResult,
    ) -> int:
        stored: list[tuple[UUID, list[float]]] = []
        now = datetime.utcnow()
        for position, post in enumerate(posts):
            vector = vectors[position] if position < len(vectors) else None
            try:
                arr = parse_embedding(vector, self._expected_dim)
            except MalformedEmbedding as exc:
                _LOGGER.warning("Embedding service returned an unusable vector for post %s: %s", post.id, exc)
                result.failed += 1
                continue
            values = arr.astype(float).tolist()
            post.embedding = values
            post.embedding_model = model
            post.embedding_created_at = now
            session.add(post)
            stored.append((post.id, values))

        if not stored:
            return 0
        try:
            await session.commit()
            return len(stored)
        except SQLAlchemyError as exc:
            _LOGGER.error("Failed to store %s embeddings in one write: %s", len(stored), exc, exc_info=True)
            await session.rollback()

        # Retry row by row so a single bad write does not lose the batch.
        saved = 0
        for post_id, values in stored:
            try:
                post = await session.get(Post, post_id)
                if post is None:
                    result.failed += 1
                    continue
                post.embedding = values
                post.embedding_model = model
                post.embedding_created_at = now
                session.add(post)
                await session.commit()
                saved += 1
            except SQLAlchemyError as exc:
                _LOGGER.error("Failed to store embedding for post %s: %s", post_id, exc)
                await session.rollback()
                result.failed += 1
        return saved

    async def load_embeddings(self, session, post_ids: Sequence[Any]) -> EmbeddingMatrix:
        """Stack stored embeddings in the order of ``post_ids``, skipping unusable ones."""

        ids = [uuid for uuid in (_as_uuid(pid) for pid in post_ids) if uuid is not None]
        ordered_ids: list[str] = []
        texts: list[str] = []
        rows: list[np.ndarray] = []
        skipped = 0

        for batch in _chunks(ids, self._settings.embedding_fetch_batch_size):
            posts = await self._fetch_posts(session, batch)
            for post_id in batch:
                post = posts.get(post_id)
                if post is None or post.embedding is None:
                    skipped += 1
                    continue
                arr = self._decode(post)
                if arr is None:
                    skipped += 1
                    continue
                ordered_ids.append(str(post.id))
                texts.append(post.text or "")
                rows.append(arr)

        if skipped:
            _LOGGER.warning("Skipped %s posts without a usable embedding", skipped)

        if rows:
            dims = {row.size for row in rows}
            if len(dims) > 1:
                raise MalformedEmbedding(f"stored embeddings have mixed dimensions: {sorted(dims)}")
            vectors = np.vstack(rows).astype(np.float32, copy=False)
        else:
            vectors = np.zeros((0, self._expected_dim or 0), dtype=np.float32)

        return EmbeddingMatrix(post_ids=ordered_ids, texts=texts, vectors=vectors, skipped=skipped)
