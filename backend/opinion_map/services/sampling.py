"""Stratified temporal sampling of posts for an opinion map.

Classes:
    SamplingResult: Sampled post identifiers plus bookkeeping about how they were chosen.

Functions:
    sample_posts_stratified(session, ...): Pick a size-bounded, day-balanced subset of posts.
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import func, not_, select

from opinion_map.models import Post

_LOGGER = logging.getLogger(__name__)

REPOST_PREFIX = "RT @"
LOW_SAMPLING_RATE = 80.0


@dataclass(slots=True)
class SamplingResult:
    post_ids: list[str] = field(default_factory=list)
    total_available: int = 0
    actual_sampled: int = 0
    buckets: int = 0
    strategy: str = "all"

    def as_config(self) -> dict[str, Any]:
        return {
            "sampled_post_ids": list(self.post_ids),
            "actual_sample_size": self.actual_sampled,
            "total_available": self.total_available,
            "buckets": self.buckets,
            "sampling_strategy": self.strategy,
        }


def _period_filters(zone_id: UUID, start: datetime, end: datetime) -> list[Any]:
    return [
        Post.zone_id == zone_id,
        Post.posted_at >= start,
        Post.posted_at <= end,
        not_(Post.text.like(f"{REPOST_PREFIX}%")),
    ]


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def bucket_count(start: datetime, end: datetime) -> int:
    """Number of calendar-day buckets covering ``[start, end]``."""

    return max(1, (end.date() - start.date()).days + 1)


def _most_engaged(rows: list[tuple[datetime, UUID, int]], limit: int) -> list[tuple[datetime, UUID, int]]:
    ranked = sorted(rows, key=lambda item: (-item[2], item[0], str(item[1])))[:limit]
    return sorted(ranked, key=lambda item: (item[0], str(item[1])))


async def sample_posts_stratified(
    session,
    *,
    zone_id: UUID,
    start: datetime,
    end: datetime,
    target_size: int,
    seed: int | None = None,
    prioritize_engagement: bool = False,
) -> SamplingResult:
    """Sample up to ``target_size`` posts spread evenly over the calendar days of the period.

    Each day contributes at most ``ceil(target_size / days)`` posts, chosen at random
    or, with ``prioritize_engagement``, by highest ``total_engagement``. Days that
    fall short are made up from the rest of the period the same way.
    """

    if target_size <= 0:
        raise ValueError("target_size must be positive")
    start = as_naive_utc(start)
    end = as_naive_utc(end)
    if end < start:
        raise ValueError("end must not precede start")

    filters = _period_filters(zone_id, start, end)
    count_stmt = select(func.count()).select_from(Post).where(*filters)
    total_available = int((await session.exec(count_stmt)).scalar_one() or 0)

    _LOGGER.info(
        "Sampling zone %s between %s and %s (target=%s, available=%s)",
        zone_id,
        start.isoformat(),
        end.isoformat(),
        target_size,
        total_available,
    )

    if total_available == 0:
        _LOGGER.warning("No posts available for zone %s in the requested period", zone_id)
        return SamplingResult(total_available=0, actual_sampled=0, buckets=0, strategy="all")

    if total_available <= target_size:
        stmt = select(Post.id).where(*filters).order_by(Post.posted_at, Post.id)
        rows = (await session.exec(stmt)).all()
        post_ids = [str(row[0]) for row in rows]
        return SamplingResult(
            post_ids=post_ids,
            total_available=total_available,
            actual_sampled=len(post_ids),
            buckets=1,
            strategy="all",
        )

    rng = random.Random(seed)
    buckets = bucket_count(start, end)
    per_bucket = math.ceil(target_size / buckets)
    day_zero = datetime.combine(start.date(), datetime.min.time())

    selected: list[tuple[datetime, UUID, int]] = []
    for index in range(buckets):
        bucket_start = max(start, day_zero + timedelta(days=index))
        bucket_end = day_zero + timedelta(days=index + 1)
        stmt = (
            select(Post.posted_at, Post.id, Post.total_engagement)
            .where(*filters, Post.posted_at >= bucket_start, Post.posted_at < bucket_end)
            .order_by(Post.posted_at, Post.id)
        )
        rows = [(row[0], row[1], row[2] or 0) for row in (await session.exec(stmt)).all()]
        if not rows:
            _LOGGER.debug("Bucket %s (%s) is empty", index + 1, bucket_start.date().isoformat())
            continue
        if len(rows) > per_bucket:
            if prioritize_engagement:
                rows = _most_engaged(rows, per_bucket)
            else:
                picks = sorted(rng.sample(range(len(rows)), per_bucket))
                rows = [rows[pick] for pick in picks]
        selected.extend(rows)

    selected = selected[:target_size]

    if len(selected) < target_size:
        shortfall = target_size - len(selected)
        chosen = {post_id for _, post_id, _ in selected}
        stmt = (
            select(Post.posted_at, Post.id, Post.total_engagement)
            .where(*filters)
            .order_by(Post.posted_at, Post.id)
        )
        remaining = [
            (row[0], row[1], row[2] or 0)
            for row in (await session.exec(stmt)).all()
            if row[1] not in chosen
        ]
        if remaining:
            take = min(shortfall, len(remaining))
            fill = _most_engaged(remaining, take) if prioritize_engagement else rng.sample(remaining, take)
            _LOGGER.info(
                "Filled %s of %s missing samples for zone %s from sparse buckets",
                len(fill),
                shortfall,
                zone_id,
            )
            selected.extend(fill)
            selected.sort(key=lambda item: (item[0], str(item[1])))

    post_ids = [str(post_id) for _, post_id, _ in selected]
    sampling_rate = len(post_ids) / target_size * 100.0
    if sampling_rate < LOW_SAMPLING_RATE:
        _LOGGER.warning(
            "Low sampling rate for zone %s: %s of %s requested (%.1f%%)",
            zone_id,
            len(post_ids),
            target_size,
            sampling_rate,
        )

    return SamplingResult(
        post_ids=post_ids,
        total_available=total_available,
        actual_sampled=len(post_ids),
        buckets=buckets,
        strategy="stratified_engagement" if prioritize_engagement else "stratified",
    )
