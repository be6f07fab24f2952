"""Bulk persistence of the projections and clusters a session produces.

Functions:
    save_projections(session, ...): Store every sampled post's 3D placement in batches.
    save_clusters(session, ...): Store labeled clusters with centroids from member projections.
    clear_clusters(session, session_id): Drop clusters written by an earlier attempt.
    get_projections(session, session_id, cluster_id): Projections of a session, optionally of one cluster.
    get_clusters(session, session_id): Clusters of a session ordered by cluster id.
    get_cluster(session, session_id, cluster_id): One cluster of a session, if stored.
    calculate_granularity(days): Bucket width for the evolution chart of a period.
    cluster_evolution(session, session_id, start, end): Posts per cluster over time.
    purge_session_artifacts(session, session_id): Delete a session's projections and clusters.
    purge_superseded_sessions(session, zone_id, keep_session_id): Purge older completed sessions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence
from uuid import UUID

import numpy as np
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from opinion_map.core.config import get_settings
from opinion_map.core.exceptions import PersistenceError
from opinion_map.models import (
    OUTLIER_CLUSTER_ID,
    OpinionCluster,
    OpinionSession,
    Post,
    PostProjection,
    SessionStatus,
)
from opinion_map.services.clustering import ClusteringResult
from opinion_map.services.labeling import ClusterLabel
from opinion_map.services.sampling import as_naive_utc

_LOGGER = logging.getLogger(__name__)


async def save_projections(
    session,
    *,
    zone_id: UUID,
    session_id: str,
    post_ids: Sequence[str],
    coords: np.ndarray,
    clustering: ClusteringResult,
    batch_size: Optional[int] = None,
) -> int:
    """Insert one projection per post, replacing any left by an earlier attempt.

    Rows are written in fixed-size batches inside one transaction; any failure
    rolls the whole write back and raises ``PersistenceError``.
    """

    if len(post_ids) != coords.shape[0] or len(post_ids) != len(clustering.labels):
        raise PersistenceError(
            f"Projection inputs disagree: {len(post_ids)} posts, {coords.shape[0]} coordinates, "
            f"{len(clustering.labels)} labels"
        )

    size = batch_size or get_settings().projection_batch_size
    try:
        await session.execute(delete(PostProjection).where(PostProjection.session_id == session_id))
        for start in range(0, len(post_ids), size):
            rows = []
            for index in range(start, min(start + size, len(post_ids))):
                label = int(clustering.labels[index])
                rows.append(
                    PostProjection(
                        post_id=UUID(str(post_ids[index])),
                        zone_id=zone_id,
                        session_id=session_id,
                        x=float(coords[index, 0]),
                        y=float(coords[index, 1]),
                        z=float(coords[index, 2]),
                        cluster_id=label,
                        cluster_confidence=float(clustering.confidence[index]),
                        is_outlier=label == OUTLIER_CLUSTER_ID,
                    )
                )
            session.add_all(rows)
            await session.flush()
            _LOGGER.debug("Staged projections %s-%s for %s", start, start + len(rows), session_id)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError(f"Failed to store projections for {session_id}: {exc}") from exc

    _LOGGER.info("Stored %s projections for session %s", len(post_ids), session_id)
    return len(post_ids)


async def clear_clusters(session, session_id: str) -> None:
    await session.execute(delete(OpinionCluster).where(OpinionCluster.session_id == session_id))
    await session.commit()


async def save_clusters(
    session,
    *,
    zone_id: UUID,
    session_id: str,
    labels: Sequence[ClusterLabel],
    members: dict[int, list[int]],
    coords: np.ndarray,
) -> int:
    if not labels:
        return 0
    try:
        for label in labels:
            indices = members.get(label.cluster_id, [])
            centroid = coords[indices].mean(axis=0) if indices else np.zeros(3, dtype=np.float32)
            session.add(
                OpinionCluster(
                    zone_id=zone_id,
                    session_id=session_id,
                    cluster_id=label.cluster_id,
                    label=label.label,
                    keywords=list(label.keywords),
                    post_count=len(indices),
                    centroid_x=float(centroid[0]),
                    centroid_y=float(centroid[1]),
                    centroid_z=float(centroid[2]),
                    avg_sentiment=float(label.sentiment) if label.sentiment is not None else None,
                    coherence_score=float(label.confidence) if label.confidence is not None else None,
                    reasoning=label.reasoning,
                )
            )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError(f"Failed to store clusters for {session_id}: {exc}") from exc
    return len(labels)


async def get_projections(
    session,
    session_id: str,
    cluster_id: Optional[int] = None,
) -> list[PostProjection]:
    stmt = select(PostProjection).where(PostProjection.session_id == session_id)
    if cluster_id is not None:
        stmt = stmt.where(PostProjection.cluster_id == cluster_id)
    stmt = stmt.order_by(PostProjection.created_at, PostProjection.id)
    result = await session.exec(stmt)
    return list(result.scalars().all())


async def get_clusters(session, session_id: str) -> list[OpinionCluster]:
    stmt = (
        select(OpinionCluster)
        .where(OpinionCluster.session_id == session_id)
        .order_by(OpinionCluster.cluster_id)
    )
    result = await session.exec(stmt)
    return list(result.scalars().all())


async def get_cluster(session, session_id: str, cluster_id: int) -> Optional[OpinionCluster]:
    stmt = select(OpinionCluster).where(
        OpinionCluster.session_id == session_id,
        OpinionCluster.cluster_id == cluster_id,
    )
    return (await session.exec(stmt)).scalars().first()


async def count_projections(session, session_id: str) -> int:
    stmt = select(func.count()).select_from(PostProjection).where(PostProjection.session_id == session_id)
    return int((await session.exec(stmt)).scalar_one() or 0)


async def purge_session_artifacts(session, session_id: str) -> tuple[int, int]:
    """Delete a session's projections and clusters; returns both row counts."""

    projections = await session.execute(delete(PostProjection).where(PostProjection.session_id == session_id))
    clusters = await session.execute(delete(OpinionCluster).where(OpinionCluster.session_id == session_id))
    await session.commit()
    return int(projections.rowcount or 0), int(clusters.rowcount or 0)


async def purge_superseded_sessions(session, zone_id: UUID, keep_session_id: str) -> list[str]:
    """Purge artifacts of every other completed session of the zone created before the kept one."""

    keep = (
        await session.exec(select(OpinionSession.created_at).where(OpinionSession.session_id == keep_session_id))
    ).scalar_one_or_none()
    if keep is None:
        return []

    stmt = select(OpinionSession.session_id).where(
        OpinionSession.zone_id == zone_id,
        OpinionSession.status == SessionStatus.COMPLETED,
        OpinionSession.session_id != keep_session_id,
        OpinionSession.created_at <= keep,
    )
    superseded = list((await session.exec(stmt)).scalars().all())
    for session_id in superseded:
        projections, clusters = await purge_session_artifacts(session, session_id)
        _LOGGER.info(
            "Purged %s projections and %s clusters of superseded session %s",
            projections,
            clusters,
            session_id,
        )
    return superseded


GRANULARITY_STEPS = {
    "hour": timedelta(hours=1),
    "6hours": timedelta(hours=6),
    "day": timedelta(days=1),
}


@dataclass(slots=True)
class EvolutionPoint:
    bucket: datetime
    counts: dict[int, int]


def calculate_granularity(days: int) -> str:
    if days <= 1:
        return "hour"
    if days <= 7:
        return "6hours"
    return "day"


async def cluster_evolution(
    session,
    session_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> tuple[str, list[EvolutionPoint]]:
    """Count posts per labeled cluster in consecutive time buckets.

    The period defaults to the span of the projected posts. Outliers and clusters
    without a stored label are not counted.
    """

    cluster_ids = [cluster.cluster_id for cluster in await get_clusters(session, session_id)]
    stmt = (
        select(Post.posted_at, PostProjection.cluster_id)
        .join(Post, Post.id == PostProjection.post_id)
        .where(PostProjection.session_id == session_id)
    )
    rows = [(row[0], row[1]) for row in (await session.exec(stmt)).all()]
    if start is None or end is None:
        if not rows:
            return "day", []
        times = [posted_at for posted_at, _ in rows]
        start = start or min(times)
        end = end or max(times)
    start = as_naive_utc(start)
    end = as_naive_utc(end)

    granularity = calculate_granularity((end.date() - start.date()).days + 1)
    step = GRANULARITY_STEPS[granularity]
    origin = start.replace(minute=0, second=0, microsecond=0)
    if granularity == "day":
        origin = origin.replace(hour=0)

    points: list[EvolutionPoint] = []
    cursor = origin
    while cursor <= end:
        points.append(EvolutionPoint(bucket=cursor, counts={cluster_id: 0 for cluster_id in cluster_ids}))
        cursor += step

    for posted_at, cluster_id in rows:
        if posted_at < origin:
            continue
        index = (posted_at - origin) // step
        if index < len(points) and cluster_id in points[index].counts:
            points[index].counts[cluster_id] += 1

    _LOGGER.debug(
        "Built %s %s buckets for %s clusters of session %s",
        len(points),
        granularity,
        len(cluster_ids),
        session_id,
    )
    return granularity, points
