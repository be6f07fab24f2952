"""Opinion map generation and read endpoints.

Endpoints:
    generate(payload, ...): Sample posts, create (or join) a session and dispatch the worker.
    get_status(session_id, session): Current state of one session.
    get_latest(zone_id, session): Latest session of a zone, with its map once completed.
    get_map(session_id, session): Projections and clusters of a session.
    get_cluster_detail(session_id, cluster_id, session): One cluster and its member points.
    get_evolution(session_id, session): Posts per cluster over the session period.
    cancel(payload, session): Cancel an active session.
    retry(payload, session, dispatcher): Start a new session from a failed or cancelled one.

Helpers:
    _to_session_resource(record): Convert an OpinionSession into its response schema.
    _estimate_processing_seconds(total, needs_embedding): Rough duration shown to the caller.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Optional
from uuid import UUID

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, status
from sqlmodel.ext.asyncio.session import AsyncSession

from opinion_map.core.config import get_settings
from opinion_map.core.exceptions import (
    ActiveSessionExistsError,
    InvalidSessionTransition,
    SessionNotFoundError,
)
from opinion_map.db.session import get_session
from opinion_map.models import OpinionSession, SessionStatus, Zone
from opinion_map.schemas import (
    ClusterDetailResponse,
    ClusterSummary,
    EvolutionBucket,
    EvolutionResponse,
    GenerateRequest,
    GenerateResponse,
    OpinionMapResponse,
    ProjectionPoint,
    SessionRequest,
    SessionResource,
)
from opinion_map.services import artifacts
from opinion_map.services.dispatch import Dispatcher, get_dispatcher
from opinion_map.services.sampling import sample_posts_stratified
from opinion_map.services.sessions import SessionService
from opinion_map.services.vectorization import VectorStore

_LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/opinion-map", tags=["opinion-map"])


def get_vector_store() -> VectorStore:
    return VectorStore()


def _to_session_resource(record: OpinionSession) -> SessionResource:
    return SessionResource(
        session_id=record.session_id,
        zone_id=record.zone_id,
        status=record.status,
        progress=record.progress,
        phase_message=record.phase_message,
        config=record.config or {},
        total_posts=record.total_posts,
        vectorized_posts=record.vectorized_posts,
        total_clusters=record.total_clusters,
        outlier_count=record.outlier_count,
        explained_variance=record.explained_variance,
        execution_time_ms=record.execution_time_ms,
        error_message=record.error_message,
        created_by=record.created_by,
        started_at=record.started_at,
        completed_at=record.completed_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _estimate_processing_seconds(total: int, needs_embedding: int) -> int:
    vectorizing = math.ceil(needs_embedding / 100) * 0.5
    reducing = 10 + (30 if total < 1000 else 60 if total < 5000 else 120)
    clustering = 10
    labeling = 8 * 5
    return int(math.ceil(vectorizing + reducing + clustering + labeling))


def _to_point(projection) -> ProjectionPoint:
    return ProjectionPoint(
        post_id=projection.post_id,
        x=projection.x,
        y=projection.y,
        z=projection.z,
        cluster_id=projection.cluster_id,
        cluster_confidence=projection.cluster_confidence,
        is_outlier=projection.is_outlier,
    )


def _to_cluster_summary(cluster) -> ClusterSummary:
    return ClusterSummary(
        cluster_id=cluster.cluster_id,
        label=cluster.label,
        keywords=list(cluster.keywords or []),
        post_count=cluster.post_count,
        centroid=(cluster.centroid_x, cluster.centroid_y, cluster.centroid_z),
        avg_sentiment=cluster.avg_sentiment,
        coherence_score=cluster.coherence_score,
        reasoning=cluster.reasoning,
    )


async def _build_map(session, record: OpinionSession) -> OpinionMapResponse:
    projections = await artifacts.get_projections(session, record.session_id)
    clusters = await artifacts.get_clusters(session, record.session_id)
    return OpinionMapResponse(
        session=_to_session_resource(record),
        points=[_to_point(projection) for projection in projections],
        clusters=[_to_cluster_summary(cluster) for cluster in clusters],
    )


async def _require_session(session, session_id: str) -> OpinionSession:
    try:
        return await SessionService().get_session(session, session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


def _config_datetime(config: dict, key: str) -> Optional[datetime]:
    value = config.get(key)
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        _LOGGER.warning("Ignoring unparseable %s %r in session config", key, value)
        return None


async def _dispatch(session, record: OpinionSession, dispatcher: Dispatcher, background_tasks: BackgroundTasks) -> None:
    try:
        await dispatcher.dispatch(record.session_id, background_tasks)
    except (httpx.HTTPError, RuntimeError) as exc:
        _LOGGER.error("Failed to dispatch session %s: %s", record.session_id, exc, exc_info=True)
        await SessionService().mark_failed(session, record.session_id, f"Dispatch failed: {exc}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to schedule worker") from exc


@router.post("/generate", response_model=GenerateResponse, status_code=status.HTTP_202_ACCEPTED)
async def generate(
    payload: GenerateRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    vector_store: VectorStore = Depends(get_vector_store),
    user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> GenerateResponse:
    settings = get_settings()
    zone = await session.get(Zone, payload.zone_id)
    if zone is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Zone not found")

    sessions = SessionService()
    running = await sessions.get_running_session(session, zone.id)
    if running is not None:
        config = running.config or {}
        return GenerateResponse(
            session_id=running.session_id,
            created=False,
            status=running.status,
            sampled_posts=int(config.get("actual_sample_size") or 0),
            total_available=int(config.get("total_available") or 0),
            sampling_strategy=str(config.get("sampling_strategy") or "all"),
            cache_hit_rate=0.0,
            estimated_time_seconds=0,
        )

    target = min(payload.sample_size or settings.default_sample_size, settings.max_sample_size)
    try:
        sampled = await sample_posts_stratified(
            session,
            zone_id=zone.id,
            start=payload.start_date,
            end=payload.end_date,
            target_size=target,
            prioritize_engagement=payload.prioritize_engagement,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if not sampled.post_ids:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No posts found for this period")

    stats = await vector_store.get_embedding_stats(session, sampled.post_ids)
    _LOGGER.info(
        "Embedding cache for zone %s: %s/%s cached (%.1f%%)",
        zone.id,
        stats.cached,
        stats.total,
        stats.cache_hit_rate,
    )

    config = {
        "start_date": payload.start_date.isoformat(),
        "end_date": payload.end_date.isoformat(),
        "sample_size": target,
        "prioritize_engagement": payload.prioritize_engagement,
        **sampled.as_config(),
    }
    record, created = await sessions.create_or_reuse_session(
        session,
        zone_id=zone.id,
        config=config,
        created_by=user_id,
    )
    if created:
        await _dispatch(session, record, dispatcher, background_tasks)

    return GenerateResponse(
        session_id=record.session_id,
        created=created,
        status=record.status,
        sampled_posts=sampled.actual_sampled,
        total_available=sampled.total_available,
        sampling_strategy=sampled.strategy,
        cache_hit_rate=round(stats.cache_hit_rate, 1),
        estimated_time_seconds=_estimate_processing_seconds(sampled.actual_sampled, stats.needs_embedding),
    )


@router.get("/status", response_model=SessionResource)
async def get_status(
    session_id: str = Query(..., min_length=1),
    session: AsyncSession = Depends(get_session),
) -> SessionResource:
    try:
        record = await SessionService().get_session(session, session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _to_session_resource(record)


@router.get("/latest", response_model=OpinionMapResponse)
async def get_latest(
    zone_id: UUID = Query(...),
    session: AsyncSession = Depends(get_session),
) -> OpinionMapResponse:
    record = await SessionService().get_latest_session(session, zone_id)
    if record is None:
        return OpinionMapResponse()
    if record.status != SessionStatus.COMPLETED:
        return OpinionMapResponse(session=_to_session_resource(record))
    return await _build_map(session, record)


@router.get("/sessions/{session_id}/map", response_model=OpinionMapResponse)
async def get_map(session_id: str, session: AsyncSession = Depends(get_session)) -> OpinionMapResponse:
    record = await _require_session(session, session_id)
    return await _build_map(session, record)


@router.get("/sessions/{session_id}/clusters/{cluster_id}", response_model=ClusterDetailResponse)
async def get_cluster_detail(
    session_id: str,
    cluster_id: int,
    session: AsyncSession = Depends(get_session),
) -> ClusterDetailResponse:
    await _require_session(session, session_id)
    cluster = await artifacts.get_cluster(session, session_id, cluster_id)
    if cluster is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cluster not found")
    projections = await artifacts.get_projections(session, session_id, cluster_id=cluster_id)
    return ClusterDetailResponse(
        cluster=_to_cluster_summary(cluster),
        points=[_to_point(projection) for projection in projections],
    )


@router.get("/sessions/{session_id}/evolution", response_model=EvolutionResponse)
async def get_evolution(session_id: str, session: AsyncSession = Depends(get_session)) -> EvolutionResponse:
    record = await _require_session(session, session_id)
    config = record.config or {}
    granularity, points = await artifacts.cluster_evolution(
        session,
        session_id,
        start=_config_datetime(config, "start_date"),
        end=_config_datetime(config, "end_date"),
    )
    return EvolutionResponse(
        session_id=session_id,
        granularity=granularity,
        buckets=[EvolutionBucket(bucket=point.bucket, counts=point.counts) for point in points],
    )


@router.post("/cancel", response_model=SessionResource)
async def cancel(payload: SessionRequest, session: AsyncSession = Depends(get_session)) -> SessionResource:
    try:
        record = await SessionService().cancel_session(session, payload.session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidSessionTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _to_session_resource(record)


@router.post("/retry", response_model=SessionResource, status_code=status.HTTP_202_ACCEPTED)
async def retry(
    payload: SessionRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> SessionResource:
    try:
        record = await SessionService().retry_session(session, payload.session_id, created_by=user_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (ActiveSessionExistsError, InvalidSessionTransition) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    await _dispatch(session, record, dispatcher, background_tasks)
    return _to_session_resource(record)
