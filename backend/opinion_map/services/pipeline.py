"""Multi-phase orchestration of one opinion map session.

Phases run strictly in order: vectorizing (0-20%), reducing (20-60%), clustering
(60-75%) and labeling (75-100%). Each phase returns a ``PhaseOutcome``; only the
pipeline writes status and progress. Cancellation is checked before every
expensive phase and between labeling batches.

Classes:
    PhaseTimer: Captures per-phase durations for the session's telemetry.
    PhaseOutcome: Result, progress and message produced by one phase.
    PipelineResult: Summary returned to the worker entry point.
    OpinionMapPipeline: Runs all phases for a session and records failures.
"""

from __future__ import annotations

import asyncio
import logging
import time
import traceback
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import numpy as np
from sqlalchemy.exc import SQLAlchemyError

from opinion_map.core.config import get_settings
from opinion_map.core.exceptions import EmptySampleError, PipelineFailedError
from opinion_map.models import STATUS_ORDER, OpinionSession, SessionStatus, Zone
from opinion_map.services import artifacts
from opinion_map.services.clustering import ClusteringResult, cluster_kmeans, seed_from_session_id
from opinion_map.services.dimensionality import PCAResult, normalize_projections, reduce_pca, reduce_umap_3d
from opinion_map.services.labeling import ClusterGroup, ClusterLabeler
from opinion_map.services.openai_client import OpenAIService
from opinion_map.services.sessions import SessionService
from opinion_map.services.vectorization import (
    EmbeddingMatrix,
    VectorizationResult,
    VectorStore,
    check_vectorization_threshold,
)

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

PHASE_SPANS: dict[str, tuple[int, int]] = {
    SessionStatus.VECTORIZING: (0, 20),
    SessionStatus.REDUCING: (20, 60),
    SessionStatus.CLUSTERING: (60, 75),
    SessionStatus.LABELING: (75, 100),
}

Reporter = Callable[[int, str], Awaitable[None]]


class PhaseTimer:
    """Capture phase-level timings for a session run."""

    def __init__(self) -> None:
        self._origin = time.perf_counter()
        self._wall_start = datetime.utcnow()
        self._phases: list[dict[str, Any]] = []

    @asynccontextmanager
    async def track(self, name: str):
        start_counter = time.perf_counter()
        try:
            yield
        finally:
            self._phases.append(
                {
                    "name": name,
                    "duration_ms": round((time.perf_counter() - start_counter) * 1000.0, 3),
                    "offset_ms": round((start_counter - self._origin) * 1000.0, 3),
                }
            )

    def snapshot(self) -> dict[str, Any]:
        return {
            "total_duration_ms": round((time.perf_counter() - self._origin) * 1000.0, 3),
            "phases": list(self._phases),
            "started_at": self._wall_start.isoformat(timespec="milliseconds") + "Z",
        }


@dataclass
class PhaseOutcome(Generic[T]):
    result: T
    progress: int
    message: str


@dataclass(slots=True)
class ReductionOutput:
    matrix: EmbeddingMatrix
    pca: PCAResult
    coords: np.ndarray


@dataclass(slots=True)
class PipelineResult:
    session_id: str
    status: str
    total_posts: int = 0
    total_clusters: int = 0
    outlier_count: int = 0
    error_message: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.status == SessionStatus.CANCELLED

    @property
    def success(self) -> bool:
        return self.status in (SessionStatus.COMPLETED, SessionStatus.CANCELLED)

    @classmethod
    def from_session(cls, record: OpinionSession) -> "PipelineResult":
        return cls(
            session_id=record.session_id,
            status=record.status,
            total_posts=record.total_posts or 0,
            total_clusters=record.total_clusters or 0,
            outlier_count=record.outlier_count or 0,
            error_message=record.error_message,
        )


def _span_progress(status: str, fraction: float) -> int:
    low, high = PHASE_SPANS[status]
    return int(round(low + (high - low) * max(0.0, min(1.0, fraction))))


class OpinionMapPipeline:
    def __init__(
        self,
        openai_service: Optional[OpenAIService] = None,
        *,
        sessions: Optional[SessionService] = None,
        vector_store: Optional[VectorStore] = None,
        labeler: Optional[ClusterLabeler] = None,
    ) -> None:
        openai_service = openai_service or OpenAIService()
        self._settings = get_settings()
        self._sessions = sessions or SessionService()
        self._vectors = vector_store or VectorStore(openai_service)
        self._labeler = labeler or ClusterLabeler(openai_service)

    async def run(self, session, session_id: str) -> PipelineResult:
        """Drive every phase of ``session_id`` to a terminal state.

        A session already in progress is resumed: phases it has reached keep their
        status and are recomputed from stored embeddings.

        Raises ``SessionNotFoundError`` for unknown ids. Any other error is
        recorded on the session and re-raised as ``PipelineFailedError``.
        """

        record = await self._sessions.get_session(session, session_id)
        if record.is_terminal:
            _LOGGER.info("Session %s is already %s; nothing to do", session_id, record.status)
            return PipelineResult.from_session(record)
        if record.status != SessionStatus.PENDING:
            _LOGGER.info(
                "Resuming session %s from %s at %s%%", session_id, record.status, record.progress
            )

        timer = PhaseTimer()
        try:
            return await self._run_phases(session, record, timer)
        except Exception as exc:
            await session.rollback()
            if await self._cancelled_after_error(session, session_id):
                _LOGGER.info("Session %s was cancelled mid-phase: %s", session_id, exc)
                return await self._stop(session, session_id, timer)
            _LOGGER.error("Opinion map pipeline failed for %s: %s", session_id, exc, exc_info=True)
            try:
                await self._sessions.mark_failed(session, session_id, str(exc), traceback.format_exc())
                await self._sessions.record_aggregates(session, session_id, timings=timer.snapshot())
            except SQLAlchemyError:
                _LOGGER.warning("Failed to record failure of session %s", session_id, exc_info=True)
            raise PipelineFailedError(session_id, str(exc)) from exc

    async def _run_phases(self, session, record: OpinionSession, timer: PhaseTimer) -> PipelineResult:
        session_id = record.session_id
        zone_id = record.zone_id
        post_ids = record.sampled_post_ids
        if not post_ids:
            raise EmptySampleError(f"Session {session_id} has no sampled posts")

        async with timer.track("vectorizing"):
            await self._enter(session, session_id, SessionStatus.VECTORIZING, f"Vectorizing {len(post_ids)} posts")
            vectorized = await self._vectorize(session, post_ids, self._reporter(session, session_id))
            await self._sessions.record_aggregates(
                session,
                session_id,
                total_posts=len(post_ids),
                vectorized_posts=vectorized.result.vectorized,
            )
            check_vectorization_threshold(vectorized.result, self._settings.min_vectorization_ratio)
            await self._persist(session, session_id, vectorized)

        if await self._cancelled(session, session_id):
            return await self._stop(session, session_id, timer)

        async with timer.track("reducing"):
            await self._enter(session, session_id, SessionStatus.REDUCING, "Reducing dimensions")
            reduced = await self._reduce(session, session_id, post_ids, self._reporter(session, session_id))
            await self._sessions.record_aggregates(
                session,
                session_id,
                explained_variance=reduced.result.pca.explained_variance_retained,
            )
            await self._persist(session, session_id, reduced)

        if await self._cancelled(session, session_id):
            return await self._stop(session, session_id, timer)

        async with timer.track("clustering"):
            await self._enter(session, session_id, SessionStatus.CLUSTERING, "Detecting opinion clusters")
            clustered = await self._cluster(session_id, reduced.result)
            await artifacts.save_projections(
                session,
                zone_id=zone_id,
                session_id=session_id,
                post_ids=reduced.result.matrix.post_ids,
                coords=reduced.result.coords,
                clustering=clustered.result,
            )
            await self._sessions.record_aggregates(
                session,
                session_id,
                outlier_count=clustered.result.outlier_count,
            )
            await self._persist(session, session_id, clustered)

        if await self._cancelled(session, session_id):
            return await self._stop(session, session_id, timer)

        async with timer.track("labeling"):
            await self._enter(session, session_id, SessionStatus.LABELING, "Labeling clusters")
            labeled = await self._label(
                session,
                zone_id=zone_id,
                session_id=session_id,
                reduced=reduced.result,
                clustering=clustered.result,
                report=self._reporter(session, session_id),
            )
            if labeled.result is None:
                return await self._stop(session, session_id, timer)
            await self._sessions.record_aggregates(session, session_id, total_clusters=labeled.result)

        await self._sessions.record_aggregates(session, session_id, timings=timer.snapshot())
        completed = await self._sessions.update_progress(
            session,
            session_id,
            status=SessionStatus.COMPLETED,
            progress=100,
            message=labeled.message,
        )
        superseded = await artifacts.purge_superseded_sessions(session, zone_id, session_id)
        if superseded:
            _LOGGER.info("Session %s superseded %s older sessions", session_id, len(superseded))

        _LOGGER.info(
            "Opinion map session %s completed: %s posts, %s clusters, %s outliers in %s ms",
            session_id,
            completed.total_posts,
            completed.total_clusters,
            completed.outlier_count,
            completed.execution_time_ms,
        )
        return PipelineResult.from_session(completed)

    def _reporter(self, session, session_id: str) -> Reporter:
        async def report(progress: int, message: str) -> None:
            await self._sessions.update_progress(session, session_id, progress=progress, message=message)

        return report

    async def _enter(self, session, session_id: str, status: str, message: str) -> None:
        current = (await self._sessions.get_session(session, session_id)).status
        if current in STATUS_ORDER and STATUS_ORDER[current] >= STATUS_ORDER[status]:
            await self._sessions.update_progress(session, session_id, message=message)
            return
        await self._sessions.update_progress(
            session,
            session_id,
            status=status,
            progress=PHASE_SPANS[status][0],
            message=message,
        )

    async def _persist(self, session, session_id: str, outcome: PhaseOutcome[Any]) -> None:
        await self._sessions.update_progress(
            session,
            session_id,
            progress=outcome.progress,
            message=outcome.message,
        )

    async def _cancelled(self, session, session_id: str) -> bool:
        cancelled = await self._sessions.is_cancelled(session, session_id)
        if cancelled:
            _LOGGER.info("Session %s was cancelled; stopping before the next phase", session_id)
        return cancelled

    async def _cancelled_after_error(self, session, session_id: str) -> bool:
        try:
            return await self._sessions.is_cancelled(session, session_id)
        except SQLAlchemyError:
            return False

    async def _stop(self, session, session_id: str, timer: PhaseTimer) -> PipelineResult:
        record = await self._sessions.record_aggregates(session, session_id, timings=timer.snapshot())
        return PipelineResult.from_session(record)

    async def _vectorize(
        self,
        session,
        post_ids: list[str],
        report: Reporter,
    ) -> PhaseOutcome[VectorizationResult]:
        result = await self._vectors.ensure_embeddings(session, post_ids)
        await report(
            _span_progress(SessionStatus.VECTORIZING, 0.9),
            f"Embeddings ready for {result.vectorized}/{result.requested} posts",
        )
        return PhaseOutcome(
            result=result,
            progress=PHASE_SPANS[SessionStatus.VECTORIZING][1],
            message=(
                f"Vectorized {result.vectorized}/{result.requested} posts "
                f"({result.cache_hit_rate:.0f}% cached, {result.failed} failed)"
            ),
        )

    async def _reduce(
        self,
        session,
        session_id: str,
        post_ids: list[str],
        report: Reporter,
    ) -> PhaseOutcome[ReductionOutput]:
        matrix = await self._vectors.load_embeddings(session, post_ids)
        if len(matrix) == 0:
            raise EmptySampleError(f"No usable embeddings for session {session_id}")

        pca = await asyncio.to_thread(reduce_pca, matrix.vectors, self._settings.pca_components)
        await report(
            _span_progress(SessionStatus.REDUCING, 0.25),
            f"PCA retained {pca.explained_variance_retained * 100:.1f}% of variance",
        )

        layout = await asyncio.to_thread(
            reduce_umap_3d,
            pca.projections,
            n_neighbors=self._settings.umap_n_neighbors,
            min_dist=self._settings.umap_min_dist,
            spread=self._settings.umap_spread,
            random_state=seed_from_session_id(session_id),
        )
        coords = normalize_projections(
            layout,
            (self._settings.display_range_min, self._settings.display_range_max),
        )
        return PhaseOutcome(
            result=ReductionOutput(matrix=matrix, pca=pca, coords=coords),
            progress=PHASE_SPANS[SessionStatus.REDUCING][1],
            message=f"Projected {len(matrix)} posts into 3D",
        )

    async def _cluster(self, session_id: str, reduced: ReductionOutput) -> PhaseOutcome[ClusteringResult]:
        result = await asyncio.to_thread(cluster_kmeans, reduced.pca.projections, session_id)
        return PhaseOutcome(
            result=result,
            progress=PHASE_SPANS[SessionStatus.CLUSTERING][1],
            message=f"Found {result.cluster_count} clusters and {result.outlier_count} outliers",
        )

    async def _label(
        self,
        session,
        *,
        zone_id,
        session_id: str,
        reduced: ReductionOutput,
        clustering: ClusteringResult,
        report: Reporter,
    ) -> PhaseOutcome[Optional[int]]:
        """Label every non-empty cluster; ``result`` is ``None`` when cancelled midway."""

        zone = await session.get(Zone, zone_id)
        context = zone.operational_context if zone else None
        language = (zone.language if zone else None) or self._settings.default_zone_language

        members = clustering.members()
        groups = [
            ClusterGroup(cluster_id=cluster_id, texts=[reduced.matrix.texts[index] for index in indices])
            for cluster_id, indices in members.items()
        ]
        await artifacts.clear_clusters(session, session_id)

        labeled = 0
        async for batch in self._labeler.iter_label_batches(groups, context, language):
            await artifacts.save_clusters(
                session,
                zone_id=zone_id,
                session_id=session_id,
                labels=batch,
                members=members,
                coords=reduced.coords,
            )
            labeled += len(batch)
            # Completion itself is reported as 100 by the orchestrator.
            progress = min(99, _span_progress(SessionStatus.LABELING, labeled / max(1, len(groups))))
            await report(progress, f"Labeled {labeled}/{len(groups)} clusters")
            if labeled < len(groups) and await self._cancelled(session, session_id):
                return PhaseOutcome(result=None, progress=progress, message="Cancelled during labeling")

        return PhaseOutcome(
            result=labeled,
            progress=PHASE_SPANS[SessionStatus.LABELING][1],
            message=f"Opinion map ready: {labeled} clusters",
        )
