"""Pydantic schemas for opinion map generation, status and results.

Classes:
    GenerateRequest, GenerateResponse: Start (or join) a session for a zone and period.
    SessionRequest, SessionResource: Identify a session and describe its progress.
    WorkerRequest, WorkerResponse: Worker callback payload and outcome.
    ProjectionPoint, ClusterSummary, OpinionMapResponse: Map payload for a session.
    ClusterDetailResponse: One cluster with its member points.
    EvolutionBucket, EvolutionResponse: Posts per cluster over time.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class GenerateRequest(BaseModel):
    zone_id: UUID
    start_date: datetime
    end_date: datetime
    sample_size: Optional[int] = Field(default=None, ge=1)
    prioritize_engagement: bool = False

    @model_validator(mode="after")
    def _check_period(self) -> "GenerateRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        return self


class GenerateResponse(BaseModel):
    success: bool = True
    session_id: str
    created: bool
    status: str
    sampled_posts: int
    total_available: int
    sampling_strategy: str
    cache_hit_rate: float
    estimated_time_seconds: int


class SessionRequest(BaseModel):
    session_id: str = Field(min_length=1)


class SessionResource(BaseModel):
    session_id: str
    zone_id: UUID
    status: str
    progress: int
    phase_message: Optional[str] = None
    config: dict[str, Any] = Field(default_factory=dict)
    total_posts: Optional[int] = None
    vectorized_posts: int = 0
    total_clusters: Optional[int] = None
    outlier_count: Optional[int] = None
    explained_variance: Optional[float] = None
    execution_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    created_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class WorkerRequest(BaseModel):
    session_id: Optional[str] = None


class WorkerResponse(BaseModel):
    success: bool
    session_id: str
    status: str
    cancelled: bool = False
    total_posts: int = 0
    total_clusters: int = 0
    outlier_count: int = 0


class ProjectionPoint(BaseModel):
    post_id: UUID
    x: float
    y: float
    z: float
    cluster_id: int
    cluster_confidence: Optional[float] = None
    is_outlier: bool = False


class ClusterSummary(BaseModel):
    cluster_id: int
    label: str
    keywords: list[str] = Field(default_factory=list)
    post_count: int
    centroid: tuple[float, float, float]
    avg_sentiment: Optional[float] = None
    coherence_score: Optional[float] = None
    reasoning: Optional[str] = None


class OpinionMapResponse(BaseModel):
    session: Optional[SessionResource] = None
    points: list[ProjectionPoint] = Field(default_factory=list)
    clusters: list[ClusterSummary] = Field(default_factory=list)


class ClusterDetailResponse(BaseModel):
    cluster: ClusterSummary
    points: list[ProjectionPoint] = Field(default_factory=list)


class EvolutionBucket(BaseModel):
    bucket: datetime
    counts: dict[int, int] = Field(default_factory=dict)


class EvolutionResponse(BaseModel):
    session_id: str
    granularity: str
    buckets: list[EvolutionBucket] = Field(default_factory=list)
