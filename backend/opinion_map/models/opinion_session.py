"""Opinion map session ORM model.

Classes:
    SessionStatus: Lifecycle states of a clustering run.
    OpinionSession: Persisted job record for one clustering run of a zone.

Functions:
    set_updated_at(_, __, target): SQLAlchemy event hook that maintains the `updated_at` timestamp.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Float, Index, Integer, Text, event, text
from sqlmodel import Field, SQLModel


class SessionStatus(str):
    PENDING = "pending"
    VECTORIZING = "vectorizing"
    REDUCING = "reducing"
    CLUSTERING = "clustering"
    LABELING = "labeling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES: tuple[str, ...] = (
    SessionStatus.PENDING,
    SessionStatus.VECTORIZING,
    SessionStatus.REDUCING,
    SessionStatus.CLUSTERING,
    SessionStatus.LABELING,
)
TERMINAL_STATUSES: tuple[str, ...] = (
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.CANCELLED,
)

# Phase order; a session never moves backwards through it.
STATUS_ORDER: dict[str, int] = {status: position for position, status in enumerate(ACTIVE_STATUSES)}

_ACTIVE_PREDICATE = text(
    "status IN ({})".format(", ".join(f"'{status}'" for status in ACTIVE_STATUSES))
)


class OpinionSession(SQLModel, table=True):
    __tablename__ = "opinion_sessions"
    __table_args__ = (
        Index(
            "uq_opinion_sessions_one_active_per_zone",
            "zone_id",
            unique=True,
            sqlite_where=_ACTIVE_PREDICATE,
            postgresql_where=_ACTIVE_PREDICATE,
        ),
        Index("ix_opinion_sessions_zone_recent", "zone_id", "created_at"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    session_id: str = Field(unique=True, index=True)
    zone_id: UUID = Field(foreign_key="zones.id")
    status: str = Field(default=SessionStatus.PENDING)
    progress: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    phase_message: Optional[str] = Field(default=None, sa_column=Column(Text))
    config: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    total_posts: Optional[int] = None
    vectorized_posts: int = Field(default=0)
    total_clusters: Optional[int] = None
    outlier_count: Optional[int] = None
    explained_variance: Optional[float] = Field(default=None, sa_column=Column(Float))
    execution_time_ms: Optional[int] = None
    timings: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text))
    error_detail: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def sampled_post_ids(self) -> list[str]:
        return list((self.config or {}).get("sampled_post_ids") or [])


@event.listens_for(OpinionSession, "before_update", propagate=True)
def set_updated_at(_, __, target):
    target.updated_at = datetime.utcnow()
