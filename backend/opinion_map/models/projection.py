"""Post projection ORM model.

Classes:
    PostProjection: One sampled post's 3D placement and cluster assignment for a session.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Index, UniqueConstraint
from sqlmodel import Field, SQLModel

OUTLIER_CLUSTER_ID = -1


class PostProjection(SQLModel, table=True):
    __tablename__ = "post_projections"
    __table_args__ = (
        UniqueConstraint("post_id", "session_id", name="uq_post_projection_post_session"),
        Index("ix_post_projections_zone_session", "zone_id", "session_id"),
        Index("ix_post_projections_session_cluster", "session_id", "cluster_id"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    post_id: UUID = Field(foreign_key="posts.id")
    zone_id: UUID = Field(foreign_key="zones.id")
    session_id: str = Field(foreign_key="opinion_sessions.session_id")
    x: float
    y: float
    z: float
    cluster_id: int = Field(default=OUTLIER_CLUSTER_ID)
    cluster_confidence: Optional[float] = None
    is_outlier: bool = Field(default=False)
    created_at: datetime = Field(default_factory=datetime.utcnow)
