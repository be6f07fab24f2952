"""Opinion cluster ORM model definition.

Classes:
    OpinionCluster: Stores the label, keywords, centroid and scores of one cluster within a session.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class OpinionCluster(SQLModel, table=True):
    __tablename__ = "opinion_clusters"
    __table_args__ = (
        UniqueConstraint("zone_id", "session_id", "cluster_id", name="uq_opinion_cluster_zone_session_cluster"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    zone_id: UUID = Field(foreign_key="zones.id", index=True)
    session_id: str = Field(foreign_key="opinion_sessions.session_id", index=True)
    cluster_id: int
    label: str
    keywords: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    post_count: int = Field(default=0)
    centroid_x: float
    centroid_y: float
    centroid_z: float
    avg_sentiment: Optional[float] = None
    coherence_score: Optional[float] = None
    reasoning: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(default_factory=datetime.utcnow)
