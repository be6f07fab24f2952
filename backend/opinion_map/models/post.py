"""Social post ORM model.

Classes:
    Post: An ingested post with its (optional) stored embedding.

The ``embedding`` column is populated by the vectorization phase. Depending on the
driver it comes back either as a numeric array or as a delimited string, so readers
must go through ``parse_embedding`` rather than using it directly.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Index, Text
from sqlmodel import Field, SQLModel


class Post(SQLModel, table=True):
    __tablename__ = "posts"
    __table_args__ = (
        Index("ix_posts_zone_posted_at", "zone_id", "posted_at"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    zone_id: UUID = Field(foreign_key="zones.id", index=True)
    external_id: str = Field(index=True)
    text: str = Field(sa_column=Column(Text, nullable=False))
    author_name: Optional[str] = None
    author_username: Optional[str] = None
    hashtags: Optional[list[str]] = Field(default=None, sa_column=Column(JSON))
    posted_at: datetime
    total_engagement: int = Field(default=0)
    embedding: Optional[Any] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    embedding_model: Optional[str] = None
    embedding_created_at: Optional[datetime] = None
