"""Zone ORM model.

Classes:
    Zone: A tenant-scoped monitoring topic that owns posts and opinion map sessions.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, Text
from sqlmodel import Field, SQLModel


class Zone(SQLModel, table=True):
    __tablename__ = "zones"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str
    operational_context: Optional[str] = Field(default=None, sa_column=Column(Text))
    language: str = Field(default="en")
    created_at: datetime = Field(default_factory=datetime.utcnow)
