"""Convenience exports for ORM models.

Surface frequently used SQLModel classes so calling code can import them from a single module.
"""

from .zone import Zone
from .post import Post
from .opinion_session import (
    ACTIVE_STATUSES,
    STATUS_ORDER,
    TERMINAL_STATUSES,
    OpinionSession,
    SessionStatus,
)
from .projection import OUTLIER_CLUSTER_ID, PostProjection
from .cluster import OpinionCluster

__all__ = [
    "Zone",
    "Post",
    "OpinionSession",
    "SessionStatus",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "STATUS_ORDER",
    "PostProjection",
    "OUTLIER_CLUSTER_ID",
    "OpinionCluster",
]
