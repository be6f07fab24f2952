"""Convenience exports for API schemas.

Re-exports the pydantic models used across the backend so consumers can import from one module.
"""

from .opinion_map import (
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
    WorkerRequest,
    WorkerResponse,
)

__all__ = [
    "GenerateRequest",
    "GenerateResponse",
    "SessionRequest",
    "SessionResource",
    "WorkerRequest",
    "WorkerResponse",
    "ProjectionPoint",
    "ClusterSummary",
    "OpinionMapResponse",
    "ClusterDetailResponse",
    "EvolutionBucket",
    "EvolutionResponse",
]
