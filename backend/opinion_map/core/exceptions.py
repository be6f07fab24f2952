"""Exception hierarchy for the opinion map pipeline.

Component functions report partial failures through result objects; only
conditions that end a phase are raised with these types.
"""

from __future__ import annotations


class OpinionMapError(Exception):
    """Base class for every error raised by the pipeline."""


class SessionNotFoundError(OpinionMapError, LookupError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class ActiveSessionExistsError(OpinionMapError):
    def __init__(self, zone_id: str, session_id: str | None = None) -> None:
        detail = f" ({session_id})" if session_id else ""
        super().__init__(f"Zone {zone_id} already has an active opinion map session{detail}")
        self.zone_id = zone_id
        self.session_id = session_id


class InvalidSessionTransition(OpinionMapError):
    pass


class EmptySampleError(OpinionMapError):
    pass


class MalformedEmbedding(OpinionMapError, ValueError):
    pass


class InsufficientEmbeddingsError(OpinionMapError):
    def __init__(
        self,
        *,
        vectorized: int,
        requested: int,
        failed: int,
        min_ratio: float,
    ) -> None:
        rate = (vectorized / requested * 100.0) if requested else 0.0
        super().__init__(
            f"Insufficient vectorized posts: only {vectorized}/{requested} ({rate:.1f}%) have embeddings, "
            f"minimum required: {min_ratio * 100:.0f}%. {failed} posts failed to vectorize."
        )
        self.vectorized = vectorized
        self.requested = requested
        self.failed = failed
        self.rate = rate


class LabelingError(OpinionMapError):
    pass


class PersistenceError(OpinionMapError):
    pass


class PipelineFailedError(OpinionMapError):
    """Raised once a failure has been recorded on its session."""

    def __init__(self, session_id: str, message: str) -> None:
        super().__init__(message)
        self.session_id = session_id
