"""Service layer exports.

Expose the OpenAIService, SessionService and OpinionMapPipeline implementations for easy importing.
"""

from .openai_client import OpenAIService
from .sessions import SessionService
from .pipeline import OpinionMapPipeline

__all__ = ["OpenAIService", "SessionService", "OpinionMapPipeline"]
