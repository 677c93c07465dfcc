"""
Custom exceptions for the lesson generation pipeline
"""
from typing import Optional, Dict, Any


class LinguaPipelineError(Exception):
    """Base exception for the generation pipeline"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class LLMError(LinguaPipelineError):
    """Error during LLM operations"""
    pass


class ChunkingError(LinguaPipelineError):
    """Error during text chunking"""
    pass


class ValidationError(LinguaPipelineError):
    """Input or model output validation error"""
    pass


class GenerationFailedError(LinguaPipelineError):
    """Generation gave up after exhausting its attempts"""
    pass


class LessonNotFoundError(LinguaPipelineError):
    """Lesson does not exist"""
    pass


class ConfigurationError(LinguaPipelineError):
    """Configuration error"""
    pass


class DatabaseError(LinguaPipelineError):
    """Database operation error"""
    pass
