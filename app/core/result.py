"""
Result type returned by generation services
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


class GenerationErrorKind(str, Enum):
    EMPTY_INPUT = "empty_input"
    NO_RESULTS = "no_results"
    PROVIDER_ERROR = "provider_error"
    VALIDATION = "validation"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True)
class GenerationError:
    kind: GenerationErrorKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GenerationResult(Generic[T]):
    """Items produced by a service, or the reason there are none"""
    items: List[T] = field(default_factory=list)
    error: Optional[GenerationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.items)

    @classmethod
    def success(cls, items: List[T]) -> "GenerationResult[T]":
        if not items:
            return cls.failure(GenerationErrorKind.NO_RESULTS, "No usable items after normalization")
        return cls(items=list(items))

    @classmethod
    def failure(cls, kind: GenerationErrorKind, message: str, **details: Any) -> "GenerationResult[T]":
        return cls(items=[], error=GenerationError(kind=kind, message=message, details=details))
