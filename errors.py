"""
Error taxonomy for the thematic analysis pipeline.

Item-level errors (one embedding, one theme's coherence) are absorbed by the stage
that raised them; structural errors (configuration, timeout, cancellation) reach the caller.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ThematicAnalysisError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(ThematicAnalysisError):
    """Bad configuration or override. User-fixable, never retried."""

    def __init__(self, field: str, value: Any, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid value for '{field}': {value!r} ({reason})")


class EmbeddingError(ThematicAnalysisError):
    """Embedding provider failure."""

    def __init__(self, message: str, provider: str = "", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.provider = provider
        self.details = details or {}
        super().__init__(f"[{provider}] {message}" if provider else message)


class CircuitOpenError(EmbeddingError):
    """Raised instead of calling a provider whose circuit breaker is open."""


class CodeExtractionError(ThematicAnalysisError):
    """The code-extraction oracle failed for one source."""


class ClusteringDegenerateInputError(ThematicAnalysisError):
    """Too few valid embeddings to cluster at all."""


class CoherenceComputationError(ThematicAnalysisError):
    """NaN or Infinity appeared while scoring a theme."""


class StageTimeoutError(ThematicAnalysisError):
    def __init__(self, stage: str, timeout_s: float):
        self.stage = stage
        self.timeout_s = timeout_s
        super().__init__(f"Stage '{stage}' exceeded its timeout of {timeout_s:g}s")


class CancellationError(ThematicAnalysisError):
    """The run was cancelled cooperatively."""


class InvalidStageTransitionError(ThematicAnalysisError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Illegal stage transition {current} -> {target}")
