from __future__ import annotations

from dataclasses import dataclass


@dataclass(eq=False)
class PipelineError(Exception):
    message: str
    segment_index: int | None = None

    def __str__(self) -> str:
        if self.segment_index is None:
            return self.message
        return f"segment {self.segment_index}: {self.message}"


@dataclass(eq=False)
class ValidationError(PipelineError, ValueError):
    """Missing or malformed caller input. Raised before any network call."""


@dataclass(eq=False)
class ProviderError(PipelineError):
    status: int | None = None

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is None:
            return base
        return f"{base} (status={self.status})"


@dataclass(eq=False)
class GenerationFailed(PipelineError):
    job_id: str = ""


@dataclass(eq=False)
class GenerationTimeout(PipelineError):
    job_id: str = ""


@dataclass(eq=False)
class PipelineCancelled(PipelineError):
    pass


@dataclass(eq=False)
class PlanningError(PipelineError):
    expected: int = 0
    actual: int | None = None


@dataclass(eq=False)
class FrameExtractionError(PipelineError):
    pass


@dataclass(eq=False)
class ConcatenationError(PipelineError):
    pass


@dataclass(eq=False)
class ExpiredError(PipelineError):
    job_id: str = ""
