"""Shared pipeline stage and error types for coaching turns, extraction, and action items."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class PipelineStage(str, Enum):
    """Pipeline stage identifiers for error reporting."""
    SESSION = "session"
    RUN = "run"
    SANITIZE = "sanitize"
    EXTRACT = "extract"
    SUGGEST = "suggest"
    PERSIST = "persist"


class PipelineError(Exception):
    """Pipeline error with stage context."""
    def __init__(self, stage: PipelineStage, message: str, cause: Optional[Exception] = None):
        self.stage = stage
        self.message = message
        self.cause = cause
        super().__init__(f"[{stage.value}] {message}")


class ServiceUnavailable(PipelineError):
    """LLM service unreachable or erroring. rate_limited marks a 429 that survived retries."""
    def __init__(
        self,
        stage: PipelineStage,
        message: str,
        cause: Optional[Exception] = None,
        rate_limited: bool = False,
    ):
        super().__init__(stage, message, cause)
        self.rate_limited = rate_limited


class RunFailed(PipelineError):
    """Run reached a terminal status other than completed."""
    def __init__(self, run_id: str, status: str, detail: Optional[str] = None):
        self.run_id = run_id
        self.status = status
        self.detail = detail
        message = f"Assistant run {run_id} ended with status {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(PipelineStage.RUN, message)


class RunTimeout(PipelineError):
    """Poll budget exhausted. The run is abandoned; the next send sees it as busy until it settles."""
    def __init__(self, run_id: str, attempts: int):
        self.run_id = run_id
        self.attempts = attempts
        super().__init__(
            PipelineStage.RUN,
            f"Assistant run {run_id} did not finish after {attempts} polls",
        )


class ExtractionFailed(PipelineError):
    """Structured extraction produced nothing usable."""
    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(PipelineStage.EXTRACT, message, cause)


@dataclass(frozen=True)
class OrdinalConflict:
    """Duplicate or missing ordinals found in one partition. Reported and repaired, never raised."""
    owner_id: str
    list_id: Optional[str]
    duplicates: tuple[int, ...] = ()
    gaps: tuple[int, ...] = ()

    @property
    def has_duplicates(self) -> bool:
        return bool(self.duplicates)

    def __str__(self) -> str:
        partition = self.list_id or f"unlisted:{self.owner_id}"
        return f"ordinal conflict in {partition}: duplicates={list(self.duplicates)} gaps={list(self.gaps)}"
