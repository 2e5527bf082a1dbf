"""Error taxonomy shared by the enrichment pipeline adapters and orchestrator."""

from __future__ import annotations

from typing import Optional

# Shared cause recorded on every item stopped by a catalog authentication failure.
AUTH_ABORT_MESSAGE = "authentication failed"


class PipelineError(Exception):
    """Base class for every error raised by the enrichment pipeline."""

    kind = "pipeline"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None and str(self.cause) and str(self.cause) not in self.message:
            return f"{self.message}: {self.cause}"
        return self.message


class AdapterFailure(PipelineError):
    """An external capability call failed for one work item."""

    kind = "adapter"
    stage = "adapter"


class ExtractionFailure(AdapterFailure):
    kind = "extraction"
    stage = "extraction"


class SearchFailure(AdapterFailure):
    kind = "search"
    stage = "search"


class VisualMatchFailure(AdapterFailure):
    kind = "visual_match"
    stage = "visual_match"


class AuthFailure(PipelineError):
    """Catalog credentials were rejected; fatal for the whole batch."""

    kind = "auth"
    stage = "search"


class RateLimited(PipelineError):
    """The upstream service asked us to slow down."""

    kind = "rate_limited"

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, cause)
        self.retry_after = retry_after


class PersistenceFailure(PipelineError):
    """Datastore error other than a unique-constraint race."""

    kind = "persistence"
    stage = "persistence"


class RetryInterrupted(PipelineError):
    """The caller gave up while a retried call was waiting for its next attempt."""

    kind = "interrupted"
