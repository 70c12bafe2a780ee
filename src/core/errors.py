"""
Exception taxonomy for the curation pipeline.

Transient errors (fetch/AI) are retried and then recorded on the owning row.
Permanent errors (unknown source type, review rule violations) are raised to
the caller and never retried.
"""
from typing import Optional


class PipelineError(Exception):
    """Root of every error raised by the pipeline core."""


# ----------------------------
# Fetching
# ----------------------------
class FetchError(PipelineError):
    transient = True


class FetchTimeout(FetchError):
    pass


class FetchTransportError(FetchError):
    pass


class FetchRateLimited(FetchError):
    """
    Not a failure from the pipeline's point of view: the source is demoted to
    RATE_LIMITED until the cool-down elapses.
    """
    transient = False

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class UnknownSourceType(FetchError):
    transient = False


# ----------------------------
# AI invocation
# ----------------------------
class AIError(PipelineError):
    pass


class AIInvocationError(AIError):
    pass


class AITimeout(AIError):
    pass


# ----------------------------
# Review workflow
# ----------------------------
class ReviewError(PipelineError):
    pass


class ContentNotFound(ReviewError):
    pass


class SourceNotFound(ReviewError):
    pass


class ContentNotReady(ReviewError):
    pass


class InvalidTransition(ReviewError):
    pass


# ----------------------------
# Digest
# ----------------------------
class NoQualifyingContent(PipelineError):
    pass


# ----------------------------
# Store
# ----------------------------
class StoreError(PipelineError):
    pass


class DuplicateRowError(StoreError):
    pass


class UnknownStatusError(StoreError):
    pass
