"""Error taxonomy for the analysis pipeline.

Provider errors are raised by provider clients and absorbed by the
orchestrator into per-field attempts (and from there into gaps). Only
:class:`FatalConfigurationError` is allowed to fail a job.
"""

from typing import Optional


class AnalysisError(Exception):
    """Base class for all pipeline errors."""


class ProviderError(AnalysisError):
    """A single provider call failed."""

    kind = "unknown"

    def __init__(self, message: str, provider_id: Optional[str] = None):
        super().__init__(message)
        self.provider_id = provider_id


class TransientProviderError(ProviderError):
    """Network failure, 5xx, or other error worth retrying as-is."""

    kind = "transient"


class ProviderTimeoutError(TransientProviderError):
    """The call did not finish within its deadline."""

    kind = "timeout"


class QuotaExceededError(ProviderError):
    """The provider reported a rate limit or exhausted quota."""

    kind = "quota"

    def __init__(self, message: str, provider_id: Optional[str] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, provider_id)
        self.retry_after = retry_after


class TokenLimitExceededError(ProviderError):
    """The prompt or the answer ran into the model's token ceiling."""

    kind = "token_limit"


class MalformedResponseError(ProviderError):
    """Output was returned but could not be parsed."""

    kind = "parse"


class SchemaViolationError(AnalysisError):
    """A value is present but does not satisfy the section schema."""

    def __init__(self, section_id: str, field_id: str, reason: str):
        super().__init__(f"{section_id}.{field_id}: {reason}")
        self.section_id = section_id
        self.field_id = field_id
        self.reason = reason


class FatalConfigurationError(AnalysisError):
    """Pipeline cannot run at all (no providers configured, or credentials rejected)."""


class AlreadyActiveError(AnalysisError):
    """An active job already exists for the media item."""

    def __init__(self, media_ref: str, job_id: str):
        super().__init__(f"media {media_ref} already has active job {job_id}")
        self.media_ref = media_ref
        self.job_id = job_id


class JobNotFoundError(AnalysisError):
    pass


class InvalidTransitionError(AnalysisError):
    pass


class TranscriptUnavailableError(AnalysisError):
    """The transcription collaborator has no transcript for the media item."""
