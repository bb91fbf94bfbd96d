"""Service error hierarchy for media generation.

This module defines the exception hierarchy for orchestrator errors:
- GenerationError: Base for all generation errors
- TransportError: Classified HTTP/transport failures of a single call
- SubmissionError: Request rejected at creation
- TerminalFailure: The remote job itself failed
- ResolutionError: The job succeeded but no usable result could be produced
"""

from typing import Optional


class GenerationError(Exception):
    """Base exception for all generation errors."""

    retryable: bool = False


class JobNotFoundError(GenerationError):
    """No job with the given key exists in the ledger."""

    pass


# Transport errors (one outbound call)
class TransportError(GenerationError):
    """Base class for classified failures of a single HTTP call."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(TransportError):
    """Rate limit exceeded (429)."""

    retryable = True


class AuthError(TransportError):
    """Credential rejected (401, 403)."""

    pass


class ServiceUnavailableError(TransportError):
    """Generation service error (5xx)."""

    pass


class ClientRequestError(TransportError):
    """Request rejected by the service (other 4xx)."""

    pass


class NetworkError(TransportError):
    """No response received (connection failure, timeout)."""

    pass


class ServiceOverloadedError(GenerationError):
    """Rate-limit retries exhausted while polling."""

    pass


class SubmissionError(GenerationError):
    """Generation request rejected at creation.

    Wraps the classified transport error (if any) as ``cause``.
    """

    def __init__(self, message: str, cause: Optional[TransportError] = None):
        super().__init__(message)
        self.cause = cause

    @property
    def status_code(self) -> Optional[int]:
        return self.cause.status_code if self.cause else None


class TerminalFailure(GenerationError):
    """The remote generation job failed."""

    pass


# Resolution errors (job succeeded remotely)
class ResolutionError(GenerationError):
    """Base exception for result resolution errors."""

    pass


class MissingArtifactError(ResolutionError):
    """Terminal report carried no artifact reference."""

    pass


class PlaybackUnavailableError(ResolutionError):
    """No URL variant could be loaded by the consumer.

    ``variant`` names the URL variant that failed to build, when one was attempted.
    """

    def __init__(self, message: str, variant: Optional[str] = None):
        super().__init__(message)
        self.variant = variant
