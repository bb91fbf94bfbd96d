"""Generation service HTTP client with error classification.

Thin binding for the two calls of the remote generation service:

    POST /generate/{kind}        -> {id} (async) or {data: [{url|b64_json}]} (inline image)
    GET  /generate/{kind}/{id}   -> {status, generations: [{video|url|contentUrl}], failure_reason?}

No retries happen here; retry policy lives in the polling worker.
"""

from typing import Any, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field

from mediagen.models.generation_job import JobKind
from mediagen.services.exceptions import (
    AuthError,
    ClientRequestError,
    NetworkError,
    RateLimitedError,
    ServiceUnavailableError,
    SubmissionError,
    TransportError,
)
from mediagen.services.generation.credentials import CredentialProvider, bearer_headers


# Wire models


class GenerationArtifact(BaseModel):
    """One generated artifact as reported by the service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    video: Optional[str] = None
    url: Optional[str] = None
    content_url: Optional[str] = Field(default=None, alias="contentUrl")
    b64_json: Optional[str] = None


class StatusReport(BaseModel):
    """Raw status report of a generation job."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str = ""
    generations: list[GenerationArtifact] = Field(default_factory=list)
    video: Optional[str] = None
    url: Optional[str] = None
    failure_reason: Optional[str] = None


class JobHandle(BaseModel):
    """Asynchronous submission outcome: the service accepted a job to poll."""

    job_id: str


class InlineResult(BaseModel):
    """Synchronous submission outcome: the artifact came back inline."""

    artifacts: list[GenerationArtifact] = Field(default_factory=list)
    url: Optional[str] = None

    def as_report(self) -> StatusReport:
        """View the inline payload as a succeeded status report."""
        return StatusReport(status="succeeded", generations=self.artifacts, url=self.url)


SubmitOutcome = Union[JobHandle, InlineResult]


# Error classification


def extract_error_message(response: httpx.Response) -> str:
    """Extract a human-readable error message from an error response.

    Order: ``error`` (string or ``{"message": ...}``), ``message``, then
    ``HTTP <code>: <reason>``.
    """
    fallback = f"HTTP {response.status_code}: {response.reason_phrase}"
    try:
        data = response.json()
    except ValueError:
        return fallback

    if not isinstance(data, dict):
        return fallback

    error = data.get("error")
    if isinstance(error, dict):
        error = error.get("message")
    if isinstance(error, str) and error:
        return error

    message = data.get("message")
    if isinstance(message, str) and message:
        return message

    return fallback


def classify_response(response: httpx.Response) -> TransportError:
    """Classify a non-2xx response into a TransportError subclass.

    Classification rules:
        - 429 → RateLimitedError
        - 401/403 → AuthError
        - 5xx → ServiceUnavailableError
        - Other 4xx → ClientRequestError
    """
    status_code = response.status_code
    message = extract_error_message(response)

    if status_code == 429:
        return RateLimitedError(f"Rate limit exceeded: {message}", status_code)
    if status_code in (401, 403):
        return AuthError(f"Authentication failed: {message}", status_code)
    if status_code >= 500:
        return ServiceUnavailableError(message, status_code)
    return ClientRequestError(message, status_code)


class GenerationClient:
    """HTTP client for the remote generation service."""

    def __init__(
        self,
        base_url: str,
        credential_provider: CredentialProvider,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize generation client.

        Args:
            base_url: Service base URL (e.g. "https://backend.example.com/api")
            credential_provider: Supplies the bearer credential for each call
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.credential_provider = credential_provider
        self.timeout = timeout
        self._http = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self) -> dict[str, str]:
        return bearer_headers(self.credential_provider())

    async def _send(self, method: str, path: str, json: Any = None) -> httpx.Response:
        """Send one request; map transport failures to NetworkError."""
        try:
            return await self._http.request(method, path, json=json, headers=self._headers())
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timeout after {self.timeout}s: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Network error: {e}") from e

    async def submit(
        self, kind: JobKind, prompt: str, params: Optional[dict[str, Any]] = None
    ) -> SubmitOutcome:
        """Submit a generation request.

        Args:
            kind: image or video
            prompt: Text prompt
            params: Kind-specific parameters (size, quality, ...)

        Returns:
            JobHandle when the service accepted an asynchronous job,
            InlineResult when it returned the artifact inline

        Raises:
            SubmissionError: The request was rejected or the response was unusable
        """
        body = {"prompt": prompt, **(params or {})}
        kind_label = JobKind(kind).value

        try:
            response = await self._send("POST", f"/generate/{kind_label}", json=body)
        except NetworkError as e:
            raise SubmissionError(str(e), cause=e) from e

        if not response.is_success:
            classified = classify_response(response)
            raise SubmissionError(str(classified), cause=classified) from classified

        try:
            data = response.json()
        except ValueError as e:
            raise SubmissionError(f"Invalid response from generation service: {e}") from e

        if not isinstance(data, dict):
            raise SubmissionError("Invalid response from generation service")

        job_id = data.get("id")
        if job_id:
            return JobHandle(job_id=str(job_id))

        if kind_label == JobKind.VIDEO.value:
            raise SubmissionError("Failed to start video generation job")

        artifacts = [
            GenerationArtifact.model_validate(item)
            for item in data.get("data") or []
            if isinstance(item, dict)
        ]
        inline = InlineResult(artifacts=artifacts, url=data.get("url"))
        if not any(a.url or a.b64_json for a in inline.artifacts) and not inline.url:
            raise SubmissionError("No image URL returned")
        return inline

    async def query_status(self, kind: JobKind, job_id: str) -> StatusReport:
        """Fetch the current status report of a job.

        Raises:
            TransportError: Classified failure (RateLimitedError, AuthError,
                ServiceUnavailableError, ClientRequestError, NetworkError)
        """
        response = await self._send("GET", f"/generate/{JobKind(kind).value}/{job_id}")

        if not response.is_success:
            raise classify_response(response)

        try:
            return StatusReport.model_validate(response.json())
        except ValueError as e:
            raise ServiceUnavailableError(
                f"Invalid status response: {e}", response.status_code
            ) from e
