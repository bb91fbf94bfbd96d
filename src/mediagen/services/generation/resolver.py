"""Result resolution for succeeded generation jobs.

Turns the raw artifact reference of a terminal report into a URL the consumer can
actually load. Resolution is a list of strategies tried in order; each produces one
URL variant:

- direct: public/cross-origin URL or inline data URL, used as-is
- token_query: backend-relative path absolutized against the deployment base URL,
  with the credential embedded as a ``token`` query parameter
- buffered_copy: artifact downloaded with the credential and served from a local file
- credentialed: token URL loaded in credentialed cross-origin mode

A consumer that cannot load a variant reports it; the resolver then produces the
next untried variant. A non-browser target can configure only ``direct``.
"""

import asyncio
import hashlib
import mimetypes
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Protocol
from urllib.parse import parse_qs, quote, urljoin, urlsplit
from urllib.request import url2pathname

import httpx
import structlog

from mediagen.models.generation_job import JobKind
from mediagen.services.exceptions import (
    GenerationError,
    MissingArtifactError,
    NetworkError,
    PlaybackUnavailableError,
)
from mediagen.services.generation.client import StatusReport, classify_response
from mediagen.services.generation.credentials import CredentialProvider, bearer_headers

logger = structlog.get_logger(__name__)

INLINE_MEDIA_TYPES = {JobKind.IMAGE: "image/png", JobKind.VIDEO: "video/mp4"}

# Buffered copies are named <sha256 prefix><suffix>
CACHED_NAME = re.compile(r"[0-9a-f]{32}(\.[A-Za-z0-9]{1,8})?")
CACHED_SUFFIX = re.compile(r"\.[A-Za-z0-9]{1,8}")


class ArtifactSource(str, Enum):
    """Where in the report an artifact reference was found."""

    DIRECT = "direct"
    CONTENT = "content"
    INLINE = "inline"


class UrlVariant(str, Enum):
    """Kind of consumer-facing URL produced by a resolution strategy."""

    DIRECT = "direct"
    TOKEN_QUERY = "token_query"
    BUFFERED_COPY = "buffered_copy"
    CREDENTIALED = "credentialed"


@dataclass(frozen=True)
class ArtifactReference:
    """Raw pointer to generated media (may not be loadable as-is)."""

    value: str
    source: ArtifactSource

    @property
    def is_inline(self) -> bool:
        return self.value.startswith("data:")

    @property
    def is_relative(self) -> bool:
        return self.value.startswith("/") and not self.value.startswith("//")


@dataclass(frozen=True)
class ResolvedArtifact:
    """Consumer-facing URL plus what is needed to load it."""

    url: str
    variant: UrlVariant
    headers: dict[str, str] = field(default_factory=dict)
    credentials_mode: Optional[str] = None


def append_token(url: str, token: Optional[str]) -> str:
    """Embed the credential as a ``token`` query parameter (no-op if already present)."""
    if not token or "token" in parse_qs(urlsplit(url).query, keep_blank_values=True):
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}token={quote(token, safe='')}"


def extract_reference(report: StatusReport, kind: JobKind) -> ArtifactReference:
    """Pick the first artifact reference of a succeeded report.

    Priority: direct media reference (``video``/``url``), then the ``contentUrl``
    reference, then an inline base64 payload rendered as a data URL.

    Raises:
        MissingArtifactError: If the report carries no reference at all
    """
    first = report.generations[0] if report.generations else None

    direct = None
    if first is not None:
        direct = first.video or first.url
    direct = direct or report.video or report.url
    if direct:
        return ArtifactReference(direct, ArtifactSource.DIRECT)

    if first is not None and first.content_url:
        return ArtifactReference(first.content_url, ArtifactSource.CONTENT)

    payload = next((g.b64_json for g in report.generations if g.b64_json), None)
    if payload:
        media_type = INLINE_MEDIA_TYPES[JobKind(kind)]
        return ArtifactReference(f"data:{media_type};base64,{payload}", ArtifactSource.INLINE)

    raise MissingArtifactError(
        f"{JobKind(kind).value.capitalize()} generation finished but no content URL was returned"
    )


class ResolutionStrategy(Protocol):
    """One way of turning an artifact reference into a loadable URL."""

    variant: UrlVariant

    def supports(self, ref: ArtifactReference, resolver: "ResultResolver") -> bool: ...

    async def build(
        self, ref: ArtifactReference, resolver: "ResultResolver"
    ) -> ResolvedArtifact: ...


class DirectStrategy:
    """Public URLs and data URLs are loadable without credentials."""

    variant = UrlVariant.DIRECT

    def supports(self, ref: ArtifactReference, resolver: "ResultResolver") -> bool:
        return ref.is_inline or not resolver.is_backend(ref)

    async def build(self, ref: ArtifactReference, resolver: "ResultResolver") -> ResolvedArtifact:
        return ResolvedArtifact(url=ref.value, variant=self.variant)


class TokenQueryStrategy:
    """Backend URL with the credential embedded for header-less consumers."""

    variant = UrlVariant.TOKEN_QUERY

    def supports(self, ref: ArtifactReference, resolver: "ResultResolver") -> bool:
        return not ref.is_inline and resolver.is_backend(ref)

    async def build(self, ref: ArtifactReference, resolver: "ResultResolver") -> ResolvedArtifact:
        credential = resolver.credential_provider()
        return ResolvedArtifact(
            url=append_token(resolver.absolute_url(ref), credential),
            variant=self.variant,
            headers=bearer_headers(credential),
        )


class BufferedCopyStrategy:
    """Download the artifact once and serve it from the local media cache.

    The copy is exposed through the resolver's media URL when one is configured
    (HTTP API), otherwise as a local file URI (CLI).
    """

    variant = UrlVariant.BUFFERED_COPY

    def supports(self, ref: ArtifactReference, resolver: "ResultResolver") -> bool:
        return not ref.is_inline

    async def build(self, ref: ArtifactReference, resolver: "ResultResolver") -> ResolvedArtifact:
        url = resolver.absolute_url(ref)
        headers = bearer_headers(resolver.credential_provider()) if resolver.is_backend(ref) else {}

        try:
            response = await resolver.http.get(url, headers=headers, follow_redirects=True)
        except httpx.HTTPError as e:
            raise NetworkError(f"Download failed: {e}") from e
        if not response.is_success:
            raise classify_response(response)

        content_type = response.headers.get("content-type", "").split(";")[0].strip()
        digest = hashlib.sha256(url.encode("utf-8")).hexdigest()[:32]
        path = resolver.cache_dir / f"{digest}{_suffix(url, content_type)}"

        await asyncio.to_thread(_write_file, path, response.content)
        logger.info(
            "generation.resolution.buffered",
            path=str(path),
            size_bytes=len(response.content),
        )
        await resolver.prune_cache()
        return ResolvedArtifact(url=resolver.cached_url(path), variant=self.variant)


class CredentialedStrategy:
    """Token URL loaded in credentialed cross-origin mode."""

    variant = UrlVariant.CREDENTIALED

    def supports(self, ref: ArtifactReference, resolver: "ResultResolver") -> bool:
        return not ref.is_inline and resolver.is_backend(ref)

    async def build(self, ref: ArtifactReference, resolver: "ResultResolver") -> ResolvedArtifact:
        credential = resolver.credential_provider()
        return ResolvedArtifact(
            url=append_token(resolver.absolute_url(ref), credential),
            variant=self.variant,
            headers=bearer_headers(credential),
            credentials_mode="use-credentials",
        )


def _suffix(url: str, content_type: str) -> str:
    suffix = Path(urlsplit(url).path).suffix
    if CACHED_SUFFIX.fullmatch(suffix):
        return suffix
    return mimetypes.guess_extension(content_type) or ""


def _write_file(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


def _remove_expired(cache_dir: Path, max_age_seconds: float) -> int:
    if not cache_dir.is_dir():
        return 0
    cutoff = time.time() - max_age_seconds
    removed = 0
    for path in cache_dir.iterdir():
        if not CACHED_NAME.fullmatch(path.name) or not path.is_file():
            continue
        if path.stat().st_mtime < cutoff:
            path.unlink(missing_ok=True)
            removed += 1
    return removed


STRATEGIES = {
    UrlVariant.DIRECT.value: DirectStrategy,
    UrlVariant.TOKEN_QUERY.value: TokenQueryStrategy,
    UrlVariant.BUFFERED_COPY.value: BufferedCopyStrategy,
    UrlVariant.CREDENTIALED.value: CredentialedStrategy,
}


def build_strategies(names: Iterable[str]) -> list[ResolutionStrategy]:
    """Instantiate strategies by name, preserving order.

    Raises:
        ValueError: On an unknown strategy name
    """
    strategies = []
    for name in names:
        if name not in STRATEGIES:
            raise ValueError(
                f"Unknown resolver strategy {name!r}; expected one of {sorted(STRATEGIES)}"
            )
        strategies.append(STRATEGIES[name]())
    return strategies


class ResultResolver:
    """Resolves artifact references through an ordered strategy list."""

    def __init__(
        self,
        base_url: str,
        credential_provider: CredentialProvider,
        strategies: Optional[list[ResolutionStrategy]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        cache_dir: str | Path = ".media-cache",
        media_url: Optional[str] = None,
        cache_max_age_seconds: float = 86400.0,
    ):
        """Initialize resolver.

        Args:
            base_url: Deployment origin used for relative backend paths
            credential_provider: Supplies the caller's bearer credential
            strategies: Ordered strategies (default: direct, token_query,
                buffered_copy, credentialed)
            http_client: Client used for buffered copies
            cache_dir: Directory for buffered copies
            media_url: Absolute URL prefix that serves ``cache_dir`` files; without
                it buffered copies are returned as file URIs
            cache_max_age_seconds: Buffered copies older than this are removed
        """
        self.base_url = base_url.rstrip("/")
        self.credential_provider = credential_provider
        self.strategies = strategies if strategies is not None else build_strategies(STRATEGIES)
        self.http = http_client if http_client is not None else httpx.AsyncClient(timeout=60.0)
        self.cache_dir = Path(cache_dir)
        self.media_url = media_url.rstrip("/") if media_url else None
        self.cache_max_age_seconds = cache_max_age_seconds
        self._backend_origin = _origin(self.base_url)

    async def aclose(self) -> None:
        await self.prune_cache()
        await self.http.aclose()

    def cached_url(self, path: Path) -> str:
        if self.media_url:
            return f"{self.media_url}/{path.name}"
        return path.resolve().as_uri()

    def cached_file(self, name: str) -> Optional[Path]:
        """Path of a buffered copy by file name, or None if unknown or malformed."""
        if not CACHED_NAME.fullmatch(name):
            return None
        path = self.cache_dir / name
        return path if path.is_file() else None

    async def prune_cache(self) -> int:
        """Remove buffered copies older than the cache age limit."""
        removed = await asyncio.to_thread(
            _remove_expired, self.cache_dir, self.cache_max_age_seconds
        )
        if removed:
            logger.info("generation.resolution.cache_pruned", removed=removed)
        return removed

    def is_backend(self, ref: ArtifactReference) -> bool:
        """True for relative paths and absolute URLs on the deployment's own origin."""
        if ref.is_inline:
            return False
        return ref.is_relative or _origin(ref.value) == self._backend_origin

    def absolute_url(self, ref: ArtifactReference) -> str:
        if ref.is_relative:
            return urljoin(self.base_url + "/", ref.value)
        return ref.value

    def reference_for(self, value: str) -> ArtifactReference:
        """Rebuild a reference from a stored ``result_ref``."""
        source = ArtifactSource.INLINE if value.startswith("data:") else ArtifactSource.DIRECT
        return ArtifactReference(value, source)

    def extract(self, report: StatusReport, kind: JobKind) -> ArtifactReference:
        return extract_reference(report, kind)

    async def resolve(
        self, ref: ArtifactReference, tried: Iterable[str] = ()
    ) -> ResolvedArtifact:
        """Build the first applicable URL variant not yet tried.

        Args:
            ref: Artifact reference
            tried: Variants (values) already produced for this reference

        Raises:
            PlaybackUnavailableError: If no variant is left, or building the chosen
                variant failed (``variant`` is set in that case)
        """
        tried = {UrlVariant(v).value for v in tried}
        for strategy in self.strategies:
            if strategy.variant.value in tried or not strategy.supports(ref, self):
                continue
            try:
                resolved = await strategy.build(ref, self)
            except GenerationError as e:
                logger.warning(
                    "generation.resolution.strategy_failed",
                    variant=strategy.variant.value,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
                raise PlaybackUnavailableError(
                    f"Could not prepare a playable URL ({strategy.variant.value}): {e}",
                    variant=strategy.variant.value,
                ) from e
            logger.debug("generation.resolution.built", variant=resolved.variant.value)
            return resolved

        raise PlaybackUnavailableError(
            "The generation completed but the result could not be loaded "
            f"(tried: {', '.join(sorted(tried)) or 'none'})"
        )


class PlaybackProbe(Protocol):
    """Checks whether a resolved URL is actually loadable."""

    async def __call__(self, resolved: ResolvedArtifact) -> bool: ...


class HttpPlaybackProbe:
    """Probe that requests the first byte of the resolved URL."""

    def __init__(self, http_client: httpx.AsyncClient):
        self.http = http_client

    async def __call__(self, resolved: ResolvedArtifact) -> bool:
        scheme = urlsplit(resolved.url).scheme
        if scheme == "data":
            return True
        if scheme == "file":
            path = Path(url2pathname(urlsplit(resolved.url).path))
            return await asyncio.to_thread(path.is_file)

        headers = {**resolved.headers, "Range": "bytes=0-0"}
        try:
            response = await self.http.get(resolved.url, headers=headers, follow_redirects=True)
        except httpx.HTTPError as e:
            logger.info("generation.resolution.probe_failed", error_message=str(e))
            return False
        return response.status_code < 400


def _origin(url: str) -> str:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return ""
    return f"{parts.scheme}://{parts.netloc}".lower()
