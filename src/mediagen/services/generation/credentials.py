"""Credential providers for the generation service.

The orchestrator treats the bearer credential as opaque: it asks for it on every
outbound call and never inspects or refreshes it.
"""

from typing import Callable, Optional

CredentialProvider = Callable[[], Optional[str]]


class StaticCredentialProvider:
    """Returns the same bearer credential on every call (empty string = anonymous)."""

    def __init__(self, token: Optional[str]):
        self._token = token or None

    def __call__(self) -> Optional[str]:
        return self._token


def bearer_headers(credential: Optional[str]) -> dict[str, str]:
    """Build the Authorization header for a credential (empty when anonymous)."""
    if not credential:
        return {}
    return {"Authorization": f"Bearer {credential}"}
