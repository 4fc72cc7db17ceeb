import json
import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

logger = logging.getLogger("backoffice.http_client")


class UpstreamError(Exception):
    """Base class for failures talking to the upstream exchange API."""


class UpstreamUnavailableError(UpstreamError):
    """Network-level failure (timeout, refused connection, protocol error)."""


class UpstreamPayloadError(UpstreamError):
    """HTTP 200 with a body that is not valid JSON."""


@dataclass(frozen=True)
class UpstreamResponse:
    status_code: int
    data: Any = None

    @property
    def ok(self) -> bool:
        return self.status_code == 200


def _safe_url(url: str) -> str:
    """Strip query params for safe logging."""
    parsed = urlparse(str(url))
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path}"


class UpstreamClient:
    """httpx.AsyncClient wrapper for the exchange API.

    Single attempt per call: the caller's next scheduled cycle is the retry.
    Success is signalled solely by HTTP 200; any other status comes back as
    an UpstreamResponse with ``data=None`` so callers can treat it as
    "no data yet".
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._name = name
        self._base_url = base_url

    @property
    def base_url(self) -> str:
        return self._base_url

    async def fetch(self, params: dict[str, Any]) -> UpstreamResponse:
        try:
            resp = await self._client.get(self._base_url, params=params)
        except httpx.HTTPError as exc:
            logger.warning(
                "[%s] Network error on GET %s action=%s: %s",
                self._name, _safe_url(self._base_url), params.get("action"), exc,
            )
            raise UpstreamUnavailableError(str(exc)) from exc

        if resp.status_code != 200:
            logger.debug(
                "[%s] GET %s action=%s returned %d",
                self._name, _safe_url(self._base_url), params.get("action"), resp.status_code,
            )
            return UpstreamResponse(status_code=resp.status_code)

        try:
            data = resp.json()
        except (json.JSONDecodeError, ValueError) as exc:
            logger.error(
                "[%s] Malformed JSON from %s action=%s",
                self._name, _safe_url(self._base_url), params.get("action"),
            )
            raise UpstreamPayloadError(f"malformed JSON for action={params.get('action')}") from exc

        return UpstreamResponse(status_code=200, data=data)

    async def aclose(self) -> None:
        await self._client.aclose()
