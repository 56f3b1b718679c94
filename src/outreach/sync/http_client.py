"""
Rate-limited async HTTP client for third-party outreach APIs.

Every attempt (first try and each retry) is preceded by a fixed,
platform-specific delay so the request rate never exceeds the vendor's
published limit, even during retry storms. On top of that:

  - HTTP 429         → wait attempt * rate_limit_backoff, retry
  - HTTP 401 / 403   → CredentialError immediately (connection-level)
  - HTTP 404         → None when allow_404=True (e.g. stats of archived sequences)
  - other non-2xx /
    network failure  → wait attempt * error_backoff, retry

After the last attempt the error surfaces as UpstreamError; callers decide
whether it is fatal (connection-level) or a per-item failure.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class UpstreamError(RuntimeError):
    """Raised when an upstream call fails after exhausting retries."""

    def __init__(self, status: Optional[int], body: str, endpoint: str = ""):
        self.status = status
        self.body = body
        self.endpoint = endpoint
        label = status if status is not None else "network"
        super().__init__(f"upstream error ({label}) on {endpoint}: {body[:200]}")


class CredentialError(UpstreamError):
    """Raised on 401/403 — the stored credential was rejected."""


@dataclass(frozen=True)
class ApiProfile:
    """Per-platform transport settings."""

    base_url: str
    request_delay: float        # seconds slept before every attempt
    rate_limit_backoff: float   # 429 wait = attempt * rate_limit_backoff
    max_retries: int = 3
    error_backoff: float = 1.0  # non-429 failure wait = attempt * error_backoff
    auth_style: str = "bearer"  # "bearer" | "header" | "query"
    auth_name: str = "Authorization"


class RateLimitedClient:
    """
    Request/response primitive with its own per-call retry state.

    Holds no shared mutable state besides the underlying connection pool,
    so one instance can serve a whole sync run.
    """

    def __init__(
        self,
        profile: ApiProfile,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            profile: Platform transport settings.
            http_client: httpx.AsyncClient to use (tests pass one built on
                         httpx.MockTransport). Created on demand if omitted.
            sleep: Awaitable sleep; injected so tests don't actually wait.
        """
        self.profile = profile
        self._http = http_client
        self._owns_http = http_client is None
        self._sleep = sleep

    async def __aenter__(self) -> "RateLimitedClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=30.0)
        return self._http

    def _auth(self, credential: str, params: Dict[str, Any], headers: Dict[str, str]) -> None:
        style = self.profile.auth_style
        if style == "query":
            params[self.profile.auth_name] = credential
        elif style == "header":
            headers[self.profile.auth_name] = credential
        else:
            headers["Authorization"] = f"Bearer {credential}"

    async def request(
        self,
        endpoint: str,
        credential: str,
        method: str = "GET",
        body: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        allow_404: bool = False,
        delay: Optional[float] = None,
    ) -> Any:
        """
        Perform one logical request, retrying as described in the module docstring.

        Args:
            endpoint: Path relative to the profile base URL, e.g. "/campaigns".
            credential: Decrypted API key / bearer token.
            method: HTTP method.
            body: JSON body for non-GET requests.
            params: Query parameters.
            allow_404: Return None on 404 instead of failing.
            delay: Override the profile's preventive delay for this call.

        Returns:
            Parsed JSON, or None for an empty body / allowed 404.

        Raises:
            CredentialError: on 401/403.
            UpstreamError: after the final attempt fails.
        """
        url = f"{self.profile.base_url}{endpoint}"
        wait = self.profile.request_delay if delay is None else delay
        retries = max(1, self.profile.max_retries)
        last_error: Optional[UpstreamError] = None

        for attempt in range(1, retries + 1):
            await self._sleep(wait)

            query: Dict[str, Any] = dict(params or {})
            headers = {"Accept": "application/json"}
            self._auth(credential, query, headers)
            logger.debug("Fetching: %s %s (attempt %d/%d)", method, endpoint, attempt, retries)

            try:
                response = await self._client().request(
                    method,
                    url,
                    params=query,
                    headers=headers,
                    json=body if method != "GET" else None,
                )
            except httpx.HTTPError as exc:
                last_error = UpstreamError(None, str(exc), endpoint)
                logger.warning("Network error on %s (attempt %d/%d): %s", endpoint, attempt, retries, exc)
                if attempt < retries:
                    await self._sleep(attempt * self.profile.error_backoff)
                continue

            status = response.status_code
            if status == 429:
                last_error = UpstreamError(429, response.text, endpoint)
                if attempt < retries:
                    backoff = attempt * self.profile.rate_limit_backoff
                    logger.info("Rate limited on %s, waiting %.1fs", endpoint, backoff)
                    await self._sleep(backoff)
                continue

            if status in (401, 403):
                raise CredentialError(status, response.text, endpoint)

            if status == 404 and allow_404:
                logger.info("404 - no data available for %s", endpoint)
                return None

            if not response.is_success:
                last_error = UpstreamError(status, response.text, endpoint)
                logger.warning("API error %d on %s (attempt %d/%d)", status, endpoint, attempt, retries)
                if attempt < retries:
                    await self._sleep(attempt * self.profile.error_backoff)
                continue

            text = response.text
            if not text:
                return None
            try:
                return json.loads(text)
            except ValueError as exc:
                raise UpstreamError(status, f"invalid JSON: {exc}", endpoint) from exc

        raise last_error
