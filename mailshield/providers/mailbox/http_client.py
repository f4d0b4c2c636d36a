from __future__ import annotations

from datetime import timedelta
import time
from typing import Any

import httpx
from redis.asyncio import Redis

from mailshield.core.config import get_settings
from mailshield.core.errors import CredentialError, ProviderError, TransientProviderError
from mailshield.domain.types import utc_now
from mailshield.providers.mailbox.base import TokenGrant
from mailshield.services.resilience import CircuitBreaker, RetryPolicy, retry_async
from mailshield.services.telemetry import record_external_call


def _retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def grant_from_token_response(body: dict[str, Any], *, fallback_refresh: str | None = None) -> TokenGrant:
    access_token = body.get("access_token")
    if not access_token:
        raise CredentialError("token response missing access_token")
    expires_in = int(body.get("expires_in") or 3600)
    return TokenGrant(
        access_token=access_token,
        expires_at=utc_now() + timedelta(seconds=expires_in),
        refresh_token=body.get("refresh_token") or fallback_refresh,
        scopes=body.get("scope"),
    )


def raise_for_token_error(response: httpx.Response, provider: str) -> None:
    if response.status_code < 400:
        return
    try:
        error = response.json().get("error")
    except ValueError:
        error = None
    if error in {"invalid_grant", "unauthorized_client", "invalid_client"} or response.status_code in {400, 401}:
        raise CredentialError(f"{provider} token grant rejected: {error or response.status_code}")
    raise ProviderError(f"{provider} token endpoint returned {response.status_code}", status_code=response.status_code)


class ProviderHttpClient:
    """Shared transport for provider APIs: breaker, retry, telemetry, typed errors."""

    def __init__(
        self,
        integration: str,
        *,
        client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        redis: Redis | None = None,
    ) -> None:
        self._settings = get_settings()
        self._integration = integration
        self._client = client
        self._breaker = breaker or CircuitBreaker(integration, redis=redis)
        self._retry_policy = retry_policy

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def request(
        self,
        method: str,
        url: str,
        *,
        access_token: str | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        allow_statuses: frozenset[int] = frozenset(),
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}
        client = self._get_client()
        await self._breaker.before_call()
        start = time.monotonic()

        async def _call() -> httpx.Response:
            try:
                response = await client.request(
                    method, url, headers=headers, params=params, json=json, data=data
                )
            except httpx.TransportError as exc:
                raise TransientProviderError(
                    f"{self._integration} transport failure: {type(exc).__name__}",
                    provider=self._integration,
                ) from exc
            if response.status_code == 429 or response.status_code >= 500:
                raise ProviderError(
                    f"{self._integration} returned {response.status_code}",
                    status_code=response.status_code,
                    provider=self._integration,
                    retry_after=_retry_after(response),
                )
            return response

        try:
            response = await retry_async(_call, policy=self._retry_policy)
        except Exception:  # noqa: BLE001 - record the failure, then propagate unchanged
            await self._breaker.record_failure()
            record_external_call(
                integration=self._integration,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise

        await self._breaker.record_success()
        ok = response.status_code < 400 or response.status_code in allow_statuses
        record_external_call(
            integration=self._integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=ok,
        )
        if not ok:
            raise ProviderError(
                f"{self._integration} returned {response.status_code}",
                status_code=response.status_code,
                provider=self._integration,
            )
        return response

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
