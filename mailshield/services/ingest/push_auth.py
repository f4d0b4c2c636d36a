from __future__ import annotations

import json
import logging
import time
from typing import Any, Awaitable, Callable

import httpx
import jwt

from mailshield.core.config import Settings, get_settings


logger = logging.getLogger(__name__)

GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
_GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")
_ALLOWED_ALGS = {"RS256"}
_JWKS_TTL_S = 3600.0


class PushAuthError(Exception):
    """Push request did not carry a valid Google-signed bearer token."""


JwksFetcher = Callable[[], Awaitable[dict[str, Any]]]


def _select_jwk(jwks: dict[str, Any], kid: str | None) -> dict[str, Any]:
    keys = jwks.get("keys") or []
    if kid:
        for key in keys:
            if key.get("kid") == kid:
                return key
    if len(keys) == 1:
        return keys[0]
    raise PushAuthError("no matching signing key for push token")


class PubSubTokenVerifier:
    """Checks the OIDC bearer token Pub/Sub attaches to authenticated pushes.

    Verification is off when no audience is configured. Signing keys are
    cached for an hour and refetched once when a token names an unknown kid.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        fetch_jwks: JwksFetcher | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._fetch_jwks = fetch_jwks or self._fetch_google_jwks
        self._time = time_source or time.time
        self._jwks: dict[str, Any] | None = None
        self._jwks_fetched_at = 0.0

    @property
    def enabled(self) -> bool:
        return bool(self._settings.google_webhook_audience)

    async def _fetch_google_jwks(self) -> dict[str, Any]:
        timeout = self._settings.ext_call_timeout_ms / 1000
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(GOOGLE_JWKS_URL)
        response.raise_for_status()
        return response.json()

    async def _keys(self, *, force: bool = False) -> dict[str, Any]:
        expired = self._time() - self._jwks_fetched_at > _JWKS_TTL_S
        if self._jwks is None or expired or force:
            self._jwks = await self._fetch_jwks()
            self._jwks_fetched_at = self._time()
        return self._jwks

    async def verify(self, authorization: str | None) -> dict[str, Any] | None:
        """Return the token claims, or None when verification is disabled."""
        if not self.enabled:
            return None
        if not authorization or not authorization.lower().startswith("bearer "):
            raise PushAuthError("missing bearer token")
        token = authorization.split(" ", 1)[1].strip()
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise PushAuthError("unreadable push token") from exc
        alg = header.get("alg")
        if alg not in _ALLOWED_ALGS:
            raise PushAuthError("unsupported push token algorithm")
        jwks = await self._keys()
        try:
            jwk = _select_jwk(jwks, header.get("kid"))
        except PushAuthError:
            # Google rotates keys; one refetch covers a freshly rotated kid.
            jwk = _select_jwk(await self._keys(force=True), header.get("kid"))
        key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(jwk))
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=[alg],
                audience=self._settings.google_webhook_audience,
                leeway=30,
            )
        except jwt.PyJWTError as exc:
            raise PushAuthError(f"push token rejected: {exc}") from exc
        if claims.get("iss") not in _GOOGLE_ISSUERS:
            raise PushAuthError("push token issuer is not Google")
        return claims
