from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, TypeVar

from redis.asyncio import Redis

from mailshield.core.config import get_settings
from mailshield.core.errors import IntegrationUnavailableError, is_retryable
from mailshield.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

T = TypeVar("T")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"

_STATE_GAUGE = {CLOSED: 0.0, HALF_OPEN: 0.5, OPEN: 1.0}


@dataclass(frozen=True)
class RetryPolicy:
    """Timeout and backoff for one provider call.

    A provider-supplied Retry-After wins over the computed backoff, but both
    are clipped to `max_backoff_ms` so a throttled mailbox cannot stall a
    worker past its budget.
    """

    timeout_ms: int
    max_attempts: int
    backoff_ms: int
    max_backoff_ms: int = 5000

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        settings = get_settings()
        return cls(
            timeout_ms=settings.ext_call_timeout_ms,
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
            max_backoff_ms=settings.ext_retry_max_backoff_ms,
        )

    def delay_s(self, attempt: int, exc: Exception) -> float:
        try:
            delay = max(float(getattr(exc, "retry_after", None)), 0.0)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            delay = (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)
        return min(delay, self.max_backoff_ms / 1000.0)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run `func` with a per-attempt timeout, retrying only transient failures."""
    policy = policy or RetryPolicy.from_settings()
    attempts = max(policy.max_attempts, 1)
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - terminal errors re-raise below
            if attempt >= attempts or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            await sleep(policy.delay_s(attempt, exc))
            attempt += 1


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls) -> CircuitBreakerConfig:
        settings = get_settings()
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


@dataclass(frozen=True)
class BreakerSnapshot:
    state: str = CLOSED
    failures: int = 0
    opened_at: float | None = None
    trials: int = 0

    def to_mapping(self) -> dict[str, str]:
        return {
            "state": self.state,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else repr(self.opened_at),
            "trials": str(self.trials),
        }

    @classmethod
    def from_mapping(cls, raw: dict[str, str]) -> BreakerSnapshot:
        opened_at = raw.get("opened_at")
        return cls(
            state=raw.get("state", CLOSED),
            failures=int(raw.get("failures") or 0),
            opened_at=float(opened_at) if opened_at else None,
            trials=int(raw.get("trials") or 0),
        )


class CircuitBreaker:
    """Stops calling a mailbox API that keeps failing.

    With a Redis client the snapshot is shared, so the API process and the
    queue worker trip together; without one each process keeps its own.
    """

    def __init__(
        self,
        integration: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._integration = integration
        self._redis = redis
        self._config = config or CircuitBreakerConfig.from_settings()
        self._time = time_source or time.time
        self._local = BreakerSnapshot()

    @property
    def integration(self) -> str:
        return self._integration

    @property
    def _key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self._integration}"

    async def _read(self) -> BreakerSnapshot:
        if self._redis is None:
            return self._local
        raw = await self._redis.hgetall(self._key)
        return BreakerSnapshot.from_mapping(raw) if raw else BreakerSnapshot()

    async def _write(self, snapshot: BreakerSnapshot) -> None:
        if self._redis is None:
            self._local = snapshot
            return
        await self._redis.hset(self._key, mapping=snapshot.to_mapping())
        await self._redis.expire(self._key, max(self._config.open_seconds * 4, 60))

    def _move(self, current: BreakerSnapshot, target: str) -> BreakerSnapshot:
        if current.state != target:
            logger.warning(
                "circuit_breaker_transition integration=%s from=%s to=%s",
                self._integration,
                current.state,
                target,
            )
            increment_counter(f"circuit_breaker_transition_total.{self._integration}.{target}")
            set_gauge(f"circuit_breaker_state.{self._integration}", _STATE_GAUGE[target])
        return BreakerSnapshot(state=target, opened_at=self._time() if target == OPEN else None)

    def _unavailable(self) -> IntegrationUnavailableError:
        return IntegrationUnavailableError(f"{self._integration} is temporarily unavailable")

    async def before_call(self) -> None:
        snapshot = await self._read()
        if snapshot.state == OPEN:
            cooled = snapshot.opened_at is not None and self._time() - snapshot.opened_at >= self._config.open_seconds
            if not cooled:
                raise self._unavailable()
            snapshot = self._move(snapshot, HALF_OPEN)
        if snapshot.state == HALF_OPEN:
            if snapshot.trials >= self._config.half_open_trials:
                raise self._unavailable()
            snapshot = replace(snapshot, trials=snapshot.trials + 1)
            await self._write(snapshot)

    async def record_success(self) -> None:
        snapshot = await self._read()
        if snapshot == BreakerSnapshot():
            return
        await self._write(self._move(snapshot, CLOSED))

    async def record_failure(self) -> None:
        snapshot = await self._read()
        failures = snapshot.failures + 1
        if snapshot.state == HALF_OPEN or failures >= self._config.failure_threshold:
            await self._write(self._move(snapshot, OPEN))
        else:
            await self._write(replace(snapshot, failures=failures))

    async def current_state(self) -> str:
        return (await self._read()).state
