from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any, Awaitable, Callable, Protocol
from urllib.parse import urlsplit

from mailshield.domain.types import ParsedEmail, Signal, Verdict, VerdictClass
from mailshield.services.threat_intel.cache import ThreatIntelCache, normalize_key


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalyzeOptions:
    # Skip external reputation queries on cache miss when the worker is short on time.
    skip_secondary: bool = False


class DetectionPipeline(Protocol):
    async def analyze(
        self, parsed_email: ParsedEmail, tenant_id: str, options: AnalyzeOptions | None = None
    ) -> Verdict:
        ...


class ReputationSource(Protocol):
    """External reputation service; returns e.g. {"malicious": bool, "source": str}."""

    async def lookup(self, cache_type: str, subject: str) -> dict[str, Any]:
        ...


class ReputationLookup:
    """Cache-first reputation checks: query the source only on a miss, then populate."""

    def __init__(self, cache: ThreatIntelCache, source: ReputationSource | None = None) -> None:
        self._cache = cache
        self._source = source

    async def check(self, cache_type: str, subject: str, *, allow_remote: bool = True) -> dict[str, Any] | None:
        # The source sees the same spelling the cache stores the answer under.
        subject = normalize_key(cache_type, subject)
        entry = self._cache.get(cache_type, subject)
        if entry is not None:
            return entry.value
        if self._source is None or not allow_remote:
            return None
        result = await self._source.lookup(cache_type, subject)
        self._cache.set(cache_type, subject, result)
        return result


AllowlistCheck = Callable[[str, str], Awaitable[bool]]

# Score floors for each verdict class, highest first.
_CLASS_THRESHOLDS: tuple[tuple[float, VerdictClass], ...] = (
    (80.0, "block"),
    (60.0, "quarantine"),
    (30.0, "suspicious"),
)
_SEVERITY_WEIGHTS = {"info": 5.0, "warning": 20.0, "critical": 45.0}
_URGENCY_TERMS = ("urgent", "verify your account", "password expires", "wire transfer", "gift card", "suspended")


def classify_score(score: float) -> VerdictClass:
    for floor, verdict_class in _CLASS_THRESHOLDS:
        if score >= floor:
            return verdict_class
    return "pass"


def _auth_failures(headers: dict[str, str]) -> list[str]:
    results = headers.get("authentication-results", "").lower()
    return [mechanism for mechanism in ("spf", "dkim", "dmarc") if f"{mechanism}=fail" in results]


class HeuristicPipeline:
    """Small deterministic scorer used when no external engine is wired in.

    Signals are emitted in a fixed order: sender authentication, reply-to
    mismatch, urgency language, then URL and domain reputation.
    """

    def __init__(self, reputation: ReputationLookup, *, allowlist: AllowlistCheck | None = None) -> None:
        self._reputation = reputation
        self._allowlist = allowlist

    async def analyze(
        self, parsed_email: ParsedEmail, tenant_id: str, options: AnalyzeOptions | None = None
    ) -> Verdict:
        options = options or AnalyzeOptions()
        start = time.monotonic()
        sender = parsed_email.from_
        if self._allowlist is not None and await self._allowlist(tenant_id, sender.address):
            return Verdict(
                tenant_id=tenant_id,
                message_id=parsed_email.message_id,
                verdict_class="pass",
                overall_score=0.0,
                confidence=1.0,
                signals=[Signal(type="allowlisted_sender", severity="info", detail=sender.address)],
                explanation="Sender is on the tenant allowlist.",
                processing_time_ms=int((time.monotonic() - start) * 1000),
            )

        signals: list[Signal] = []
        for mechanism in _auth_failures(parsed_email.headers):
            signals.append(Signal(type=f"{mechanism}_fail", severity="warning", detail=f"{mechanism} check failed"))
        reply_to = parsed_email.reply_to
        if reply_to is not None and reply_to.domain and reply_to.domain != sender.domain:
            signals.append(
                Signal(
                    type="reply_to_mismatch",
                    severity="warning",
                    detail=f"reply-to {reply_to.domain} differs from sender {sender.domain}",
                )
            )
        text = f"{parsed_email.subject}\n{parsed_email.body_text or ''}".lower()
        for term in _URGENCY_TERMS:
            if term in text:
                signals.append(Signal(type="urgency_language", severity="info", detail=term))
                break

        allow_remote = not options.skip_secondary
        checked_domains: set[str] = set()
        for url in parsed_email.urls:
            reputation = await self._reputation.check("url", url, allow_remote=allow_remote)
            if reputation and reputation.get("malicious"):
                signals.append(Signal(type="malicious_url", severity="critical", detail=url))
            host = (urlsplit(url).hostname or "").lower()
            if host and host not in checked_domains:
                checked_domains.add(host)
                domain_reputation = await self._reputation.check("domain", host, allow_remote=allow_remote)
                if domain_reputation and domain_reputation.get("malicious"):
                    signals.append(Signal(type="malicious_domain", severity="critical", detail=host))
        if sender.domain and sender.domain not in checked_domains:
            sender_reputation = await self._reputation.check("domain", sender.domain, allow_remote=allow_remote)
            if sender_reputation and sender_reputation.get("malicious"):
                signals.append(Signal(type="malicious_sender_domain", severity="critical", detail=sender.domain))

        score = min(100.0, sum(_SEVERITY_WEIGHTS[signal.severity] for signal in signals))
        verdict_class = classify_score(score)
        # Fewer independent checks ran when secondary analysis was skipped.
        confidence = 0.6 if options.skip_secondary else 0.8
        if not signals:
            confidence = 0.9
        explanation = ", ".join(signal.type for signal in signals) or "No risk signals found."
        return Verdict(
            tenant_id=tenant_id,
            message_id=parsed_email.message_id,
            verdict_class=verdict_class,
            overall_score=score,
            confidence=confidence,
            signals=signals,
            explanation=explanation,
            processing_time_ms=int((time.monotonic() - start) * 1000),
        )
