from __future__ import annotations

import base64
from datetime import datetime
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
import re
from typing import Any

from mailshield.core.errors import ProviderError
from mailshield.domain.types import EmailAddress, ParsedEmail, ensure_utc


_URL_RE = re.compile(r"https?://[^\s<>\"')\]]+", re.IGNORECASE)
_HREF_RE = re.compile(r"href\s*=\s*[\"'](https?://[^\"']+)[\"']", re.IGNORECASE)


def extract_urls(*bodies: str | None) -> list[str]:
    """Collect unique http(s) URLs from text and HTML bodies in first-seen order."""
    seen: dict[str, None] = {}
    for body in bodies:
        if not body:
            continue
        for match in _HREF_RE.findall(body):
            seen.setdefault(match.rstrip(".,;"), None)
        for match in _URL_RE.findall(body):
            seen.setdefault(match.rstrip(".,;"), None)
    return list(seen)


def _address(raw: str | None) -> EmailAddress | None:
    if not raw:
        return None
    name, address = parseaddr(raw)
    if not address:
        return None
    return EmailAddress(address=address.lower(), display_name=name or None)


def _b64url_decode(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")


def _walk_gmail_parts(part: dict[str, Any], bodies: dict[str, str]) -> None:
    mime_type = part.get("mimeType", "")
    data = (part.get("body") or {}).get("data")
    if data and mime_type in {"text/plain", "text/html"} and mime_type not in bodies:
        bodies[mime_type] = _b64url_decode(data)
    for child in part.get("parts") or []:
        _walk_gmail_parts(child, bodies)


def _parse_date(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return ensure_utc(parsedate_to_datetime(raw))
    except (TypeError, ValueError):
        return None


def parse_gmail_message(message: dict[str, Any]) -> ParsedEmail:
    # users.messages.get?format=full
    payload = message.get("payload")
    if not isinstance(payload, dict) or "id" not in message:
        raise ProviderError("gmail message payload missing", provider="gmail")
    headers = {
        str(header.get("name", "")).lower(): str(header.get("value", ""))
        for header in payload.get("headers") or []
    }
    bodies: dict[str, str] = {}
    _walk_gmail_parts(payload, bodies)
    sender = _address(headers.get("from")) or EmailAddress(address="unknown@unknown.invalid")
    recipients = [
        EmailAddress(address=address.lower(), display_name=name or None)
        for name, address in getaddresses([headers.get("to", "")])
        if address
    ]
    body_text = bodies.get("text/plain")
    body_html = bodies.get("text/html")
    return ParsedEmail(
        message_id=message["id"],
        provider_message_ref=message["id"],
        internet_message_id=headers.get("message-id"),
        subject=headers.get("subject", ""),
        from_=sender,
        reply_to=_address(headers.get("reply-to")),
        to=recipients,
        date=_parse_date(headers.get("date")),
        headers=headers,
        body_text=body_text,
        body_html=body_html,
        urls=extract_urls(body_text, body_html),
    )


def _graph_address(value: dict[str, Any] | None) -> EmailAddress | None:
    email = (value or {}).get("emailAddress") or {}
    address = email.get("address")
    if not address:
        return None
    return EmailAddress(address=address.lower(), display_name=email.get("name") or None)


def parse_graph_message(message: dict[str, Any]) -> ParsedEmail:
    if "id" not in message:
        raise ProviderError("graph message payload missing id", provider="o365")
    headers = {
        str(header.get("name", "")).lower(): str(header.get("value", ""))
        for header in message.get("internetMessageHeaders") or []
    }
    body = message.get("body") or {}
    content = body.get("content")
    is_html = str(body.get("contentType", "")).lower() == "html"
    body_text = None if is_html else content
    body_html = content if is_html else None
    reply_to = message.get("replyTo") or []
    received = message.get("receivedDateTime")
    return ParsedEmail(
        message_id=message["id"],
        provider_message_ref=message["id"],
        internet_message_id=message.get("internetMessageId"),
        subject=message.get("subject") or "",
        from_=_graph_address(message.get("from")) or EmailAddress(address="unknown@unknown.invalid"),
        reply_to=_graph_address(reply_to[0]) if reply_to else None,
        to=[addr for addr in (_graph_address(item) for item in message.get("toRecipients") or []) if addr],
        date=ensure_utc(datetime.fromisoformat(received.replace("Z", "+00:00"))) if received else None,
        headers=headers,
        body_text=body_text,
        body_html=body_html,
        urls=extract_urls(body_text, body_html),
    )
