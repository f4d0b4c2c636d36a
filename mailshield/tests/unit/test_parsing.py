from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone

import pytest

from mailshield.core.errors import ProviderError
from mailshield.domain.types import ensure_utc
from mailshield.services.ingest.parsing import extract_urls, parse_gmail_message, parse_graph_message


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def test_extract_urls_keeps_first_seen_order_and_trims_punctuation() -> None:
    text = "See https://a.example/x, then http://b.example/y. Again https://a.example/x"
    html = '<a href="https://c.example/z?q=1">link</a>'

    assert extract_urls(text, None, html) == [
        "https://a.example/x",
        "http://b.example/y",
        "https://c.example/z?q=1",
    ]


def test_gmail_nested_parts_and_headers() -> None:
    message = {
        "id": "18c",
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "From", "value": "alice@partner.example"},
                {"name": "To", "value": "Bob <bob@corp.example>, carol@corp.example"},
                {"name": "Date", "value": "Mon, 05 Jan 2026 09:30:00 +0100"},
                {"name": "Authentication-Results", "value": "spf=pass"},
            ],
            "parts": [
                {
                    "mimeType": "multipart/alternative",
                    "parts": [{"mimeType": "text/plain", "body": {"data": _b64("plain body")}}],
                },
                {"mimeType": "application/pdf", "body": {"attachmentId": "att-1"}},
            ],
        },
    }

    parsed = parse_gmail_message(message)

    assert parsed.body_text == "plain body"
    assert parsed.body_html is None
    assert [recipient.address for recipient in parsed.to] == ["bob@corp.example", "carol@corp.example"]
    assert parsed.headers["authentication-results"] == "spf=pass"
    assert parsed.date.utcoffset() == timedelta(0)
    assert (parsed.date.hour, parsed.date.minute) == (8, 30)
    assert parsed.subject == ""


def test_gmail_message_without_sender_gets_placeholder() -> None:
    parsed = parse_gmail_message({"id": "1", "payload": {"headers": [{"name": "Date", "value": "garbage"}]}})

    assert parsed.from_.address == "unknown@unknown.invalid"
    assert parsed.date is None


def test_gmail_message_without_payload_is_rejected() -> None:
    with pytest.raises(ProviderError):
        parse_gmail_message({"id": "1"})


def test_graph_text_body_and_reply_to() -> None:
    parsed = parse_graph_message(
        {
            "id": "AAA",
            "internetMessageId": "<x@vendor.example>",
            "from": {"emailAddress": {"address": "Billing@Vendor.example"}},
            "replyTo": [{"emailAddress": {"address": "collect@elsewhere.example", "name": "Collect"}}],
            "body": {"contentType": "text", "content": "Pay at https://vendor.example/pay"},
        }
    )

    assert parsed.body_text == "Pay at https://vendor.example/pay"
    assert parsed.reply_to.address == "collect@elsewhere.example"
    assert parsed.reply_to.display_name == "Collect"
    assert parsed.urls == ["https://vendor.example/pay"]
    assert parsed.date is None


def test_graph_message_without_id_is_rejected() -> None:
    with pytest.raises(ProviderError):
        parse_graph_message({"subject": "no id"})


def test_ensure_utc_shifts_offsets_and_tags_naive_values() -> None:
    offset = datetime(2026, 1, 5, 9, 30, tzinfo=timezone(timedelta(hours=-5)))

    assert ensure_utc(offset) == datetime(2026, 1, 5, 14, 30, tzinfo=timezone.utc)
    assert ensure_utc(offset).tzinfo is timezone.utc
    assert ensure_utc(datetime(2026, 1, 5, 9, 30)).tzinfo is timezone.utc
    assert ensure_utc(None) is None
