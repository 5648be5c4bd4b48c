"""Gmail REST implementation of the message store."""

from __future__ import annotations

import base64
import html
import re
from dataclasses import dataclass
from typing import Any
from urllib import parse as urllib_parse

from harvester.harvesting.errors import StoreAuthError, StoreFetchError, StoreSearchError
from harvester.harvesting.http_json import HTTPRequestError, request_json
from harvester.harvesting.types import MessageContent, MessagePreview

_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_RE = re.compile(r"(?is)<(script|style)[^>]*>.*?</\1>")
_MULTISPACE_RE = re.compile(r"[ \t\r\f\v]+")
_MULTINEWLINE_RE = re.compile(r"\n\s*\n+")
_AUTH_STATUS_CODES = {401, 403}


@dataclass(slots=True)
class GmailMessageStore:
    """Searches and reads ``users/me`` messages with a caller-supplied bearer token."""

    access_token: str
    base_url: str = "https://gmail.googleapis.com/gmail/v1"
    search_limit: int = 20
    timeout_seconds: int = 30

    def search(self, query: str) -> list[MessagePreview]:
        params = urllib_parse.urlencode({"q": query, "maxResults": self.search_limit})
        try:
            listing = self._get_json(f"users/me/messages?{params}")
            previews = []
            for item in listing.get("messages", [])[: self.search_limit]:
                message_id = str(item.get("id", "")).strip()
                if not message_id:
                    continue
                metadata = self._get_json(
                    f"users/me/messages/{urllib_parse.quote(message_id)}?format=metadata"
                    "&metadataHeaders=Subject&metadataHeaders=From&metadataHeaders=Date"
                )
                headers = _headers(metadata.get("payload", {}))
                previews.append(
                    MessagePreview(
                        id=message_id,
                        subject=headers.get("subject", ""),
                        sender=headers.get("from", ""),
                        date=headers.get("date", ""),
                    )
                )
            return previews
        except HTTPRequestError as exc:
            if exc.status in _AUTH_STATUS_CODES:
                raise StoreAuthError(f"Gmail rejected credentials: {exc}") from exc
            raise StoreSearchError(f"Gmail search failed for {query!r}: {exc}") from exc

    def fetch(self, ids: list[str]) -> list[MessageContent]:
        contents: list[MessageContent] = []
        for message_id in ids:
            try:
                message = self._get_json(f"users/me/messages/{urllib_parse.quote(message_id)}?format=full")
            except HTTPRequestError as exc:
                if exc.status in _AUTH_STATUS_CODES:
                    raise StoreAuthError(f"Gmail rejected credentials: {exc}") from exc
                raise StoreFetchError(f"Gmail fetch failed for {message_id}: {exc}", list(ids)) from exc
            payload = message.get("payload", {})
            headers = _headers(payload)
            body = _extract_body(payload) or html.unescape(str(message.get("snippet", "")))
            contents.append(
                MessageContent(
                    id=message_id,
                    subject=headers.get("subject", ""),
                    sender=headers.get("from", ""),
                    date=headers.get("date", ""),
                    body=body,
                )
            )
        return contents

    def _get_json(self, path: str) -> dict[str, Any]:
        return request_json(
            f"{self.base_url.rstrip('/')}/{path}",
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Accept": "application/json",
            },
            timeout_seconds=self.timeout_seconds,
        )


def _headers(payload: dict[str, Any]) -> dict[str, str]:
    return {
        str(header.get("name", "")).lower(): str(header.get("value", ""))
        for header in payload.get("headers", [])
        if header.get("name")
    }


def _decode_part(part: dict[str, Any]) -> str:
    data = part.get("body", {}).get("data")
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")
    except (ValueError, UnicodeEncodeError):
        return ""


def _walk_parts(payload: dict[str, Any]):
    yield payload
    for part in payload.get("parts", []) or []:
        yield from _walk_parts(part)


def _extract_body(payload: dict[str, Any]) -> str:
    parts = list(_walk_parts(payload))
    for mime_type in ("text/plain", "text/html"):
        texts = [_decode_part(part) for part in parts if part.get("mimeType") == mime_type]
        text = "\n".join(t for t in texts if t.strip())
        if text.strip():
            return html_to_text(text) if mime_type == "text/html" else text.strip()
    return ""


def html_to_text(value: str) -> str:
    """Crude tag stripping, enough for membership numbers and headings."""

    without_blocks = _BLOCK_RE.sub(" ", value)
    with_breaks = re.sub(r"(?i)<br\s*/?>|</p>|</div>|</tr>|</h\d>", "\n", without_blocks)
    text = html.unescape(_TAG_RE.sub(" ", with_breaks))
    text = _MULTISPACE_RE.sub(" ", text)
    return _MULTINEWLINE_RE.sub("\n\n", text).strip()
