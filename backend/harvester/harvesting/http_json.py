"""Minimal JSON-over-HTTP transport shared by the model and mailbox clients."""

from __future__ import annotations

import http.client
import json
from typing import Any
from urllib import error as urllib_error
from urllib import request as urllib_request


class HTTPRequestError(Exception):
    """Transport or decoding failure. ``status`` is set only for HTTP error responses."""

    def __init__(self, status: int | None, detail: str) -> None:
        super().__init__(detail)
        self.status = status


def request_json(
    url: str,
    *,
    headers: dict[str, str],
    timeout_seconds: int,
    body: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """GET (or POST when ``body`` is given) and decode a JSON object response."""

    req = urllib_request.Request(
        url=url,
        data=json.dumps(body).encode("utf-8") if body is not None else None,
        method="POST" if body is not None else "GET",
        headers=headers,
    )
    try:
        with urllib_request.urlopen(req, timeout=timeout_seconds) as resp:
            raw = resp.read().decode("utf-8")
    except urllib_error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise HTTPRequestError(exc.code, f"HTTP {exc.code}: {detail}") from exc
    except urllib_error.URLError as exc:
        raise HTTPRequestError(None, f"request failed: {exc.reason}") from exc
    # Socket timeouts surface as TimeoutError (an OSError), not URLError.
    except (OSError, http.client.HTTPException) as exc:
        raise HTTPRequestError(None, f"request failed: {exc!r}") from exc
    except UnicodeDecodeError as exc:
        raise HTTPRequestError(None, "response is not UTF-8") from exc

    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise HTTPRequestError(None, "non-JSON response") from exc
    if not isinstance(decoded, dict):
        raise HTTPRequestError(None, "unexpected response shape")
    return decoded
