"""Minimal JSON-over-HTTP POST helper built on ``urllib.request``.

Non-2xx responses are returned as :class:`HttpResponse` values rather than
raised, so callers can log status and body for every attempt. Only transport
problems (refused connection, DNS, timeout) raise :class:`TransmissionError`.
"""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import TransmissionError


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def data(self) -> Any:
        """Body decoded as JSON when possible, else as text (``None`` when empty)."""

        if not self.body:
            return None
        text = self.body.decode("utf-8", errors="replace")
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text


def post_json(url: str, payload: Mapping[str, Any], *, timeout: float) -> HttpResponse:
    """POST ``payload`` as JSON to ``url`` and return the response."""

    data = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(url, data=data, method="POST")
    req.add_header("Content-Type", "application/json")
    req.add_header("Accept", "application/json")

    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return HttpResponse(status=resp.status, headers=dict(resp.headers.items()), body=resp.read())
    except urllib.error.HTTPError as e:
        # Keep the error body for the audit trail
        try:
            body = e.read()
        except OSError:
            body = b""
        headers = dict(e.headers.items()) if e.headers is not None else {}
        return HttpResponse(status=e.code, headers=headers, body=body)
    except OSError as e:
        # URLError, timeouts and socket errors
        reason = getattr(e, "reason", e)
        raise TransmissionError(f"POST {url} failed: {reason}") from e


__all__ = ["HttpResponse", "post_json"]
