from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .utils import log_event

OK = "ok"
BLOCKED = "blocked"
FAILED = "failed"

BLOCKING_STATUSES = frozenset({403, 429})


@dataclass(frozen=True)
class FetchResult:
    kind: str
    http_status: int | None
    body: str | None
    error: str | None

    @property
    def ok(self) -> bool:
        return self.kind == OK

    @property
    def blocked(self) -> bool:
        return self.kind == BLOCKED


def fetch_page(
    url: str,
    *,
    timeout_seconds: float,
    user_agent: str,
    max_bytes: int,
    logger: logging.Logger | None = None,
) -> FetchResult:
    """Retrieve one page and classify the outcome. Never raises and never retries."""
    request = Request(url, headers={"User-Agent": user_agent})
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            status = response.getcode()
            raw = response.read(max_bytes + 1)
            charset = response.headers.get_content_charset() or "utf-8"
    except HTTPError as exc:
        return _classify_status(url, exc.code, str(exc), logger)
    except (URLError, socket.timeout, TimeoutError, ConnectionError) as exc:
        reason = getattr(exc, "reason", exc)
        return _failed(url, None, f"network_error:{reason}", logger)
    except (ValueError, OSError) as exc:
        return _failed(url, None, f"request_error:{exc}", logger)

    if status is None or not 200 <= status < 300:
        return _classify_status(url, status, f"http_status:{status}", logger)
    if len(raw) > max_bytes:
        raw = raw[:max_bytes]
    try:
        body = raw.decode(charset, errors="replace")
    except LookupError:
        body = raw.decode("utf-8", errors="replace")
    return FetchResult(kind=OK, http_status=status, body=body, error=None)


def _classify_status(
    url: str,
    status: int | None,
    error: str,
    logger: logging.Logger | None,
) -> FetchResult:
    if status in BLOCKING_STATUSES:
        if logger:
            log_event(logger, logging.WARNING, "fetch_blocked", url=url, http_status=status)
        return FetchResult(kind=BLOCKED, http_status=status, body=None, error=f"http_{status}")
    return _failed(url, status, error, logger)


def _failed(
    url: str,
    status: int | None,
    error: str,
    logger: logging.Logger | None,
) -> FetchResult:
    if logger:
        log_event(logger, logging.WARNING, "fetch_failed", url=url, http_status=status, error=error)
    return FetchResult(kind=FAILED, http_status=status, body=None, error=error)
