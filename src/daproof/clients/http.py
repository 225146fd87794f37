# src/daproof/clients/http.py
from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, Optional

from daproof.errors import TransientError
from daproof.metrics import inc_counter
from daproof.structured_logging import log_event

Json = Dict[str, Any]

log = logging.getLogger("daproof.http")


@dataclass(frozen=True)
class HttpPolicy:
    """Bounded timeout plus a small fixed retry count at a fixed delay."""

    timeout_s: float = 5.0
    retries: int = 3
    retry_delay_ms: int = 200


def _sleep_ms(ms: int) -> None:
    if ms <= 0:
        return
    time.sleep(ms / 1000.0)


def _post_once(url: str, body: bytes, *, timeout_s: float, headers: Optional[Dict[str, str]]) -> Any:
    req = urllib.request.Request(url=url, method="POST", data=body)
    req.add_header("Content-Type", "application/json")
    req.add_header("Accept", "application/json")
    for k, v in (headers or {}).items():
        req.add_header(k, v)

    with urllib.request.urlopen(req, timeout=timeout_s) as resp:
        status = int(getattr(resp, "status", 200))
        raw = resp.read().decode("utf-8", errors="replace")
    if not (200 <= status < 300):
        raise TransientError("http_status", f"{status}")
    try:
        return json.loads(raw) if raw else None
    except ValueError as e:
        raise TransientError("http_bad_json", str(e)) from e


def post_json(
    url: str,
    payload: Any,
    *,
    policy: Optional[HttpPolicy] = None,
    headers: Optional[Dict[str, str]] = None,
    where: str = "http",
) -> Any:
    """POST a JSON body and return the decoded JSON response.

    Network faults, non-2xx statuses and undecodable bodies are retried
    up to `policy.retries` times after the first try; after that a TransientError
    tagged `where` is raised.
    """
    p = policy or HttpPolicy()
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    attempts = 1 + max(0, int(p.retries))

    last_err = ""
    for attempt in range(1, attempts + 1):
        try:
            return _post_once(url, body, timeout_s=float(p.timeout_s), headers=headers)
        except urllib.error.HTTPError as e:
            last_err = f"http_status:{getattr(e, 'code', 0)}"
        except (urllib.error.URLError, TimeoutError, ConnectionError, OSError) as e:
            last_err = f"{type(e).__name__}:{e}"
        except TransientError as e:
            last_err = str(e)

        if attempt < attempts:
            inc_counter("http_retries_total", 1)
            log_event(log, "http_retry", level=logging.DEBUG, where=where, attempt=attempt, error=last_err)
            _sleep_ms(int(p.retry_delay_ms))

    inc_counter("http_failures_total", 1)
    log_event(log, "http_failed", level=logging.WARNING, where=where, url=url, error=last_err)
    raise TransientError(where, last_err)
