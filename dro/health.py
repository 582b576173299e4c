from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

import httpx


def check_health(url: str, timeout_s: float = 2.0, transport: httpx.BaseTransport | None = None) -> tuple[bool, str, float | None]:
    """Call a readiness endpoint.

    Any 2xx answer counts as ready. Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False, transport=transport) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if not resp.is_success:
            return False, f"HTTP {resp.status_code}", latency_ms
        return True, "Healthy", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms



# A probe receives the time it may spend, in seconds, across all of its calls.
Probe = Callable[[float], tuple[bool, str]]


def url_probe(
    urls: tuple[str, ...] | list[str],
    transport: httpx.BaseTransport | None = None,
    per_url_timeout_s: float = 2.0,
) -> Probe:
    """Probe that succeeds if any of ``urls`` answers, tried in order."""

    def probe(timeout_s: float) -> tuple[bool, str]:
        budget_end = time.monotonic() + timeout_s
        messages = []
        for url in urls:
            left = budget_end - time.monotonic()
            if left <= 0:
                messages.append(f"{url}: not tried, probe budget spent")
                break
            ok, msg, _ = check_health(url, timeout_s=min(per_url_timeout_s, left), transport=transport)
            if ok:
                return True, f"{url}: {msg}"
            messages.append(f"{url}: {msg}")
        return False, "; ".join(messages)

    return probe


@dataclass(frozen=True)
class HealthOutcome:
    healthy: bool
    attempts: int
    last_message: str


def wait_healthy(
    probe: Probe,
    max_attempts: int = 10,
    interval_s: float = 10,
    settle_s: float = 0,
    sleep: Callable[[float], None] = time.sleep,
    on_attempt: Callable[[int, bool, str], None] | None = None,
    probe_timeout_s: float = 4.0,
    clock: Callable[[], float] = time.monotonic,
) -> HealthOutcome:
    """Poll ``probe`` up to ``max_attempts`` times.

    Everything, probe time included, fits in
    ``settle_s + max_attempts * interval_s``: each probe gets at most the time
    left before that deadline, sleeps are clamped to it, and no attempt starts
    once it has passed. The first attempt always runs.
    """
    max_attempts = max(1, int(max_attempts))
    deadline = clock() + settle_s + max_attempts * interval_s
    if settle_s > 0:
        sleep(settle_s)
    msg = "not probed"
    attempt = 0
    while attempt < max_attempts:
        remaining = deadline - clock()
        if attempt and remaining <= 0:
            msg = f"{msg} (deadline reached)"
            break
        attempt += 1
        budget = min(probe_timeout_s, remaining) if remaining > 0 else probe_timeout_s
        ok, msg = probe(budget)
        if on_attempt:
            on_attempt(attempt, ok, msg)
        if ok:
            return HealthOutcome(healthy=True, attempts=attempt, last_message=msg)
        if attempt < max_attempts:
            pause = min(interval_s, deadline - clock())
            if pause > 0:
                sleep(pause)
    return HealthOutcome(healthy=False, attempts=attempt, last_message=msg)
