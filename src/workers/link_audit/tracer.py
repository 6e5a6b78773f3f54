"""
Redirect Tracer
===============
Follows a link through its HTTP redirect chain one hop at a time
(``follow_redirects=False``) so every hop is observable, and records for
each hop the status code and the affiliate parameters it carries.

Stops on:
  - a non-redirect status (2xx, 4xx, 5xx),
  - a revisited URL or the hop cap  → ``redirect_loop_or_excessive``,
  - a 3xx without a usable Location, or one pointing at a URL httpx
    rejects → ``invalid_redirect``,
  - a network failure after retries → ``unreachable``.

Transient errors (timeouts, connection resets) are retried per hop with
bounded exponential backoff; 429 responses back off (honouring
Retry-After) a bounded number of times and then count as unreachable.
Other HTTP error statuses are terminal and never retried.

Tracing failures are data: ``trace()`` only raises ``MalformedLinkError``
for a URL that cannot be requested at all.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from urllib.parse import urljoin, urlsplit

import httpx

from workers.link_audit.errors import MalformedLinkError
from workers.link_audit.models import Confidence, RedirectStep, Trace, TraceFlag
from workers.link_audit.network_detector import NetworkDetector

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)
_HEAD_UNSUPPORTED = {405, 501}
_TEMPORARY_REDIRECTS = {302, 307}


@dataclass(frozen=True, slots=True)
class TracerConfig:
    max_hops: int = 10
    soft_hop_cap: int = 3
    request_timeout: float = 10.0
    max_retries: int = 2
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    rate_limit_retries: int = 2
    user_agent: str = "LinkGuard/1.0 (Link Health Monitor)"


class _RateLimitExhausted(Exception):
    pass


def validate_url(url: str) -> str:
    """Return the stripped URL or raise MalformedLinkError."""
    if not isinstance(url, str) or not url.strip():
        raise MalformedLinkError(str(url), "empty URL")
    url = url.strip()
    try:
        parts = urlsplit(url)
    except ValueError as exc:
        raise MalformedLinkError(url, str(exc)) from exc
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise MalformedLinkError(url)
    return url


class RedirectTracer:
    """
    Traces a link's redirect chain.

    Usage:
        tracer = RedirectTracer(TracerConfig(max_hops=10))
        trace = await tracer.trace("https://amzn.to/3xyz")
    """

    def __init__(
        self,
        config: TracerConfig | None = None,
        detector: NetworkDetector | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or TracerConfig()
        self.detector = detector or NetworkDetector()
        self._transport = transport
        self._sleep = sleep

    def build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"User-Agent": self.config.user_agent, "Accept": "*/*"},
            timeout=httpx.Timeout(self.config.request_timeout),
            follow_redirects=False,
            transport=self._transport,
        )

    async def trace(self, url: str, client: httpx.AsyncClient | None = None) -> Trace:
        url = validate_url(url)
        if client is None:
            async with self.build_client() as own_client:
                return await self._trace(url, own_client)
        return await self._trace(url, client)

    # ── Chain walking ─────────────────────────────────────────────────

    async def _trace(self, url: str, client: httpx.AsyncClient) -> Trace:
        started = time.monotonic()
        steps: list[RedirectStep] = []
        flags: set[TraceFlag] = set()
        notes: list[str] = []
        visited: set[str] = set()
        current = url

        for index in range(self.config.max_hops):
            if current in visited:
                flags.add(TraceFlag.REDIRECT_LOOP)
                notes.append(f"Redirect loop detected at hop {index + 1}: {current}")
                break
            visited.add(current)

            try:
                status, location = await self._fetch(client, current)
            except _RateLimitExhausted:
                steps.append(self._step(index, current, 429))
                flags |= {TraceFlag.UNREACHABLE, TraceFlag.RATE_LIMITED}
                notes.append(f"Rate limited by {urlsplit(current).hostname} (HTTP 429), retries exhausted")
                break
            except httpx.InvalidURL as exc:
                steps.append(self._step(index, current, None))
                flags.add(TraceFlag.INVALID_REDIRECT)
                notes.append(f"Redirect to an invalid URL: {current}")
                logger.debug("Hop %d has an invalid URL %r: %s", index, current, exc)
                break
            except httpx.HTTPError as exc:
                steps.append(self._step(index, current, None))
                flags.add(TraceFlag.UNREACHABLE)
                notes.append(f"Unreachable: {type(exc).__name__} at {current}")
                logger.debug("Hop %d unreachable for %s: %s", index, current, exc)
                break

            steps.append(self._step(index, current, status))

            if not 300 <= status < 400:
                if status >= 400:
                    notes.append(f"Broken link: HTTP {status}")
                break

            next_url = self._resolve(current, location)
            if next_url is None:
                flags.add(TraceFlag.INVALID_REDIRECT)
                notes.append(f"Redirect ({status}) without a usable Location header")
                break
            current = next_url
        else:
            flags.add(TraceFlag.REDIRECT_LOOP)
            notes.append(f"Exceeded maximum redirect hops ({self.config.max_hops})")

        elapsed_ms = int((time.monotonic() - started) * 1000)
        return self._build_trace(url, steps, flags, notes, elapsed_ms)

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> tuple[int, str | None]:
        """One hop with transient-error retries and 429 backoff."""
        attempt = 0
        throttled = 0
        while True:
            try:
                status, headers = await self._request(client, url)
            except TRANSIENT_ERRORS as exc:
                if attempt >= self.config.max_retries:
                    raise
                delay = self._backoff(attempt)
                attempt += 1
                logger.debug("Transient error on %s (%s), retry %d in %.2fs", url, exc, attempt, delay)
                await self._sleep(delay)
                continue

            if status == 429:
                if throttled >= self.config.rate_limit_retries:
                    raise _RateLimitExhausted(url)
                delay = self._retry_after(headers) or self._backoff(throttled)
                throttled += 1
                logger.info("Rate limited on %s, backing off %.2fs", url, delay)
                await self._sleep(delay)
                continue

            return status, headers.get("location")

    async def _request(self, client: httpx.AsyncClient, url: str) -> tuple[int, httpx.Headers]:
        # HEAD is enough for redirects; some merchants only answer GET.
        async with client.stream("HEAD", url) as response:
            status, headers = response.status_code, response.headers
        if status in _HEAD_UNSUPPORTED:
            async with client.stream("GET", url) as response:
                status, headers = response.status_code, response.headers
        return status, headers

    @staticmethod
    def _resolve(current: str, location: str | None) -> str | None:
        """Absolute http(s) URL for a Location header, or None if it is unusable."""
        if not location:
            return None
        try:
            next_url = urljoin(current, location)
            parts = urlsplit(next_url)
            host = parts.hostname
        except ValueError:
            return None
        if parts.scheme not in ("http", "https") or not host:
            return None
        return next_url

    def _backoff(self, attempt: int) -> float:
        return min(self.config.backoff_max, self.config.backoff_base * (2 ** attempt))

    def _retry_after(self, headers: httpx.Headers) -> float | None:
        value = headers.get("retry-after")
        if value is None:
            return None
        try:
            seconds = float(value)
        except ValueError:
            return None
        return max(0.0, min(seconds, self.config.backoff_max))

    # ── Result assembly ───────────────────────────────────────────────

    def _step(self, index: int, url: str, status: int | None) -> RedirectStep:
        params = self.detector.affiliate_params(url)
        return RedirectStep(
            index=index,
            url=url,
            status_code=status,
            has_affiliate_tag=bool(params),
            affiliate_params=tuple(params),
        )

    def _build_trace(
        self,
        url: str,
        steps: list[RedirectStep],
        flags: set[TraceFlag],
        notes: list[str],
        elapsed_ms: int,
    ) -> Trace:
        final = steps[-1]
        tag_present = final.has_affiliate_tag
        redirects = len(steps) - 1

        if redirects > 5:
            notes.append(f"Excessive redirects ({redirects} hops)")
        elif redirects > 3:
            notes.append(f"Multiple redirects ({redirects} hops)")
        if elapsed_ms > 5000:
            notes.append(f"Slow redirect chain ({elapsed_ms}ms)")
        elif elapsed_ms > 3000:
            notes.append(f"Moderately slow redirects ({elapsed_ms}ms)")
        if any(s.url.startswith("http://") for s in steps):
            notes.append("Chain includes insecure HTTP hop")
        if any(s.status_code in _TEMPORARY_REDIRECTS for s in steps[:-1]):
            notes.append("Chain uses temporary redirects (302/307)")

        stripped = sorted({p for s in steps[:-1] for p in s.affiliate_params} - set(final.affiliate_params))
        if stripped and not tag_present:
            notes.append(f"Affiliate parameters stripped during redirects ({', '.join(stripped)})")

        uses_redirector = any(self.detector.is_redirector(s.url) for s in steps)
        if not tag_present:
            confidence = Confidence.LOW
        elif redirects <= self.config.soft_hop_cap and not uses_redirector:
            confidence = Confidence.HIGH
        else:
            confidence = Confidence.MEDIUM

        network = self.detector.detect_network(s.url for s in steps)
        return Trace(
            url=url,
            steps=tuple(steps),
            final_url=final.url,
            affiliate_tag_present=tag_present,
            confidence=confidence,
            issues=tuple(notes),
            flags=frozenset(flags),
            network=network.name if network else None,
            cookie_window_days=network.cookie_window_days if network else None,
            response_time_ms=elapsed_ms,
        )
