"""Single HTTP uptime check against one target from one region."""

import asyncio
import logging
import socket
import ssl
import time
from datetime import datetime, timezone

import httpx

from upwatch.server.core.types import ProbeError, ProbeOutcome, ProbeTarget

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MARGIN_SECONDS = 2.0

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo failed",
    "no address associated with hostname",
    "name resolution",
)
_REFUSED_MARKERS = ("connection refused", "errno 111", "errno 61", "actively refused")
_TLS_MARKERS = ("ssl", "certificate", "tls")


def _exception_chain(exc: BaseException) -> list[BaseException]:
    """Return exc followed by its causes/contexts, without cycles."""
    chain: list[BaseException] = []
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        chain.append(current)
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return chain


def classify_transport_error(exc: BaseException) -> ProbeError:
    """Map a transport failure to one of the probe error reasons.

    Looks at the wrapped OS/SSL errors first and falls back to the
    error text, since httpx re-raises low-level errors with their message.
    """
    chain = _exception_chain(exc)

    for err in chain:
        if isinstance(err, (httpx.TimeoutException, TimeoutError)):
            return "timeout"
    for err in chain:
        if isinstance(err, socket.gaierror):
            return "dns_failure"
        if isinstance(err, ConnectionRefusedError):
            return "connection_refused"
        if isinstance(err, ssl.SSLError):
            return "tls_error"

    text = " ".join(str(err) for err in chain).lower()
    if any(marker in text for marker in _DNS_MARKERS):
        return "dns_failure"
    if any(marker in text for marker in _REFUSED_MARKERS):
        return "connection_refused"
    if any(marker in text for marker in _TLS_MARKERS):
        return "tls_error"
    return "other"


async def probe(
    target: ProbeTarget,
    region: str,
    *,
    monitor_id: str = "",
    client: httpx.AsyncClient | None = None,
    timeout_margin: float = DEFAULT_TIMEOUT_MARGIN_SECONDS,
) -> ProbeOutcome:
    """Issue exactly one HTTP request and judge it against the expected status.

    Transport failures are returned as a down outcome with a classified
    error message; the prober never retries. Anything that is not a
    transport failure propagates to the caller.

    Args:
        target: URL, method, expected status and timeout to use.
        region: Region label recorded on the outcome.
        monitor_id: Monitor the outcome belongs to.
        client: Shared client for the region. A short-lived client is
            created when omitted.
        timeout_margin: Extra seconds allowed on top of the target timeout
            before the whole call is abandoned.

    Returns:
        ProbeOutcome for this check.
    """
    checked_at = datetime.now(timezone.utc)
    start = time.perf_counter()

    def _elapsed_ms() -> int:
        return int((time.perf_counter() - start) * 1000)

    async def _send(http: httpx.AsyncClient) -> httpx.Response:
        return await http.request(
            target.method.upper(),
            target.url,
            timeout=target.timeout_seconds,
            follow_redirects=target.follow_redirects,
        )

    async def _run() -> httpx.Response:
        if client is not None:
            return await _send(client)
        async with httpx.AsyncClient() as http:
            return await _send(http)

    try:
        response = await asyncio.wait_for(_run(), timeout=target.timeout_seconds + timeout_margin)
    except (httpx.TransportError, TimeoutError) as e:
        reason = classify_transport_error(e)
        logger.debug(f"probe {target.method} {target.url} from {region} failed: {reason} ({e})")
        return ProbeOutcome(
            monitor_id=monitor_id,
            region=region,
            checked_at=checked_at,
            is_up=False,
            status_code=None,
            response_time_ms=_elapsed_ms(),
            error_message=reason,
        )

    is_up = response.status_code == target.expected_status
    return ProbeOutcome(
        monitor_id=monitor_id,
        region=region,
        checked_at=checked_at,
        is_up=is_up,
        status_code=response.status_code,
        response_time_ms=_elapsed_ms(),
        error_message=None
        if is_up
        else f"unexpected_status: expected {target.expected_status}, got {response.status_code}",
    )
