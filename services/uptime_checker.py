import asyncio
import time
import httpx
import structlog
from datetime import datetime, timezone
from typing import Optional

logger = structlog.get_logger(__name__)

MIN_TIMEOUT = 5  # seconds
DEFAULT_TIMEOUT = 30  # seconds
MAX_REDIRECTS = 10
USER_AGENT = "webwatch/1.0"

class ProbeResult:
    def __init__(
        self,
        is_up: bool,
        response_time_ms: Optional[int],
        status_code: Optional[int],
        error: Optional[str],
        checked_at: datetime,
    ):
        self.is_up = is_up
        self.response_time_ms = response_time_ms  # in milliseconds, None if no request was sent
        self.status_code = status_code  # HTTP status code
        self.error = error  # timeout, connection error, 5xx, etc.
        self.checked_at = checked_at

    @property
    def status(self) -> str:
        return "up" if self.is_up else "down"

    def __repr__(self) -> str:
        return (
            f"ProbeResult(status={self.status!r}, status_code={self.status_code}, "
            f"response_time_ms={self.response_time_ms}, error={self.error!r})"
        )

class UptimeChecker:
    """Runs one bounded GET against a URL and classifies the outcome.

    ``check`` never raises for network failures: every outcome, including
    timeouts, TLS errors and redirect loops, comes back as a ProbeResult.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        insecure: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if timeout < MIN_TIMEOUT:
            timeout = DEFAULT_TIMEOUT
        self.timeout = timeout  # seconds
        self.insecure = insecure
        self._client = httpx.AsyncClient(
            timeout=timeout,
            verify=not insecure,
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
            limits=httpx.Limits(max_keepalive_connections=0),
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

    async def _fetch(self, url: str, timing: dict) -> httpx.Response:
        async with self._client.stream("GET", url) as response:
            timing["headers"] = time.monotonic()
            # Drain the body inside the deadline; the connection is never reused.
            async for _ in response.aiter_raw():
                pass
        return response

    async def check(self, url: str) -> ProbeResult:
        """Probe url once. The whole exchange, body included, must finish within timeout."""
        checked_at = datetime.now(timezone.utc)
        start = time.monotonic()
        timing: dict = {}

        def elapsed_ms() -> int:
            return int((timing.get("headers", time.monotonic()) - start) * 1000)

        try:
            response = await asyncio.wait_for(self._fetch(url, timing), self.timeout)
        except asyncio.TimeoutError:
            return ProbeResult(
                False,
                int((time.monotonic() - start) * 1000),
                None,
                f"request failed: timeout (exceeded {self.timeout:g}s)",
                checked_at,
            )
        except httpx.TooManyRedirects:
            return ProbeResult(False, elapsed_ms(), None, f"too many redirects (max {MAX_REDIRECTS})", checked_at)
        except httpx.TimeoutException as e:
            return ProbeResult(False, elapsed_ms(), None, f"request failed: timeout ({type(e).__name__})", checked_at)
        except httpx.HTTPError as e:
            return ProbeResult(False, elapsed_ms(), None, f"request failed: {e}", checked_at)
        except httpx.InvalidURL as e:
            return ProbeResult(False, None, None, f"invalid url: {e}", checked_at)
        except Exception as e:
            logger.warning("Unexpected probe failure", url=url, error=str(e))
            return ProbeResult(False, elapsed_ms(), None, f"request failed: {e}", checked_at)

        ms = elapsed_ms()
        if 200 <= response.status_code < 400:
            return ProbeResult(True, ms, response.status_code, None, checked_at)
        return ProbeResult(
            False,
            ms,
            response.status_code,
            f"HTTP {response.status_code} {response.reason_phrase}".strip(),
            checked_at,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
