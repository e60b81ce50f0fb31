"""
HTTP fetcher for analysis targets.

Every failure is reported as a :class:`FetchError` carrying a ``retryable``
flag: 429, 5xx, timeouts and dropped connections are worth another delivery;
other 4xx, DNS, TLS, redirect loops and oversized bodies are not.
"""

import asyncio
import codecs
import socket
import ssl
from dataclasses import dataclass, field

import httpx

from webanalyzer.config.logging import get_logger
from webanalyzer.config.settings import Settings
from webanalyzer.core.url_validator import check_ssrf, check_ssrf_with_dns
from webanalyzer.jobs.models import ErrorType

logger = get_logger(__name__)

MAX_RETRY_DELAY_S = 4.0


class FetchError(Exception):
    """A fetch failed; ``retryable`` tells the queue whether to redeliver."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        retryable: bool = False,
        error_type: ErrorType = ErrorType.NETWORK_ERROR,
    ):
        self.message = message
        self.status_code = status_code
        self.retryable = retryable
        self.error_type = error_type
        super().__init__(message)


@dataclass
class FetchResult:
    html: str
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)


def classify_status(status_code: int) -> FetchError | None:
    """Map a non-200 response status to the error it represents."""
    if status_code == 200:
        return None
    if 300 <= status_code < 400:
        return FetchError(f"Unexpected redirect (HTTP {status_code})", status_code, False)
    if status_code == 404:
        return FetchError("URL not found (HTTP 404)", 404, False)
    if status_code == 403:
        return FetchError("Access forbidden (HTTP 403)", 403, False)
    if status_code == 410:
        return FetchError("URL gone (HTTP 410)", 410, False)
    if status_code == 429:
        return FetchError("Too many requests (HTTP 429)", 429, True)
    if 400 <= status_code < 500:
        return FetchError(f"Client error (HTTP {status_code})", status_code, False)
    if 500 <= status_code < 600:
        return FetchError(f"Server error (HTTP {status_code})", status_code, True)
    return FetchError(f"Unexpected status (HTTP {status_code})", status_code, False)


def _caused_by(exc: BaseException, kinds: tuple[type[BaseException], ...]) -> bool:
    seen = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, kinds):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def _translate_connect_error(exc: httpx.ConnectError) -> FetchError:
    message = str(exc).lower()

    if _caused_by(exc, (socket.gaierror,)) or any(
        marker in message
        for marker in ("name or service not known", "nodename nor servname", "getaddrinfo")
    ):
        return FetchError("Domain not found (DNS error)", 0, False)

    if _caused_by(exc, (ssl.SSLError,)) or "certificate" in message:
        return FetchError(
            "SSL certificate error - certificate is invalid or expired", 0, False
        )

    if "refused" in message:
        return FetchError(
            "Connection refused - server is not accepting connections", 0, True
        )

    return FetchError(f"Connection failed: {exc}", 0, True)


def translate_transport_error(exc: httpx.HTTPError) -> FetchError:
    """Map an httpx exception to a :class:`FetchError`."""
    if isinstance(exc, httpx.TimeoutException):
        return FetchError(
            "Request timeout - server took too long to respond",
            0,
            True,
            ErrorType.TIMEOUT_ERROR,
        )
    if isinstance(exc, httpx.TooManyRedirects):
        return FetchError("Too many redirects", 0, False)
    if isinstance(exc, httpx.ConnectError):
        return _translate_connect_error(exc)
    if isinstance(exc, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        return FetchError("Connection reset by server", 0, True)
    return FetchError(str(exc) or "Unknown fetch error", 0, False)


def decode_body(body: bytes, charset: str | None) -> str:
    """Decode a response body, falling back to UTF-8 for unknown charsets."""
    encoding = charset or "utf-8"
    try:
        codecs.lookup(encoding)
    except LookupError:
        logger.warning("Unknown response charset, decoding as utf-8", charset=charset)
        encoding = "utf-8"
    return body.decode(encoding, errors="replace")


class Fetcher:
    """Fetches HTML with bounded size, redirects and time."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self.max_content_bytes = settings.fetch_max_content_bytes
        self.retry_base_delay_s = 1.0

        self._client = httpx.AsyncClient(
            headers={
                "User-Agent": settings.fetch_user_agent,
                "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
            },
            timeout=httpx.Timeout(
                timeout=settings.fetch_timeout_s,
                connect=settings.fetch_connect_timeout_s,
            ),
            follow_redirects=True,
            max_redirects=settings.fetch_max_redirects,
            event_hooks={"request": [self._guard_request]},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _guard_request(self, request: httpx.Request) -> None:
        # Runs for the initial request and every redirect hop
        if check_ssrf(str(request.url)):
            raise FetchError(
                "Request to a private network address blocked",
                0,
                False,
                ErrorType.VALIDATION_ERROR,
            )

    async def fetch(self, url: str) -> FetchResult:
        """Fetch ``url`` once. Raises FetchError on any failure."""
        if self.settings.fetch_resolve_check and await check_ssrf_with_dns(url):
            raise FetchError(
                "URL resolves to a private network address",
                0,
                False,
                ErrorType.VALIDATION_ERROR,
            )

        try:
            async with self._client.stream("GET", url) as response:
                error = classify_status(response.status_code)
                if error is not None:
                    raise error

                body = await self._read_limited(response)
                html = decode_body(body, response.charset_encoding)

        except httpx.HTTPError as e:
            error = translate_transport_error(e)
            logger.warning(
                "Fetch failed",
                url=url,
                error=error.message,
                cause=e.__class__.__name__,
                retryable=error.retryable,
            )
            raise error from e

        logger.info("URL fetched successfully", url=url, status_code=response.status_code)
        return FetchResult(
            html=html,
            status_code=response.status_code,
            headers=dict(response.headers),
        )

    async def _read_limited(self, response: httpx.Response) -> bytes:
        too_large = FetchError(
            f"Content too large - exceeds {self.max_content_bytes // (1024 * 1024)}MB limit",
            0,
            False,
        )

        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_content_bytes:
            raise too_large

        chunks = []
        received = 0
        async for chunk in response.aiter_bytes():
            received += len(chunk)
            if received > self.max_content_bytes:
                raise too_large
            chunks.append(chunk)
        return b"".join(chunks)

    async def fetch_with_retry(self, url: str, max_retries: int | None = None) -> FetchResult:
        """
        Fetch with in-process retries for retryable errors, backing off
        1s, 2s, 4s between attempts. Non-retryable errors raise immediately.
        """
        max_retries = max_retries or self.settings.fetch_max_retries
        last_error: FetchError | None = None

        for attempt in range(1, max_retries + 1):
            try:
                return await self.fetch(url)
            except FetchError as e:
                last_error = e
                logger.warning(
                    "Fetch attempt failed",
                    url=url,
                    attempt=attempt,
                    max_attempts=max_retries,
                    error=e.message,
                    status_code=e.status_code,
                    retryable=e.retryable,
                )
                if not e.retryable or attempt == max_retries:
                    break

                delay = min(self.retry_base_delay_s * (2 ** (attempt - 1)), MAX_RETRY_DELAY_S)
                logger.debug("Retrying fetch", url=url, attempt=attempt, delay_s=delay)
                await asyncio.sleep(delay)

        raise last_error
