import httpx
import pytest

from webanalyzer.analysis import fetcher as fetcher_module
from webanalyzer.analysis.fetcher import (
    Fetcher,
    FetchError,
    classify_status,
    translate_transport_error,
)
from webanalyzer.jobs.models import ErrorType


@pytest.mark.parametrize(
    ("status_code", "message", "retryable"),
    [
        (404, "URL not found (HTTP 404)", False),
        (403, "Access forbidden (HTTP 403)", False),
        (410, "URL gone (HTTP 410)", False),
        (400, "Client error (HTTP 400)", False),
        (429, "Too many requests (HTTP 429)", True),
        (500, "Server error (HTTP 500)", True),
        (503, "Server error (HTTP 503)", True),
    ],
)
def test_classify_status(status_code, message, retryable):
    error = classify_status(status_code)

    assert error.message == message
    assert error.status_code == status_code
    assert error.retryable is retryable


def test_classify_ok_status():
    assert classify_status(200) is None


class TestTransportErrors:
    def test_timeout(self):
        error = translate_transport_error(httpx.ReadTimeout("timed out"))

        assert error.retryable is True
        assert error.error_type == ErrorType.TIMEOUT_ERROR
        assert error.message == "Request timeout - server took too long to respond"

    def test_dns_failure(self):
        error = translate_transport_error(
            httpx.ConnectError("[Errno -2] Name or service not known")
        )

        assert error.message == "Domain not found (DNS error)"
        assert error.retryable is False

    def test_connection_refused(self):
        error = translate_transport_error(httpx.ConnectError("[Errno 111] Connection refused"))

        assert error.retryable is True

    def test_certificate_error(self):
        error = translate_transport_error(
            httpx.ConnectError("certificate verify failed: certificate has expired")
        )

        assert error.retryable is False
        assert error.message.startswith("SSL certificate error")

    def test_connection_reset(self):
        error = translate_transport_error(httpx.ReadError("Connection reset by peer"))

        assert error.message == "Connection reset by server"
        assert error.retryable is True


class TestFetch:
    async def test_fetch_returns_html(self, fetcher_for, sample_html):
        fetcher = fetcher_for(lambda request: httpx.Response(200, text=sample_html))

        result = await fetcher.fetch("https://example.com")

        assert result.status_code == 200
        assert "Example Domain" in result.html

    async def test_unknown_charset_falls_back_to_utf8(self, fetcher_for):
        fetcher = fetcher_for(
            lambda request: httpx.Response(
                200,
                content="<title>Café</title>".encode(),
                headers={"Content-Type": "text/html; charset=x-bogus"},
            )
        )

        result = await fetcher.fetch("https://example.com")

        assert result.html == "<title>Café</title>"

    async def test_fetch_sends_user_agent(self, fetcher_for, settings):
        seen = {}

        def handler(request: httpx.Request):
            seen["user_agent"] = request.headers["user-agent"]
            return httpx.Response(200, text="<html></html>")

        await fetcher_for(handler).fetch("https://example.com")

        assert seen["user_agent"] == settings.fetch_user_agent

    async def test_http_error_status_raises(self, fetcher_for):
        fetcher = fetcher_for(lambda request: httpx.Response(404))

        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch("https://example.com/missing")

        assert exc_info.value.status_code == 404
        assert exc_info.value.retryable is False

    async def test_transport_error_is_translated(self, fetcher_for):
        def handler(request):
            raise httpx.ConnectError("[Errno -2] Name or service not known", request=request)

        with pytest.raises(FetchError, match="Domain not found"):
            await fetcher_for(handler).fetch("https://no-such-host.example")

    async def test_body_over_limit_is_rejected(self, settings):
        small = settings.model_copy(update={"fetch_max_content_bytes": 1024 * 1024})
        fetcher = Fetcher(
            small,
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, content=b"x" * (1024 * 1024 + 1))
            ),
        )

        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch("https://example.com/huge")
        await fetcher.aclose()

        assert exc_info.value.message == "Content too large - exceeds 1MB limit"
        assert exc_info.value.retryable is False

    async def test_private_address_is_blocked(self, fetcher_for):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, text="secret")

        with pytest.raises(FetchError) as exc_info:
            await fetcher_for(handler).fetch("http://10.0.0.1/")

        assert exc_info.value.error_type == ErrorType.VALIDATION_ERROR
        assert calls == []

    async def test_redirect_to_private_address_is_blocked(self, fetcher_for):
        def handler(request):
            if request.url.host == "example.com":
                return httpx.Response(302, headers={"Location": "http://127.0.0.1/admin"})
            return httpx.Response(200, text="internal")

        with pytest.raises(FetchError) as exc_info:
            await fetcher_for(handler).fetch("https://example.com/go")

        assert exc_info.value.error_type == ErrorType.VALIDATION_ERROR

    async def test_redirects_are_followed(self, fetcher_for):
        def handler(request):
            if request.url.path == "/old":
                return httpx.Response(301, headers={"Location": "https://example.com/new"})
            return httpx.Response(200, text="<title>New</title>")

        result = await fetcher_for(handler).fetch("https://example.com/old")

        assert "New" in result.html

    async def test_redirect_loop_is_rejected(self, fetcher_for):
        def handler(request):
            return httpx.Response(302, headers={"Location": str(request.url)})

        with pytest.raises(FetchError, match="Too many redirects"):
            await fetcher_for(handler).fetch("https://example.com/loop")

    async def test_resolved_private_address_is_blocked(self, settings, monkeypatch):
        async def resolves_private(url):
            return True

        monkeypatch.setattr(fetcher_module, "check_ssrf_with_dns", resolves_private)
        checked = settings.model_copy(update={"fetch_resolve_check": True})
        fetcher = Fetcher(
            checked, transport=httpx.MockTransport(lambda request: httpx.Response(200, text="x"))
        )

        with pytest.raises(FetchError, match="private network"):
            await fetcher.fetch("https://rebinding.example")
        await fetcher.aclose()


class TestFetchWithRetry:
    async def test_retries_retryable_errors(self, fetcher_for, sample_html):
        responses = iter(
            [httpx.Response(503), httpx.Response(429), httpx.Response(200, text=sample_html)]
        )
        calls = []

        def handler(request):
            calls.append(request)
            return next(responses)

        result = await fetcher_for(handler).fetch_with_retry("https://example.com", 3)

        assert result.status_code == 200
        assert len(calls) == 3

    async def test_non_retryable_error_stops_immediately(self, fetcher_for):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404)

        with pytest.raises(FetchError):
            await fetcher_for(handler).fetch_with_retry("https://example.com", 3)

        assert len(calls) == 1

    async def test_gives_up_after_max_retries(self, fetcher_for):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502)

        with pytest.raises(FetchError) as exc_info:
            await fetcher_for(handler).fetch_with_retry("https://example.com", 2)

        assert len(calls) == 2
        assert exc_info.value.message == "Server error (HTTP 502)"
