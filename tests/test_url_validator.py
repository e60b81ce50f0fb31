import asyncio
import socket

import pytest

from webanalyzer.core.url_validator import (
    MAX_URL_LENGTH,
    check_ssrf,
    check_ssrf_with_dns,
    validate_url,
    validate_url_format,
)


class TestValidateUrlFormat:
    @pytest.mark.parametrize(
        "url",
        [
            "https://example.com",
            "http://example.com/path?q=1#frag",
            "https://sub.example.co.uk:8443/a/b",
        ],
    )
    def test_accepts_http_urls(self, url):
        assert validate_url_format(url) is True

    @pytest.mark.parametrize(
        "url",
        [
            "ftp://example.com/file",
            "javascript:alert(1)",
            "example.com",
            "http://",
            "not a url",
        ],
    )
    def test_rejects_other_urls(self, url):
        assert validate_url_format(url) is False


class TestCheckSsrf:
    @pytest.mark.parametrize(
        "url",
        [
            "http://localhost:8080/",
            "http://LOCALHOST/",
            "http://app.localhost/",
            "http://127.0.0.1/",
            "http://10.0.0.5/",
            "http://172.16.3.4/",
            "http://192.168.1.1/",
            "http://169.254.169.254/latest/meta-data/",
            "http://100.64.0.1/",
            "http://0.0.0.0/",
            "http://[::1]/",
            "http://[fe80::1]/",
            "http://[::ffff:127.0.0.1]/",
            "http://metadata.google.internal/",
        ],
    )
    def test_blocks_internal_targets(self, url):
        assert check_ssrf(url) is True

    @pytest.mark.parametrize(
        "url",
        ["https://example.com/", "http://93.184.216.34/", "http://[2606:4700::1111]/"],
    )
    def test_allows_public_targets(self, url):
        assert check_ssrf(url) is False

    def test_unparseable_url_is_unsafe(self):
        assert check_ssrf("http:///nohost") is True


class TestCheckSsrfWithDns:
    async def test_blocks_hostname_resolving_to_private_address(self, monkeypatch):
        async def fake_getaddrinfo(host, port, **kwargs):
            return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("10.1.2.3", 0))]

        monkeypatch.setattr(asyncio.get_running_loop(), "getaddrinfo", fake_getaddrinfo)

        assert await check_ssrf_with_dns("http://internal.example.com/") is True

    async def test_allows_hostname_resolving_to_public_address(self, monkeypatch):
        async def fake_getaddrinfo(host, port, **kwargs):
            return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("93.184.216.34", 0))]

        monkeypatch.setattr(asyncio.get_running_loop(), "getaddrinfo", fake_getaddrinfo)

        assert await check_ssrf_with_dns("http://example.com/") is False

    async def test_resolution_failure_is_not_ssrf(self, monkeypatch):
        async def failing_getaddrinfo(host, port, **kwargs):
            raise socket.gaierror("no such host")

        monkeypatch.setattr(asyncio.get_running_loop(), "getaddrinfo", failing_getaddrinfo)

        assert await check_ssrf_with_dns("http://does-not-exist.example/") is False


class TestValidateUrl:
    def test_valid_url(self):
        result = validate_url("https://example.com")

        assert result.valid is True
        assert result.error is None

    @pytest.mark.parametrize("url", [None, "", 42, ["https://example.com"]])
    def test_missing_or_non_string(self, url):
        result = validate_url(url)

        assert result.valid is False
        assert result.error == "URL is required and must be a string"

    def test_too_long(self):
        result = validate_url("https://example.com/" + "a" * MAX_URL_LENGTH)

        assert result.valid is False
        assert result.error == "URL too long"

    def test_bad_format(self):
        result = validate_url("ftp://example.com")

        assert result.valid is False
        assert result.error == "Invalid URL format"

    def test_localhost_rejected(self):
        result = validate_url("http://localhost:8080")

        assert result.valid is False
        assert result.error == "Invalid URL"
        assert "private networks" in result.details
