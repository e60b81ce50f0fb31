"""
URL validation for submitted analysis targets, including SSRF screening.
"""

import asyncio
import ipaddress
import socket
from dataclasses import dataclass
from urllib.parse import urlsplit

from pydantic import HttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from webanalyzer.config.logging import get_logger
from webanalyzer.core.exceptions import ErrorMessages

logger = get_logger(__name__)

MAX_URL_LENGTH = 2048
DNS_TIMEOUT_S = 5.0

_http_url = TypeAdapter(HttpUrl)

LOCALHOST_NAMES = frozenset(
    {
        "localhost",
        "localhost.localdomain",
        "ip6-localhost",
        "ip6-loopback",
    }
)

METADATA_HOSTS = frozenset(
    {
        "169.254.169.254",  # AWS, GCP, Azure
        "metadata.google.internal",
        "metadata.goog",
        "100.100.100.200",  # Alibaba Cloud
        "fd00:ec2::254",  # AWS IPv6
    }
)

# Shared address space is not covered by ipaddress.is_private
CGNAT_NETWORK = ipaddress.ip_network("100.64.0.0/10")


@dataclass
class UrlValidationResult:
    valid: bool
    error: str | None = None
    details: str | None = None


def validate_url_format(url: str) -> bool:
    """Check that ``url`` is a well-formed absolute http(s) URL."""
    try:
        parsed = _http_url.validate_python(url)
    except PydanticValidationError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.host)


def is_blocked_address(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    """True for addresses a server-side fetch must never reach."""
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped

    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_multicast
        or address.is_reserved
        or address.is_unspecified
        or (isinstance(address, ipaddress.IPv4Address) and address in CGNAT_NETWORK)
    )


def _hostname(url: str) -> str:
    hostname = urlsplit(url).hostname
    if not hostname:
        raise ValueError("URL has no host")
    return hostname.lower().rstrip(".")


def check_ssrf(url: str) -> bool:
    """
    Return True when ``url`` points at localhost, a private or otherwise
    non-public IP literal, or a cloud metadata service.

    Unparseable URLs are treated as unsafe.
    """
    try:
        hostname = _hostname(url)
    except ValueError as e:
        logger.warning("URL parsing error in SSRF check", url=url, error=str(e))
        return True

    if hostname in LOCALHOST_NAMES or hostname.endswith(".localhost"):
        logger.warning("SSRF attempt detected: localhost", url=url)
        return True

    if hostname in METADATA_HOSTS:
        logger.warning("SSRF attempt detected: metadata service", url=url, hostname=hostname)
        return True

    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        # A DNS name; only resolution can tell where it points
        return False

    if is_blocked_address(address):
        logger.warning("SSRF attempt detected: private IP", url=url, hostname=hostname)
        return True

    return False


async def check_ssrf_with_dns(url: str, timeout: float = DNS_TIMEOUT_S) -> bool:
    """
    Like :func:`check_ssrf`, additionally resolving the host and rejecting it
    if any resolved address is blocked.

    Resolution failures are not treated as SSRF; the fetch itself will
    surface them as DNS errors.
    """
    if check_ssrf(url):
        return True

    hostname = _hostname(url)
    try:
        ipaddress.ip_address(hostname)
        return False
    except ValueError:
        pass

    loop = asyncio.get_running_loop()
    try:
        infos = await asyncio.wait_for(
            loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM), timeout
        )
    except (OSError, TimeoutError) as e:
        logger.debug("DNS resolution failed in SSRF check", url=url, error=str(e))
        return False

    for info in infos:
        resolved = info[4][0].split("%", 1)[0]
        if is_blocked_address(ipaddress.ip_address(resolved)):
            logger.warning(
                "SSRF attempt detected: host resolves to private address",
                url=url,
                hostname=hostname,
                address=resolved,
            )
            return True

    return False


def validate_url(url: object) -> UrlValidationResult:
    """Run every submission check and describe the first failure."""
    if not url or not isinstance(url, str):
        return UrlValidationResult(False, "URL is required and must be a string")

    if len(url) > MAX_URL_LENGTH:
        return UrlValidationResult(
            False,
            "URL too long",
            f"URL must be at most {MAX_URL_LENGTH} characters",
        )

    if not validate_url_format(url):
        return UrlValidationResult(
            False,
            ErrorMessages.INVALID_URL_FORMAT,
            "URL must start with http:// or https:// and be valid",
        )

    if check_ssrf(url):
        return UrlValidationResult(
            False,
            "Invalid URL",
            "URLs pointing to private networks or metadata services are not allowed",
        )

    return UrlValidationResult(True)
