"""
HTML metadata extraction.

``parse_html`` never raises: when the document cannot be processed it returns
placeholder results with a ``parse_error`` entry instead.
"""

import re
from typing import Any
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

from webanalyzer.config.logging import get_logger

logger = get_logger(__name__)

MAX_TITLE_LENGTH = 200
HEADING_LEVELS = ("h1", "h2", "h3", "h4", "h5", "h6")
SKIPPED_HREF_PREFIXES = ("#", "javascript:", "mailto:", "tel:", "data:")
REQUIRED_FIELDS = (
    "html_version",
    "page_title",
    "headings_count",
    "internal_links_count",
    "external_links_count",
    "has_login_form",
)

_DOCTYPE_RE = re.compile(r"<!DOCTYPE\s+([^>]+)>", re.IGNORECASE)


def _empty_headings() -> dict[str, int]:
    return {level: 0 for level in HEADING_LEVELS}


def extract_html_version(html: str) -> str:
    """Name the HTML version declared by the document's DOCTYPE."""
    match = _DOCTYPE_RE.search(html)
    if not match:
        return "Unknown (No DOCTYPE)"

    doctype = match.group(1).strip().lower()

    if doctype == "html":
        return "HTML 5"

    if "html 4.01" in doctype:
        if "strict" in doctype:
            return "HTML 4.01 Strict"
        if "transitional" in doctype:
            return "HTML 4.01 Transitional"
        if "frameset" in doctype:
            return "HTML 4.01 Frameset"
        return "HTML 4.01"

    if "xhtml" in doctype:
        if "1.0 strict" in doctype:
            return "XHTML 1.0 Strict"
        if "1.0 transitional" in doctype:
            return "XHTML 1.0 Transitional"
        if "1.0 frameset" in doctype:
            return "XHTML 1.0 Frameset"
        if "1.1" in doctype:
            return "XHTML 1.1"
        return "XHTML"

    if "html 3.2" in doctype:
        return "HTML 3.2"

    if "html 2.0" in doctype or "html level 2" in doctype:
        return "HTML 2.0"

    return f"Unknown ({doctype[:50]})"


def extract_title(soup: BeautifulSoup) -> str:
    """Page title, falling back to og:title, twitter:title and the first h1."""
    title_tag = soup.find("title")
    if title_tag:
        title = title_tag.get_text().strip()
        if title:
            return title[:MAX_TITLE_LENGTH]

    for attrs in ({"property": "og:title"}, {"name": "twitter:title"}):
        meta = soup.find("meta", attrs=attrs)
        content = meta.get("content") if meta else None
        if content and content.strip():
            return content.strip()[:MAX_TITLE_LENGTH]

    h1 = soup.find("h1")
    if h1:
        heading = h1.get_text().strip()
        if heading:
            return heading[:MAX_TITLE_LENGTH]

    return "No title found"


def count_headings(soup: BeautifulSoup) -> dict[str, int]:
    return {level: len(soup.find_all(level)) for level in HEADING_LEVELS}


def _site(hostname: str | None) -> str:
    hostname = (hostname or "").lower()
    return hostname[4:] if hostname.startswith("www.") else hostname


def count_links(soup: BeautifulSoup, base_url: str) -> tuple[int, int]:
    """
    Count (internal, external) links. A link is internal when its host
    matches the page host, ignoring a leading ``www.``.
    """
    base_site = _site(urlsplit(base_url).hostname)
    internal = external = 0

    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.lower().startswith(SKIPPED_HREF_PREFIXES):
            continue

        try:
            link_site = _site(urlsplit(urljoin(base_url, href)).hostname)
        except ValueError as e:
            logger.debug("Invalid link URL", href=href, error=str(e))
            continue

        if link_site == base_site:
            internal += 1
        else:
            external += 1

    return internal, external


def has_login_form(soup: BeautifulSoup) -> bool:
    """True when the page contains a password field."""
    if soup.select_one('input[type="password" i]'):
        return True

    return bool(
        soup.select_one(
            'input[name*="password"], input[id*="password"], '
            'input[name*="passwd"], input[id*="passwd"]'
        )
    )


def parse_html(html: str, base_url: str) -> dict[str, Any]:
    """Extract page metadata from ``html`` fetched from ``base_url``."""
    try:
        soup = BeautifulSoup(html or "", "lxml")
        internal_links, external_links = count_links(soup, base_url)

        results = {
            "html_version": extract_html_version(html),
            "page_title": extract_title(soup),
            "headings_count": count_headings(soup),
            "internal_links_count": internal_links,
            "external_links_count": external_links,
            "has_login_form": has_login_form(soup),
        }
    except Exception as e:
        logger.error("HTML parsing failed", url=base_url, error=str(e))
        return {
            "html_version": "Unknown",
            "page_title": "Parse Error",
            "headings_count": _empty_headings(),
            "internal_links_count": 0,
            "external_links_count": 0,
            "has_login_form": False,
            "parse_error": str(e) or e.__class__.__name__,
        }

    logger.debug(
        "HTML parsed successfully",
        url=base_url,
        title=results["page_title"],
        html_version=results["html_version"],
    )
    return results


def validate_results(results: dict[str, Any]) -> bool:
    """Check that ``results`` has the complete, well-typed result shape."""
    missing = [name for name in REQUIRED_FIELDS if name not in results]
    if missing:
        logger.error("Missing required field in results", fields=missing)
        return False

    headings = results["headings_count"]
    if not isinstance(headings, dict) or any(
        type(headings.get(level)) is not int for level in HEADING_LEVELS
    ):
        logger.error("Invalid headings_count structure")
        return False

    return (
        type(results["internal_links_count"]) is int
        and type(results["external_links_count"]) is int
        and isinstance(results["has_login_form"], bool)
    )
