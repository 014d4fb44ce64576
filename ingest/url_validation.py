"""URL validation, normalization and scope checks for crawled links."""

import re
from typing import Optional, Set
from urllib.parse import urljoin, urlparse, urlunparse

__all__ = [
    "URLValidationError",
    "sanitize_url",
    "validate_url",
    "absolute_url",
    "strip_query",
    "is_in_scope",
    "looks_like_image_url",
    "IMAGE_EXT_RE",
]


class URLValidationError(Exception):
    """Raised when URL validation fails."""
    pass


# Dangerous URL schemes to reject
DANGEROUS_SCHEMES = {"javascript", "data", "vbscript", "file", "mailto", "tel"}

IMAGE_EXT_RE = re.compile(r"\.(jpe?g|png|webp|gif|avif|bmp)(\?.*)?$", re.IGNORECASE)

# Links that never lead to product or category pages
NON_PAGE_RE = re.compile(r"\.(pdf|zip|docx?|xlsx?|jpe?g|png|webp|gif|svg|css|js)(\?.*)?$", re.IGNORECASE)


def sanitize_url(url: Optional[str]) -> str:
    """Strip whitespace and control characters from a raw URL."""
    if not url:
        return ""
    url = url.strip()
    url = re.sub(r"[\x00-\x1f\x7f-\x9f]", "", url)
    return url.replace("%00", "")


def validate_url(url: str, allowed_domains: Optional[Set[str]] = None) -> str:
    """Validate a URL for fetching.

    Args:
        url: URL to validate
        allowed_domains: Optional set of hosts the URL must belong to

    Returns:
        Sanitized URL

    Raises:
        URLValidationError: If URL is empty, not http(s), or off-domain
    """
    url = sanitize_url(url)
    if not url:
        raise URLValidationError("URL is empty")

    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    if scheme in DANGEROUS_SCHEMES:
        raise URLValidationError(f"Dangerous URL scheme: {scheme}")
    if scheme not in ("http", "https"):
        raise URLValidationError(f"Invalid URL scheme: {scheme or '(none)'}")

    domain = parsed.netloc.lower().split(":")[0]
    if not domain:
        raise URLValidationError("URL has no domain")
    if allowed_domains and domain not in allowed_domains:
        raise URLValidationError(f"URL domain '{domain}' not in allowed domains")

    return url


def absolute_url(href: Optional[str], base: str) -> Optional[str]:
    """Resolve ``href`` against ``base``; None for empty or non-http links."""
    href = sanitize_url(href)
    if not href or href.startswith("#"):
        return None
    if href.startswith("//"):
        href = "https:" + href
    scheme = urlparse(href).scheme.lower()
    if scheme and scheme not in ("http", "https"):
        return None
    return urljoin(base, href)


def strip_query(url: str) -> str:
    """Drop query string and fragment."""
    parsed = urlparse(url)
    return urlunparse(parsed._replace(query="", fragment=""))


def is_in_scope(url: str, host: str, prefix: str) -> bool:
    """True when ``url`` is on ``host`` and its path starts with ``prefix``."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return False
    if host and parsed.netloc.lower() != host.lower():
        return False
    if NON_PAGE_RE.search(parsed.path):
        return False
    return parsed.path.startswith(prefix or "/")


def looks_like_image_url(url: str) -> bool:
    return bool(IMAGE_EXT_RE.search(urlparse(url).path))
