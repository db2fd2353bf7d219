from __future__ import annotations

import re
from urllib.parse import urlparse

FAVICON_SERVICE_URL = "https://www.google.com/s2/favicons?domain={domain}&sz=32"


def is_valid_url(url: str) -> bool:
    """Basic URL validation."""
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def extract_domain(url: str) -> str:
    """Extract the display domain (host without a leading ``www.``)."""
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return "unknown"
    if host.startswith("www."):
        host = host[4:]
    return host or "unknown"


def favicon_url(domain: str) -> str | None:
    if not domain or domain == "unknown":
        return None
    return FAVICON_SERVICE_URL.format(domain=domain)


def clean_url(url: str) -> str:
    """Strip trailing punctuation picked up from prose."""
    return re.sub(r"[.,;:)]+$", "", url)


def trim_text(text: str, max_chars: int = 4000) -> str:
    if not text:
        return ""
    return text[:max_chars] + "..." if len(text) > max_chars else text
