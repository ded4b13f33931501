"""Origin normalization utilities."""

from __future__ import annotations

import re
from urllib.parse import urljoin, urlsplit

import tldextract

_DEFAULT_PORTS = {"http": 80, "https": 443}

# Bundled public suffix snapshot only; no network fetch at runtime.
_extract = tldextract.TLDExtract(suffix_list_urls=())


def url_origin(value: str) -> str:
    """
    Normalize a URL to its origin string.

    - Lowercase scheme and host
    - Keep the port only when it is not the scheme default
    - Ignore path/query/fragment
    - Anything unparsable (or without scheme/host) returns ""
    """
    raw = (value or "").strip()
    if not raw:
        return ""
    try:
        parsed = urlsplit(raw)
        port = parsed.port
    except ValueError:
        return ""

    scheme = (parsed.scheme or "").lower()
    host = (parsed.hostname or "").lower().rstrip(".")
    if scheme not in _DEFAULT_PORTS or not host:
        return ""

    if port and port != _DEFAULT_PORTS[scheme]:
        return f"{scheme}://{host}:{port}"
    return f"{scheme}://{host}"


def url_hostname(value: str) -> str:
    """Return the lowercased hostname of a URL, or "" when malformed."""
    try:
        return (urlsplit((value or "").strip()).hostname or "").lower().rstrip(".")
    except ValueError:
        return ""


def registered_domain(value: str) -> str:
    """Return the registrable domain for a host or URL (best-effort)."""
    host = url_hostname(value) if "://" in (value or "") else (value or "").strip().lower()
    if not host:
        return ""
    extracted = _extract(host)
    if extracted.domain and extracted.suffix:
        return f"{extracted.domain}.{extracted.suffix}".lower()
    return host


def resolve_url(base: str, target: str) -> str:
    """Resolve a possibly relative URL against a base URL."""
    target = (target or "").strip()
    if not target:
        return base
    return urljoin(base, target)


def url_has_prefix(url: str, prefix: str) -> bool:
    """
    Check that a URL lives under a required origin or origin+path prefix.

    Origins are compared normalized; a prefix with a path additionally
    requires the URL to start with it.
    """
    required = url_origin(prefix)
    if not required or url_origin(url) != required:
        return False
    path = urlsplit(prefix.strip()).path
    if path in ("", "/"):
        return True
    return urlsplit(url.strip()).path.startswith(path)


def wildcard_regex(pattern: str) -> re.Pattern[str]:
    """Compile a `*` wildcard pattern into a case-insensitive search regex."""
    parts = [re.escape(part) for part in pattern.split("*")]
    return re.compile(r"[^\s]*".join(parts), re.I)


def wildcard_search(pattern: str, text: str) -> bool:
    """Substring match, or wildcard search when the pattern contains `*`."""
    if not pattern:
        return False
    if "*" in pattern:
        return bool(wildcard_regex(pattern).search(text or ""))
    return pattern in (text or "")
