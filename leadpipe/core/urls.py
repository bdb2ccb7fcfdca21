"""Profile URL helpers shared by storage and reconciliation."""

import re
from urllib.parse import unquote, urlsplit

_HANDLE_RE = re.compile(r"/in/([^/?#]+)", re.IGNORECASE)
# www. and regional subdomains such as de., ae., uk. or pt-br.
_SUBDOMAIN_RE = re.compile(r"^(?:www|[a-z]{2}(?:-[a-z]{2})?)\.(?=[^.]+\.[^.]+$)")


def normalize_url(url: str) -> str:
    """Canonical comparison key for a profile URL.

    Lowercases, drops scheme, query and fragment, strips trailing slashes
    and collapses ``www.`` or regional subdomains of the host.
    """
    raw = url.strip()
    if not raw:
        msg = "empty URL"
        raise ValueError(msg)
    if "://" not in raw:
        raw = f"https://{raw}"
    parts = urlsplit(raw.lower())
    host = parts.hostname or ""
    if not host:
        msg = f"URL has no host: {url!r}"
        raise ValueError(msg)
    host = _SUBDOMAIN_RE.sub("", host)
    path = unquote(parts.path).rstrip("/")
    return f"{host}{path}"


def extract_handle(url: str | None) -> str | None:
    """Return the lowercased path segment after ``/in/``, or None."""
    if not url:
        return None
    match = _HANDLE_RE.search(url)
    if not match:
        return None
    handle = unquote(match.group(1)).strip().lower()
    return handle or None
