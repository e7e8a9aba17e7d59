from typing import Optional
from urllib.parse import urlsplit, urlunsplit


def redact_url(url: Optional[str]) -> str:
    """Strip userinfo, query and fragment so target URLs are safe to log."""
    if not url:
        return "<empty>"
    try:
        parts = urlsplit(url)
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
    except ValueError:
        return "<unparseable>"
    redacted = urlunsplit((parts.scheme, host, parts.path, "", ""))
    return f"{redacted}?…" if parts.query else redacted
