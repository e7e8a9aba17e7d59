"""Mapping between absolute target URLs and the proxy's own request path.

A target such as ``https://example.com/a?b=1`` is carried as a single,
fully percent-encoded query parameter: ``/proxy?url=https%3A%2F%2Fexample.com%2Fa%3Fb%3D1``.
"""

from typing import Optional
from urllib.parse import SplitResult, parse_qs, quote, urlsplit

from .errors import MalformedTargetError, MissingTargetError, UnsupportedSchemeError

ALLOWED_SCHEMES = ("http", "https")
TARGET_PARAM = "url"


def parse_absolute_url(value: str) -> SplitResult:
    """Parse ``value`` as an absolute URL or raise ``MalformedTargetError``."""
    try:
        parts = urlsplit(value)
        # Accessing the port validates it
        parts.port
    except ValueError as e:
        raise MalformedTargetError() from e

    if not parts.scheme:
        raise MalformedTargetError()
    if parts.scheme.lower() in ALLOWED_SCHEMES and not parts.hostname:
        raise MalformedTargetError()
    return parts


def is_proxiable(value: str) -> bool:
    """True when ``value`` is an absolute http(s) URL the proxy would accept."""
    try:
        parts = parse_absolute_url(value)
    except MalformedTargetError:
        return False
    return parts.scheme.lower() in ALLOWED_SCHEMES


class ProxyURLCodec:
    """Encodes and decodes ``{proxy_path}?url=<percent-encoded-absolute-url>``."""

    def __init__(self, proxy_path: str = "/proxy"):
        self.proxy_path = proxy_path

    def encode(self, target: str) -> str:
        return f"{self.proxy_path}?{TARGET_PARAM}={quote(target, safe='')}"

    def decode(self, proxy_path: str) -> str:
        """Extract the target URL from a proxy path (or full proxy URL)."""
        try:
            query = urlsplit(proxy_path).query
        except ValueError as e:
            raise MissingTargetError() from e
        values = parse_qs(query, keep_blank_values=True).get(TARGET_PARAM)
        target = values[0] if values else ""
        if not target:
            raise MissingTargetError()
        parse_absolute_url(target)
        return target

    def try_decode(self, value: str) -> Optional[str]:
        """Return the target behind ``value`` if it is one of our proxy URLs."""
        try:
            if urlsplit(value).path != self.proxy_path:
                return None
            return self.decode(value)
        except (ValueError, MissingTargetError, MalformedTargetError):
            return None

    @staticmethod
    def validate_target(raw: Optional[str]) -> str:
        """Check a raw ``url`` parameter value and return the normalized target.

        Raises ``MissingTargetError``, ``MalformedTargetError`` or
        ``UnsupportedSchemeError``.
        """
        if raw is None or not raw.strip():
            raise MissingTargetError()
        target = raw.strip()
        parts = parse_absolute_url(target)
        if parts.scheme.lower() not in ALLOWED_SCHEMES:
            raise UnsupportedSchemeError()
        return target
