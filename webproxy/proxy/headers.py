"""Header policy for both directions of a proxied exchange.

Inbound: only a small allow-list of client headers reaches the upstream.
Outbound: hop-by-hop headers, ``content-encoding`` and the security headers
that would stop the page from loading inside the proxy are removed.
``set-cookie`` is relayed untouched and may repeat.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import urljoin

from .url_codec import ProxyURLCodec, is_proxiable

logger = logging.getLogger("uvicorn.error")

# Hop-by-hop headers that should NOT be forwarded (RFC 7230 section 6.1)
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

SECURITY_HEADERS = frozenset(
    {
        "content-security-policy",
        "content-security-policy-report-only",
        "x-frame-options",
        "cross-origin-opener-policy",
        "cross-origin-embedder-policy",
        "cross-origin-resource-policy",
        "report-to",
        "reporting-endpoints",
    }
)

# Headers whose presence means the page would be blocked without a replacement
RESTRICTIVE_HEADERS = frozenset({"content-security-policy", "x-frame-options"})

FORWARDED_REQUEST_HEADERS = (
    "accept",
    "accept-language",
    "content-type",
    "cookie",
    "user-agent",
    "referer",
    "range",
)

# Redirect-style headers carrying a URL that must stay on the proxy
LOCATION_HEADERS = frozenset({"location", "content-location"})

PERMISSIVE_CSP = (
    "default-src * data: blob: 'unsafe-inline' 'unsafe-eval'; "
    "script-src * data: blob: 'unsafe-inline' 'unsafe-eval'; "
    "style-src * data: blob: 'unsafe-inline'; "
    "img-src * data: blob:; "
    "font-src * data:; "
    "media-src * data: blob:; "
    "connect-src * data: blob:; "
    "frame-src * data: blob:; "
    "frame-ancestors *"
)

HeaderPairs = List[Tuple[str, str]]
HeaderSource = Union[Mapping[str, str], Iterable[Tuple[str, str]]]


def _header_pairs(headers: HeaderSource) -> HeaderPairs:
    """Flatten any header container into ``(name, value)`` pairs, keeping repeats."""
    if hasattr(headers, "multi_items"):
        return list(headers.multi_items())
    if isinstance(headers, Mapping):
        return list(headers.items())
    return list(headers)


def forwardable_inbound_headers(
    client_headers: HeaderSource,
    default_user_agent: str = "Mozilla/5.0 (Proxy)",
    codec: Optional[ProxyURLCodec] = None,
) -> Dict[str, str]:
    """
    Build the header set sent upstream from the client's headers.

    Only the allow-list is copied. ``accept-encoding`` is forced to ``identity``
    so the body can be rewritten without a decompression stage.
    """
    incoming = {name.lower(): value for name, value in _header_pairs(client_headers)}

    headers: Dict[str, str] = {}
    for name in FORWARDED_REQUEST_HEADERS:
        value = incoming.get(name)
        if value:
            headers[name] = value

    # A referer pointing at the proxy is translated back to the page it shows
    referer = headers.get("referer")
    if referer and codec is not None:
        original = codec.try_decode(referer)
        if original:
            headers["referer"] = original

    headers["accept-encoding"] = "identity"
    if not headers.get("user-agent"):
        headers["user-agent"] = default_user_agent
    return headers


def _connection_tokens(pairs: HeaderPairs) -> set:
    tokens = set()
    for name, value in pairs:
        if name.lower() == "connection":
            tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
    return tokens


def sanitize_outbound_headers(
    upstream_headers: HeaderSource, csp_mode: str = "permissive"
) -> HeaderPairs:
    """
    Produce the header list returned to the client.

    Keys are matched case-insensitively and emitted lower-cased. The last value
    wins for every key except ``set-cookie``, which keeps all values in order.
    """
    pairs = _header_pairs(upstream_headers)
    dropped = HOP_BY_HOP_HEADERS | _connection_tokens(pairs)

    single: Dict[str, str] = {}
    cookies: List[str] = []
    restricted = False

    for name, value in pairs:
        key = name.lower()
        if key in dropped or key == "content-encoding":
            continue
        if key in SECURITY_HEADERS:
            restricted = restricted or key in RESTRICTIVE_HEADERS
            continue
        if key == "set-cookie":
            cookies.append(value)
            continue
        single[key] = value

    if restricted and csp_mode == "permissive":
        single["content-security-policy"] = PERMISSIVE_CSP

    result: HeaderPairs = list(single.items())
    result.extend(("set-cookie", cookie) for cookie in cookies)
    return result


def rewrite_location(location: str, target_url: str, codec: ProxyURLCodec) -> str:
    """
    Rewrite a redirect target so the browser follows it through the proxy.

    Relative locations resolve against the URL that produced the redirect.
    Anything that is not an http(s) URL is returned unchanged.
    """
    if not location:
        return location
    try:
        resolved = urljoin(target_url, location.strip())
    except ValueError:
        logger.debug(f"[Proxy] Leaving unparseable location untouched: {location!r}")
        return location
    if not is_proxiable(resolved):
        return location
    return codec.encode(resolved)


def rewrite_location_headers(
    pairs: HeaderPairs, target_url: str, codec: ProxyURLCodec
) -> HeaderPairs:
    return [
        (name, rewrite_location(value, target_url, codec))
        if name in LOCATION_HEADERS
        else (name, value)
        for name, value in pairs
    ]
