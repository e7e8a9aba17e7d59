from .errors import (
    ProxyError,
    ClientInputError,
    MissingTargetError,
    MalformedTargetError,
    UnsupportedSchemeError,
    MethodNotAllowedError,
    UpstreamTimeoutError,
    UpstreamTransportError,
    ResponseTooLargeError,
    ClientDisconnectedError,
)
from .url_codec import ProxyURLCodec
from .settings import ProxySettings
from .html_rewriter import HtmlRewriteEngine, RewriteContext
from .forwarder import RequestForwarder, ProxyRequest

__all__ = [
    "ProxyError",
    "ClientInputError",
    "MissingTargetError",
    "MalformedTargetError",
    "UnsupportedSchemeError",
    "MethodNotAllowedError",
    "UpstreamTimeoutError",
    "UpstreamTransportError",
    "ResponseTooLargeError",
    "ClientDisconnectedError",
    "ProxyURLCodec",
    "ProxySettings",
    "HtmlRewriteEngine",
    "RewriteContext",
    "RequestForwarder",
    "ProxyRequest",
]
