"""Error taxonomy for the proxy pipeline.

Every error carries the HTTP status the client receives and a short message
that ends up in the JSON body ``{"error": "<message>"}``.
"""

from typing import Dict, Optional


class ProxyError(Exception):
    """Base class for all proxy-level failures."""

    status_code: int = 502
    default_message: str = "proxy error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, str]:
        return {"error": self.message}


class ClientInputError(ProxyError):
    """The request was rejected before any network I/O took place."""

    status_code = 400
    default_message = "bad request"


class MissingTargetError(ClientInputError):
    default_message = "missing url param"


class MalformedTargetError(ClientInputError):
    default_message = "invalid url"


class UnsupportedSchemeError(ClientInputError):
    default_message = "unsupported protocol"


class MethodNotAllowedError(ClientInputError):
    status_code = 405
    default_message = "method not allowed"


class UpstreamTimeoutError(ProxyError):
    status_code = 504
    default_message = "timeout"


class UpstreamTransportError(ProxyError):
    status_code = 502
    default_message = "upstream fetch failed"


class ResponseTooLargeError(ProxyError):
    status_code = 502
    default_message = "upstream html too large"


class ClientDisconnectedError(ProxyError):
    # nginx convention; the client is gone and never sees it
    status_code = 499
    default_message = "client closed request"
