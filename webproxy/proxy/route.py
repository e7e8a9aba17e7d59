import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response

from webproxy.vars import PROXY_PATH

from .errors import ProxyError
from .forwarder import ALLOWED_METHODS, BODYLESS_METHODS, ProxyRequest, RequestForwarder
from .settings import ProxySettings

router = APIRouter()
logger = logging.getLogger("uvicorn.error")

_forwarder: Optional[RequestForwarder] = None


def get_forwarder() -> RequestForwarder:
    """Process-wide forwarder built once from the startup settings."""
    global _forwarder
    if _forwarder is None:
        settings = ProxySettings.from_env()
        logger.info(
            f"[Proxy] Serving {settings.proxy_path} "
            f"(timeout={settings.timeout_ms}ms, max_body={settings.max_body_bytes}B, "
            f"csp={settings.csp_mode})"
        )
        _forwarder = RequestForwarder(settings)
    return _forwarder


async def close_forwarder() -> None:
    global _forwarder
    if _forwarder is not None:
        await _forwarder.aclose()
        _forwarder = None


@router.api_route(PROXY_PATH, methods=list(ALLOWED_METHODS))
async def proxy(
    request: Request, forwarder: RequestForwarder = Depends(get_forwarder)
) -> Response:
    """Fetch ``?url=<target>`` through the proxy, rewriting HTML on the way back."""
    body = b"" if request.method in BODYLESS_METHODS else await request.body()
    proxy_request = ProxyRequest(
        method=request.method,
        target_url=request.query_params.get("url"),
        headers=request.headers,
        body=body,
        is_disconnected=request.is_disconnected,
    )
    try:
        return await forwarder.forward(proxy_request)
    except ProxyError as e:
        return JSONResponse(e.to_payload(), status_code=e.status_code)
