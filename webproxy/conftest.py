import inspect

import httpx
import pytest

from webproxy.proxy.forwarder import RequestForwarder
from webproxy.proxy.settings import ProxySettings


class StubUpstream:
    """Stand-in origin server: records every request and answers via ``handler``."""

    def __init__(self):
        self.requests = []
        self.handler = lambda request: httpx.Response(
            200, headers={"content-type": "text/plain"}, content=b"ok"
        )

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        result = self.handler(request)
        if inspect.isawaitable(result):
            result = await result
        return result


@pytest.fixture
def proxy_settings():
    return ProxySettings(timeout_ms=2000, max_body_bytes=1000, disconnect_poll_ms=10)


@pytest.fixture
def upstream():
    return StubUpstream()


@pytest.fixture
def make_forwarder(upstream):
    """Build a forwarder whose client talks to the stub upstream."""

    def _make(settings: ProxySettings) -> RequestForwarder:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(upstream), follow_redirects=False
        )
        return RequestForwarder(settings, client=client)

    return _make


@pytest.fixture
def forwarder(make_forwarder, proxy_settings):
    return make_forwarder(proxy_settings)
