import os


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


SERVICE_NAME = os.getenv("SERVICE_NAME", "webproxy")
BASE_PATH = os.environ.get("BASE_PATH", "").rstrip("/")
PROXY_PATH = os.environ.get("PROXY_PATH", "/proxy")

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))

PROXY_TIMEOUT_MS = int(os.environ.get("PROXY_TIMEOUT_MS", "15000"))
# Cap for buffered HTML rewrites
PROXY_MAX_BYTES = int(os.environ.get("PROXY_MAX_BYTES", "10000000"))
# Development only: skip TLS certificate verification towards upstreams
PROXY_DEV_INSECURE_TLS = _env_flag("PROXY_DEV_INSECURE_TLS")
PROXY_USER_AGENT = os.environ.get("PROXY_USER_AGENT", "Mozilla/5.0 (Proxy)")
PROXY_CSP_MODE = os.environ.get("PROXY_CSP_MODE", "permissive").strip().lower()
PROXY_REWRITE_INLINE_SCRIPTS = _env_flag("PROXY_REWRITE_INLINE_SCRIPTS")
PROXY_DISCONNECT_POLL_MS = int(os.environ.get("PROXY_DISCONNECT_POLL_MS", "250"))

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
