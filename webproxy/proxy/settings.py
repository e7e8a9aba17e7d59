from dataclasses import dataclass

from webproxy import vars as env

CSP_MODES = ("permissive", "strip")


@dataclass(frozen=True)
class ProxySettings:
    """Startup configuration handed to the forwarder; never mutated at runtime."""

    proxy_path: str = "/proxy"
    timeout_ms: int = 15000
    max_body_bytes: int = 10_000_000
    insecure_tls: bool = False
    default_user_agent: str = "Mozilla/5.0 (Proxy)"
    csp_mode: str = "permissive"
    rewrite_inline_scripts: bool = False
    disconnect_poll_ms: int = 250

    def __post_init__(self):
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        if self.max_body_bytes <= 0:
            raise ValueError("max_body_bytes must be positive")
        if self.disconnect_poll_ms <= 0:
            raise ValueError("disconnect_poll_ms must be positive")
        if self.csp_mode not in CSP_MODES:
            raise ValueError(
                f"csp_mode must be one of {', '.join(CSP_MODES)}, got {self.csp_mode!r}"
            )

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def disconnect_poll_seconds(self) -> float:
        return self.disconnect_poll_ms / 1000.0

    @classmethod
    def from_env(cls) -> "ProxySettings":
        return cls(
            proxy_path=env.BASE_PATH + env.PROXY_PATH,
            timeout_ms=env.PROXY_TIMEOUT_MS,
            max_body_bytes=env.PROXY_MAX_BYTES,
            insecure_tls=env.PROXY_DEV_INSECURE_TLS,
            default_user_agent=env.PROXY_USER_AGENT,
            csp_mode=env.PROXY_CSP_MODE,
            rewrite_inline_scripts=env.PROXY_REWRITE_INLINE_SCRIPTS,
            disconnect_poll_ms=env.PROXY_DISCONNECT_POLL_MS,
        )
