"""Network configuration constants for the quiz server."""

DEFAULT_HOST: str = "0.0.0.0"
DEFAULT_PORT: int = 8000
DEFAULT_ALLOWED_ORIGINS: tuple[str, ...] = ("http://localhost:3000", "http://127.0.0.1:3000")
SSE_HEARTBEAT_SECONDS: float = 15.0
SSE_POLL_SECONDS: float = 1.0
SHUTDOWN_GRACE_SECONDS: int = 5
RATE_LIMIT_MAX_REQUESTS: int = 100
RATE_LIMIT_WINDOW_SECONDS: float = 15 * 60
RATE_LIMIT_MAX_KEYS: int = 10_000
RATE_LIMIT_COMPACT_INTERVAL_SECONDS: float = 60.0
