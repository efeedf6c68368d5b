"""Runtime settings for the engine and server, overridable from the environment."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import Mapping

from live_quiz.constants.network_constants import (
    DEFAULT_ALLOWED_ORIGINS,
    RATE_LIMIT_MAX_REQUESTS,
    RATE_LIMIT_WINDOW_SECONDS,
    SSE_HEARTBEAT_SECONDS,
)
from live_quiz.constants.quiz_constants import (
    DEFAULT_TIME_LIMIT_SECONDS,
    MAX_SESSION_SECONDS,
    SUBSCRIBER_QUEUE_SIZE,
    VIOLATION_THRESHOLD,
)

_PREFIX = "LIVE_QUIZ_"
_NUMERIC_FIELDS = {
    "QUESTION_SECONDS": ("question_seconds", int),
    "MAX_SESSION_SECONDS": ("max_session_seconds", int),
    "VIOLATION_THRESHOLD": ("violation_threshold", int),
    "QUEUE_SIZE": ("subscriber_queue_size", int),
    "HEARTBEAT_SECONDS": ("heartbeat_seconds", float),
    "RATE_LIMIT": ("rate_limit", int),
    "RATE_WINDOW_SECONDS": ("rate_window_seconds", float),
}


@dataclass(slots=True)
class EngineSettings:
    question_seconds: int = DEFAULT_TIME_LIMIT_SECONDS
    max_session_seconds: int = MAX_SESSION_SECONDS
    violation_threshold: int = VIOLATION_THRESHOLD
    subscriber_queue_size: int = SUBSCRIBER_QUEUE_SIZE
    heartbeat_seconds: float = SSE_HEARTBEAT_SECONDS
    rate_limit: int = RATE_LIMIT_MAX_REQUESTS
    rate_window_seconds: float = RATE_LIMIT_WINDOW_SECONDS
    jwt_secret: str | None = None
    allowed_origins: tuple[str, ...] = field(default=DEFAULT_ALLOWED_ORIGINS)
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.question_seconds <= 0:
            raise ValueError("Question duration must be a positive number of seconds.")
        if self.max_session_seconds <= 0:
            raise ValueError("Maximum session duration must be positive.")
        if self.violation_threshold < 1:
            raise ValueError("Violation threshold must be at least 1.")
        if self.subscriber_queue_size < 1:
            raise ValueError("Subscriber queue size must be at least 1.")
        if self.rate_limit < 1 or self.rate_window_seconds <= 0:
            raise ValueError("Rate limit and window must be positive.")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineSettings":
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for env_name, (name, parse) in _NUMERIC_FIELDS.items():
            raw = env.get(_PREFIX + env_name)
            if raw is None or not raw.strip():
                continue
            try:
                values[name] = parse(raw)
            except ValueError as exc:
                raise ValueError(f"{_PREFIX}{env_name} must be a number, got {raw!r}.") from exc

        secret = env.get(_PREFIX + "JWT_SECRET")
        if secret:
            values["jwt_secret"] = secret
        origins = env.get(_PREFIX + "ALLOWED_ORIGINS")
        if origins:
            values["allowed_origins"] = tuple(o.strip() for o in origins.split(",") if o.strip())
        level = env.get(_PREFIX + "LOG_LEVEL")
        if level:
            values["log_level"] = level.strip().upper()
        return cls(**values)

