"""Quiz session constants shared across the engine and server layers."""

DEFAULT_TIME_LIMIT_SECONDS: int = 30
MAX_SESSION_SECONDS: int = 2 * 60 * 60
VIOLATION_THRESHOLD: int = 3
SUBSCRIBER_QUEUE_SIZE: int = 100
DEFAULT_QUESTION_POINTS: int = 1
MAX_OPTIONS: int = 6
MIN_OPTIONS: int = 2
