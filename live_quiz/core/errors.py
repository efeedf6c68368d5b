"""Exception taxonomy for the session engine."""

from __future__ import annotations


class QuizSessionError(Exception):
    """Base class for errors surfaced by the session engine."""


class Forbidden(QuizSessionError):
    """The caller lacks ownership or role for the action."""


class InvalidState(QuizSessionError):
    """The action does not fit the current session state (includes lost races)."""


class Duplicate(QuizSessionError):
    """An answer already exists for this participant and question."""


class NotFound(QuizSessionError):
    """Unknown session, participant, class, list or question."""


class StoreError(QuizSessionError):
    """Transient persistence failure. The transition was rolled back; retry is allowed."""


class SubscriptionClosed(QuizSessionError):
    """The event stream is closed; resubscribe to receive a fresh snapshot."""


class InvalidCredential(QuizSessionError):
    """The bearer credential could not be verified."""


class RateLimited(QuizSessionError):
    """Too many requests for one client key inside the sliding window."""

    def __init__(self, message: str, retry_after: float) -> None:
        super().__init__(message)
        self.retry_after = retry_after
