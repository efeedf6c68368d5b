"""Token gate: turns a bearer credential into a principal."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
import secrets

from fastapi import Depends, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt

from live_quiz.core.errors import InvalidCredential
from live_quiz.core.models import Principal, Role

JWT_ALGORITHM = "HS256"
JWT_ISSUER = "live-quiz"
JWT_AUDIENCE = "live-quiz-users"
TOKEN_LIFETIME = timedelta(hours=24)


class TokenGate(ABC):
    """Verifies opaque bearer credentials. The engine trusts its answer."""

    @abstractmethod
    def verify(self, credential: str) -> Principal: ...


class JwtTokenGate(TokenGate):
    """HS256 JSON Web Tokens carrying ``sub`` (user id) and ``role`` claims."""

    def __init__(self, secret: str | None = None) -> None:
        # Without a configured secret, tokens stop verifying after a restart.
        self._secret = secret or secrets.token_hex(32)

    def issue(self, user_id: int, role: Role, lifetime: timedelta = TOKEN_LIFETIME) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "role": role.value,
            "iat": now,
            "exp": now + lifetime,
            "iss": JWT_ISSUER,
            "aud": JWT_AUDIENCE,
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def verify(self, credential: str) -> Principal:
        try:
            claims = jwt.decode(
                credential,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                audience=JWT_AUDIENCE,
                issuer=JWT_ISSUER,
            )
        except jwt.ExpiredSignatureError as exc:
            raise InvalidCredential("Token has expired.") from exc
        except jwt.InvalidTokenError as exc:
            raise InvalidCredential("Invalid token.") from exc
        try:
            return Principal(user_id=int(claims["sub"]), role=Role(claims["role"]))
        except (KeyError, ValueError) as exc:
            raise InvalidCredential("Token is missing a valid subject or role.") from exc


_bearer = HTTPBearer(auto_error=False)


def principal_dependency(gate: TokenGate):
    """Build a FastAPI dependency resolving the caller from an Authorization header.

    The event stream also accepts ``?token=`` because browsers cannot set
    headers on an EventSource.
    """

    def dependency(
        credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
        token: str | None = Query(default=None),
    ) -> Principal:
        raw = credentials.credentials if credentials is not None else token
        if not raw:
            raise InvalidCredential("Authorization token required.")
        return gate.verify(raw)

    return dependency
