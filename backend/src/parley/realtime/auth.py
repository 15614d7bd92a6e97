"""Handshake authentication for realtime connections."""

from __future__ import annotations

import logging

import jwt

from .errors import AuthenticationFailure, RelayError
from .stores import Identity, UserStore

logger = logging.getLogger(__name__)


class JWTCredentialVerifier:
    """Verify HMAC signed access tokens issued by the auth API."""

    def __init__(self, secret: str, algorithm: str = "HS256", *, leeway: float = 0) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._leeway = leeway

    def verify(self, token: str) -> str:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                leeway=self._leeway,
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise AuthenticationFailure("Token has expired") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthenticationFailure() from exc
        return str(payload["sub"])


class ConnectionAuthenticator:
    """Resolve a bearer credential to a user identity."""

    def __init__(self, verifier, users: UserStore) -> None:
        self._verifier = verifier
        self._users = users

    async def authenticate(self, token: str | None) -> Identity:
        if not token:
            raise AuthenticationFailure("Missing token")

        subject = self._verifier.verify(token)
        try:
            user_id = int(subject)
        except (TypeError, ValueError):
            raise AuthenticationFailure() from None

        try:
            user = await self._users.find_by_id(user_id)
        except RelayError as exc:
            logger.warning("User lookup failed during handshake for %s", user_id)
            raise AuthenticationFailure() from exc
        if user is None:
            raise AuthenticationFailure()
        return user
