"""FastAPI dependencies for the API layer."""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from app.config import get_settings
from app.core.rate_limit import default_rate_limiter
from app.core.security import get_credential_verifier
from app.database import get_db
from app.models import User
from parley.realtime import AuthenticationFailure, get_relay
from parley.realtime.relay import EventRelay

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    """Retrieve the current user from the JWT token."""

    return get_user_from_token(token, db)


def get_user_from_token(token: str, db: Session) -> User:
    """Resolve a user from a JWT token or raise an HTTP 401 error."""

    try:
        subject = get_credential_verifier().verify(token)
    except AuthenticationFailure as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.detail,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    try:
        user_id = int(subject)
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from None

    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    return user


def get_event_relay() -> EventRelay:
    return get_relay()


def _enforce_rate_limit(request: Request, scope: str, limit: int, window_seconds: int, detail: str) -> None:
    if not get_settings().rate_limit_enabled:
        return
    client = request.client.host if request.client else "unknown"
    result = default_rate_limiter.allow(
        key=f"rl:{scope}:{client}", limit=limit, window_seconds=window_seconds
    )
    if not result.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=detail,
            headers={"Retry-After": str(result.retry_after_seconds)},
        )


def limit_api_requests(request: Request) -> None:
    settings = get_settings()
    _enforce_rate_limit(
        request,
        "api",
        settings.rate_limit_api_max_requests,
        settings.rate_limit_api_window_seconds,
        "Too many requests, please try again later.",
    )


def limit_auth_requests(request: Request) -> None:
    settings = get_settings()
    _enforce_rate_limit(
        request,
        "auth",
        settings.rate_limit_auth_max_requests,
        settings.rate_limit_auth_window_seconds,
        "Too many authentication attempts, please try again later.",
    )
