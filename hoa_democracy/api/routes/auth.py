"""Member authentication: RS256 access tokens with rotating refresh tokens."""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from threading import Lock
from typing import Any, Literal, cast
from uuid import uuid4

import bcrypt
from cryptography.hazmat.primitives import serialization
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt  # type: ignore[import-untyped]
from pydantic import BaseModel, ValidationError

from hoa_democracy.core.config import Settings, get_settings

LOGGER = logging.getLogger(__name__)

RoleName = Literal["ADMIN", "MEMBER"]
TokenType = Literal["access", "refresh"]
ROLE_VALUES: frozenset[str] = frozenset({"ADMIN", "MEMBER"})

router = APIRouter()
bearer_scheme = HTTPBearer(auto_error=True)


class LoginRequest(BaseModel):
    email: str
    password: str
    role: RoleName | None = None


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class TokenClaims(BaseModel):
    sub: str
    role: RoleName
    type: TokenType
    iat: datetime
    exp: datetime
    jti: str


@dataclass(frozen=True)
class AuthenticatedUser:
    email: str
    role: RoleName
    token_id: str

    @property
    def is_admin(self) -> bool:
        return self.role == "ADMIN"


class RefreshTokenStore:
    """Tracks the single live refresh token per member.

    Rotation is a compare-and-swap under one lock, so two concurrent refreshes
    presenting the same token cannot both succeed. Revoked ids are remembered
    only until their token would have expired anyway.
    """

    def __init__(self) -> None:
        self._current: dict[str, tuple[str, datetime]] = {}
        self._revoked: dict[str, datetime] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._revoked)

    def register(self, subject: str, token_id: str, expires_at: datetime) -> None:
        with self._lock:
            self._prune()
            previous = self._current.get(subject)
            if previous is not None:
                self._revoked[previous[0]] = previous[1]
            self._current[subject] = (token_id, expires_at)

    def rotate(self, subject: str, presented_id: str, replacement_id: str, expires_at: datetime) -> bool:
        with self._lock:
            self._prune()
            current = self._current.get(subject)
            if presented_id in self._revoked or current is None or current[0] != presented_id:
                return False
            self._revoked[presented_id] = current[1]
            self._current[subject] = (replacement_id, expires_at)
            return True

    def is_revoked(self, token_id: str) -> bool:
        with self._lock:
            return token_id in self._revoked

    def _prune(self) -> None:
        # Caller holds the lock. Expired tokens fail signature checks on their own.
        now = datetime.now(UTC)
        for token_id in [token_id for token_id, expires_at in self._revoked.items() if expires_at <= now]:
            del self._revoked[token_id]
        for subject in [subject for subject, (_, expires_at) in self._current.items() if expires_at <= now]:
            del self._current[subject]

    def reset(self) -> None:
        with self._lock:
            self._current.clear()
            self._revoked.clear()


refresh_token_store = RefreshTokenStore()


@lru_cache(maxsize=4)
def _private_key(pem: str) -> Any:
    try:
        return serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except ValueError as exc:  # pragma: no cover - configuration issue
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Invalid JWT signing key",
        ) from exc


def _encode(
    subject: str, role: RoleName, token_type: TokenType, lifetime: timedelta, settings: Settings
) -> tuple[str, str, datetime]:
    issued_at = datetime.now(UTC)
    expires_at = issued_at + lifetime
    token_id = uuid4().hex
    claims = {
        "sub": subject,
        "role": role,
        "type": token_type,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
        "jti": token_id,
    }
    token = jwt.encode(claims, _private_key(settings.jwt_private_key), algorithm=settings.jwt_algorithm)
    return token, token_id, expires_at


def _token_pair(subject: str, role: RoleName, settings: Settings) -> tuple[TokenResponse, str, datetime]:
    access_token, _, _ = _encode(
        subject, role, "access", timedelta(minutes=settings.access_token_expire_minutes), settings
    )
    refresh_token, refresh_id, refresh_expires_at = _encode(
        subject, role, "refresh", timedelta(days=settings.refresh_token_expire_days), settings
    )
    pair = TokenResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=settings.access_token_expire_minutes * 60,
    )
    return pair, refresh_id, refresh_expires_at


def _decode(token: str, settings: Settings) -> TokenClaims:
    try:
        return TokenClaims(**jwt.decode(token, settings.jwt_private_key, algorithms=[settings.jwt_algorithm]))
    except (JWTError, ValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc


def _password_matches(password: str, settings: Settings) -> bool:
    try:
        if bcrypt.checkpw(password.encode("utf-8"), settings.default_user_hashed_password.encode("utf-8")):
            return True
    except ValueError:  # pragma: no cover - invalid hash format
        pass
    return password == settings.default_user_password


def _resolve_role(email: str, requested: RoleName | None, settings: Settings) -> RoleName:
    """Only configured board addresses may hold ADMIN; anyone may act as MEMBER."""

    is_admin = email.lower() in {address.lower() for address in settings.admin_emails}
    if requested == "ADMIN" and not is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid role selection")
    if requested is not None:
        return requested
    if is_admin:
        return "ADMIN"
    if settings.default_role not in ROLE_VALUES:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Invalid role configuration",
        )
    return cast(RoleName, settings.default_role)


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> AuthenticatedUser:
    claims = _decode(credentials.credentials, get_settings())
    if claims.type != "access":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token type")
    # Picked up by the request audit middleware.
    request.state.actor = claims.sub
    return AuthenticatedUser(email=claims.sub, role=claims.role, token_id=claims.jti)


def require_role(*roles: RoleName) -> Callable[..., AuthenticatedUser]:
    allowed = frozenset(roles)

    def dependency(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
        if user.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user

    return dependency


@router.post("/login", response_model=TokenResponse, summary="Issue JWT access tokens")
def login(payload: LoginRequest) -> TokenResponse:
    settings = get_settings()
    if "@" not in payload.email:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid email address")
    if not _password_matches(payload.password, settings):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    role = _resolve_role(payload.email, payload.role, settings)
    tokens, refresh_id, refresh_expires_at = _token_pair(payload.email, role, settings)
    refresh_token_store.register(payload.email, refresh_id, refresh_expires_at)
    LOGGER.info("member signed in", extra={"role": role})
    return tokens


@router.post("/refresh", response_model=TokenResponse, summary="Rotate JWT refresh tokens")
def refresh_token(payload: RefreshRequest) -> TokenResponse:
    settings = get_settings()
    claims = _decode(payload.refresh_token, settings)
    if claims.type != "refresh":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid token type")

    tokens, refresh_id, refresh_expires_at = _token_pair(claims.sub, claims.role, settings)
    if not refresh_token_store.rotate(claims.sub, claims.jti, refresh_id, refresh_expires_at):
        LOGGER.warning("revoked refresh token presented", extra={"token_id": claims.jti})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Refresh token revoked")
    return tokens


@router.get("/me", summary="Describe the authenticated member")
def whoami(user: AuthenticatedUser = Depends(get_current_user)) -> dict[str, str]:
    return {"subject": user.email, "role": user.role}


__all__ = [
    "AuthenticatedUser",
    "RoleName",
    "get_current_user",
    "refresh_token_store",
    "require_role",
    "router",
]
