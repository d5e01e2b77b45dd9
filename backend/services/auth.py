from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import time
from typing import Callable

from fastapi import Depends, Header, HTTPException, status
from sqlmodel import Session, select

from database import get_session
from models import User, UserRole

PBKDF2_ITERATIONS = 200_000
TOKEN_TTL_SECONDS = int(os.getenv("WARDFLOW_TOKEN_TTL_SECONDS", str(12 * 60 * 60)))
AUTH_SECRET = os.getenv("WARDFLOW_AUTH_SECRET", "wardflow-dev-secret-change-me")


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _b64url_decode(encoded: str) -> bytes:
    padding = "=" * ((4 - len(encoded) % 4) % 4)
    return base64.urlsafe_b64decode(encoded + padding)


def _sign(message: bytes) -> bytes:
    return hmac.new(AUTH_SECRET.encode(), message, hashlib.sha256).digest()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def hash_password(password: str) -> str:
    if not password:
        raise ValueError("Password cannot be empty")
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${_b64url_encode(salt)}${_b64url_encode(digest)}"


def verify_password(password: str, password_hash: str) -> bool:
    try:
        scheme, iter_raw, salt_raw, digest_raw = password_hash.split("$", 3)
        iterations = int(iter_raw)
        salt = _b64url_decode(salt_raw)
        expected = _b64url_decode(digest_raw)
    except ValueError:
        return False
    if scheme != "pbkdf2_sha256":
        return False

    actual = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, iterations)
    return hmac.compare_digest(actual, expected)


def create_access_token(user: User) -> str:
    if user.id is None:
        raise ValueError("User id is required to issue token")

    header = {"alg": "HS256", "typ": "JWT"}
    payload = {
        "sub": str(user.id),
        "role": user.role.value,
        "exp": int(time.time()) + TOKEN_TTL_SECONDS,
    }
    header_b64 = _b64url_encode(json.dumps(header, separators=(",", ":")).encode())
    payload_b64 = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode())
    signature_b64 = _b64url_encode(_sign(f"{header_b64}.{payload_b64}".encode()))
    return f"{header_b64}.{payload_b64}.{signature_b64}"


def decode_access_token(token: str) -> dict:
    try:
        header_b64, payload_b64, signature_b64 = token.split(".")
        provided_signature = _b64url_decode(signature_b64)
    except ValueError as exc:
        raise _unauthorized("Invalid token") from exc

    if not hmac.compare_digest(_sign(f"{header_b64}.{payload_b64}".encode()), provided_signature):
        raise _unauthorized("Invalid token signature")

    try:
        payload = json.loads(_b64url_decode(payload_b64).decode())
    except ValueError as exc:
        raise _unauthorized("Invalid token payload") from exc

    exp = payload.get("exp")
    if not isinstance(exp, int) or exp < int(time.time()):
        raise _unauthorized("Token expired")
    return payload


def get_current_user(
    authorization: str | None = Header(default=None),
    session: Session = Depends(get_session),
) -> User:
    if not authorization:
        raise _unauthorized("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise _unauthorized("Invalid auth scheme")

    payload = decode_access_token(token.strip())
    try:
        user_id = int(payload.get("sub") or "")
    except ValueError as exc:
        raise _unauthorized("Invalid token subject") from exc

    user = session.get(User, user_id)
    if not user or not user.is_active:
        raise _unauthorized("User inactive or missing")
    return user


def require_roles(*roles: UserRole) -> Callable:
    allowed = {role.value for role in roles}

    def _dependency(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role.value not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{current_user.role.value}' is not allowed",
            )
        return current_user

    return _dependency


def authenticate_user(email: str, password: str, session: Session) -> User | None:
    user = session.exec(select(User).where(User.email == email)).first()
    if not user or not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def user_payload(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.value,
        "department": user.department,
    }
