"""
Credential helpers: password hashing and session tokens.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from werkzeug.security import check_password_hash, generate_password_hash

JWT_ALGORITHM = "HS256"


def hash_password(password: str) -> str:
  return generate_password_hash(password)


def verify_password(password_hash: str, password: str) -> bool:
  if not password_hash:
    return False
  return check_password_hash(password_hash, password)


def generate_jwt(
  user_id: str,
  email: str,
  *,
  secret: str,
  expires_minutes: int = 60,
  name: Optional[str] = None,
) -> str:
  """Return a signed JWT for the provided principal."""
  issued_at = datetime.now(timezone.utc)
  payload: Dict[str, Any] = {
    "sub": user_id,
    "id": user_id,
    "email": email,
    "exp": issued_at + timedelta(minutes=expires_minutes),
    "iat": issued_at,
  }
  if name:
    payload["name"] = name
  return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def decode_jwt(token: str, *, secret: str) -> Dict[str, Any]:
  """Decode a JWT and return its payload."""
  return jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
  """Drop credential material before a user record leaves the API."""
  return {key: value for key, value in user.items() if key not in {"password_hash", "password"}}


__all__ = [
  "JWT_ALGORITHM",
  "decode_jwt",
  "generate_jwt",
  "hash_password",
  "public_user",
  "verify_password",
]
