"""
Client helper for verifying Google Sign-In ID tokens.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import requests

logger = logging.getLogger(__name__)

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_ISSUERS = {"accounts.google.com", "https://accounts.google.com"}


class GoogleAuthError(RuntimeError):
  """Raised when a Google ID token cannot be verified."""


def verify_google_token(
  token: str,
  *,
  client_id: str,
  url: str = GOOGLE_TOKENINFO_URL,
  timeout: int = 10,
) -> Dict[str, Any]:
  """
  Ask Google to validate ``token`` and return its claims.

  Parameters
  ----------
  token:
      ID token issued to the browser by Google Sign-In.
  client_id:
      OAuth client id of this application; the token's audience must match.
  url:
      Token introspection endpoint.
  timeout:
      Request timeout in seconds.
  """
  if not client_id:
    raise GoogleAuthError("Google sign-in is not configured.")

  try:
    response = requests.get(url, params={"id_token": token}, timeout=timeout)
  except requests.RequestException as exc:
    raise GoogleAuthError(f"Google token verification failed: {exc}") from exc

  if not response.ok:
    raise GoogleAuthError(f"Google rejected the token ({response.status_code}).")

  try:
    claims = response.json()
  except ValueError as exc:
    raise GoogleAuthError("Google token verification did not return JSON.") from exc

  if claims.get("aud") != client_id:
    raise GoogleAuthError("Google token was issued for a different client.")
  if claims.get("iss") not in GOOGLE_ISSUERS:
    raise GoogleAuthError("Google token has an unexpected issuer.")
  if not claims.get("sub"):
    raise GoogleAuthError("Google token has no subject.")

  logger.debug("Verified Google token for subject %s", claims["sub"])
  return claims


__all__ = ["GoogleAuthError", "verify_google_token"]
