from __future__ import annotations

from fastapi import Response

from trustgate.config import settings
from trustgate.models import Session as DbSession, as_utc
from trustgate.security import (
  OAUTH_PENDING_COOKIE_NAME,
  OAUTH_PROVIDER_COOKIE_NAME,
  OAUTH_STATE_COOKIE_NAME,
  SESSION_COOKIE_NAME,
  VERIFIED_COOKIE_NAME,
  oauth_pending_value,
  verification_marker,
)


def _set(response: Response, key: str, value: str, *, max_age: int | None = None) -> None:
  response.set_cookie(
    key=key,
    value=value,
    httponly=True,
    secure=settings.cookie_secure,
    samesite="lax",
    domain=settings.cookie_domain or None,
    max_age=max_age,
    path="/",
  )


def _delete(response: Response, key: str) -> None:
  response.delete_cookie(
    key=key,
    path="/",
    domain=settings.cookie_domain or None,
    secure=settings.cookie_secure,
    httponly=True,
    samesite="lax",
  )


def set_session_cookie(response: Response, s: DbSession) -> None:
  max_age = int((as_utc(s.expires_at) - as_utc(s.created_at)).total_seconds())
  _set(response, SESSION_COOKIE_NAME, s.id, max_age=max(1, max_age))


def set_verified_marker(response: Response, session_id: str) -> None:
  # No max-age: the marker dies with the browser session.
  _set(response, VERIFIED_COOKIE_NAME, verification_marker(session_id))


def set_oauth_pending(response: Response, session_id: str, provider: str) -> None:
  ttl = int(settings.oauth_challenge_ttl_seconds)
  _set(response, OAUTH_PENDING_COOKIE_NAME, oauth_pending_value(session_id), max_age=ttl)
  _set(response, OAUTH_PROVIDER_COOKIE_NAME, provider, max_age=ttl)


def clear_oauth_pending(response: Response) -> None:
  _delete(response, OAUTH_PENDING_COOKIE_NAME)
  _delete(response, OAUTH_PROVIDER_COOKIE_NAME)


def set_oauth_state(response: Response, state: str) -> None:
  _set(response, OAUTH_STATE_COOKIE_NAME, state, max_age=int(settings.oauth_challenge_ttl_seconds))


def clear_oauth_state(response: Response) -> None:
  _delete(response, OAUTH_STATE_COOKIE_NAME)


def clear_two_factor_cookies(response: Response) -> None:
  _delete(response, VERIFIED_COOKIE_NAME)
  clear_oauth_pending(response)


def clear_auth_cookies(response: Response) -> None:
  _delete(response, SESSION_COOKIE_NAME)
  clear_two_factor_cookies(response)
