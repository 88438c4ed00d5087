from __future__ import annotations

import logging

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate.cookies import clear_oauth_state, set_oauth_state
from trustgate.deps import get_db, get_oauth_client
from trustgate.flows import oauth_sign_in
from trustgate.gate import HOME_PATH, LOGIN_PATH
from trustgate.oauth.client import OAuthClient, OAuthError
from trustgate.security import OAUTH_STATE_COOKIE_NAME, oauth_state_new, oauth_state_valid

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["oauth"])

OAUTH_FAILED_PATH = f"{LOGIN_PATH}?error=oauth_failed"


def _failed() -> RedirectResponse:
  response = RedirectResponse(url=OAUTH_FAILED_PATH, status_code=302)
  clear_oauth_state(response)
  return response


@router.get("/oauth/{provider}")
async def start(provider: str, client: OAuthClient = Depends(get_oauth_client)) -> RedirectResponse:
  try:
    name = client.provider(provider).name
    state = oauth_state_new(name)
    url = client.authorize_url(name, state=state)
  except OAuthError as exc:
    logger.warning("cannot start OAuth sign-in: %s", exc)
    return _failed()
  response = RedirectResponse(url=url, status_code=302)
  set_oauth_state(response, state)
  return response


@router.get("/callback/{provider}")
async def callback(
  provider: str,
  request: Request,
  code: str | None = None,
  state: str | None = None,
  error: str | None = None,
  client: OAuthClient = Depends(get_oauth_client),
  db: AsyncSession = Depends(get_db),
) -> RedirectResponse:
  name = (provider or "").strip().lower()
  expected = request.cookies.get(OAUTH_STATE_COOKIE_NAME)
  if error or not code or not state or state != expected or not oauth_state_valid(state, name):
    logger.warning("OAuth callback for %s rejected (error=%s, state ok=%s)", name, error, state == expected)
    return _failed()

  try:
    identity = await client.fetch_identity(name, code=code)
  except (OAuthError, httpx.HTTPError) as exc:
    logger.warning("OAuth exchange with %s failed: %s", name, exc)
    return _failed()

  response = RedirectResponse(url=HOME_PATH, status_code=302)
  try:
    target = await oauth_sign_in(db, request, response, identity)
  except OAuthError as exc:
    logger.warning("OAuth sign-in with %s refused: %s", name, exc)
    await db.rollback()
    return _failed()
  response.headers["location"] = target
  clear_oauth_state(response)
  return response
