"""Per-request access policy.

Rules are evaluated in a fixed order on every request; nothing about role,
ban status or 2FA state is cached between requests.

1. excluded paths pass untouched (static assets, the challenge page itself)
2. blocked accounts go to the blocked page
3. sessions that still owe a second factor go to the challenge page, except
   same-origin form posts to the pages that turn 2FA on
4. admin paths need an admin session
5. protected paths need a session
6. guest-only paths bounce signed-in sessions home
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping
from urllib.parse import urlsplit

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError

from trustgate import trusted_devices
from trustgate.context import RequestContext, load_request_context
from trustgate.db import SessionLocal

logger = logging.getLogger(__name__)

CHALLENGE_PATH = "/2fa"
BLOCKED_PATH = "/blocked"
LOGIN_PATH = "/login"
HOME_PATH = "/"

EXCLUDED_PREFIXES: tuple[str, ...] = (
  "/_next/",
  "/static/",
  "/favicon.ico",
  "/health",
  "/version",
  "/docs",
  "/redoc",
  "/openapi.json",
  CHALLENGE_PATH,
  "/debug-2fa",
  BLOCKED_PATH,
  "/api/auth/login",
  "/api/auth/logout",
  "/api/auth/oauth/",
  "/api/auth/callback/",
  "/api/auth/magic-link",
  "/api/auth/2fa/check",
  "/api/auth/2fa/status",
  "/api/auth/2fa/verify",
  "/api/auth/2fa/clear-oauth",
)
ADMIN_PREFIXES: tuple[str, ...] = ("/admin", "/api/admin", "/api/debug")
PROTECTED_PREFIXES: tuple[str, ...] = ("/profile", "/settings", "/change-password")
GUEST_ONLY_PREFIXES: tuple[str, ...] = ("/login", "/register", "/magic-link")

# Pages that run while 2FA is being switched on.
SETUP_ALLOWED_PATHS: frozenset[str] = frozenset({"/settings"})
FORM_CONTENT_TYPES: tuple[str, ...] = ("application/x-www-form-urlencoded", "multipart/form-data", "text/plain")


@dataclass(frozen=True)
class GateDecision:
  redirect_to: str | None
  reason: str

  @property
  def allowed(self) -> bool:
    return self.redirect_to is None


def _matches(path: str, prefixes: tuple[str, ...]) -> bool:
  for p in prefixes:
    if p.endswith("/"):
      if path.startswith(p):
        return True
    elif path == p or path.startswith(p + "/"):
      return True
  return False


def is_excluded(path: str) -> bool:
  return _matches(path, EXCLUDED_PREFIXES)


def _same_origin(headers: Mapping[str, str]) -> bool:
  host = (headers.get("host") or "").lower()
  origin = headers.get("origin")
  if origin:
    return bool(host) and urlsplit(origin).netloc.lower() == host
  return (headers.get("sec-fetch-site") or "").lower() == "same-origin"


def is_setup_submission(path: str, method: str, headers: Mapping[str, str]) -> bool:
  if method.upper() != "POST" or path.rstrip("/") not in SETUP_ALLOWED_PATHS:
    return False
  content_type = (headers.get("content-type") or "").split(";")[0].strip().lower()
  if content_type not in FORM_CONTENT_TYPES:
    return False
  return _same_origin(headers)


def decide(ctx: RequestContext, path: str, method: str, headers: Mapping[str, str]) -> GateDecision:
  if is_excluded(path):
    return GateDecision(None, "excluded")

  if ctx.authenticated and ctx.blocked:
    return GateDecision(BLOCKED_PATH, "blocked")

  if ctx.requires_challenge:
    if is_setup_submission(path, method, headers):
      return GateDecision(None, "setup_submission")
    return GateDecision(CHALLENGE_PATH, "second_factor_required")

  if _matches(path, ADMIN_PREFIXES):
    if not ctx.authenticated:
      return GateDecision(LOGIN_PATH, "admin_unauthenticated")
    if not ctx.is_admin:
      return GateDecision(HOME_PATH, "admin_forbidden")

  if _matches(path, PROTECTED_PREFIXES) and not ctx.authenticated:
    return GateDecision(LOGIN_PATH, "unauthenticated")

  if _matches(path, GUEST_ONLY_PREFIXES) and ctx.authenticated:
    return GateDecision(HOME_PATH, "already_authenticated")

  return GateDecision(None, "allowed")


async def two_factor_gate(request: Request, call_next):
  path = request.url.path
  if is_excluded(path):
    return await call_next(request)

  # Exception handlers registered on the app do not cover middleware.
  try:
    async with SessionLocal() as db:
      ctx = await load_request_context(request, db)
      decision = decide(ctx, path, request.method, request.headers)
      if decision.allowed and ctx.authenticated and ctx.resolution.trusted_device is not None:
        await trusted_devices.touch(db, ctx.resolution.trusted_device)
        await db.commit()
  except SQLAlchemyError:
    logger.exception("gate could not load request context for %s %s", request.method, path)
    return JSONResponse(status_code=500, content={"error": "Failed to process request"})

  if decision.allowed:
    return await call_next(request)
  if decision.reason in ("blocked", "second_factor_required"):
    logger.info("gate redirect %s -> %s (%s) user=%s", path, decision.redirect_to, decision.reason, ctx.user.id if ctx.user else None)
  return RedirectResponse(url=decision.redirect_to or HOME_PATH, status_code=307)
