from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate.context import RequestContext, load_request_context
from trustgate.db import SessionLocal
from trustgate.models import User
from trustgate.notifications.mailer import Mailer, mailer_from_settings
from trustgate.oauth.client import OAuthClient


async def get_db() -> AsyncSession:
  async with SessionLocal() as session:
    yield session


async def get_request_context(request: Request, db: AsyncSession = Depends(get_db)) -> RequestContext:
  return await load_request_context(request, db)


async def get_session_context(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
  # Signed in, second factor not necessarily done yet.
  if not ctx.authenticated:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
  return ctx


async def get_current_user(ctx: RequestContext = Depends(get_session_context)) -> User:
  if ctx.blocked:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account blocked")
  if ctx.requires_challenge:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Two-factor verification required")
  return ctx.user


async def require_admin(user: User = Depends(get_current_user)) -> User:
  if user.role != "admin":
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin only")
  return user


def get_mailer() -> Mailer:
  return mailer_from_settings()


def get_oauth_client() -> OAuthClient:
  return OAuthClient()
