from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from trustgate.config import settings


class OAuthError(RuntimeError):
  pass


@dataclass(frozen=True)
class ProviderConfig:
  name: str
  authorize_url: str
  token_url: str
  userinfo_url: str
  scope: str


@dataclass(frozen=True)
class OAuthIdentity:
  provider: str
  account_id: str
  email: str
  name: str
  email_verified: bool


PROVIDERS: dict[str, ProviderConfig] = {
  "google": ProviderConfig(
    name="google",
    authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
    token_url="https://oauth2.googleapis.com/token",
    userinfo_url="https://openidconnect.googleapis.com/v1/userinfo",
    scope="openid email profile",
  ),
  "github": ProviderConfig(
    name="github",
    authorize_url="https://github.com/login/oauth/authorize",
    token_url="https://github.com/login/oauth/access_token",
    userinfo_url="https://api.github.com/user",
    scope="read:user user:email",
  ),
  "discord": ProviderConfig(
    name="discord",
    authorize_url="https://discord.com/oauth2/authorize",
    token_url="https://discord.com/api/oauth2/token",
    userinfo_url="https://discord.com/api/users/@me",
    scope="identify email",
  ),
}


def _credentials(provider: str) -> tuple[str, str]:
  client_id = getattr(settings, f"{provider}_client_id", None) or ""
  client_secret = getattr(settings, f"{provider}_client_secret", None) or ""
  if not client_id or not client_secret:
    raise OAuthError(f"OAuth provider {provider} is not configured")
  return client_id, client_secret


def callback_url(provider: str) -> str:
  return f"{settings.base_url.rstrip('/')}/api/auth/callback/{provider}"


class OAuthClient:
  """Authorization-code flow against the configured providers."""

  def __init__(self, *, timeout: float = 20) -> None:
    self.timeout = timeout

  def provider(self, name: str) -> ProviderConfig:
    p = PROVIDERS.get((name or "").strip().lower())
    if p is None:
      raise OAuthError(f"Unknown OAuth provider: {name}")
    return p

  def authorize_url(self, provider: str, *, state: str) -> str:
    p = self.provider(provider)
    client_id, _ = _credentials(p.name)
    query = {
      "client_id": client_id,
      "redirect_uri": callback_url(p.name),
      "response_type": "code",
      "scope": p.scope,
      "state": state,
    }
    return f"{p.authorize_url}?{urlencode(query)}"

  async def fetch_identity(self, provider: str, *, code: str) -> OAuthIdentity:
    p = self.provider(provider)
    client_id, client_secret = _credentials(p.name)
    async with httpx.AsyncClient(timeout=self.timeout, headers={"Accept": "application/json", "User-Agent": "Trustgate/1.0"}) as client:
      tres = await client.post(
        p.token_url,
        data={
          "client_id": client_id,
          "client_secret": client_secret,
          "code": code,
          "grant_type": "authorization_code",
          "redirect_uri": callback_url(p.name),
        },
      )
      tres.raise_for_status()
      access_token = str((tres.json() or {}).get("access_token") or "")
      if not access_token:
        raise OAuthError(f"{p.name} did not return an access token")
      auth = {"Authorization": f"Bearer {access_token}"}

      ures = await client.get(p.userinfo_url, headers=auth)
      ures.raise_for_status()
      data: dict[str, Any] = ures.json() or {}

      if p.name == "github" and not data.get("email"):
        eres = await client.get("https://api.github.com/user/emails", headers=auth)
        eres.raise_for_status()
        for e in eres.json() or []:
          if e.get("primary") and e.get("verified"):
            data["email"] = e.get("email")
            data["email_verified"] = True
            break

    return _identity_from(p.name, data)


def _identity_from(provider: str, data: dict[str, Any]) -> OAuthIdentity:
  if provider == "google":
    account_id = str(data.get("sub") or "")
    name = str(data.get("name") or "")
    verified = bool(data.get("email_verified"))
  elif provider == "github":
    account_id = str(data.get("id") or "")
    name = str(data.get("name") or data.get("login") or "")
    verified = bool(data.get("email_verified", True))
  else:
    account_id = str(data.get("id") or "")
    name = str(data.get("global_name") or data.get("username") or "")
    verified = bool(data.get("verified"))
  email = str(data.get("email") or "").strip().lower()
  if not account_id or not email:
    raise OAuthError(f"{provider} identity is missing an id or email")
  return OAuthIdentity(provider=provider, account_id=account_id, email=email, name=name or email.split("@")[0], email_verified=verified)
