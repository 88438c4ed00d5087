from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete, select

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{Path(__file__).resolve().parent / 'trustgate_test.db'}")

from trustgate.config import settings
from trustgate.db import SessionLocal, engine
from trustgate.deps import get_mailer, get_oauth_client
from trustgate.main import app
from trustgate.models import (
  AuditEvent,
  Base,
  MagicLinkToken,
  OAuthAccount,
  Session,
  TrustedDevice,
  TwoFactorCredential,
  User,
)
from trustgate.notifications.mailer import LocalMailer
from trustgate.oauth.client import OAuthClient, OAuthIdentity
from trustgate.security import (
  backup_code_hash,
  encrypt_secret,
  hash_password,
  seal_backup_codes,
  totp_new_secret,
)

PASSWORD = "correct-horse-1"
BACKUP_CODES = ["AB12CD34", "EF56AB78", "0011AAFF"]


@pytest.fixture(scope="session")
def anyio_backend() -> str:
  return "asyncio"


async def _reset_db() -> None:
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.create_all)
  async with SessionLocal() as db:
    for model in (AuditEvent, MagicLinkToken, OAuthAccount, TrustedDevice, TwoFactorCredential, Session, User):
      await db.execute(delete(model))
    await db.commit()
  await engine.dispose()


@pytest.fixture
async def clean_db() -> None:
  db_name = settings.database_url.rsplit("/", 1)[-1]
  if "test" not in db_name:
    raise RuntimeError(
      "Refusing to run destructive tests against non-test DB. "
      "Set DATABASE_URL to a *_test database (e.g. trustgate_test)."
    )
  await _reset_db()
  yield
  app.dependency_overrides.clear()
  await _reset_db()


@pytest.fixture
async def db(clean_db):
  async with SessionLocal() as session:
    yield session


@pytest.fixture
def mailer() -> LocalMailer:
  m = LocalMailer()
  app.dependency_overrides[get_mailer] = lambda: m
  return m


class FakeOAuthClient(OAuthClient):
  """Skips the provider round trip and hands back a fixed identity."""

  def __init__(self, identity: OAuthIdentity) -> None:
    super().__init__()
    self.identity = identity

  def authorize_url(self, provider: str, *, state: str) -> str:
    return f"https://{self.provider(provider).name}.example/authorize?state={state}"

  async def fetch_identity(self, provider: str, *, code: str) -> OAuthIdentity:
    return self.identity


def use_oauth_identity(identity: OAuthIdentity) -> None:
  app.dependency_overrides[get_oauth_client] = lambda: FakeOAuthClient(identity)


@pytest.fixture
async def client(clean_db) -> AsyncClient:
  transport = ASGITransport(app=app)
  async with AsyncClient(transport=transport, base_url="http://test") as c:
    yield c


async def create_user(
  email: str,
  *,
  password: str | None = PASSWORD,
  role: str = "user",
  blocked: bool = False,
  two_factor: bool = False,
  with_credential: bool | None = None,
  backup_codes: list[str] | None = None,
) -> tuple[User, str | None]:
  """Insert a user, optionally with a 2FA credential. Returns (user, totp secret)."""
  secret = None
  async with SessionLocal() as db:
    u = User(
      email=email,
      name=email.split("@")[0],
      role=role,
      blocked=blocked,
      password_hash=hash_password(password) if password else None,
      email_verified=True,
      two_factor_enabled=two_factor,
    )
    db.add(u)
    await db.flush()
    if with_credential if with_credential is not None else two_factor:
      secret = totp_new_secret()
      codes = BACKUP_CODES if backup_codes is None else backup_codes
      db.add(
        TwoFactorCredential(
          user_id=u.id,
          secret_encrypted=encrypt_secret(secret),
          backup_codes_encrypted=seal_backup_codes([backup_code_hash(c) for c in codes]),
        )
      )
    await db.commit()
  return u, secret


async def login(client: AsyncClient, email: str, password: str = PASSWORD, **extra) -> dict:
  res = await client.post("/api/auth/login", json={"email": email, "password": password, **extra})
  assert res.status_code == 200, res.text
  assert client.cookies.get("tg_session")
  return res.json()


async def load_user(email: str) -> User:
  async with SessionLocal() as db:
    res = await db.execute(select(User).where(User.email == email))
    return res.scalar_one()


async def credential_for(user_id: str) -> TwoFactorCredential | None:
  async with SessionLocal() as db:
    res = await db.execute(select(TwoFactorCredential).where(TwoFactorCredential.user_id == user_id))
    return res.scalar_one_or_none()


async def trusted_rows(user_id: str) -> list[TrustedDevice]:
  async with SessionLocal() as db:
    res = await db.execute(select(TrustedDevice).where(TrustedDevice.user_id == user_id))
    return list(res.scalars().all())
