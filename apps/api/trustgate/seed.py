from __future__ import annotations

import asyncio
import os
import secrets
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import select

from trustgate.db import SessionLocal
from trustgate.models import User
from trustgate.security import hash_password


def _bootstrap_password(env_key: str) -> tuple[str, bool]:
  configured = (os.getenv(env_key) or "").strip()
  if configured:
    return configured, False
  return secrets.token_urlsafe(14), True


async def seed() -> None:
  async with SessionLocal() as db:
    boot_lines: list[str] = []
    accounts = [
      ("admin@trustgate.local", "Admin", "admin", "SEED_ADMIN_PASSWORD"),
      ("user@trustgate.local", "User", "user", "SEED_USER_PASSWORD"),
    ]
    for email, name, role, env_key in accounts:
      res = await db.execute(select(User).where(User.email == email))
      if res.scalar_one_or_none():
        continue
      password, generated = _bootstrap_password(env_key)
      db.add(User(email=email, name=name, role=role, password_hash=hash_password(password), email_verified=True))
      boot_lines.append(f"{email}={password} (generated={str(generated).lower()})")

    await db.commit()
    if boot_lines:
      out_dir = Path(os.getenv("BOOTSTRAP_CREDENTIALS_DIR", "data"))
      out_dir.mkdir(parents=True, exist_ok=True)
      out_file = out_dir / "bootstrap_credentials.txt"
      stamp = datetime.now(timezone.utc).isoformat()
      out_file.write_text(f"[{stamp}]\n" + "\n".join(boot_lines) + "\n", encoding="utf-8")
      print("Trustgate seed credentials created:")
      for ln in boot_lines:
        print(f"  {ln}")
      print(f"Saved to {out_file}")


def main() -> None:
  asyncio.run(seed())


if __name__ == "__main__":
  main()
