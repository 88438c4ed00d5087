from __future__ import annotations

from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate.models import AuditEvent

# Never persisted, even if a caller passes them along.
_REDACTED_KEYS = frozenset({"code", "backupCode", "backupCodes", "secret", "password", "token"})


async def write_audit(
  db: AsyncSession,
  *,
  event_type: str,
  entity_type: str,
  entity_id: str | None,
  actor_id: str | None = None,
  payload: dict[str, Any] | None = None,
) -> None:
  safe_payload = jsonable_encoder({k: v for k, v in (payload or {}).items() if k not in _REDACTED_KEYS})
  db.add(
    AuditEvent(
      actor_id=actor_id,
      event_type=event_type,
      entity_type=entity_type,
      entity_id=entity_id,
      payload=safe_payload,
    )
  )
