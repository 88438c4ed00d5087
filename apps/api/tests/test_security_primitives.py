from __future__ import annotations

import time

import pytest

from trustgate.security import (
  TOTP_STEP_SECONDS,
  backup_code_hash,
  backup_code_normalize,
  backup_codes_generate,
  oauth_pending_valid,
  oauth_pending_value,
  oauth_state_new,
  oauth_state_valid,
  totp_code,
  totp_uri,
  totp_verify,
  verification_marker,
  verification_marker_valid,
)

SECRET = "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP"
# Middle of a step so +-k steps never straddle a boundary.
T0 = 1_700_000_010 - (1_700_000_010 % TOTP_STEP_SECONDS) + 15


@pytest.mark.parametrize("steps", [-2, -1, 0, 1, 2])
def test_totp_accepts_two_steps_either_side(steps: int) -> None:
  code = totp_code(SECRET, now=T0)
  assert totp_verify(SECRET, code, now=T0 + steps * TOTP_STEP_SECONDS)


@pytest.mark.parametrize("steps", [-4, -3, 3, 4])
def test_totp_rejects_outside_window(steps: int) -> None:
  code = totp_code(SECRET, now=T0)
  assert not totp_verify(SECRET, code, now=T0 + steps * TOTP_STEP_SECONDS)


def test_totp_rejects_malformed_codes() -> None:
  assert not totp_verify(SECRET, "", now=T0)
  assert not totp_verify(SECRET, "12345", now=T0)
  assert not totp_verify(SECRET, "1234567", now=T0)
  assert not totp_verify(SECRET, "abcdef", now=T0)


def test_totp_uri_carries_issuer_and_parameters() -> None:
  uri = totp_uri(SECRET, account="ada@example.com", issuer="Trustgate")
  assert uri.startswith("otpauth://totp/Trustgate%3Aada%40example.com?")
  assert f"secret={SECRET}" in uri
  assert "digits=6" in uri and "period=30" in uri


def test_backup_code_normalization_ignores_case_spaces_and_dashes() -> None:
  assert backup_code_normalize(" AB12-CD34 ") == "ab12cd34"
  assert backup_code_hash("ab12 cd34") == backup_code_hash("AB12-CD34")
  codes = backup_codes_generate(10)
  assert len(codes) == 10
  assert len(set(codes)) == 10
  assert all(len(c) == 8 and c == c.upper() for c in codes)


def test_marker_is_bound_to_its_session() -> None:
  marker = verification_marker("session-a")
  assert verification_marker_valid(marker, "session-a")
  assert not verification_marker_valid(marker, "session-b")
  assert not verification_marker_valid("true", "session-a")
  assert not verification_marker_valid(None, "session-a")
  assert not verification_marker_valid(marker, None)


def test_pending_oauth_value_expires_and_is_session_bound() -> None:
  now = int(time.time())
  value = oauth_pending_value("session-a", issued_at=now)
  assert oauth_pending_valid(value, "session-a", now=now + 10)
  assert not oauth_pending_valid(value, "session-b", now=now + 10)
  assert not oauth_pending_valid(value, "session-a", now=now + 601)
  assert not oauth_pending_valid("true", "session-a", now=now)
  issued, sig = value.split(".", 1)
  assert not oauth_pending_valid(f"{int(issued) + 300}.{sig}", "session-a", now=now + 300)


def test_oauth_state_is_signed_per_provider() -> None:
  state = oauth_state_new("github")
  assert oauth_state_valid(state, "github")
  assert not oauth_state_valid(state, "google")
  provider, nonce, _ = state.split(".", 2)
  assert not oauth_state_valid(f"{provider}.{nonce}.forged", "github")
