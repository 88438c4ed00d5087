"""Device fingerprinting.

A device id is a coarse, non-cryptographic identifier: the base64 of the
user agent and client IP. It recognizes a returning browser; it does not
authenticate one. Decoding it is never part of any decision.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Mapping

from fastapi import Request

UNKNOWN_AGENT = "unknown-agent"
UNKNOWN_IP = "unknown-ip"
UNKNOWN_DEVICE = "Unknown Device"

# Order matters: Edge and Opera user agents also contain "Chrome", Chrome contains "Safari".
_BROWSER_TOKENS: tuple[tuple[str, str], ...] = (
  ("Edg/", "Edge Browser"),
  ("Edge/", "Edge Browser"),
  ("OPR/", "Opera Browser"),
  ("Firefox/", "Firefox Browser"),
  ("Chrome/", "Chrome Browser"),
  ("Safari/", "Safari Browser"),
)


@dataclass(frozen=True)
class DeviceFingerprint:
  device_id: str
  device_name: str
  user_agent: str
  ip_address: str | None


def derive_device_id(user_agent: str | None, ip_address: str | None) -> str:
  ua = (user_agent or "").strip() or UNKNOWN_AGENT
  ip = (ip_address or "").strip() or UNKNOWN_IP
  return base64.b64encode(f"{ua}:{ip}".encode("utf-8")).decode("ascii")


def device_label(user_agent: str | None) -> str:
  ua = user_agent or ""
  for token, label in _BROWSER_TOKENS:
    if token in ua:
      return label
  return UNKNOWN_DEVICE


def client_ip(headers: Mapping[str, str], fallback: str | None = None) -> str | None:
  forwarded = headers.get("x-forwarded-for")
  if forwarded:
    first = forwarded.split(",")[0].strip()
    if first:
      return first
  real_ip = (headers.get("x-real-ip") or "").strip()
  if real_ip:
    return real_ip
  return fallback


def fingerprint(user_agent: str | None, ip_address: str | None) -> DeviceFingerprint:
  ua = user_agent or ""
  return DeviceFingerprint(
    device_id=derive_device_id(ua, ip_address),
    device_name=device_label(ua),
    user_agent=ua,
    ip_address=ip_address,
  )


def fingerprint_from_request(request: Request) -> DeviceFingerprint:
  peer = request.client.host if request.client else None
  return fingerprint(request.headers.get("user-agent"), client_ip(request.headers, peer))
