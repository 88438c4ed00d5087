from __future__ import annotations

import base64

from trustgate.devices import UNKNOWN_DEVICE, client_ip, derive_device_id, device_label, fingerprint

CHROME_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0 Safari/537.36"
EDGE_UA = CHROME_UA + " Edg/126.0"
SAFARI_UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.5 Safari/605.1.15"


def test_device_id_is_base64_of_agent_and_ip() -> None:
  device_id = derive_device_id("agent/1.0", "10.0.0.1")
  assert base64.b64decode(device_id).decode("utf-8") == "agent/1.0:10.0.0.1"
  assert derive_device_id("agent/1.0", "10.0.0.1") == device_id


def test_device_id_uses_placeholders_and_is_never_empty() -> None:
  assert base64.b64decode(derive_device_id(None, None)).decode("utf-8") == "unknown-agent:unknown-ip"
  assert base64.b64decode(derive_device_id("", "  ")).decode("utf-8") == "unknown-agent:unknown-ip"
  assert derive_device_id("agent", None) != derive_device_id("agent", "1.1.1.1")


def test_device_label_checks_specific_browsers_first() -> None:
  assert device_label(EDGE_UA) == "Edge Browser"
  assert device_label(CHROME_UA) == "Chrome Browser"
  assert device_label(SAFARI_UA) == "Safari Browser"
  assert device_label("Mozilla/5.0 (X11; rv:128.0) Gecko/20100101 Firefox/128.0") == "Firefox Browser"
  assert device_label(CHROME_UA + " OPR/110.0") == "Opera Browser"
  assert device_label("curl/8.0") == UNKNOWN_DEVICE
  assert device_label(None) == UNKNOWN_DEVICE


def test_client_ip_prefers_forwarded_headers() -> None:
  assert client_ip({"x-forwarded-for": "203.0.113.7, 10.0.0.2"}, "127.0.0.1") == "203.0.113.7"
  assert client_ip({"x-real-ip": "198.51.100.4"}, "127.0.0.1") == "198.51.100.4"
  assert client_ip({}, "127.0.0.1") == "127.0.0.1"
  assert client_ip({}, None) is None


def test_fingerprint_bundles_id_and_label() -> None:
  fp = fingerprint(CHROME_UA, "10.1.1.1")
  assert fp.device_id == derive_device_id(CHROME_UA, "10.1.1.1")
  assert fp.device_name == "Chrome Browser"
  assert fp.ip_address == "10.1.1.1"
