"""Rejection-based value policies for config files and command arguments.

Values are never escaped or rewritten. A value either satisfies the policy
of its domain and is used verbatim, or it is refused.
"""

from __future__ import annotations

import re
from typing import Dict, Optional, Tuple

from nodebox.errors import ConfigValidationError

DOMAIN_WIFI = "wifi"
DOMAIN_BITCOIN = "bitcoin"

BITCOIN_CONFIG_KEYS: Tuple[str, ...] = ("maxconnections", "dbcache", "prune", "maxuploadtarget")

SSID_MAX_LENGTH = 32
PSK_MIN_LENGTH = 8
PSK_MAX_LENGTH = 63

_PRINTABLE_ASCII = re.compile(r"[\x20-\x7e]*")
_BITCOIN_VALUE = re.compile(r"[A-Za-z0-9\-._]*")


def _check_ssid(value: str) -> Optional[str]:
    if not 1 <= len(value) <= SSID_MAX_LENGTH:
        return f"must be 1-{SSID_MAX_LENGTH} characters"
    if _PRINTABLE_ASCII.fullmatch(value) is None:
        return "must contain printable ASCII characters only"
    return None


def _check_psk(value: str) -> Optional[str]:
    if not PSK_MIN_LENGTH <= len(value) <= PSK_MAX_LENGTH:
        return f"must be {PSK_MIN_LENGTH}-{PSK_MAX_LENGTH} characters"
    if _PRINTABLE_ASCII.fullmatch(value) is None:
        return "must contain printable ASCII characters only"
    return None


def _check_bitcoin_value(value: str) -> Optional[str]:
    if _BITCOIN_VALUE.fullmatch(value) is None:
        return "may only contain letters, digits, '-', '.' and '_'"
    return None


_WIFI_CHECKS = {"ssid": _check_ssid, "psk": _check_psk}


def coerce_value(domain: str, value: object) -> Optional[str]:
    """Return the string form of ``value`` or ``None`` if it has no safe one."""

    if isinstance(value, str):
        return value
    if domain == DOMAIN_BITCOIN and isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def check_value(domain: str, key: str, value: object) -> Optional[str]:
    """Return the rejection reason for ``value``, or ``None`` when it is acceptable."""

    text = coerce_value(domain, value)
    if text is None:
        return "must be a string"
    if domain == DOMAIN_WIFI:
        check = _WIFI_CHECKS.get(key)
        if check is None:
            return "not allowed"
        return check(text)
    if domain == DOMAIN_BITCOIN:
        return _check_bitcoin_value(text)
    return f"unknown config domain '{domain}'"


def validate(domain: str, key: str, value: object) -> str:
    """Validate one value and return it as a string, raising on rejection."""

    reason = check_value(domain, key, value)
    if reason is not None:
        raise ConfigValidationError(key, reason)
    return coerce_value(domain, value)  # type: ignore[return-value]


def validate_wifi(ssid: object, psk: object) -> Dict[str, str]:
    return {
        "ssid": validate(DOMAIN_WIFI, "ssid", ssid),
        "psk": validate(DOMAIN_WIFI, "psk", psk),
    }
