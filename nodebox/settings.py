"""Runtime settings for the node control service, read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

API_VERSION = "v1"
SERVICE_VERSION = "0.1.0"

DEFAULT_DATA_DIR = Path("/home/bitcoin")
DEFAULT_SERVICES = ("bitcoind", "lnd", "electrs", "nodebox-api", "nodebox-ui")


def _parse_optional_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_port(value: Optional[str], default: int) -> int:
    parsed = _parse_optional_int(value)
    return parsed if parsed and 0 < parsed < 65536 else default


def _parse_seconds(value: Optional[str], default: float) -> float:
    try:
        parsed = float(value) if value is not None else default
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _parse_flag(value: Optional[str]) -> bool:
    return (value or "").lower() in ("1", "true", "yes", "on")


def _parse_names(value: Optional[str], default: Tuple[str, ...]) -> Tuple[str, ...]:
    if value is None:
        return default
    return tuple(dict.fromkeys(part.strip() for part in value.split(",") if part.strip()))


@dataclass(frozen=True)
class Settings:
    host: str = "0.0.0.0"
    port: int = 3000
    data_dir: Path = DEFAULT_DATA_DIR
    bitcoin_conf: Path = DEFAULT_DATA_DIR / ".bitcoin" / "bitcoin.conf"
    bitcoin_service: str = "bitcoind"
    wpa_supplicant_conf: Path = Path("/etc/wpa_supplicant/wpa_supplicant.conf")
    wifi_country: str = "US"
    wifi_interface: str = "wlan0"
    rpc_host: str = "127.0.0.1"
    rpc_port: int = 8332
    services: Tuple[str, ...] = DEFAULT_SERVICES
    disk_path: str = "/"
    syslog_path: str = "/var/log/syslog"
    probe_timeout: float = 5.0
    command_timeout: float = 30.0
    use_sudo: bool = False
    default_relays: Tuple[str, ...] = field(
        default=("wss://relay.nostr.band", "wss://nostr-pub.wellorder.net")
    )

    @property
    def rpc_credentials_path(self) -> Path:
        return self.data_dir / "rpc-credentials.txt"

    @property
    def advanced_settings_path(self) -> Path:
        return self.data_dir / "settings.json"

    @property
    def nostr_identity_path(self) -> Path:
        return self.data_dir / "nostr-identity.json"

    @property
    def nostr_relays_path(self) -> Path:
        return self.data_dir / "nostr-relays.json"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    data_dir = Path(env.get("NODEBOX_DATA_DIR", str(DEFAULT_DATA_DIR)))
    return Settings(
        host=env.get("NODEBOX_HOST", "0.0.0.0"),
        port=_parse_port(env.get("PORT"), 3000),
        data_dir=data_dir,
        bitcoin_conf=Path(env.get("BITCOIN_CONF", str(data_dir / ".bitcoin" / "bitcoin.conf"))),
        bitcoin_service=env.get("BITCOIN_SERVICE", "bitcoind"),
        wpa_supplicant_conf=Path(
            env.get("WPA_SUPPLICANT_CONF", "/etc/wpa_supplicant/wpa_supplicant.conf")
        ),
        wifi_country=env.get("WIFI_COUNTRY", "US"),
        wifi_interface=env.get("WIFI_INTERFACE", "wlan0"),
        rpc_host=env.get("BITCOIN_RPC_HOST", "127.0.0.1"),
        rpc_port=_parse_port(env.get("BITCOIN_RPC_PORT"), 8332),
        services=_parse_names(env.get("NODEBOX_SERVICES"), DEFAULT_SERVICES),
        disk_path=env.get("NODEBOX_DISK_PATH", "/"),
        syslog_path=env.get("NODEBOX_SYSLOG", "/var/log/syslog"),
        probe_timeout=_parse_seconds(env.get("NODEBOX_PROBE_TIMEOUT"), 5.0),
        command_timeout=_parse_seconds(env.get("NODEBOX_COMMAND_TIMEOUT"), 30.0),
        use_sudo=_parse_flag(env.get("NODEBOX_USE_SUDO")),
    )
