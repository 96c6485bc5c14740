"""Configuration workflows: validate, write, then restart the affected service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping

from nodebox.commands import SYSTEMCTL_RESTART, WPA_CLI, WPA_PASSPHRASE, CommandRunner
from nodebox.config_store import ConfigStore, write_private_text
from nodebox.errors import ExternalCommandError
from nodebox.settings import Settings
from nodebox.validators import BITCOIN_CONFIG_KEYS, DOMAIN_BITCOIN, validate_wifi

logger = logging.getLogger(__name__)

SUPPLICANT_HEADER = (
    "ctrl_interface=DIR=/var/run/wpa_supplicant GROUP=netdev\n"
    "update_config=1\n"
    "country={country}\n"
    "\n"
)


@dataclass
class ApplyResult:
    saved: bool
    restarted: bool
    config: Dict[str, str]

    def as_dict(self) -> Dict[str, Any]:
        return {"success": True, "saved": self.saved, "restarted": self.restarted}


def strip_plaintext_psk(network_block: str) -> str:
    """Drop the ``#psk="..."`` comment ``wpa_passphrase`` prints next to the derived key."""

    lines = network_block.splitlines(keepends=True)
    return "".join(line for line in lines if not line.strip().startswith("#psk="))


def render_supplicant_config(network_block: str, country: str) -> str:
    block = network_block if network_block.endswith("\n") else network_block + "\n"
    return SUPPLICANT_HEADER.format(country=country) + block


class NodeControl:
    def __init__(self, settings: Settings, runner: CommandRunner) -> None:
        self.settings = settings
        self.runner = runner

    def bitcoin_store(self) -> ConfigStore:
        return ConfigStore(self.settings.bitcoin_conf, BITCOIN_CONFIG_KEYS, DOMAIN_BITCOIN)

    async def _restart_service(self, unit: str) -> None:
        result = await self.runner.run(SYSTEMCTL_RESTART, [unit], timeout=self.settings.command_timeout)
        result.check()

    async def apply_wifi(self, ssid: Any, psk: Any) -> ApplyResult:
        credentials = validate_wifi(ssid, psk)
        result = await self.runner.run(
            WPA_PASSPHRASE,
            [credentials["ssid"], credentials["psk"]],
            timeout=self.settings.command_timeout,
            redact=[credentials["psk"]],
        )
        network_block = strip_plaintext_psk(result.check())
        path = Path(self.settings.wpa_supplicant_conf)
        write_private_text(path, render_supplicant_config(network_block, self.settings.wifi_country))
        logger.info("Wrote WiFi configuration for SSID %r to %s", credentials["ssid"], path)

        reconfigure = await self.runner.run(
            WPA_CLI,
            [self.settings.wifi_interface, "reconfigure"],
            timeout=self.settings.command_timeout,
        )
        try:
            reconfigure.check()
        except ExternalCommandError as exc:
            exc.saved = True
            logger.error("WiFi configuration saved but reconfigure failed: %s", exc)
            raise
        return ApplyResult(saved=True, restarted=True, config={"ssid": credentials["ssid"]})

    async def apply_bitcoin_config(self, updates: Mapping[str, Any]) -> ApplyResult:
        config = self.bitcoin_store().apply_update(updates)
        try:
            await self._restart_service(self.settings.bitcoin_service)
        except ExternalCommandError as exc:
            exc.saved = True
            logger.error("Node configuration saved but restart failed: %s", exc)
            raise
        logger.info("Restarted %s after configuration change", self.settings.bitcoin_service)
        allowed = {key: config[key] for key in BITCOIN_CONFIG_KEYS if key in config}
        return ApplyResult(saved=True, restarted=True, config=allowed)
