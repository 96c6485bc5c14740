"""Probe builders and host statistics behind ``/api/system/info`` and the health routes."""

from __future__ import annotations

import asyncio
import socket
import time
from typing import Any, Dict, List, Sequence

import psutil

from nodebox.commands import DISK_USAGE, SYSTEMCTL_IS_ACTIVE, CommandResult, CommandRunner
from nodebox.errors import RpcError
from nodebox.probes import DEGRADED, Probe, ProbeAggregator, StatusReport
from nodebox.rpc import BitcoinRpc

SERVICE_PREFIX = "service:"
DISK_PROBE = "disk"
NODE_PROBE = "node"
HEALTH_LIMIT_PERCENT = 95

_INACTIVE_STATES = {"inactive", "activating", "deactivating", "reloading"}

DEGRADED_DISK: Dict[str, Any] = {"total": None, "used": None, "available": None, "usage": DEGRADED}


def service_state(result: CommandResult) -> str:
    """Map ``systemctl is-active`` output onto active/inactive/error/unknown.

    ``is-active`` exits non-zero for every state except ``active``, so the
    printed state is used whenever the command actually ran.
    """

    if result.timed_out:
        raise asyncio.TimeoutError()
    if result.returncode is None:
        result.check()
    lines = result.stdout.strip().splitlines()
    state = lines[0].strip() if lines else ""
    if state == "active":
        return "active"
    if state in _INACTIVE_STATES:
        return "inactive"
    if state == "failed":
        return "error"
    return DEGRADED


def parse_disk_usage(output: str) -> Dict[str, Any]:
    """Parse ``df -B1 --output=size,used,avail,pcent`` for a single path."""

    lines = [line for line in output.strip().splitlines() if line.strip()]
    if len(lines) < 2:
        raise ValueError("unexpected df output")
    parts = lines[-1].split()
    if len(parts) != 4:
        raise ValueError("unexpected df output")
    total, used, available, usage = parts
    return {"total": int(total), "used": int(used), "available": int(available), "usage": usage}


def service_probe(runner: CommandRunner, unit: str, timeout: float) -> Probe:
    async def operation() -> str:
        result = await runner.run(SYSTEMCTL_IS_ACTIVE, [unit], timeout=timeout)
        return service_state(result)

    return Probe(f"{SERVICE_PREFIX}{unit}", operation, timeout=timeout, default=DEGRADED)


def disk_probe(runner: CommandRunner, path: str, timeout: float) -> Probe:
    async def operation() -> Dict[str, Any]:
        result = await runner.run(DISK_USAGE, [path], timeout=timeout)
        if result.timed_out:
            raise asyncio.TimeoutError()
        return parse_disk_usage(result.check())

    return Probe(DISK_PROBE, operation, timeout=timeout, default=DEGRADED_DISK)


def node_probe(rpc: BitcoinRpc, timeout: float) -> Probe:
    async def operation() -> Dict[str, Any]:
        info = await rpc.get_blockchain_info()
        if not isinstance(info, dict):
            raise RpcError("getblockchaininfo: unexpected RPC response")
        return {
            "status": "active",
            "chain": info.get("chain"),
            "blocks": info.get("blocks"),
            "headers": info.get("headers"),
            "verificationprogress": info.get("verificationprogress"),
            "initialblockdownload": info.get("initialblockdownload"),
        }

    return Probe(NODE_PROBE, operation, timeout=timeout, default={"status": DEGRADED})


def host_stats() -> Dict[str, Any]:
    memory = psutil.virtual_memory()
    return {
        "cpu": psutil.cpu_count(),
        "mem": memory.available,
        "totalmem": memory.total,
        "load": [round(value, 2) for value in psutil.getloadavg()],
        "uptime": round(time.time() - psutil.boot_time(), 1),
        "hostname": socket.gethostname(),
    }


def disk_percent(disk: Dict[str, Any]) -> int:
    return int(str(disk["usage"]).rstrip("%"))


async def system_healthy(runner: CommandRunner, disk_path: str, timeout: float) -> bool:
    """Healthy while the data disk stays below ``HEALTH_LIMIT_PERCENT`` full."""

    result = await runner.run(DISK_USAGE, [disk_path], timeout=timeout)
    if result.timed_out:
        raise asyncio.TimeoutError()
    return disk_percent(parse_disk_usage(result.check())) < HEALTH_LIMIT_PERCENT


def system_probes(
    runner: CommandRunner,
    rpc: BitcoinRpc,
    services: Sequence[str],
    disk_path: str,
    timeout: float,
) -> List[Probe]:
    probes = [disk_probe(runner, disk_path, timeout)]
    probes.extend(service_probe(runner, unit, timeout) for unit in services)
    probes.append(node_probe(rpc, timeout))
    return probes


def system_info(report: StatusReport, services: Sequence[str]) -> Dict[str, Any]:
    values = report.values
    payload = host_stats()
    payload["disk"] = values[DISK_PROBE]
    payload["services"] = {unit: values[f"{SERVICE_PREFIX}{unit}"] for unit in services}
    payload["node"] = values[NODE_PROBE]
    payload["errors"] = report.errors
    return payload


async def collect_system_info(
    aggregator: ProbeAggregator,
    runner: CommandRunner,
    rpc: BitcoinRpc,
    services: Sequence[str],
    disk_path: str,
    timeout: float,
) -> Dict[str, Any]:
    report = await aggregator.collect(system_probes(runner, rpc, services, disk_path, timeout))
    return system_info(report, services)
