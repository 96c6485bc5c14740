#!/usr/bin/env python3
"""ASGI service exposing configuration and status endpoints for the node appliance.

Example exchange for `POST /api/config/bitcoin`:
    request:  {"maxconnections": "40", "dbcache": "450"}
    response: {"success": true, "saved": true, "restarted": true,
               "config": {"maxconnections": "40", "dbcache": "450"}}

A rejected batch leaves bitcoin.conf untouched:
    request:  {"rpcpassword": "x"}
    response: 400 {"success": false, "error": "rpcpassword: not allowed", "key": "rpcpassword"}
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

try:
    import uvicorn
except ImportError as exc:  # pragma: no cover - runtime dependency hint
    raise SystemExit("uvicorn must be installed. Run `pip install -e .`.") from exc

from nodebox.commands import TAIL_LOG, CommandRunner
from nodebox.config_store import read_json, write_json
from nodebox.control import NodeControl
from nodebox.errors import ConfigValidationError, ExternalCommandError, RpcError
from nodebox.probes import Probe, ProbeAggregator
from nodebox.rpc import BitcoinRpc
from nodebox.settings import API_VERSION, SERVICE_VERSION, Settings, load_settings
from nodebox.status import collect_system_info, system_healthy

logger = logging.getLogger(__name__)

RPC_ROUTES: Dict[str, str] = {
    "status": "getblockchaininfo",
    "blockchain-info": "getblockchaininfo",
    "network-info": "getnetworkinfo",
    "mempool-info": "getmempoolinfo",
    "mining-info": "getmininginfo",
    "peer-info": "getpeerinfo",
    "wallet-info": "getwalletinfo",
}


class WifiPayload(BaseModel):
    ssid: str
    psk: str


class RelayPayload(BaseModel):
    url: str


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _valid_relay_url(url: str) -> bool:
    if not url.startswith(("wss://", "ws://")) or len(url) > 512:
        return False
    return all(0x20 < ord(char) < 0x7F for char in url)


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message, **extra})


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ConfigValidationError)
    async def _config_rejected(request: Request, exc: ConfigValidationError) -> JSONResponse:
        logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
        return _error(400, str(exc), key=exc.key)

    @app.exception_handler(ExternalCommandError)
    async def _command_failed(request: Request, exc: ExternalCommandError) -> JSONResponse:
        return _error(500, str(exc), saved=exc.saved)

    @app.exception_handler(RpcError)
    async def _rpc_failed(request: Request, exc: RpcError) -> JSONResponse:
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.exception_handler(OSError)
    async def _io_failed(request: Request, exc: OSError) -> JSONResponse:
        logger.error("I/O failure on %s %s: %s", request.method, request.url.path, exc)
        return _error(500, f"Could not write configuration: {exc.strerror or exc}")

    @app.exception_handler(RequestValidationError)
    async def _bad_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = [
            f"{'.'.join(str(part) for part in error.get('loc', ()) if part != 'body') or 'body'}: {error.get('msg')}"
            for error in exc.errors()
        ]
        return _error(400, "Invalid request body: " + "; ".join(problems))


def create_app(
    settings: Optional[Settings] = None,
    runner: Optional[CommandRunner] = None,
    rpc: Optional[BitcoinRpc] = None,
    aggregator: Optional[ProbeAggregator] = None,
) -> FastAPI:
    settings = settings or load_settings()
    runner = runner or CommandRunner(default_timeout=settings.command_timeout, use_sudo=settings.use_sudo)
    rpc = rpc or BitcoinRpc(
        settings.rpc_host,
        settings.rpc_port,
        settings.rpc_credentials_path,
        timeout=settings.probe_timeout,
    )
    aggregator = aggregator or ProbeAggregator()
    control = NodeControl(settings, runner)
    started_at = _now_iso()

    app = FastAPI(title="Nodebox Control API", version=SERVICE_VERSION)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.control = control
    _install_error_handlers(app)

    def _load_relays() -> List[str]:
        relays = read_json(settings.nostr_relays_path, list(settings.default_relays))
        if not isinstance(relays, list):
            return list(settings.default_relays)
        return [relay for relay in relays if isinstance(relay, str)]

    @app.get("/healthz")
    def healthz() -> Dict[str, str]:
        return {"status": "ok", "started_at": started_at}

    # --------- Configuration ---------

    @app.post("/api/config/wifi")
    async def configure_wifi(payload: WifiPayload) -> Dict[str, Any]:
        result = await control.apply_wifi(payload.ssid, payload.psk)
        return result.as_dict()

    @app.get("/api/config/bitcoin")
    def bitcoin_config() -> Dict[str, Any]:
        return {"config": control.bitcoin_store().allowed_values()}

    @app.post("/api/config/bitcoin")
    async def configure_bitcoin(updates: Dict[str, Any] = Body(...)) -> Any:
        if not updates:
            return _error(400, "No configuration keys supplied")
        result = await control.apply_bitcoin_config(updates)
        body = result.as_dict()
        body["config"] = result.config
        return body

    # --------- Node RPC pass-through ---------

    def _rpc_route(method: str) -> Callable[[], Awaitable[Any]]:
        async def handler() -> Any:
            return await rpc.call(method)

        handler.__name__ = f"bitcoin_{method}"
        return handler

    for path, method in RPC_ROUTES.items():
        app.add_api_route(f"/api/bitcoin/{path}", _rpc_route(method), methods=["GET"])

    # --------- Settings/Advanced ---------

    @app.get("/api/settings/advanced")
    def advanced_settings() -> Dict[str, Any]:
        stored = read_json(settings.advanced_settings_path, {})
        return stored if isinstance(stored, dict) else {}

    @app.post("/api/settings/advanced")
    def update_advanced_settings(changes: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
        stored = read_json(settings.advanced_settings_path, {})
        merged = {**(stored if isinstance(stored, dict) else {}), **changes}
        write_json(settings.advanced_settings_path, merged)
        return {"success": True, "settings": merged}

    @app.get("/api/settings/validation")
    def validate_settings() -> Dict[str, Any]:
        issues = control.bitcoin_store().audit()
        return {"valid": not issues, "issues": issues}

    # --------- Nostr ---------

    @app.get("/api/nostr/identity")
    def nostr_identity() -> Dict[str, Any]:
        identity = read_json(settings.nostr_identity_path, None)
        if not isinstance(identity, dict) or not identity.get("pubkey"):
            return {"pubkey": None, "privkey": None, "status": "no identity yet"}
        return {"pubkey": identity["pubkey"], "privkey": bool(identity.get("privkey")), "status": "ok"}

    @app.get("/api/nostr/relays")
    def nostr_relays() -> Dict[str, Any]:
        return {"relays": _load_relays()}

    @app.post("/api/nostr/relays/add")
    def add_nostr_relay(payload: RelayPayload) -> Any:
        url = payload.url.strip()
        if not _valid_relay_url(url):
            return _error(400, "Relay URL must start with ws:// or wss://")
        relays = _load_relays()
        if url in relays:
            return {"success": False, "relays": relays}
        relays.append(url)
        write_json(settings.nostr_relays_path, relays)
        return {"success": True, "relays": relays}

    @app.delete("/api/nostr/relays/{relay:path}")
    def remove_nostr_relay(relay: str) -> Dict[str, Any]:
        relays = [url for url in _load_relays() if url != relay]
        write_json(settings.nostr_relays_path, relays)
        return {"success": True, "relays": relays}

    # --------- System ---------

    @app.get("/api/system/info")
    async def system_info() -> Dict[str, Any]:
        return await collect_system_info(
            aggregator,
            runner,
            rpc,
            settings.services,
            settings.disk_path,
            settings.probe_timeout,
        )

    @app.get("/api/system/version")
    def system_version() -> Dict[str, str]:
        return {"version": SERVICE_VERSION, "api": API_VERSION}

    @app.get("/api/system/logs")
    async def system_logs() -> PlainTextResponse:
        result = await runner.run(TAIL_LOG, [settings.syslog_path], timeout=settings.command_timeout)
        return PlainTextResponse(result.check())

    # --------- Health ---------

    async def _bitcoin_healthy() -> bool:
        return bool(await rpc.get_blockchain_info())

    async def _nostr_healthy() -> bool:
        return bool(_load_relays())

    async def _system_healthy() -> bool:
        return await system_healthy(runner, settings.disk_path, settings.probe_timeout)

    @app.get("/api/health/detailed")
    async def health_detailed() -> Dict[str, Any]:
        report = await aggregator.collect(
            [
                Probe("bitcoin", _bitcoin_healthy, timeout=settings.probe_timeout, default=False),
                Probe("nostr", _nostr_healthy, timeout=settings.probe_timeout, default=False),
                Probe("system", _system_healthy, timeout=settings.probe_timeout, default=False),
            ]
        )
        return {**report.values, "errors": report.errors}

    @app.get("/api/health/bitcoin")
    async def health_bitcoin() -> Any:
        try:
            healthy = await _bitcoin_healthy()
        except RpcError as exc:
            return JSONResponse(status_code=500, content={"healthy": False, "error": str(exc)})
        return {"healthy": healthy}

    @app.get("/api/health/nostr")
    def health_nostr() -> Dict[str, Any]:
        relays = _load_relays()
        return {"healthy": bool(relays), "relays": relays}

    return app


app = create_app()


def parse_args(settings: Settings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload (for development).",
    )
    return parser.parse_args()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = parse_args(app.state.settings)
    uvicorn.run(
        "nodebox.service:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":  # pragma: no cover - manual entrypoint
    main()
