from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

import pytest
from fastapi.testclient import TestClient

from nodebox.commands import CommandResult, CommandRunner, CommandSpec, command_to_string
from nodebox.errors import RpcError
from nodebox.rpc import BitcoinRpc
from nodebox.service import create_app
from nodebox.settings import Settings

Responder = Callable[[List[str]], CommandResult]

DF_OUTPUT = "        1B-blocks          Used         Avail Use%\n1000000000000 420000000000 580000000000  42%\n"


def ok(stdout: str = "", argv: Sequence[str] = ()) -> CommandResult:
    return CommandResult(command_to_string(argv), "ok", 0, stdout=stdout)


def failed(returncode: Optional[int], stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult("fake", "failed", returncode, stdout=stdout, stderr=stderr)


def _systemctl(argv: List[str]) -> CommandResult:
    unit = argv[-1]
    if argv[1] == "restart":
        return ok()
    states = {"bitcoind": ("active", 0), "lnd": ("inactive", 3), "electrs": ("failed", 3)}
    state, code = states.get(unit, ("inactive", 3))
    return CommandResult("systemctl", "ok" if code == 0 else "failed", code, stdout=state + "\n")


def _wpa_passphrase(argv: List[str]) -> CommandResult:
    ssid, psk = argv[-2], argv[-1]
    return ok(f'network={{\n\tssid="{ssid}"\n\t#psk="{psk}"\n\tpsk=00ff00ff\n}}\n')


class FakeRunner(CommandRunner):
    """Records argv vectors instead of spawning processes."""

    def __init__(self, responders: Optional[Dict[str, Responder]] = None, delays: Optional[Dict[str, float]] = None) -> None:
        super().__init__(default_timeout=1.0)
        self.calls: List[List[str]] = []
        self.responders: Dict[str, Responder] = {
            "systemctl": _systemctl,
            "df": lambda argv: ok(DF_OUTPUT),
            "wpa_passphrase": _wpa_passphrase,
            "wpa_cli": lambda argv: ok("OK\n"),
            "tail": lambda argv: ok("Oct 19 10:00:00 node bitcoind[1]: UpdateTip\n"),
        }
        self.responders.update(responders or {})
        self.delays = delays or {}

    def commands(self, name: str) -> List[List[str]]:
        return [argv for argv in self.calls if argv[0] == name]

    async def run(
        self,
        spec: CommandSpec,
        args: Sequence[str] = (),
        timeout: Optional[float] = None,
        redact: Iterable[str] = (),
    ) -> CommandResult:
        argv = self.build_argv(spec, args)
        self.calls.append(argv)
        delay = self.delays.get(argv[0])
        if delay:
            await asyncio.sleep(delay)
        responder = self.responders.get(argv[0])
        if responder is None:
            return failed(None, stderr=f"{argv[0]}: not found")
        return responder(argv)


class FakeRpc(BitcoinRpc):
    def __init__(
        self,
        responses: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__("127.0.0.1", 8332, Path("/nonexistent/rpc-credentials.txt"))
        self.responses = responses or {
            "getblockchaininfo": {"chain": "main", "blocks": 860000, "headers": 860000, "verificationprogress": 0.9999},
            "getnetworkinfo": {"version": 270000, "connections": 10},
        }
        self.error = error
        self.delay = delay
        self.methods: List[str] = []

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        self.methods.append(method)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise RpcError(f"{method}: {self.error}")
        return self.responses.get(method, {})


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=tmp_path,
        bitcoin_conf=tmp_path / "bitcoin.conf",
        wpa_supplicant_conf=tmp_path / "wpa_supplicant.conf",
        services=("bitcoind", "lnd", "electrs"),
        syslog_path=str(tmp_path / "syslog"),
        probe_timeout=0.5,
        command_timeout=1.0,
    )


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def rpc() -> FakeRpc:
    return FakeRpc()


def make_client(settings: Settings, runner: CommandRunner, rpc: BitcoinRpc) -> TestClient:
    return TestClient(create_app(settings, runner=runner, rpc=rpc))


@pytest.fixture
def client(settings: Settings, runner: FakeRunner, rpc: FakeRpc) -> TestClient:
    return make_client(settings, runner, rpc)


def write_conf(path: Path, text: Union[str, bytes]) -> None:
    if isinstance(text, str):
        text = text.encode("utf-8")
    path.write_bytes(text)
