"""Argument-vector subprocess execution for privileged helpers and status probes.

Commands are fixed templates. Request values are appended as separate argv
entries and are never joined into a shell command line:

    await runner.run(WPA_PASSPHRASE, [ssid, psk], redact=[psk])
    -> execve("wpa_passphrase", ["wpa_passphrase", ssid, psk])
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Literal, Optional, Sequence

from nodebox.errors import ExternalCommandError

logger = logging.getLogger(__name__)

MAX_CAPTURE_BYTES = 64 * 1024
TERMINATE_GRACE_SECONDS = 2.0
DEFAULT_COMMAND_TIMEOUT = 30.0
REDACTED = "<redacted>"

CommandStatus = Literal["ok", "failed", "timed_out"]


@dataclass(frozen=True)
class CommandSpec:
    """Fixed argv prefix of an external command."""

    argv: Sequence[str]
    privileged: bool = False


WPA_PASSPHRASE = CommandSpec(("wpa_passphrase",))
WPA_CLI = CommandSpec(("wpa_cli", "-i"), privileged=True)
SYSTEMCTL_RESTART = CommandSpec(("systemctl", "restart", "--"), privileged=True)
SYSTEMCTL_IS_ACTIVE = CommandSpec(("systemctl", "is-active", "--"))
DISK_USAGE = CommandSpec(("df", "-B1", "--output=size,used,avail,pcent", "--"))
TAIL_LOG = CommandSpec(("tail", "-n", "100", "--"))


@dataclass
class CommandResult:
    command: str
    status: CommandStatus
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def timed_out(self) -> bool:
        return self.status == "timed_out"

    def check(self) -> str:
        """Return stdout, raising ``ExternalCommandError`` unless the command succeeded."""

        if not self.ok:
            raise ExternalCommandError(
                self.command,
                self.returncode,
                stderr=self.stderr,
                timed_out=self.timed_out,
            )
        return self.stdout


def command_to_string(argv: Sequence[str], redact: Iterable[str] = ()) -> str:
    secrets = {value for value in redact if value}
    return shlex.join(REDACTED if arg in secrets else arg for arg in argv)


def _check_argument(value: object) -> str:
    if not isinstance(value, str):
        raise TypeError(f"command arguments must be strings, got {type(value).__name__}")
    if "\x00" in value:
        raise ValueError("command arguments must not contain NUL bytes")
    return value


async def _read_bounded(stream: Optional[asyncio.StreamReader], limit: int) -> bytes:
    # Keep draining past the limit so the child never blocks on a full pipe.
    if stream is None:
        return b""
    captured = bytearray()
    truncated = False
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        room = limit - len(captured)
        if room > 0:
            captured.extend(chunk[:room])
        if len(chunk) > room:
            truncated = True
    if truncated:
        captured.extend(b"\n...[truncated]")
    return bytes(captured)


class CommandRunner:
    def __init__(
        self,
        default_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        use_sudo: bool = False,
        max_capture: int = MAX_CAPTURE_BYTES,
    ) -> None:
        self.default_timeout = default_timeout
        self.use_sudo = use_sudo
        self.max_capture = max_capture

    def build_argv(self, spec: CommandSpec, args: Sequence[str] = ()) -> List[str]:
        argv = [*spec.argv, *(_check_argument(arg) for arg in args)]
        if spec.privileged and self.use_sudo:
            argv = ["sudo", "-n", *argv]
        return argv

    def _environment(self) -> Dict[str, str]:
        env = os.environ.copy()
        env["LC_ALL"] = "C"
        return env

    async def _stop(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()

    async def run(
        self,
        spec: CommandSpec,
        args: Sequence[str] = (),
        timeout: Optional[float] = None,
        redact: Iterable[str] = (),
    ) -> CommandResult:
        argv = self.build_argv(spec, args)
        display = command_to_string(argv, redact)
        limit = self.default_timeout if timeout is None else timeout
        started = time.perf_counter()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._environment(),
            )
        except OSError as exc:
            logger.warning("Could not start %s: %s", display, exc)
            return CommandResult(display, "failed", None, stderr=str(exc), duration=time.perf_counter() - started)

        try:
            stdout, stderr, returncode = await asyncio.wait_for(
                asyncio.gather(
                    _read_bounded(process.stdout, self.max_capture),
                    _read_bounded(process.stderr, self.max_capture),
                    process.wait(),
                ),
                timeout=limit,
            )
        except asyncio.TimeoutError:
            await self._stop(process)
            duration = round(time.perf_counter() - started, 3)
            logger.warning("Command timed out after %.1fs: %s", limit, display)
            return CommandResult(display, "timed_out", process.returncode, duration=duration)
        finally:
            if process.returncode is None:
                # cancelled by a caller (e.g. a probe deadline); do not leak the child
                await self._stop(process)

        duration = time.perf_counter() - started
        result = CommandResult(
            display,
            "ok" if returncode == 0 else "failed",
            returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            duration=round(duration, 3),
        )
        if not result.ok:
            logger.info("Command exited with %s: %s", returncode, display)
        return result
