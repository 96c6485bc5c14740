"""Error types surfaced by the node control service."""

from __future__ import annotations

from typing import Optional


class NodeboxError(RuntimeError):
    status_code = 500


class ConfigValidationError(NodeboxError):
    """A submitted key or value failed the whitelist or format policy."""

    status_code = 400

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"{key}: {reason}")
        self.key = key
        self.reason = reason


class ExternalCommandError(NodeboxError):
    def __init__(
        self,
        command: str,
        returncode: Optional[int],
        stderr: str = "",
        timed_out: bool = False,
    ) -> None:
        if timed_out:
            message = f"Command timed out: {command}"
        elif returncode is None:
            message = f"Command could not be started: {command}"
        else:
            message = f"Command failed with exit code {returncode}: {command}"
        if stderr.strip():
            message = f"{message} ({stderr.strip()})"
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out
        # set when the config write already happened and only the follow-up step failed
        self.saved = False


class RpcError(NodeboxError):
    """The node RPC endpoint was unreachable or answered with an error."""
