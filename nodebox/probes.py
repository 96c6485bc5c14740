"""Concurrent status probes merged into a single report.

Each probe runs under its own deadline. A probe that fails or times out
contributes its degraded default and an error note; it never fails the
report and never cancels its siblings.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 5.0
DEGRADED = "unknown"

ProbeState = Literal["succeeded", "failed", "timed_out"]


@dataclass(frozen=True)
class Probe:
    name: str
    operation: Callable[[], Awaitable[Any]]
    timeout: float = DEFAULT_PROBE_TIMEOUT
    default: Any = DEGRADED


@dataclass
class ProbeOutcome:
    name: str
    state: ProbeState
    value: Any
    error: Optional[str] = None
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state == "succeeded"


@dataclass
class StatusReport:
    outcomes: List[ProbeOutcome] = field(default_factory=list)

    @property
    def values(self) -> Dict[str, Any]:
        return {outcome.name: outcome.value for outcome in self.outcomes}

    @property
    def errors(self) -> Dict[str, str]:
        return {outcome.name: outcome.error for outcome in self.outcomes if outcome.error is not None}

    @property
    def healthy(self) -> bool:
        return all(outcome.succeeded for outcome in self.outcomes)

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def as_dict(self) -> Dict[str, Any]:
        return {"values": self.values, "errors": self.errors}


class ProbeAggregator:
    async def _run(self, probe: Probe) -> ProbeOutcome:
        started = time.perf_counter()
        try:
            value = await asyncio.wait_for(probe.operation(), timeout=probe.timeout)
        except asyncio.TimeoutError:
            state: ProbeState = "timed_out"
            error = f"timed out after {probe.timeout:g}s"
        except Exception as exc:
            state = "failed"
            error = str(exc) or type(exc).__name__
        else:
            return ProbeOutcome(probe.name, "succeeded", value, duration=time.perf_counter() - started)
        logger.warning("Probe %s %s: %s", probe.name, state.replace("_", " "), error)
        return ProbeOutcome(
            probe.name,
            state,
            copy.deepcopy(probe.default),
            error=error,
            duration=time.perf_counter() - started,
        )

    async def collect(self, probes: Sequence[Probe]) -> StatusReport:
        names = [probe.name for probe in probes]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate probe names: {', '.join(duplicates)}")
        # gather keeps declaration order regardless of completion order
        outcomes = await asyncio.gather(*(self._run(probe) for probe in probes))
        return StatusReport(list(outcomes))
