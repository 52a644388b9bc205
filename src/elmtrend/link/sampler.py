from __future__ import annotations

import asyncio
import collections
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Sequence

from .decoder import ParameterDescriptor, decode_parameter, get_descriptor
from .errors import CommandTimeout, MalformedResponse, SessionClosed, TransportError, UnsupportedParameter
from .scheduler import Clock

logger = logging.getLogger(__name__)

Sender = Callable[[str, Optional[float]], Awaitable[str]]
Predicate = Callable[[], bool]


SAMPLER_PROFILES: Dict[str, Dict[str, Any]] = {
    "dashboard": {
        "interval_ms": 100,
        "parameters": ["RPM", "SPEED", "COOLANT", "FUEL_LEVEL", "THROTTLE", "BATTERY"],
        "history_size": 0,
    },
    "engine": {
        "interval_ms": 200,
        "parameters": ["RPM", "SPEED", "ENGINE_LOAD", "TIMING_ADVANCE", "INTAKE_TEMP", "MAF_RATE", "MAP", "BARO"],
        "history_size": 0,
    },
    "timing": {
        "interval_ms": 500,
        "parameters": ["TIMING_ADVANCE", "ENGINE_LOAD"],
        "history_size": 0,
    },
    "emissions": {
        "interval_ms": 2000,
        "parameters": ["SHORT_FUEL_TRIM_1", "LONG_FUEL_TRIM_1", "O2_B1S1", "O2_B1S2", "MAF_RATE"],
        "history_size": 10,
    },
    "battery": {
        "interval_ms": 5000,
        "parameters": ["BATTERY"],
        "history_size": 20,
    },
}


class ParameterPhase(str, enum.Enum):
    PROBING = "probing"
    ACTIVE = "active"
    DISABLED = "disabled_for_session"


@dataclass
class ParameterState:
    """Feature-detection state of one parameter for the current connection."""

    descriptor: ParameterDescriptor
    phase: ParameterPhase = ParameterPhase.PROBING
    consecutive_errors: int = 0

    @property
    def supported(self) -> bool:
        return self.phase is not ParameterPhase.DISABLED

    def mark_success(self) -> None:
        if self.phase is ParameterPhase.PROBING:
            self.phase = ParameterPhase.ACTIVE
        self.consecutive_errors = 0

    def mark_error(self) -> None:
        self.consecutive_errors += 1

    def mark_unsupported(self) -> None:
        # Latches: nothing moves a parameter out of DISABLED except reset()
        self.phase = ParameterPhase.DISABLED

    def reset(self) -> None:
        self.phase = ParameterPhase.PROBING
        self.consecutive_errors = 0


class BreakerState(str, enum.Enum):
    ACTIVE = "active"
    MODULE_DISABLED = "module_disabled"


class CircuitBreaker:
    """Trips after ``max_errors`` consecutive failed fetch cycles."""

    def __init__(self, max_errors: int = 3):
        if max_errors < 1:
            raise ValueError("max_errors must be >= 1")
        self.max_errors = max_errors
        self.state = BreakerState.ACTIVE
        self.consecutive_failures = 0

    @property
    def tripped(self) -> bool:
        return self.state is BreakerState.MODULE_DISABLED

    def record_failure(self) -> bool:
        """Count a failure; return True if this failure tripped the breaker."""

        if self.tripped:
            return False
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.max_errors:
            self.state = BreakerState.MODULE_DISABLED
            return True
        return False

    def record_success(self) -> None:
        if not self.tripped:
            self.consecutive_failures = 0

    def reset(self) -> None:
        self.state = BreakerState.ACTIVE
        self.consecutive_failures = 0


@dataclass
class ParameterReading:
    name: str
    value: Optional[float]
    unit: str
    valid: bool
    timestamp: float = field(default_factory=time.time)


class PollingSupervisor:
    """
    Periodic sampler for one group of parameters.

    Each parameter is probed once and dropped for the rest of the session if
    the ECU reports it unsupported. Fetch cycles that fail (timeouts, and
    malformed answers when configured to count) feed a circuit breaker; once it
    trips, ticks are no-ops until ``reset``.
    """

    def __init__(
        self,
        name: str,
        descriptors: Iterable[ParameterDescriptor],
        sender: Sender,
        *,
        max_errors: int = 3,
        malformed_counts_as_failure: bool = False,
        timeout_ms: Optional[float] = None,
        history_size: int = 0,
        is_active: Optional[Predicate] = None,
        is_connected: Optional[Predicate] = None,
    ):
        self.name = name
        self.sender = sender
        self.malformed_counts_as_failure = malformed_counts_as_failure
        self.timeout_ms = timeout_ms
        self.states: Dict[str, ParameterState] = {
            desc.name: ParameterState(desc) for desc in descriptors
        }
        if not self.states:
            raise ValueError(f"Sampler '{name}' needs at least one parameter")
        self.breaker = CircuitBreaker(max_errors)
        self.history_size = history_size
        self.history: Dict[str, Deque[float]] = {
            key: collections.deque(maxlen=history_size) for key in self.states
        } if history_size > 0 else {}
        self.latest: Dict[str, ParameterReading] = {}
        self.is_active: Predicate = is_active or (lambda: True)
        self.is_connected: Predicate = is_connected or (lambda: True)
        self._busy = False
        self._callbacks: List[Callable[[List[ParameterReading]], None]] = []
        self._stats: Dict[str, int] = {"ticks": 0, "skipped_busy": 0, "cycles": 0, "failed_cycles": 0}

    @property
    def disabled(self) -> bool:
        return self.breaker.tripped

    @property
    def busy(self) -> bool:
        return self._busy

    def register_callback(self, callback: Callable[[List[ParameterReading]], None]) -> None:
        self._callbacks.append(callback)

    def supported_parameters(self) -> List[str]:
        return [name for name, state in self.states.items() if state.supported]

    async def tick(self) -> bool:
        """Run one fetch cycle if the module may poll right now; return whether it ran."""

        if not self.is_active() or not self.is_connected() or self.breaker.tripped:
            return False
        if self._busy:
            self._stats["skipped_busy"] += 1
            return False
        self._busy = True
        self._stats["ticks"] += 1
        try:
            await self.update()
        except (SessionClosed, TransportError) as exc:
            logger.info("%s: poll aborted, link unavailable (%s)", self.name, exc)
        finally:
            self._busy = False
        return True

    async def update(self) -> List[ParameterReading]:
        readings, failed = await self.fetch()
        self._stats["cycles"] += 1
        if failed:
            self._stats["failed_cycles"] += 1
            tripped = self.breaker.record_failure()
            logger.warning(
                "%s: Poll error (%d/%d)",
                self.name,
                self.breaker.consecutive_failures,
                self.breaker.max_errors,
            )
            if tripped:
                logger.error("%s: Module disabled after repeated failures", self.name)
        else:
            self.breaker.record_success()

        for reading in readings:
            if not reading.valid:
                continue
            self.latest[reading.name] = reading
            if reading.name in self.history and reading.value is not None:
                self.history[reading.name].append(reading.value)
        if readings:
            for callback in self._callbacks:
                callback(readings)
        return readings

    async def fetch(self) -> tuple[List[ParameterReading], bool]:
        """Request every supported parameter once. Returns (readings, cycle_failed)."""

        readings: List[ParameterReading] = []
        failed = False
        for state in self.states.values():
            if not state.supported:
                continue
            desc = state.descriptor
            try:
                raw = await self.sender(desc.request_code, self.timeout_ms)
                value = decode_parameter(desc, raw)
            except UnsupportedParameter as exc:
                state.mark_unsupported()
                logger.info("%s: %s not supported, disabled for this session (%s)", self.name, desc.name, exc.response)
                continue
            except MalformedResponse as exc:
                state.mark_error()
                logger.warning("%s: %s", self.name, exc)
                readings.append(ParameterReading(desc.name, None, desc.unit, False))
                if self.malformed_counts_as_failure:
                    failed = True
                continue
            except CommandTimeout as exc:
                state.mark_error()
                logger.warning("%s: %s", self.name, exc)
                # An unresponsive adapter will time out the rest of the cycle too
                failed = True
                break
            state.mark_success()
            readings.append(ParameterReading(desc.name, value, desc.unit, True))
        return readings, failed

    def latest_value(self, name: str) -> Optional[float]:
        reading = self.latest.get(name.upper())
        return reading.value if reading is not None else None

    def reset_breaker(self) -> None:
        self.breaker.reset()

    def reset(self) -> None:
        """Forget everything learned during the previous connection."""

        self.breaker.reset()
        for state in self.states.values():
            state.reset()
        for values in self.history.values():
            values.clear()
        self.latest.clear()

    def stats(self) -> Dict[str, int]:
        stats = dict(self._stats)
        stats["supported"] = len(self.supported_parameters())
        stats["consecutive_failures"] = self.breaker.consecutive_failures
        return stats


class PeriodicTicker:
    """Fires ``callback`` every ``interval`` seconds without waiting for it to finish."""

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[Any]],
        clock: Optional[Clock] = None,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self.callback = callback
        self.clock = clock or Clock()
        self._task: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        tasks = list(self._inflight)
        if self._task is not None:
            tasks.append(self._task)
            self._task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()

    async def _run(self) -> None:
        while True:
            await self.clock.sleep(self.interval)
            task = asyncio.get_running_loop().create_task(self._fire())
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _fire(self) -> None:
        try:
            await self.callback()
        except (SessionClosed, TransportError) as exc:
            logger.info("%s tick skipped: %s", self.name, exc)


def build_sampler(
    profile: str,
    sender: Sender,
    *,
    max_errors: int = 3,
    malformed_counts_as_failure: bool = False,
    timeout_ms: Optional[float] = None,
    is_active: Optional[Predicate] = None,
    is_connected: Optional[Predicate] = None,
    parameters: Optional[Sequence[str]] = None,
) -> PollingSupervisor:
    key = profile.lower()
    if key not in SAMPLER_PROFILES:
        raise ValueError(f"Unknown sampler profile '{profile}'. Expected one of {list(SAMPLER_PROFILES)}")
    data = SAMPLER_PROFILES[key]
    names = parameters or data["parameters"]
    return PollingSupervisor(
        key,
        [get_descriptor(name) for name in names],
        sender,
        max_errors=max_errors,
        malformed_counts_as_failure=malformed_counts_as_failure,
        timeout_ms=timeout_ms,
        history_size=int(data["history_size"]),
        is_active=is_active,
        is_connected=is_connected,
    )


def profile_interval(profile: str) -> float:
    return SAMPLER_PROFILES[profile.lower()]["interval_ms"] / 1000.0
