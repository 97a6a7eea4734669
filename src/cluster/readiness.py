"""
Readiness gate - ordering between scenario startup phases.

Each phase gets a strategy: a fixed delay (the historic "sleep N") or a
poll of an external readiness signal with a timeout.
"""

import asyncio
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx
import structlog

from harness.config import PhaseReadiness, ProbeConfig, ReadinessConfig
from harness.errors import ConfigError, ReadinessTimeout


logger = structlog.get_logger()


Predicate = Callable[[], Awaitable[bool]]


class Phase:
    """Names of the startup phases the scenario waits on."""
    NODE_BOOT = "node_boot"
    WORKER_BOOT = "worker_boot"
    ELECTION_SETTLE = "election_settle"
    GATEWAY_BOOT = "gateway_boot"


class ReadinessStrategy(Protocol):
    async def wait(self, phase: str) -> None: ...


class FixedDelay:
    """Pause for a constant duration. No guarantee the phase is actually ready."""

    def __init__(self, seconds: float):
        if seconds < 0:
            raise ValueError(f"delay must be >= 0, got {seconds}")
        self.seconds = seconds

    async def wait(self, phase: str) -> None:
        if self.seconds > 0:
            await asyncio.sleep(self.seconds)

    def __repr__(self) -> str:
        return f"FixedDelay({self.seconds})"


class PollUntil:
    """
    Poll a predicate until it returns True or the timeout expires.

    The interval grows by `backoff` after every miss, capped at
    `max_interval`. Predicate exceptions count as "not ready yet".
    """

    def __init__(
        self,
        predicate: Predicate,
        timeout: float,
        interval: float = 0.25,
        backoff: float = 1.5,
        max_interval: float = 2.0,
    ):
        self.predicate = predicate
        self.timeout = timeout
        self.interval = interval
        self.backoff = backoff
        self.max_interval = max_interval

    async def wait(self, phase: str) -> None:
        deadline = time.monotonic() + self.timeout
        interval = self.interval
        attempts = 0

        while True:
            attempts += 1
            try:
                if await self.predicate():
                    logger.debug("readiness_probe_passed", phase=phase, attempts=attempts)
                    return
            except Exception as e:
                logger.debug("readiness_probe_error", phase=phase, error=str(e))

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ReadinessTimeout(
                    f"Phase {phase} not ready after {self.timeout}s ({attempts} probes)",
                    phase=phase,
                    timeout=self.timeout,
                )
            await asyncio.sleep(min(interval, remaining))
            interval = min(interval * self.backoff, self.max_interval)

    def __repr__(self) -> str:
        return f"PollUntil(timeout={self.timeout})"


# ==================== Probes ====================

def tcp_probe(host: str, port: int, timeout: float = 1.0) -> Predicate:
    """Ready once something accepts connections on host:port."""

    async def probe() -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=timeout
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    return probe


def http_probe(url: str, timeout: float = 2.0) -> Predicate:
    """Ready once GET url returns a 2xx status."""

    async def probe() -> bool:
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(url)
        except httpx.HTTPError:
            return False
        return response.is_success

    return probe


def log_marker_probe(path: Path, marker: str) -> Predicate:
    """Ready once marker appears in a log file."""
    encoded = marker.encode()

    async def probe() -> bool:
        try:
            return encoded in path.read_bytes()
        except FileNotFoundError:
            return False

    return probe


def _parse_host_port(raw: str) -> tuple[str, int]:
    if ":" not in raw:
        raise ConfigError(f"tcp probe target must be host:port, got {raw!r}")
    host, port_raw = raw.rsplit(":", 1)
    try:
        port = int(port_raw)
    except ValueError:
        raise ConfigError(f"tcp probe port must be an integer, got {port_raw!r}")
    if not host or port < 1 or port > 65535:
        raise ConfigError(f"invalid tcp probe target {raw!r}")
    return host, port


def build_probe(probe: ProbeConfig, target: str, marker: Optional[str] = None) -> Predicate:
    """Build a predicate from probe config. `target` and `marker` are already expanded."""
    if probe.kind == "tcp":
        host, port = _parse_host_port(target)
        return tcp_probe(host, port)
    if probe.kind == "http":
        return http_probe(target)
    return log_marker_probe(Path(target), marker or probe.marker)


# ==================== Gate ====================

class ReadinessGate:
    """
    Maps phases to strategies and waits on them.

    Phases without a registered strategy pass immediately.
    """

    def __init__(self, strategies: Optional[dict[str, ReadinessStrategy]] = None):
        self._strategies: dict[str, ReadinessStrategy] = dict(strategies or {})
        self._factories: dict[str, Callable[[dict[str, Any]], ReadinessStrategy]] = {}

    def register(self, phase: str, strategy: ReadinessStrategy) -> None:
        self._strategies[phase] = strategy

    def register_factory(
        self,
        phase: str,
        factory: Callable[[dict[str, Any]], ReadinessStrategy],
    ) -> None:
        """Strategy built per wait from that wait's context (e.g. the instance port)."""
        self._factories[phase] = factory

    def strategy_for(self, phase: str, context: Optional[dict[str, Any]] = None) -> Optional[ReadinessStrategy]:
        factory = self._factories.get(phase)
        if factory is not None:
            return factory(dict(context or {}))
        return self._strategies.get(phase)

    async def await_phase(self, phase: str, **context: Any) -> None:
        """Block until the phase is ready according to its strategy."""
        strategy = self.strategy_for(phase, context)
        if strategy is None:
            return

        started = time.monotonic()
        logger.info("readiness_wait", phase=phase, strategy=repr(strategy), **context)
        await strategy.wait(phase)
        logger.info(
            "readiness_reached",
            phase=phase,
            waited_ms=round((time.monotonic() - started) * 1000, 1),
        )

    @classmethod
    def from_config(
        cls,
        config: ReadinessConfig,
        expand: Callable[..., str],
    ) -> "ReadinessGate":
        """
        Build a gate from readiness config.

        `expand` fills probe target templates; it receives the wait context
        as keyword arguments (e.g. port and instance_id for worker_boot).
        """
        gate = cls()
        for phase in (Phase.NODE_BOOT, Phase.WORKER_BOOT, Phase.ELECTION_SETTLE, Phase.GATEWAY_BOOT):
            policy: PhaseReadiness = getattr(config, phase)
            if policy.strategy == "fixed":
                gate.register(phase, FixedDelay(policy.delay_seconds))
                continue

            if policy.probe is None:
                raise ConfigError(f"Readiness phase {phase} uses poll but has no probe")

            def factory(context: dict[str, Any], policy: PhaseReadiness = policy) -> ReadinessStrategy:
                target = expand(policy.probe.target, **context)
                marker = expand(policy.probe.marker, **context) if policy.probe.marker else None
                return PollUntil(
                    build_probe(policy.probe, target, marker),
                    timeout=policy.timeout_seconds,
                    interval=policy.interval_seconds,
                    backoff=policy.backoff,
                    max_interval=policy.max_interval_seconds,
                )

            gate.register_factory(phase, factory)
        return gate
