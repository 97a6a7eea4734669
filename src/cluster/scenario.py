"""
Scenario runner - the end-to-end state machine.

Brings up the consensus node, the compute workers and the gateway in
order, advances the epoch so a committee gets elected, runs the external
client suite, captures gateway metrics and always tears everything down.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Sequence
import structlog

from harness.config import HarnessConfig, RoleDescriptor
from harness.errors import (
    ErrorSeverity,
    HarnessError,
    LaunchFailure,
    MetricsFetchError,
    ScenarioInterrupted,
)

from .client import ClientTestRunner
from .epoch import EpochController
from .metrics import MetricsCollector, MetricsSnapshot
from .readiness import Phase, ReadinessGate
from .roles import build_command, instance_port, resolve_cwd
from .supervisor import ProcessRecord, ProcessSupervisor


logger = structlog.get_logger()


EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


class ScenarioState(Enum):
    """Scenario lifecycle. Strictly sequential except for the jump to CLEANING_UP."""
    INIT = "init"
    CONSENSUS_STARTED = "consensus_started"
    WORKERS_STARTED = "workers_started"
    EPOCH_ADVANCED = "epoch_advanced"
    GATEWAY_STARTED = "gateway_started"
    CLIENT_TEST_RUNNING = "client_test_running"
    METRICS_COLLECTED = "metrics_collected"
    CLEANING_UP = "cleaning_up"
    DONE = "done"


@dataclass(frozen=True)
class ScenarioResult:
    """Outcome of one scenario run. Built once, after cleanup."""
    success: bool
    exit_code: int
    failed_state: Optional[ScenarioState] = None
    error: Optional[dict[str, Any]] = None
    log_paths: dict[str, str] = field(default_factory=dict)
    processes: tuple[dict[str, Any], ...] = ()
    metrics_path: Optional[str] = None
    metrics_body: Optional[str] = None
    history: tuple[ScenarioState, ...] = ()
    duration_seconds: float = 0.0


class ScenarioRunner:
    """
    Runs the end-to-end scenario once.

    Collaborators are built from the config unless passed in. Any fatal
    error moves straight to CLEANING_UP; cleanup runs exactly once per run
    whatever state the failure happened in.
    """

    def __init__(
        self,
        config: HarnessConfig,
        supervisor: Optional[ProcessSupervisor] = None,
        gate: Optional[ReadinessGate] = None,
        epoch_controller: Optional[EpochController] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        extra_args: Optional[dict[str, Sequence[str]]] = None,
    ):
        self.config = config

        self.supervisor = supervisor or ProcessSupervisor(
            log_dir=config.log_dir_path(),
            environment=config.environment,
            terminate_grace_seconds=config.supervisor.terminate_grace_seconds,
        )
        self.gate = gate or ReadinessGate.from_config(config.readiness, config.expand)
        self.epoch_controller = epoch_controller or EpochController(
            config.epoch,
            environment=config.environment,
        )
        self.metrics_collector = metrics_collector or MetricsCollector(
            url=config.gateway.metrics_url,
            output_path=config.log_dir_path() / "metrics.txt",
            timeout=config.gateway.metrics_timeout_seconds,
        )
        self.client_runner = ClientTestRunner(
            config.client,
            self.supervisor,
            cwd=config.expand(config.client.cwd),
        )

        self.extra_args: dict[str, Sequence[str]] = dict(config.extra_args)
        if extra_args:
            self.extra_args.update(extra_args)

        # State
        self._state = ScenarioState.INIT
        self._history: list[ScenarioState] = [ScenarioState.INIT]
        self._failed_state: Optional[ScenarioState] = None
        self._task: Optional[asyncio.Task] = None
        self._started = False
        self._interrupted = False
        self._cleaned_up = False
        self._metrics: Optional[MetricsSnapshot] = None

    @property
    def state(self) -> ScenarioState:
        return self._state

    @property
    def history(self) -> list[ScenarioState]:
        return list(self._history)

    def _transition(self, state: ScenarioState) -> None:
        logger.info("scenario_transition", from_state=self._state.value, to_state=state.value)
        self._state = state
        self._history.append(state)

    # ==================== Run ====================

    async def run(self) -> ScenarioResult:
        """Run the scenario to DONE and return its result."""
        if self._started:
            raise RuntimeError("A ScenarioRunner can only run once")
        self._started = True

        start_time = time.monotonic()
        error: Optional[HarnessError] = None
        exit_code = EXIT_SUCCESS

        logger.info(
            "scenario_starting",
            workdir=str(self.config.workdir_path()),
            workers=self.config.worker_count,
            target_epoch=self.config.epoch.target_epoch,
            config_hash=self.config.config_hash(),
        )

        self._task = asyncio.create_task(self._drive())
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._interrupted:
                # Cancelled from outside: still release every child
                await asyncio.shield(self._cleanup())
                raise
            self._failed_state = self._state
            error = ScenarioInterrupted(state=self._state.value)
            exit_code = EXIT_INTERRUPTED
        except HarnessError as e:
            self._failed_state = self._state
            error = e
            exit_code = EXIT_FAILURE
        except Exception as e:
            logger.exception("scenario_internal_error")
            self._failed_state = self._state
            error = HarnessError(str(e), severity=ErrorSeverity.CRITICAL)
            exit_code = EXIT_FAILURE

        if error is not None:
            logger.error(
                "scenario_failed",
                state=self._failed_state.value,
                error_type=type(error).__name__,
                error=error.message,
            )

        await self._cleanup()
        self._transition(ScenarioState.DONE)

        result = ScenarioResult(
            success=error is None,
            exit_code=exit_code,
            failed_state=self._failed_state,
            error=error.to_dict() if error else None,
            log_paths=self.supervisor.log_paths(),
            processes=tuple(r.to_dict() for r in self.supervisor.records),
            metrics_path=str(self._metrics.path) if self._metrics else None,
            metrics_body=self._metrics.body if self._metrics else None,
            history=tuple(self._history),
            duration_seconds=round(time.monotonic() - start_time, 3),
        )
        logger.info(
            "scenario_finished",
            success=result.success,
            exit_code=result.exit_code,
            duration_seconds=result.duration_seconds,
        )
        return result

    def interrupt(self) -> None:
        """Stop the scenario from a signal handler. Cleanup still runs."""
        if self._task is None or self._task.done():
            return
        logger.warning("scenario_interrupt_requested", state=self._state.value)
        self._interrupted = True
        self._task.cancel()

    async def _drive(self) -> None:
        supervisor = self.supervisor

        # Init -> ConsensusStarted
        await self._launch(self.config.roles.consensus, 0)
        await supervisor.guard(self.gate.await_phase(Phase.NODE_BOOT))
        self._transition(ScenarioState.CONSENSUS_STARTED)

        # ConsensusStarted -> WorkersStarted
        for instance_id in range(1, self.config.worker_count + 1):
            record = await self._launch(self.config.roles.compute, instance_id)
            await supervisor.guard(
                self.gate.await_phase(Phase.WORKER_BOOT, instance_id=instance_id, port=record.port)
            )
        supervisor.check_alive()
        self._transition(ScenarioState.WORKERS_STARTED)

        # WorkersStarted -> EpochAdvanced
        target_epoch = self.config.epoch.target_epoch
        logger.info("epoch_advancing", epoch=target_epoch)
        await supervisor.guard(self.epoch_controller.advance_epoch(target_epoch))
        await supervisor.guard(self.gate.await_phase(Phase.ELECTION_SETTLE))
        self._transition(ScenarioState.EPOCH_ADVANCED)

        # EpochAdvanced -> GatewayStarted
        mr_enclave = self._read_mr_enclave()
        await self._launch(self.config.roles.gateway, 0, mr_enclave=mr_enclave)
        await supervisor.guard(self.gate.await_phase(Phase.GATEWAY_BOOT))
        self._transition(ScenarioState.GATEWAY_STARTED)

        # GatewayStarted -> ClientTestRunning. The client starts before the
        # committee is confirmed visible to it; it has to find the leader itself.
        self._transition(ScenarioState.CLIENT_TEST_RUNNING)
        await self.client_runner.run()

        # ClientTestRunning -> MetricsCollected
        try:
            self._metrics = await supervisor.guard(self.metrics_collector.collect())
        except MetricsFetchError as e:
            logger.warning("metrics_unavailable", url=e.context.get("url"), error=e.message)
        supervisor.check_alive()
        self._transition(ScenarioState.METRICS_COLLECTED)

    async def _launch(
        self,
        descriptor: RoleDescriptor,
        instance_id: int,
        **context: Any,
    ) -> ProcessRecord:
        values: dict[str, Any] = self.config.template_values()
        values.update(context)

        binary, args = build_command(
            descriptor,
            instance_id,
            self.extra_args.get(descriptor.role, ()),
            values,
        )
        return await self.supervisor.launch(
            descriptor.role,
            instance_id,
            binary,
            args,
            port=instance_port(descriptor, instance_id),
            cwd=resolve_cwd(descriptor, instance_id, values),
        )

    def _read_mr_enclave(self) -> str:
        path = Path(self.config.expand(self.config.gateway.mr_enclave_path))
        try:
            fingerprint = path.read_text().strip()
        except OSError as e:
            raise LaunchFailure(
                f"Cannot read runtime fingerprint {path}: {e}",
                role=self.config.roles.gateway.role,
                instance_id=0,
            )
        if not fingerprint:
            raise LaunchFailure(
                f"Runtime fingerprint file {path} is empty",
                role=self.config.roles.gateway.role,
                instance_id=0,
            )
        return fingerprint

    async def _cleanup(self) -> None:
        """Terminate every owned process. Runs once; never raises."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        self._transition(ScenarioState.CLEANING_UP)
        try:
            await self.supervisor.terminate_all()
        except Exception:
            logger.exception("cleanup_error")
