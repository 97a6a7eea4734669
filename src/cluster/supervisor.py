"""
Process supervisor - owns every child process of a scenario run.

Launches role binaries with their output captured to per-instance logs,
reaps them as they exit, and tears the whole owned set down (descendants
included) on every exit path.
"""

import asyncio
import atexit
import os
import signal
import time
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Awaitable, Optional, Sequence
import structlog

from harness.errors import LaunchFailure, UnexpectedExit


logger = structlog.get_logger()


# Process groups still owned by some supervisor. Killed at interpreter exit
# if teardown never ran.
_live_groups: set[int] = set()


def _kill_live_groups() -> None:
    for pgid in list(_live_groups):
        with suppress(ProcessLookupError, PermissionError, OSError):
            os.killpg(pgid, signal.SIGKILL)
    _live_groups.clear()


atexit.register(_kill_live_groups)


class ProcessState(Enum):
    """Lifecycle of a supervised process."""
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"


@dataclass
class ProcessRecord:
    """A launched child and everything needed to find, stop and debug it."""
    role: str
    instance_id: int
    binary: str
    args: list[str]
    log_path: Path
    port: Optional[int] = None
    pid: Optional[int] = None
    pgid: Optional[int] = None
    state: ProcessState = ProcessState.STARTING
    exit_code: Optional[int] = None
    expect_exit: bool = False       # Run-to-completion step, e.g. client tests
    stop_requested: bool = False    # Harness asked it to stop
    started_at: float = field(default_factory=time.time)
    exited_at: Optional[float] = None

    _process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    _log_handle: Optional[IO[bytes]] = field(default=None, repr=False)
    _reported: bool = field(default=False, repr=False)
    _swept: bool = field(default=False, repr=False)

    @property
    def name(self) -> str:
        """Stable name used for logs: role, plus instance id for multi-instance roles."""
        return self.role if self.instance_id == 0 else f"{self.role}{self.instance_id}"

    @property
    def alive(self) -> bool:
        return self.state != ProcessState.EXITED

    @property
    def unexpected(self) -> bool:
        """Exited without being asked to, for a role that should keep running."""
        return (
            self.state == ProcessState.EXITED
            and not self.expect_exit
            and not self.stop_requested
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "instance_id": self.instance_id,
            "pid": self.pid,
            "port": self.port,
            "state": self.state.value,
            "exit_code": self.exit_code,
            "log_path": str(self.log_path),
        }


class ProcessSupervisor:
    """
    Owns the set of child processes for one scenario run.

    Every child starts in its own session, so signalling its process group
    reaches anything it spawned. The owned set is the collection of those
    groups; terminate_all() is the single release operation for all of
    them and is safe to call any number of times.

    Use as an async context manager so teardown runs on every exit path:

        async with ProcessSupervisor(log_dir) as supervisor:
            await supervisor.launch(...)
    """

    def __init__(
        self,
        log_dir: Path,
        environment: Optional[dict[str, str]] = None,
        terminate_grace_seconds: float = 5.0,
    ):
        self.log_dir = Path(log_dir)
        self.environment = dict(environment or {})
        self.terminate_grace_seconds = terminate_grace_seconds

        self._records: list[ProcessRecord] = []
        self._reapers: dict[int, asyncio.Task] = {}

        # Serialises the registry between launch, the reapers and teardown
        self._lock = asyncio.Lock()
        self._changed = asyncio.Condition(self._lock)

    async def __aenter__(self) -> "ProcessSupervisor":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.terminate_all()

    @property
    def records(self) -> list[ProcessRecord]:
        return list(self._records)

    def records_for(self, role: str) -> list[ProcessRecord]:
        return [r for r in self._records if r.role == role]

    def log_paths(self) -> dict[str, str]:
        return {r.name: str(r.log_path) for r in self._records}

    # ==================== Launch ====================

    async def launch(
        self,
        role: str,
        instance_id: int,
        binary: str,
        args: Sequence[str],
        port: Optional[int] = None,
        cwd: Optional[str] = None,
        expect_exit: bool = False,
    ) -> ProcessRecord:
        """
        Start a child with stdout and stderr sent to its own log file.

        Returns once the process exists; does not wait for it to be ready.
        """
        record = ProcessRecord(
            role=role,
            instance_id=instance_id,
            binary=binary,
            args=list(args),
            log_path=Path(),
            port=port,
            expect_exit=expect_exit,
        )
        record.log_path = self.log_dir / f"{record.name}.log"

        env = dict(os.environ)
        env.update(self.environment)

        async with self._lock:
            if any(r.name == record.name and r.alive for r in self._records):
                raise LaunchFailure(
                    f"{record.name} is already running",
                    role=role,
                    instance_id=instance_id,
                    binary=binary,
                )

            try:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                handle = open(record.log_path, "wb", buffering=0)
            except OSError as e:
                raise LaunchFailure(
                    f"Cannot open log {record.log_path}: {e}",
                    role=role,
                    instance_id=instance_id,
                    binary=binary,
                )

            try:
                process = await asyncio.create_subprocess_exec(
                    binary,
                    *record.args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=handle,
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=cwd,
                    env=env,
                    start_new_session=True,
                )
            except OSError as e:
                handle.close()
                raise LaunchFailure(
                    f"Failed to start {record.name}: {e}",
                    role=role,
                    instance_id=instance_id,
                    binary=binary,
                )

            record._process = process
            record._log_handle = handle
            record.pid = process.pid
            # New session: the child leads its own group
            record.pgid = process.pid
            record.state = ProcessState.RUNNING
            self._records.append(record)
            _live_groups.add(record.pgid)
            self._reapers[id(record)] = asyncio.create_task(self._reap(record))

        logger.info(
            "process_launched",
            role=role,
            instance_id=instance_id,
            pid=record.pid,
            port=port,
            log=str(record.log_path),
        )
        return record

    async def _reap(self, record: ProcessRecord) -> None:
        """Wait for one child and publish its exit."""
        code = await record._process.wait()

        async with self._changed:
            record.state = ProcessState.EXITED
            record.exit_code = code
            record.exited_at = time.time()
            # Descendants can outlive the leader; the group id is still ours here
            self._sweep_group(record)
            self._close_log(record)
            self._changed.notify_all()

        log = logger.info if (record.stop_requested or record.expect_exit) else logger.warning
        log(
            "process_exited",
            role=record.role,
            instance_id=record.instance_id,
            pid=record.pid,
            exit_code=code,
            requested=record.stop_requested,
        )

    # ==================== Waiting ====================

    async def wait_any(self) -> tuple[ProcessRecord, int]:
        """
        Block until any tracked child exits and return it with its exit code.

        Each exit is reported once. Raises RuntimeError when nothing is left
        to wait for.
        """
        async with self._changed:
            while True:
                for record in self._records:
                    if record.state == ProcessState.EXITED and not record._reported:
                        record._reported = True
                        return record, record.exit_code

                if not any(r.alive for r in self._records):
                    raise RuntimeError("No tracked processes left to wait for")

                await self._changed.wait()

    async def wait_for(self, record: ProcessRecord) -> int:
        """Block until a specific child exits."""
        await asyncio.shield(self._reapers[id(record)])
        return record.exit_code

    def first_unexpected(self) -> Optional[ProcessRecord]:
        return next((r for r in self._records if r.unexpected), None)

    def check_alive(self) -> None:
        """Raise UnexpectedExit if any long-running child has died."""
        record = self.first_unexpected()
        if record is not None:
            raise self._unexpected_error(record)

    async def guard(self, awaitable: Awaitable[Any]) -> Any:
        """
        Run a phase operation while watching the owned set.

        If any long-running child dies first, the operation is cancelled and
        UnexpectedExit is raised.
        """
        operation = asyncio.ensure_future(awaitable)
        watcher = asyncio.create_task(self._watch_unexpected())
        try:
            done, _ = await asyncio.wait(
                {operation, watcher},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if watcher in done:
                raise self._unexpected_error(watcher.result())
            return operation.result()
        finally:
            for task in (operation, watcher):
                if not task.done():
                    task.cancel()
                    with suppress(asyncio.CancelledError):
                        await task

    async def _watch_unexpected(self) -> ProcessRecord:
        async with self._changed:
            while True:
                record = self.first_unexpected()
                if record is not None:
                    return record
                await self._changed.wait()

    def _unexpected_error(self, record: ProcessRecord) -> UnexpectedExit:
        return UnexpectedExit(
            f"{record.name} exited unexpectedly with code {record.exit_code} "
            f"(see {record.log_path})",
            role=record.role,
            instance_id=record.instance_id,
            exit_code=record.exit_code,
        )

    # ==================== Teardown ====================

    async def terminate_all(self) -> None:
        """
        Stop every owned child and its descendants, then reap them.

        SIGTERM first, SIGKILL after the grace period. Idempotent; never
        raises for processes that are already gone.
        """
        async with self._lock:
            records = list(self._records)
            live = [r for r in records if r.alive]
            for record in live:
                record.stop_requested = True
                self._signal_group(record, signal.SIGTERM)

        if live:
            logger.info("terminating_processes", count=len(live))

        pending = [self._reapers[id(r)] for r in live]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=self.terminate_grace_seconds)
            if still_running:
                for record in live:
                    if record.alive:
                        logger.warning("process_kill", role=record.role, instance_id=record.instance_id)
                        self._signal_group(record, signal.SIGKILL)
                _, still_running = await asyncio.wait(still_running, timeout=self.terminate_grace_seconds)
                if still_running:
                    logger.error("processes_not_reaped", count=len(still_running))

        # Only groups owned when this call began; an emptied group id can be reused
        for record in live:
            self._sweep_group(record)
        for record in records:
            if not record.alive:
                self._close_log(record)

    def _sweep_group(self, record: ProcessRecord) -> None:
        if record._swept:
            return
        record._swept = True
        self._signal_group(record, signal.SIGKILL)
        if record.pgid is not None:
            _live_groups.discard(record.pgid)

    def _signal_group(self, record: ProcessRecord, sig: signal.Signals) -> None:
        if record.pgid is None:
            return
        try:
            if hasattr(os, "killpg"):
                os.killpg(record.pgid, sig)
            elif record.alive and record._process is not None:
                record._process.send_signal(sig)
        except (ProcessLookupError, PermissionError) as e:
            logger.debug("signal_skipped", role=record.role, pgid=record.pgid, error=str(e))
        except OSError as e:
            logger.debug("signal_failed", role=record.role, pgid=record.pgid, error=str(e))

    def _close_log(self, record: ProcessRecord) -> None:
        if record._log_handle is not None:
            with suppress(OSError):
                record._log_handle.close()
            record._log_handle = None
