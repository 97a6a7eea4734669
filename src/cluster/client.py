"""External client test suite invocation."""

import asyncio
from typing import Optional

import structlog

from harness.config import ClientTestConfig
from harness.errors import ClientTestFailure

from .supervisor import ProcessSupervisor


logger = structlog.get_logger()


class ClientTestRunner:
    """
    Runs the client suite's setup commands and then the suite itself.

    Everything runs as a supervised run-to-completion child so teardown
    covers it, and so a node dying mid-suite aborts the wait.
    """

    def __init__(
        self,
        config: ClientTestConfig,
        supervisor: ProcessSupervisor,
        cwd: Optional[str] = None,
    ):
        self.config = config
        self.supervisor = supervisor
        self.cwd = cwd

    async def run(self) -> int:
        """Run setup then the suite. Returns 0 or raises ClientTestFailure."""
        for index, command in enumerate(self.config.setup_commands, start=1):
            code = await self._run_step("client_setup", index, command)
            if code != 0:
                raise ClientTestFailure(
                    f"Client setup step {' '.join(command)} exited with code {code}",
                    exit_code=code,
                )

        code = await self._run_step("client", 0, self.config.command, self.config.timeout_seconds)
        if code != 0:
            raise ClientTestFailure(
                f"Client test suite exited with code {code}",
                exit_code=code,
            )
        logger.info("client_tests_passed")
        return code

    async def _run_step(
        self,
        role: str,
        instance_id: int,
        command: list[str],
        timeout: Optional[float] = None,
    ) -> int:
        logger.info("client_step_starting", role=role, command=" ".join(command), cwd=self.cwd)
        record = await self.supervisor.launch(
            role,
            instance_id,
            command[0],
            command[1:],
            cwd=self.cwd,
            expect_exit=True,
        )

        try:
            return await self.supervisor.guard(
                asyncio.wait_for(self.supervisor.wait_for(record), timeout=timeout)
            )
        except asyncio.TimeoutError:
            raise ClientTestFailure(
                f"{record.name} did not finish within {timeout}s (see {record.log_path})",
                exit_code=None,
            )
