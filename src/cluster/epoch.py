"""Epoch control - asks the consensus node to move to a new epoch."""

import asyncio
import os
import time
from typing import Optional

import structlog

from harness.config import EpochConfig, RetryConfig
from harness.errors import EpochAdvanceFailure


logger = structlog.get_logger()


class EpochController:
    """
    Drives the consensus node's administrative controller binary.

    advance_epoch() is request/response: it returns only after the
    controller reported success, retrying with exponential backoff, and
    raises EpochAdvanceFailure otherwise.
    """

    def __init__(
        self,
        config: EpochConfig,
        environment: Optional[dict[str, str]] = None,
    ):
        self.config = config
        self.retry_config: RetryConfig = config.retry
        self.environment = dict(environment or {})

        # Last epoch the controller acknowledged. The node's real epoch is
        # never read back.
        self.current_epoch: Optional[int] = None
        self.calls: list[int] = []

    def command(self, target_epoch: int) -> list[str]:
        return [
            self.config.controller_binary,
            "set-epoch",
            "--epoch", str(target_epoch),
        ]

    async def advance_epoch(self, target_epoch: int) -> None:
        """Set the consensus node's epoch, triggering committee election."""
        if target_epoch < 0:
            raise EpochAdvanceFailure(
                f"Epoch must be >= 0, got {target_epoch}",
                epoch=target_epoch,
                retryable=False,
            )

        config = self.retry_config
        attempts = 0
        last_error: Optional[EpochAdvanceFailure] = None

        while attempts < config.max_attempts:
            attempts += 1
            try:
                await self._call(target_epoch)
                self.current_epoch = target_epoch
                logger.info("epoch_advanced", epoch=target_epoch, attempts=attempts)
                return
            except EpochAdvanceFailure as e:
                last_error = e
                e.context["attempt"] = attempts
                logger.warning(
                    "epoch_advance_failed",
                    epoch=target_epoch,
                    attempt=attempts,
                    error=e.message,
                )
                if not e.retryable:
                    break

            if attempts < config.max_attempts:
                await asyncio.sleep(self._calculate_backoff(attempts, config))

        raise last_error

    def _calculate_backoff(self, attempt: int, config: RetryConfig) -> float:
        """Exponential backoff capped at max_delay_seconds."""
        delay = config.base_delay_seconds * (config.exponential_base ** (attempt - 1))
        return min(delay, config.max_delay_seconds)

    async def _call(self, target_epoch: int) -> None:
        argv = self.command(target_epoch)
        self.calls.append(target_epoch)

        env = dict(os.environ)
        env.update(self.environment)

        start_time = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
            )
        except OSError as e:
            raise EpochAdvanceFailure(
                f"Cannot run epoch controller {argv[0]}: {e}",
                epoch=target_epoch,
                retryable=False,
            )

        try:
            output, _ = await asyncio.wait_for(
                process.communicate(),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise EpochAdvanceFailure(
                f"Epoch controller timed out after {self.config.timeout_seconds}s",
                epoch=target_epoch,
            )
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        text = output.decode(errors="replace").strip()
        logger.debug(
            "epoch_controller_output",
            epoch=target_epoch,
            exit_code=process.returncode,
            duration_ms=round((time.monotonic() - start_time) * 1000, 1),
            output=text[-2000:],
        )

        if process.returncode != 0:
            raise EpochAdvanceFailure(
                f"Epoch controller exited with code {process.returncode}: {text[-500:]}",
                epoch=target_epoch,
            )
