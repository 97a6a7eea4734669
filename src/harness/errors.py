"""Harness error definitions."""

from typing import Optional, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for classification."""
    LOW = "low"           # Diagnostic only, run continues
    MEDIUM = "medium"     # Retry may help
    HIGH = "high"         # Fatal for the current scenario
    CRITICAL = "critical" # Cluster state unknown, tear everything down


class ErrorCategory(Enum):
    """Error categories for routing and handling."""
    CONFIG = "config"             # Bad config or missing artifact
    LAUNCH = "launch"             # Binary missing or failed to start
    READINESS = "readiness"       # Phase never became ready
    CONTROL = "control"           # Administrative call failed
    CLIENT = "client"             # External test suite failed
    PROCESS = "process"           # Child process died on its own
    DIAGNOSTIC = "diagnostic"     # Metrics and other best-effort capture
    INTERRUPTED = "interrupted"   # Harness received a signal


class HarnessError(Exception):
    """Base exception for all harness errors."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.HIGH,
        category: ErrorCategory = ErrorCategory.PROCESS,
        context: Optional[dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.context = context or {}
        self.retryable = retryable

    def fingerprint(self) -> str:
        """Generate error fingerprint for deduplication across runs."""
        import hashlib
        components = [
            self.__class__.__name__,
            self.category.value,
            str(self.context.get("role", "")),
            str(self.context.get("instance_id", "")),
        ]
        return hashlib.sha256(":".join(components).encode()).hexdigest()[:16]

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for logging and the scenario result."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "context": self.context,
            "retryable": self.retryable,
            "fingerprint": self.fingerprint(),
        }


class ConfigError(HarnessError):
    """Configuration loading or validation error."""

    def __init__(self, message: str, config_path: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONFIG)
        super().__init__(message, **kwargs)
        self.context["config_path"] = config_path


class LaunchFailure(HarnessError):
    """A role binary is missing or could not be started."""

    def __init__(
        self,
        message: str,
        role: Optional[str] = None,
        instance_id: Optional[int] = None,
        binary: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("category", ErrorCategory.LAUNCH)
        super().__init__(message, **kwargs)
        self.context["role"] = role
        self.context["instance_id"] = instance_id
        self.context["binary"] = binary


class ReadinessTimeout(HarnessError):
    """A startup phase did not become ready within its bound."""

    def __init__(self, message: str, phase: Optional[str] = None, timeout: Optional[float] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.READINESS)
        super().__init__(message, **kwargs)
        self.context["phase"] = phase
        self.context["timeout"] = timeout


class EpochAdvanceFailure(HarnessError):
    """The set-epoch control call failed or timed out."""

    def __init__(self, message: str, epoch: Optional[int] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONTROL)
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)
        self.context["epoch"] = epoch


class ClientTestFailure(HarnessError):
    """The external client test suite exited non-zero."""

    def __init__(self, message: str, exit_code: Optional[int] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CLIENT)
        super().__init__(message, **kwargs)
        self.context["exit_code"] = exit_code


class UnexpectedExit(HarnessError):
    """A tracked process exited before the harness asked it to."""

    def __init__(
        self,
        message: str,
        role: Optional[str] = None,
        instance_id: Optional[int] = None,
        exit_code: Optional[int] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("category", ErrorCategory.PROCESS)
        super().__init__(message, **kwargs)
        self.context["role"] = role
        self.context["instance_id"] = instance_id
        self.context["exit_code"] = exit_code


class MetricsFetchError(HarnessError):
    """Gateway metrics could not be fetched. Never fatal."""

    def __init__(self, message: str, url: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.DIAGNOSTIC)
        super().__init__(message, **kwargs)
        self.context["url"] = url


class ScenarioInterrupted(HarnessError):
    """The harness was asked to stop by a signal."""

    def __init__(self, message: str = "Scenario interrupted", state: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.INTERRUPTED)
        super().__init__(message, **kwargs)
        self.context["state"] = state
