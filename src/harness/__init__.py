"""Harness configuration and error taxonomy."""

__version__ = "0.1.0"

from .config import ConfigLoader, HarnessConfig, RoleDescriptor, StartPhase
from .errors import (
    HarnessError,
    ConfigError,
    LaunchFailure,
    ReadinessTimeout,
    EpochAdvanceFailure,
    ClientTestFailure,
    UnexpectedExit,
    MetricsFetchError,
    ScenarioInterrupted,
)

__all__ = [
    "ConfigLoader",
    "HarnessConfig",
    "RoleDescriptor",
    "StartPhase",
    "HarnessError",
    "ConfigError",
    "LaunchFailure",
    "ReadinessTimeout",
    "EpochAdvanceFailure",
    "ClientTestFailure",
    "UnexpectedExit",
    "MetricsFetchError",
    "ScenarioInterrupted",
]
