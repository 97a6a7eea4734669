"""Cluster orchestration: supervision, launch, epoch control and the scenario."""

from .supervisor import ProcessSupervisor, ProcessRecord, ProcessState
from .ports import port_for
from .roles import build_command
from .epoch import EpochController
from .readiness import ReadinessGate, FixedDelay, PollUntil
from .scenario import ScenarioRunner, ScenarioResult, ScenarioState

__all__ = [
    "ProcessSupervisor",
    "ProcessRecord",
    "ProcessState",
    "port_for",
    "build_command",
    "EpochController",
    "ReadinessGate",
    "FixedDelay",
    "PollUntil",
    "ScenarioRunner",
    "ScenarioResult",
    "ScenarioState",
]
