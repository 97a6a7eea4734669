"""Configuration loading and validation."""

import json
import hashlib
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError


ZERO_ENTITY_ADDRESS = "0000000000000000000000000000000000000000"


class StartPhase(Enum):
    """Relative start order of a role within a scenario."""
    CONSENSUS = "consensus"
    WORKERS = "workers"
    GATEWAY = "gateway"


class RoleDescriptor(BaseModel):
    """
    Immutable description of how to build a role's command line.

    Templates are `str.format` strings. The launcher fills in `workdir`,
    `log_dir`, `instance_id`, `port` and `mr_enclave`, plus whatever extra
    values the caller passes.
    """
    model_config = ConfigDict(frozen=True)

    role: str
    binary: str
    phase: StartPhase
    fixed_args: tuple[str, ...] = ()
    instance_args: tuple[str, ...] = ()
    trailing_args: tuple[str, ...] = ()
    base_port: Optional[int] = Field(default=None, ge=1, le=65535)
    cwd: Optional[str] = None

    @field_validator("role")
    @classmethod
    def _role_is_identifier(cls, value: str) -> str:
        # Used in log file names.
        if not value or not value.replace("-", "_").isidentifier():
            raise ValueError(f"role must be a simple name, got {value!r}")
        return value


def _consensus_role() -> RoleDescriptor:
    return RoleDescriptor(
        role="dummy",
        binary="ekiden-node-dummy",
        phase=StartPhase.CONSENSUS,
        fixed_args=(
            "--random-beacon-backend", "dummy",
            "--entity-ethereum-address", ZERO_ENTITY_ADDRESS,
            "--time-source-notifier", "mockrpc",
            "--storage-backend", "dummy",
        ),
    )


def _compute_role() -> RoleDescriptor:
    return RoleDescriptor(
        role="compute",
        binary="ekiden-compute",
        phase=StartPhase.WORKERS,
        fixed_args=(
            "--no-persist-identity",
            "--batch-storage", "immediate_remote",
            "--max-batch-timeout", "100",
            "--time-source-notifier", "system",
            "--entity-ethereum-address", ZERO_ENTITY_ADDRESS,
        ),
        instance_args=("--port", "{port}"),
        trailing_args=("{workdir}/target/enclave/runtime-ethereum.so",),
        base_port=10000,
    )


def _gateway_role() -> RoleDescriptor:
    return RoleDescriptor(
        role="gateway",
        binary="{workdir}/target/debug/gateway",
        phase=StartPhase.GATEWAY,
        fixed_args=(
            "--threads", "100",
            "--prometheus-metrics-addr", "0.0.0.0:3000",
            "--prometheus-mode", "pull",
        ),
        instance_args=("--mr-enclave", "{mr_enclave}"),
    )


_ROLE_DEFAULTS = {
    "consensus": _consensus_role,
    "compute": _compute_role,
    "gateway": _gateway_role,
}


class RolesConfig(BaseModel):
    """
    Launch descriptors for every cluster role.

    A partial override in a config file is merged onto the default
    descriptor for that slot, so `compute: {binary: /opt/x}` keeps the
    default flags. Each slot starts in its own phase.
    """
    consensus: RoleDescriptor = Field(default_factory=_consensus_role)
    compute: RoleDescriptor = Field(default_factory=_compute_role)
    gateway: RoleDescriptor = Field(default_factory=_gateway_role)

    @model_validator(mode="before")
    @classmethod
    def _merge_onto_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        merged = dict(data)
        for slot, factory in _ROLE_DEFAULTS.items():
            override = merged.get(slot)
            if isinstance(override, dict):
                merged[slot] = {**factory().model_dump(), **override}
        return merged

    @model_validator(mode="after")
    def _phases_match_slots(self) -> "RolesConfig":
        expected = {
            "consensus": StartPhase.CONSENSUS,
            "compute": StartPhase.WORKERS,
            "gateway": StartPhase.GATEWAY,
        }
        for slot, phase in expected.items():
            actual = getattr(self, slot).phase
            if actual != phase:
                raise ValueError(
                    f"roles.{slot} starts in phase {phase.value!r}, got {actual.value!r}"
                )
        return self


class RetryConfig(BaseModel):
    """Retry policy configuration."""
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=1.0, ge=0.0)
    max_delay_seconds: float = Field(default=30.0, ge=0.0)
    exponential_base: float = Field(default=2.0, ge=1.0, le=5.0)


class ProbeConfig(BaseModel):
    """
    External readiness signal to poll.

    tcp:  target is "host:port"
    http: target is a URL, any 2xx counts as ready
    log:  target is a log file path, ready once `marker` appears in it
    """
    kind: Literal["tcp", "http", "log"]
    target: str
    marker: Optional[str] = None

    @field_validator("marker")
    @classmethod
    def _marker_not_empty(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value:
            raise ValueError("marker must not be empty")
        return value


class PhaseReadiness(BaseModel):
    """Readiness policy for one startup phase."""
    strategy: Literal["fixed", "poll"] = Field(default="fixed")
    delay_seconds: float = Field(default=1.0, ge=0.0)
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    interval_seconds: float = Field(default=0.25, gt=0.0)
    backoff: float = Field(default=1.5, ge=1.0, le=5.0)
    max_interval_seconds: float = Field(default=2.0, gt=0.0)
    probe: Optional[ProbeConfig] = None

    @field_validator("probe")
    @classmethod
    def _log_probe_has_marker(cls, value: Optional[ProbeConfig]) -> Optional[ProbeConfig]:
        if value is not None and value.kind == "log" and not value.marker:
            raise ValueError("log probe requires a marker")
        return value


class ReadinessConfig(BaseModel):
    """Per-phase readiness policies."""
    node_boot: PhaseReadiness = Field(default_factory=lambda: PhaseReadiness(delay_seconds=1.0))
    worker_boot: PhaseReadiness = Field(default_factory=lambda: PhaseReadiness(delay_seconds=1.0))
    election_settle: PhaseReadiness = Field(default_factory=lambda: PhaseReadiness(delay_seconds=2.0))
    gateway_boot: PhaseReadiness = Field(default_factory=lambda: PhaseReadiness(delay_seconds=0.0))


class EpochConfig(BaseModel):
    """Administrative epoch control."""
    controller_binary: str = Field(default="ekiden-node-dummy-controller")
    target_epoch: int = Field(default=1, ge=1)
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class GatewayConfig(BaseModel):
    """Gateway fingerprint source and metrics endpoint."""
    mr_enclave_path: str = Field(default="{workdir}/target/enclave/runtime-ethereum.mrenclave")
    metrics_url: str = Field(default="http://localhost:3000/metrics")
    metrics_timeout_seconds: float = Field(default=10.0, gt=0.0)


class ClientTestConfig(BaseModel):
    """External client test suite invocation."""
    setup_commands: list[list[str]] = Field(
        default_factory=lambda: [["npm", "install", "truffle-hdwallet-provider"]]
    )
    command: list[str] = Field(default_factory=lambda: ["truffle", "test"])
    cwd: str = Field(default="{workdir}/tests")
    timeout_seconds: Optional[float] = Field(default=None, gt=0.0)

    @field_validator("command")
    @classmethod
    def _command_not_empty(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("client test command must not be empty")
        return value


class SupervisorConfig(BaseModel):
    """Child process supervision."""
    log_dir: str = Field(default="{workdir}/logs")
    terminate_grace_seconds: float = Field(default=5.0, ge=0.0)


class HarnessConfig(BaseModel):
    """Main harness configuration."""
    name: str = Field(default="e2e-harness")
    version: str = Field(default="0.1.0")

    workdir: str = Field(default=".")
    worker_count: int = Field(default=2, ge=1, le=1000)
    environment: dict[str, str] = Field(default_factory=dict)
    # Per-role flags appended after the role's fixed and per-instance flags
    extra_args: dict[str, list[str]] = Field(default_factory=dict)

    # Module configs
    roles: RolesConfig = Field(default_factory=RolesConfig)
    readiness: ReadinessConfig = Field(default_factory=ReadinessConfig)
    epoch: EpochConfig = Field(default_factory=EpochConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    client: ClientTestConfig = Field(default_factory=ClientTestConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)

    def config_hash(self) -> str:
        """Generate hash of config for run identification."""
        return hashlib.sha256(
            self.model_dump_json().encode()
        ).hexdigest()[:16]

    def workdir_path(self) -> Path:
        return Path(self.workdir).resolve()

    def template_values(self) -> dict[str, str]:
        """Values every path and argument template may reference."""
        workdir = str(self.workdir_path())
        return {
            "workdir": workdir,
            "log_dir": self.supervisor.log_dir.format(workdir=workdir),
        }

    def expand(self, template: str, **extra: Any) -> str:
        """Fill a path template from this config."""
        values = self.template_values()
        values.update(extra)
        try:
            return template.format(**values)
        except (KeyError, IndexError) as e:
            raise ConfigError(f"Unknown placeholder {e} in template: {template}")
        except ValueError as e:
            raise ConfigError(f"Malformed template {template!r}: {e}")

    def log_dir_path(self) -> Path:
        return Path(self.template_values()["log_dir"])


class ConfigLoader:
    """Loads and validates YAML/JSON configurations."""

    DEFAULT_NAMES = ("e2e.yaml", "e2e.yml", "e2e.json")

    def __init__(self, config_dir: str = "."):
        self.config_dir = Path(config_dir)
        self._hashes: dict[str, str] = {}

    def find_default(self) -> Optional[Path]:
        """Locate a config file in the config directory, if any."""
        for name in self.DEFAULT_NAMES:
            candidate = self.config_dir / name
            if candidate.exists():
                return candidate
        return None

    def load_harness_config(
        self,
        path: Optional[str] = None,
        overrides: Optional[dict[str, Any]] = None,
    ) -> HarnessConfig:
        """
        Load main harness configuration.

        Without a path, falls back to a default file in the config directory
        and then to built-in defaults. `overrides` are applied on top of the
        file contents (the CLI passes the working directory this way).
        """
        if path is None:
            found = self.find_default()
            data = self._load_file(found) if found else {}
            source = str(found) if found else None
        else:
            data = self._load_file(Path(path))
            source = path

        if overrides:
            data = {**data, **overrides}

        try:
            return HarnessConfig(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid harness config: {e}", config_path=source)

    def file_hash(self, path: str) -> Optional[str]:
        """Hash recorded for a file when it was last loaded."""
        return self._hashes.get(str(Path(path)))

    def _load_file(self, path: Path) -> dict[str, Any]:
        """Load YAML or JSON file."""
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}", config_path=str(path))

        try:
            content = path.read_text()
            self._hashes[str(path)] = hashlib.sha256(content.encode()).hexdigest()[:16]

            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content) or {}
            elif path.suffix == ".json":
                data = json.loads(content)
            else:
                raise ConfigError(
                    f"Unsupported config format: {path.suffix}",
                    config_path=str(path)
                )
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", config_path=str(path))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON: {e}", config_path=str(path))

        if not isinstance(data, dict):
            raise ConfigError("Config root must be a mapping", config_path=str(path))
        return data
