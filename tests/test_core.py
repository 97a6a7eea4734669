"""Tests for configuration and the error taxonomy."""

import os
import sys
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from harness.config import ConfigLoader, HarnessConfig, RoleDescriptor, StartPhase
from harness.errors import (
    ConfigError,
    ErrorCategory,
    ErrorSeverity,
    UnexpectedExit,
    LaunchFailure,
    MetricsFetchError,
)


class TestHarnessConfig:
    """Test configuration defaults."""

    def test_default_config(self):
        """Defaults reproduce the reference scenario."""
        config = HarnessConfig()

        assert config.worker_count == 2
        assert config.epoch.target_epoch == 1
        assert config.epoch.controller_binary == "ekiden-node-dummy-controller"
        assert config.roles.compute.base_port == 10000
        assert config.roles.consensus.phase == StartPhase.CONSENSUS
        assert config.readiness.election_settle.delay_seconds == 2.0
        assert config.client.command == ["truffle", "test"]

    def test_default_role_flags(self):
        """Consensus and compute roles carry their fixed flags."""
        config = HarnessConfig()

        consensus = config.roles.consensus.fixed_args
        assert consensus[consensus.index("--random-beacon-backend") + 1] == "dummy"
        assert consensus[consensus.index("--storage-backend") + 1] == "dummy"

        compute = config.roles.compute
        assert "--no-persist-identity" in compute.fixed_args
        assert compute.fixed_args[compute.fixed_args.index("--max-batch-timeout") + 1] == "100"
        assert compute.trailing_args == ("{workdir}/target/enclave/runtime-ethereum.so",)

    def test_config_hash(self):
        """Same config, same hash; different config, different hash."""
        assert HarnessConfig().config_hash() == HarnessConfig().config_hash()
        assert HarnessConfig().config_hash() != HarnessConfig(worker_count=3).config_hash()

    def test_worker_count_bounds(self):
        with pytest.raises(ValueError):
            HarnessConfig(worker_count=0)

    def test_role_descriptor_is_frozen(self):
        descriptor = HarnessConfig().roles.gateway
        with pytest.raises(Exception):
            descriptor.binary = "other"

    def test_role_name_validated(self):
        with pytest.raises(ValueError):
            RoleDescriptor(role="bad name", binary="x", phase=StartPhase.WORKERS)

    def test_expand_templates(self, tmp_path):
        config = HarnessConfig(workdir=str(tmp_path))

        assert config.expand("{workdir}/x") == f"{tmp_path.resolve()}/x"
        assert config.log_dir_path() == tmp_path.resolve() / "logs"
        assert config.expand("{port}", port=5) == "5"

    def test_expand_unknown_placeholder(self):
        with pytest.raises(ConfigError):
            HarnessConfig().expand("{nope}")

    def test_log_probe_requires_marker(self):
        with pytest.raises(ValueError):
            HarnessConfig(readiness={
                "node_boot": {"strategy": "poll", "probe": {"kind": "log", "target": "x"}},
            })


class TestConfigLoader:
    """Test YAML/JSON config loading."""

    def test_load_yaml(self, tmp_path):
        (tmp_path / "e2e.yaml").write_text("""
worker_count: 4
environment:
  SGX_MODE: SIM
epoch:
  target_epoch: 2
  retry:
    max_attempts: 1
roles:
  compute:
    role: compute
    binary: my-compute
    phase: workers
    fixed_args: ["--flag"]
    instance_args: ["--port", "{port}"]
    base_port: 20000
""")
        loader = ConfigLoader(str(tmp_path))
        config = loader.load_harness_config()

        assert config.worker_count == 4
        assert config.environment == {"SGX_MODE": "SIM"}
        assert config.epoch.target_epoch == 2
        assert config.roles.compute.binary == "my-compute"
        assert config.roles.compute.fixed_args == ("--flag",)
        assert config.roles.compute.base_port == 20000
        # Untouched roles keep their defaults
        assert config.roles.consensus.binary == "ekiden-node-dummy"
        assert loader.file_hash(str(tmp_path / "e2e.yaml")) is not None

    def test_load_json_with_overrides(self, tmp_path):
        path = tmp_path / "custom.json"
        path.write_text('{"worker_count": 3, "workdir": "/elsewhere"}')

        config = ConfigLoader(str(tmp_path)).load_harness_config(
            str(path), overrides={"workdir": str(tmp_path)}
        )

        assert config.worker_count == 3
        assert config.workdir == str(tmp_path)

    def test_no_file_gives_defaults(self, tmp_path):
        config = ConfigLoader(str(tmp_path)).load_harness_config()
        assert config == HarnessConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError) as exc_info:
            ConfigLoader(str(tmp_path)).load_harness_config(str(tmp_path / "missing.yaml"))
        assert "not found" in exc_info.value.message

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "e2e.yaml"
        path.write_text("worker_count: [unclosed")
        with pytest.raises(ConfigError):
            ConfigLoader(str(tmp_path)).load_harness_config()

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "e2e.yaml"
        path.write_text("worker_count: -1")
        with pytest.raises(ConfigError) as exc_info:
            ConfigLoader(str(tmp_path)).load_harness_config()
        assert exc_info.value.context["config_path"] == str(path)

    def test_unsupported_format(self, tmp_path):
        path = tmp_path / "e2e.toml"
        path.write_text("worker_count = 1")
        with pytest.raises(ConfigError):
            ConfigLoader(str(tmp_path)).load_harness_config(str(path))

    def test_example_config_is_valid(self):
        path = os.path.join(os.path.dirname(__file__), '..', 'config', 'e2e.example.yaml')
        config = ConfigLoader().load_harness_config(path)

        assert config.readiness.worker_boot.strategy == "poll"
        assert config.readiness.worker_boot.probe.kind == "tcp"
        assert config.environment["SGX_MODE"] == "SIM"
        assert "--no-persist-identity" in config.roles.compute.fixed_args

    def test_partial_role_override_keeps_defaults(self, tmp_path):
        (tmp_path / "e2e.yaml").write_text("roles:\n  compute:\n    binary: /opt/ekiden/compute\n")

        config = ConfigLoader(str(tmp_path)).load_harness_config()
        compute = config.roles.compute

        assert compute.binary == "/opt/ekiden/compute"
        assert compute.role == "compute"
        assert compute.phase == StartPhase.WORKERS
        assert "--no-persist-identity" in compute.fixed_args
        assert compute.base_port == 10000

    def test_role_in_wrong_phase_rejected(self, tmp_path):
        (tmp_path / "e2e.yaml").write_text("roles:\n  compute:\n    phase: gateway\n")

        with pytest.raises(ConfigError) as exc_info:
            ConfigLoader(str(tmp_path)).load_harness_config()
        assert "roles.compute" in exc_info.value.message

    def test_root_must_be_mapping(self, tmp_path):
        path = tmp_path / "e2e.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigError):
            ConfigLoader(str(tmp_path)).load_harness_config()


class TestErrors:
    """Test error classification and serialization."""

    def test_unexpected_exit_defaults(self):
        error = UnexpectedExit("compute1 died", role="compute", instance_id=1, exit_code=3)

        assert error.severity == ErrorSeverity.CRITICAL
        assert error.category == ErrorCategory.PROCESS
        assert error.context["exit_code"] == 3
        assert not error.retryable

    def test_same_process_same_fingerprint(self):
        error1 = UnexpectedExit("died", role="compute", instance_id=1, exit_code=3)
        error2 = UnexpectedExit("died again", role="compute", instance_id=1, exit_code=9)

        assert error1.fingerprint() == error2.fingerprint()

    def test_different_instance_different_fingerprint(self):
        error1 = LaunchFailure("missing", role="compute", instance_id=1)
        error2 = LaunchFailure("missing", role="compute", instance_id=2)

        assert error1.fingerprint() != error2.fingerprint()

    def test_error_serialization(self):
        data = MetricsFetchError("boom", url="http://x/metrics").to_dict()

        assert data["type"] == "MetricsFetchError"
        assert data["message"] == "boom"
        assert data["severity"] == "low"
        assert data["category"] == "diagnostic"
        assert data["context"]["url"] == "http://x/metrics"
        assert "fingerprint" in data


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
