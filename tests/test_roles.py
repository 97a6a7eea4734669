"""Tests for port allocation and role command construction."""

import os
import sys
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from harness.config import HarnessConfig, RoleDescriptor, StartPhase
from harness.errors import ConfigError
from cluster.ports import port_for
from cluster.roles import build_command, instance_port, resolve_cwd


class TestPortFor:
    """Test deterministic port derivation."""

    def test_base_plus_instance(self):
        assert port_for(10000, 1) == 10001
        assert port_for(10000, 2) == 10002

    def test_strictly_increasing(self):
        ports = [port_for(10000, i) for i in range(1, 20)]
        assert ports == sorted(set(ports))

    def test_negative_instance_rejected(self):
        with pytest.raises(ValueError):
            port_for(10000, -1)

    def test_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            port_for(65535, 1)


class TestBuildCommand:
    """Test role command-line construction."""

    @pytest.fixture
    def context(self):
        return {"workdir": "/work", "log_dir": "/work/logs"}

    def test_compute_command(self, context):
        descriptor = HarnessConfig().roles.compute

        binary, argv = build_command(descriptor, 2, context=context)

        assert binary == "ekiden-compute"
        assert argv == [
            "--no-persist-identity",
            "--batch-storage", "immediate_remote",
            "--max-batch-timeout", "100",
            "--time-source-notifier", "system",
            "--entity-ethereum-address", "0000000000000000000000000000000000000000",
            "--port", "10002",
            "/work/target/enclave/runtime-ethereum.so",
        ]

    def test_extra_args_after_fixed_flags(self, context):
        """Caller extras go after the role flags and before trailing positionals."""
        descriptor = HarnessConfig().roles.compute

        _, argv = build_command(descriptor, 1, ["--max-batch-timeout", "5"], context)

        assert argv[-3:-1] == ["--max-batch-timeout", "5"]
        assert argv[-1] == "/work/target/enclave/runtime-ethereum.so"
        assert argv.index("--port") < argv.index("5")

    def test_gateway_command(self, context):
        descriptor = HarnessConfig().roles.gateway
        context["mr_enclave"] = "abcdef"

        binary, argv = build_command(descriptor, 0, context=context)

        assert binary == "/work/target/debug/gateway"
        assert argv[argv.index("--mr-enclave") + 1] == "abcdef"
        assert argv[argv.index("--prometheus-mode") + 1] == "pull"

    def test_deterministic(self, context):
        """Same descriptor, instance and extras give the same command line."""
        descriptor = HarnessConfig().roles.compute

        first = build_command(descriptor, 3, ["--x"], dict(context))
        second = build_command(descriptor, 3, ["--x"], dict(context))

        assert first == second

    def test_context_not_mutated(self, context):
        snapshot = dict(context)
        build_command(HarnessConfig().roles.compute, 1, context=context)
        assert context == snapshot

    def test_missing_placeholder(self):
        """Gateway needs mr_enclave; without it construction fails."""
        with pytest.raises(ConfigError):
            build_command(HarnessConfig().roles.gateway, 0, context={"workdir": "/w"})

    def test_instance_id_placeholder(self):
        descriptor = RoleDescriptor(
            role="worker",
            binary="worker",
            phase=StartPhase.WORKERS,
            instance_args=("--name", "worker-{instance_id}"),
            cwd="/tmp/w{instance_id}",
        )

        _, argv = build_command(descriptor, 7)

        assert argv == ["--name", "worker-7"]
        assert resolve_cwd(descriptor, 7) == "/tmp/w7"
        assert instance_port(descriptor, 7) is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
