"""Deterministic port allocation for role instances."""


MIN_PORT = 1
MAX_PORT = 65535


def port_for(base_port: int, instance_id: int) -> int:
    """
    Port for one instance of a role: base_port + instance_id.

    Stateless so the same run always uses the same ports. Callers keep
    instance ids unique within a run; no collision check is done here.
    """
    if instance_id < 0:
        raise ValueError(f"instance id must be >= 0, got {instance_id}")

    port = base_port + instance_id
    if port < MIN_PORT or port > MAX_PORT:
        raise ValueError(
            f"port {port} out of range for base {base_port} and instance {instance_id}"
        )
    return port
