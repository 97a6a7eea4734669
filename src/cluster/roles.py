"""Role command-line construction."""

from typing import Any, Optional, Sequence

from harness.config import RoleDescriptor
from harness.errors import ConfigError

from .ports import port_for


def _format(template: str, values: dict[str, Any], role: str) -> str:
    try:
        return template.format(**values)
    except (KeyError, IndexError) as e:
        raise ConfigError(f"Role {role}: unknown placeholder {e} in {template!r}")
    except ValueError as e:
        raise ConfigError(f"Role {role}: malformed template {template!r}: {e}")


def instance_port(descriptor: RoleDescriptor, instance_id: int) -> Optional[int]:
    """Port an instance listens on, or None for roles without a port base."""
    if descriptor.base_port is None:
        return None
    return port_for(descriptor.base_port, instance_id)


def build_command(
    descriptor: RoleDescriptor,
    instance_id: int,
    extra_args: Sequence[str] = (),
    context: Optional[dict[str, Any]] = None,
) -> tuple[str, list[str]]:
    """
    Build (binary, argv) for one role instance.

    Argument order is fixed flags, per-instance flags, caller extras, then
    trailing positionals. Nothing is launched and no state is kept, so the
    same inputs always produce the same command line.
    """
    values: dict[str, Any] = dict(context or {})
    values["instance_id"] = instance_id
    port = instance_port(descriptor, instance_id)
    if port is not None:
        values["port"] = port

    binary = _format(descriptor.binary, values, descriptor.role)
    argv = list(descriptor.fixed_args)
    argv.extend(_format(t, values, descriptor.role) for t in descriptor.instance_args)
    argv.extend(extra_args)
    argv.extend(_format(t, values, descriptor.role) for t in descriptor.trailing_args)
    return binary, argv


def resolve_cwd(
    descriptor: RoleDescriptor,
    instance_id: int,
    context: Optional[dict[str, Any]] = None,
) -> Optional[str]:
    if descriptor.cwd is None:
        return None
    values = dict(context or {})
    values["instance_id"] = instance_id
    return _format(descriptor.cwd, values, descriptor.role)
