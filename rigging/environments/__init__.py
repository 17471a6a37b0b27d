"""Disposable execution environments (containers and VMs)."""
from typing import Any, Dict, Optional, Union

from rigging.environments.base import CommandResult, Environment, EnvironmentKind
from rigging.environments.container import Container
from rigging.environments.runtime import ContainerRuntime
from rigging.environments.vm import VM

__all__ = [
    "CommandResult",
    "Container",
    "ContainerRuntime",
    "Environment",
    "EnvironmentKind",
    "VM",
    "create_environment",
]


def create_environment(
    kind: Union[EnvironmentKind, str],
    name: str,
    options: Optional[Dict[str, Any]] = None,
    runtime: Optional[ContainerRuntime] = None,
) -> Environment:
    """Construct (but do not set up) an environment of the given kind.

    Raises:
        ValueError: If the kind is unknown
    """
    kind = EnvironmentKind(kind)
    if kind is EnvironmentKind.CONTAINER:
        return Container(name, options, runtime=runtime)
    return VM(name, options)
