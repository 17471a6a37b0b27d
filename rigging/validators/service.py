"""systemd unit state checks."""
import shlex
from typing import Any, Dict, Iterable, Optional, Union

from rigging.validators.base import Validator

# Default enablement expected for each state
STATES = {
    'running': True,
    'stopped': False,
    'masked': None,
}


class ServiceValidator(Validator):
    """Checks systemd units are running, stopped or masked.

    Entries of `services` are unit names (expected running and enabled) or
    dicts with name, state (running, stopped or masked) and enabled. Setting
    enabled to None skips the enablement check.
    """

    name = "service"

    def validate(self, environment, services: Optional[Iterable[Union[str, Dict[str, Any]]]] = None,
                 **context) -> "ServiceValidator":
        self.clear()
        services = list(services or [])
        if not services:
            self.add_error("No services specified for validation")
            return self
        if not environment.systemd_enabled:
            self.add_error("Service checks need systemd in the environment")
            return self

        for spec in services:
            if isinstance(spec, str):
                spec = {'name': spec}
            self._validate_service(environment, spec)
        return self

    def _query(self, environment, verb: str, unit: str) -> str:
        return self.execute_command(environment, f"systemctl {verb} {shlex.quote(unit)}").stdout.strip()

    def _validate_service(self, environment, spec: Dict[str, Any]):
        unit = spec['name']
        state = spec.get('state', 'running')
        if state not in STATES:
            self.add_error(f"Unknown service state '{state}' for {unit}")
            return

        enablement = self._query(environment, "is-enabled", unit)
        if state == 'masked':
            if enablement != 'masked':
                self.add_error(f"Service {unit} is not masked", {'service': unit, 'actual': enablement})
            return

        active = self._query(environment, "is-active", unit)
        if state == 'running' and active != 'active':
            self.add_error(f"Service {unit} is not active", {'service': unit, 'actual': active})
        elif state == 'stopped' and active == 'active':
            self.add_error(f"Service {unit} should be inactive but is active", {'service': unit})

        enabled = spec.get('enabled', STATES[state])
        if enabled is True and enablement != 'enabled':
            self.add_error(f"Service {unit} is not enabled", {'service': unit, 'actual': enablement})
        elif enabled is False and enablement == 'enabled':
            self.add_error(f"Service {unit} should be disabled but is enabled", {'service': unit})
