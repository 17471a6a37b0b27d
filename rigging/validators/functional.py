"""Runs commands inside the environment and checks how they behave."""
import re
import shlex
from typing import Any, Dict, Iterable, Optional

from rigging.validators.base import Validator

DEFAULT_TIMEOUT = 10


def head(text: str, lines: int = 5) -> str:
    return "\n".join(text.splitlines()[:lines])


class FunctionalTestValidator(Validator):
    """Exercises what a recipe installed.

    Each entry of `tests` is a dict with a name and any of:
        command: Run in the environment; exit code must equal
            expected_exit_code (default 0) and, when given, stdout or stderr
            must match the expected_output regex
        endpoints: http entries ({'type': 'http', 'url', 'expected_code'})
            checked with curl, and tcp entries ({'type': 'tcp', 'host', 'port'})
            checked with nc
        timeout: Seconds per command (default 10)
    """

    name = "functional_test"

    def validate(self, environment, tests: Optional[Iterable[Dict[str, Any]]] = None,
                 **context) -> "FunctionalTestValidator":
        self.clear()
        tests = list(tests or [])
        if not tests:
            self.add_error("No functional tests specified")
            return self

        for test in tests:
            name = test.get('name') or test.get('command', 'unnamed')
            timeout = test.get('timeout', DEFAULT_TIMEOUT)
            if test.get('command'):
                self._check_command(environment, name, test, timeout)
            for endpoint in test.get('endpoints', []):
                self._check_endpoint(environment, name, endpoint, timeout)
        return self

    def _check_command(self, environment, name: str, test: Dict[str, Any], timeout: float):
        command = test['command']
        expected_code = test.get('expected_exit_code', 0)
        result = self.execute_command(environment, command, timeout=timeout)

        if result.exit_code != expected_code:
            self.add_error(f"Unexpected exit code from {name}", {
                'command': command,
                'expected': expected_code,
                'actual': result.exit_code,
                'stderr': head(result.stderr),
            })
            return

        pattern = test.get('expected_output')
        if pattern and not (re.search(pattern, result.stdout) or re.search(pattern, result.stderr)):
            self.add_error(f"Output of {name} does not match expected pattern", {
                'expected': pattern,
                'stdout': head(result.stdout, 3),
                'stderr': head(result.stderr, 3),
            })

    def _check_endpoint(self, environment, name: str, endpoint: Dict[str, Any], timeout: float):
        kind = endpoint.get('type', 'http')
        if kind == 'http':
            url = endpoint['url']
            expected = int(endpoint.get('expected_code', 200))
            command = (f"curl -s -o /dev/null -w '%{{http_code}}' "
                       f"--connect-timeout {int(timeout)} {shlex.quote(url)}")
            result = self.execute_command(environment, command, timeout=timeout + 2)
            if not result.success:
                self.add_error(f"Failed to connect to HTTP endpoint: {url}", {'test': name, 'error': result.stderr.strip()})
                return
            actual = result.stdout.strip()
            if actual != str(expected):
                self.add_error(f"HTTP endpoint returned unexpected status: {url}",
                               {'test': name, 'expected': expected, 'actual': actual})
        elif kind == 'tcp':
            host = endpoint.get('host', 'localhost')
            port = endpoint['port']
            command = f"timeout {int(timeout)} nc -z {shlex.quote(host)} {int(port)}"
            if not self.execute_command(environment, command, timeout=timeout + 2).success:
                self.add_error(f"TCP port not accessible: {host}:{port}", {'test': name})
        else:
            self.add_warning(f"Unknown endpoint type '{kind}' in {name}")
