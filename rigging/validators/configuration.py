"""Checks on files a recipe is expected to leave behind."""
import json
import re
import shlex
from typing import Any, Dict, Iterable, Optional

import yaml

from rigging.core.errors import RiggingError
from rigging.validators.base import Validator

EXISTENCE_TESTS = {
    'file': "-f",
    'directory': "-d",
    'symlink': "-L",
}


def normalize_mode(mode) -> str:
    """Octal ints (0o644) and strings ('644', '0644') compare as stat's %a output."""
    if isinstance(mode, int):
        return format(mode, "o")
    return str(mode).lstrip("0") or "0"


class ConfigurationFileValidator(Validator):
    """Validates existence, ownership, mode and content of guest files.

    Each entry of `files` is a dict:
        path: Guest path (required)
        type: file, directory or symlink (default file)
        required: Missing files are errors, otherwise warnings (default True)
        target: Expected symlink target
        mode, owner, group: Expected stat values
        contains: Regex patterns that must match the content
        absent: Regex patterns that must not match the content
        syntax: yaml or json; the content must parse
    """

    name = "configuration_file"

    def validate(self, environment, files: Optional[Iterable[Dict[str, Any]]] = None,
                 **context) -> "ConfigurationFileValidator":
        self.clear()
        files = list(files or [])
        if not files:
            self.add_error("No configuration files specified for validation")
            return self

        for spec in files:
            self._validate_file(environment, spec)
        return self

    def _validate_file(self, environment, spec: Dict[str, Any]):
        path = spec['path']
        kind = spec.get('type', 'file')
        flag = EXISTENCE_TESTS.get(kind)
        if flag is None:
            self.add_error(f"Unknown file type '{kind}' for {path}")
            return

        if not self.execute_command(environment, f"test {flag} {shlex.quote(path)}").success:
            if spec.get('required', True):
                self.add_error(f"Required {kind} not found: {path}")
            else:
                self.add_warning(f"Optional {kind} not found: {path}")
            return

        if kind == 'symlink' and spec.get('target'):
            self._check_symlink(environment, path, spec['target'])
        if any(key in spec for key in ('mode', 'owner', 'group')):
            self._check_permissions(environment, path, spec)
        if kind == 'file' and any(key in spec for key in ('contains', 'absent', 'syntax')):
            self._check_content(environment, path, spec)

    def _check_symlink(self, environment, path: str, target: str):
        result = self.execute_command(environment, f"readlink {shlex.quote(path)}")
        if not result.success:
            self.add_error(f"Failed to read symlink target: {path}")
            return
        actual = result.stdout.strip()
        if actual != target:
            self.add_error(f"Symlink target mismatch for {path}", {'expected': target, 'actual': actual})

    def _check_permissions(self, environment, path: str, spec: Dict[str, Any]):
        result = self.execute_command(environment, f"stat -c '%a %U %G' {shlex.quote(path)}")
        parts = result.stdout.split()
        if not result.success or len(parts) != 3:
            self.add_error(f"Failed to check permissions: {path}", {'error': result.stderr.strip()})
            return

        actual = dict(zip(('mode', 'owner', 'group'), parts))
        if 'mode' in spec and normalize_mode(spec['mode']) != actual['mode']:
            self.add_error(f"Permission mode mismatch: {path}",
                           {'expected': normalize_mode(spec['mode']), 'actual': actual['mode']})
        for key in ('owner', 'group'):
            if key in spec and str(spec[key]) != actual[key]:
                self.add_error(f"{key.capitalize()} mismatch: {path}",
                               {'expected': spec[key], 'actual': actual[key]})

    def _check_content(self, environment, path: str, spec: Dict[str, Any]):
        try:
            content = environment.read_file(path)
        except RiggingError as e:
            self.add_error(f"Failed to read file: {path}", {'error': str(e)})
            return

        for pattern in spec.get('contains', []):
            if not re.search(pattern, content, re.MULTILINE):
                self.add_error(f"Required content pattern not found in {path}", {'pattern': pattern})
        for pattern in spec.get('absent', []):
            if re.search(pattern, content, re.MULTILINE):
                self.add_error(f"Forbidden content pattern found in {path}", {'pattern': pattern})

        syntax = spec.get('syntax')
        if syntax == 'yaml':
            try:
                yaml.safe_load(content)
            except yaml.YAMLError as e:
                self.add_error(f"Invalid YAML syntax: {path}", {'error': str(e).splitlines()[0]})
        elif syntax == 'json':
            try:
                json.loads(content)
            except json.JSONDecodeError as e:
                self.add_error(f"Invalid JSON syntax: {path}", {'error': str(e)})
        elif syntax is not None:
            self.add_warning(f"Syntax check not supported for {syntax}: {path}")
