"""Tests for configuration file, functional, package and service validators."""
from rigging.environments.base import CommandResult
from rigging.validators import (
    ConfigurationFileValidator,
    FunctionalTestValidator,
    PackageValidator,
    ServiceValidator,
)
from rigging.validators.configuration import normalize_mode

from conftest import FakeEnvironment

NGINX_CONF = "/etc/nginx/nginx.conf"


def ready_env(responses=None, options=None, files=None):
    env = FakeEnvironment("web", options, responses=responses)
    env.setup()
    env.files.update(files or {})
    return env


def messages(validator):
    return [issue.message for issue in validator.errors]


class TestConfigurationFileValidator:
    """Test existence, permission and content checks on guest files."""

    def test_matching_file_passes(self):
        """A file with the expected mode, owner and content passes."""
        env = ready_env(
            responses={"stat -c": CommandResult(0, stdout="644 root root\n")},
            files={NGINX_CONF: "worker_processes auto;\nuser www-data;"},
        )
        validator = ConfigurationFileValidator().validate(env, files=[{
            'path': NGINX_CONF,
            'mode': 0o644,
            'owner': "root",
            'group': "root",
            'contains': [r"^worker_processes \w+;"],
            'absent': [r"autoindex on"],
        }])

        assert validator.success
        assert f"stat -c '%a %U %G' {NGINX_CONF}" in env.commands

    def test_missing_required_and_optional(self):
        """Missing required files are errors, optional ones warnings."""
        env = ready_env(responses={
            "test -f /etc/app.conf": CommandResult(1),
            "test -f /etc/extra.conf": CommandResult(1),
        })
        validator = ConfigurationFileValidator().validate(env, files=[
            {'path': "/etc/app.conf"},
            {'path': "/etc/extra.conf", 'required': False},
        ])

        assert messages(validator) == ["Required file not found: /etc/app.conf"]
        assert validator.warnings[0].message == "Optional file not found: /etc/extra.conf"

    def test_permission_mismatches(self):
        """Mode, owner and group mismatches are each reported."""
        env = ready_env(responses={"stat -c": CommandResult(0, stdout="600 nginx adm\n")})
        validator = ConfigurationFileValidator().validate(env, files=[
            {'path': NGINX_CONF, 'mode': "0644", 'owner': "root", 'group': "root"},
        ])

        assert messages(validator) == [
            f"Permission mode mismatch: {NGINX_CONF}",
            f"Owner mismatch: {NGINX_CONF}",
            f"Group mismatch: {NGINX_CONF}",
        ]
        assert validator.errors[0].details == {'expected': "644", 'actual': "600"}

    def test_content_patterns(self):
        """Missing required patterns and present forbidden ones fail."""
        env = ready_env(files={NGINX_CONF: "server_tokens on;"})
        validator = ConfigurationFileValidator().validate(env, files=[{
            'path': NGINX_CONF,
            'contains': [r"worker_processes"],
            'absent': [r"server_tokens on"],
        }])

        assert len(validator.errors) == 2
        assert validator.errors[0].details == {'pattern': "worker_processes"}

    def test_unreadable_content(self):
        """A file that cannot be read fails its content checks."""
        env = ready_env()
        validator = ConfigurationFileValidator().validate(env, files=[{'path': NGINX_CONF, 'contains': ["x"]}])
        assert messages(validator) == [f"Failed to read file: {NGINX_CONF}"]

    def test_syntax_checks(self):
        """YAML and JSON content must parse."""
        env = ready_env(files={
            "/etc/app.yml": "key: [unclosed",
            "/etc/app.json": '{"key": "value"}',
        })
        validator = ConfigurationFileValidator().validate(env, files=[
            {'path': "/etc/app.yml", 'syntax': "yaml"},
            {'path': "/etc/app.json", 'syntax': "json"},
        ])

        assert messages(validator) == ["Invalid YAML syntax: /etc/app.yml"]

    def test_symlink_target(self):
        """Symlinks are checked with test -L and their target compared."""
        env = ready_env(responses={"readlink /etc/alternatives/editor": CommandResult(0, stdout="/usr/bin/nano\n")})
        validator = ConfigurationFileValidator().validate(env, files=[
            {'path': "/etc/alternatives/editor", 'type': "symlink", 'target': "/usr/bin/vim"},
        ])

        assert "test -L /etc/alternatives/editor" in env.commands
        assert validator.errors[0].details == {'expected': "/usr/bin/vim", 'actual': "/usr/bin/nano"}

    def test_no_files(self):
        """An empty file list is an error."""
        assert not ConfigurationFileValidator().validate(ready_env()).success

    def test_normalize_mode(self):
        """Octal ints and zero-padded strings compare like stat output."""
        assert normalize_mode(0o755) == "755"
        assert normalize_mode("0644") == "644"
        assert normalize_mode("4755") == "4755"
        assert normalize_mode("0") == "0"


class TestFunctionalTestValidator:
    """Test command and endpoint checks."""

    def test_command_output_matches(self):
        """Exit code and output pattern both match."""
        env = ready_env(responses={"nginx -v": CommandResult(0, stderr="nginx version: nginx/1.18.0\n")})
        validator = FunctionalTestValidator().validate(env, tests=[
            {'name': "nginx version", 'command': "nginx -v", 'expected_output': r"nginx/1\.\d+"},
            {'name': "greeting", 'command': "echo hello", 'expected_output': "^hello$"},
        ])
        assert validator.success

    def test_unexpected_exit_code(self):
        """A differing exit code is reported with the command."""
        env = ready_env(responses={"nginx -t": CommandResult(1, stderr="emerg: unknown directive\n")})
        validator = FunctionalTestValidator().validate(env, tests=[{'name': "config test", 'command': "nginx -t"}])

        assert messages(validator) == ["Unexpected exit code from config test"]
        assert validator.errors[0].details['actual'] == 1
        assert "unknown directive" in validator.errors[0].details['stderr']

    def test_expected_failure(self):
        """A non-zero expected exit code passes when matched."""
        env = ready_env(responses={"false": CommandResult(1)})
        validator = FunctionalTestValidator().validate(env, tests=[{'command': "false", 'expected_exit_code': 1}])
        assert validator.success

    def test_output_mismatch(self):
        """Output that does not match the pattern fails."""
        env = ready_env()
        validator = FunctionalTestValidator().validate(env, tests=[
            {'name': "greeting", 'command': "echo goodbye", 'expected_output': "hello"},
        ])
        assert messages(validator) == ["Output of greeting does not match expected pattern"]

    def test_endpoints(self):
        """HTTP status codes and TCP ports are checked."""
        env = ready_env(responses={
            "curl": CommandResult(0, stdout="503"),
            "nc -z localhost 5432": CommandResult(1),
        })
        validator = FunctionalTestValidator().validate(env, tests=[{
            'name': "web stack",
            'endpoints': [
                {'type': "http", 'url': "http://localhost/"},
                {'type': "tcp", 'port': 5432},
            ],
        }])

        assert messages(validator) == [
            "HTTP endpoint returned unexpected status: http://localhost/",
            "TCP port not accessible: localhost:5432",
        ]
        assert validator.errors[0].details['actual'] == "503"

    def test_unready_environment(self):
        """Commands against an unready environment fail instead of raising."""
        validator = FunctionalTestValidator().validate(FakeEnvironment("idle"), tests=[{'command': "true"}])
        assert validator.errors[0].details['actual'] == -1

    def test_no_tests(self):
        """An empty test list is an error."""
        assert not FunctionalTestValidator().validate(ready_env()).success


class TestPackageValidator:
    """Test installed and absent package checks."""

    def test_installed_and_absent(self):
        """Queries use the distribution's package tool."""
        env = ready_env(responses={"dpkg -s telnet": CommandResult(1)})
        validator = PackageValidator().validate(env, packages=["nginx", "curl"], absent_packages=["telnet"])

        assert validator.success
        assert "dpkg -s nginx" in env.commands

    def test_missing_and_unwanted(self):
        """Missing packages and unwanted installed ones fail."""
        env = ready_env(responses={"dpkg -s nginx": CommandResult(1)})
        validator = PackageValidator().validate(env, packages=["nginx"], absent_packages=["telnet"])

        assert messages(validator) == [
            "Package nginx not installed",
            "Package telnet should not be installed",
        ]
        assert validator.errors[0].details == {'package': "nginx", 'distribution': "ubuntu"}

    def test_rpm_distribution(self):
        """Fedora environments query rpm."""
        env = ready_env(options={'distribution': "fedora"})
        PackageValidator().validate(env, packages=["nginx"])
        assert "rpm -q nginx" in env.commands

    def test_unsupported_distribution(self):
        """Unknown distributions stop validation with one error."""
        env = ready_env(options={'distribution': "gentoo"})
        validator = PackageValidator().validate(env, packages=["nginx", "curl"])

        assert len(validator.errors) == 1
        assert "gentoo" in validator.errors[0].message

    def test_no_packages(self):
        """An empty package list is an error."""
        assert not PackageValidator().validate(ready_env()).success


class TestServiceValidator:
    """Test systemd unit state checks."""

    def unit(self, active, enabled):
        return {
            "systemctl is-active nginx": CommandResult(0 if active == "active" else 3, stdout=f"{active}\n"),
            "systemctl is-enabled nginx": CommandResult(0 if enabled == "enabled" else 1, stdout=f"{enabled}\n"),
        }

    def test_running_and_enabled(self):
        """A plain unit name expects running and enabled."""
        env = ready_env(responses=self.unit("active", "enabled"))
        assert ServiceValidator().validate(env, services=["nginx"]).success

    def test_inactive_and_disabled(self):
        """A unit expected running reports both failures."""
        env = ready_env(responses=self.unit("inactive", "disabled"))
        validator = ServiceValidator().validate(env, services=["nginx"])

        assert messages(validator) == ["Service nginx is not active", "Service nginx is not enabled"]
        assert validator.errors[0].details == {'service': "nginx", 'actual': "inactive"}

    def test_stopped(self):
        """A stopped unit must be inactive and not enabled."""
        env = ready_env(responses=self.unit("active", "enabled"))
        validator = ServiceValidator().validate(env, services=[{'name': "nginx", 'state': "stopped"}])

        assert messages(validator) == [
            "Service nginx should be inactive but is active",
            "Service nginx should be disabled but is enabled",
        ]

    def test_enablement_can_be_skipped(self):
        """enabled=None only checks the running state."""
        env = ready_env(responses=self.unit("active", "disabled"))
        assert ServiceValidator().validate(env, services=[{'name': "nginx", 'enabled': None}]).success

    def test_masked(self):
        """Masked units are checked through is-enabled."""
        env = ready_env(responses=self.unit("inactive", "masked"))
        assert ServiceValidator().validate(env, services=[{'name': "nginx", 'state': "masked"}]).success
        assert not any("is-active" in command for command in env.commands)

    def test_unknown_state(self):
        """Unknown states are errors."""
        env = ready_env(responses=self.unit("active", "enabled"))
        validator = ServiceValidator().validate(env, services=[{'name': "nginx", 'state': "paused"}])
        assert messages(validator) == ["Unknown service state 'paused' for nginx"]

    def test_requires_systemd(self):
        """Environments without systemd cannot check services."""
        env = ready_env(options={'systemd': False})
        validator = ServiceValidator().validate(env, services=["nginx"])

        assert not validator.success
        assert env.commands == []

    def test_to_dict(self):
        """Serialized results carry the validator name."""
        env = ready_env(responses=self.unit("active", "enabled"))
        assert ServiceValidator().validate(env, services=["nginx"]).to_dict()['validator'] == "service"
