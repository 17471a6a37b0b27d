"""Tests for recipe runners, state capture and the idempotency validator."""
import json

import pytest

from rigging.core.errors import RiggingError
from rigging.environments.base import CommandResult
from rigging.validators import (
    ApplyResult,
    IdempotencyValidator,
    MitamaeRunner,
    RecipeRunner,
    SystemStateCapture,
    Validator,
    diff_states,
)

from conftest import FakeEnvironment

RECIPE = "/opt/rigging/recipes/default.rb"


class ScriptedRunner(RecipeRunner):
    """Returns queued ApplyResults (or raises queued errors) in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def apply(self, environment, recipe_path, node_attributes=None, dry_run=False):
        self.calls.append({'recipe': recipe_path, 'dry_run': dry_run, 'attributes': node_attributes})
        result = self.results.pop(0) if self.results else ApplyResult(0, changes=[])
        if isinstance(result, Exception):
            raise result
        return result


def stable_env(extra=None):
    responses = {
        "dpkg-query": CommandResult(0, stdout="nginx:1.18\ncurl:7.81\n"),
        "systemctl list-units": CommandResult(0, stdout="nginx.service loaded active running nginx\n"),
    }
    responses.update(extra or {})
    env = FakeEnvironment("web", responses=responses)
    env.setup()
    return env


class TestApplyResult:
    """Test change detection on recipe output."""

    def test_report_is_authoritative(self):
        """An empty change report wins over log text that looks like a change."""
        result = ApplyResult(0, output="[INFO] file[/etc/x] modified\n", changes=[])
        assert not result.changes_made()
        assert result.change_list() == []

    def test_report_with_changes(self):
        """A non-empty report means changes were made."""
        result = ApplyResult(0, changes=[{'resource': 'package[nginx]', 'action': 'install'}])
        assert result.changes_made()
        assert result.would_change()

    def test_text_fallback(self):
        """Without a report, change lines in the log are detected."""
        result = ApplyResult(0, output="[INFO] file[/etc/app.conf] modified\n")
        assert result.changes_made()
        assert result.change_list() == [
            {'resource_type': 'file', 'resource_name': '/etc/app.conf', 'action': 'modified'}
        ]

    def test_quiet_output(self):
        """Converged output reports no changes."""
        result = ApplyResult(0, output="[INFO] Starting mitamae...\n[INFO] Finished\n")
        assert not result.changes_made()
        assert not result.would_change()

    def test_dry_run_patterns(self):
        """Dry-run phrasing is detected."""
        assert ApplyResult(0, output="service[nginx] would change state").would_change()


class TestMitamaeRunner:
    """Test the mitamae adapter."""

    def test_build_command(self):
        """Flags are assembled in order with quoting."""
        runner = MitamaeRunner(log_level="debug")
        assert runner.build_command("/r/my recipe.rb", "/tmp/node.json", dry_run=True) == (
            "mitamae local --log-level=debug --color=false --dry-run "
            "--node-json=/tmp/node.json '/r/my recipe.rb'"
        )

    def test_apply_without_report(self):
        """Exit code and combined output are returned."""
        env = stable_env({"mitamae local": CommandResult(0, stdout="[INFO] done\n", stderr="warn\n")})
        result = MitamaeRunner().apply(env, RECIPE)

        assert result.success
        assert result.output == "[INFO] done\nwarn\n"
        assert result.changes is None

    def test_apply_writes_node_json(self):
        """Node attributes are written to the guest and passed to mitamae."""
        env = stable_env({"mitamae local": CommandResult(0)})
        MitamaeRunner().apply(env, RECIPE, node_attributes={'role': 'web'})

        node_files = [path for path in env.files if path.startswith("/tmp/node_")]
        assert len(node_files) == 1
        assert json.loads(env.files[node_files[0]]) == {'role': 'web'}
        assert f"--node-json={node_files[0]}" in env.commands[-1]

    def test_change_report_read(self):
        """A JSON change report written by the run becomes the change list."""
        report = "/tmp/changes.json"
        env = stable_env()

        def run(command):
            env.files[report] = json.dumps({'changes': [{'resource': 'file[/etc/x]'}]})
            return CommandResult(0)

        env.responses["mitamae local"] = run
        result = MitamaeRunner(change_report=report).apply(env, RECIPE)

        assert f"rm -f {report}" in env.commands
        assert result.changes == [{'resource': 'file[/etc/x]'}]

    def test_unreadable_report_falls_back(self):
        """A missing report leaves change detection to the log text."""
        env = stable_env({"mitamae local": CommandResult(0, stdout="[INFO] file[/a] created\n")})
        result = MitamaeRunner(change_report="/tmp/none.json").apply(env, RECIPE)
        assert result.changes is None
        assert result.changes_made()


class TestSystemStateCapture:
    """Test state capture parsing."""

    def test_packages(self):
        """Packages come back sorted."""
        assert SystemStateCapture(stable_env()).packages() == ["curl:7.81", "nginx:1.18"]

    def test_packages_fall_through_managers(self):
        """The first package manager that answers is used."""
        env = stable_env({
            "dpkg-query": CommandResult(127),
            "rpm -qa": CommandResult(0, stdout="bash:5.2-1\n"),
        })
        assert SystemStateCapture(env).packages() == ["bash:5.2-1"]

    def test_services(self):
        """systemd unit listing is parsed per service."""
        services = SystemStateCapture(stable_env()).services()
        assert services == {'nginx': {'loaded': 'loaded', 'active': 'active', 'sub': 'running'}}

    def test_services_sysv_fallback(self):
        """service --status-all is used without systemd."""
        env = stable_env({
            "systemctl list-units": CommandResult(1),
            "service --status-all": CommandResult(0, stdout=" [ + ]  ssh\n [ - ]  cron\n"),
        })
        assert SystemStateCapture(env).services() == {
            'ssh': {'status': 'running'},
            'cron': {'status': 'stopped'},
        }

    def test_files(self):
        """File metadata and checksum are captured; missing files flagged."""
        env = stable_env({
            "stat -c '%a:%U:%G:%s:%Y' /etc/app.conf": CommandResult(0, stdout="644:root:root:12:1700000000\n"),
            "sha256sum /etc/app.conf": CommandResult(0, stdout="abc123\n"),
            "stat -c '%a:%U:%G:%s:%Y' /etc/missing": CommandResult(1, stderr="No such file"),
        })
        files = SystemStateCapture(env).files(["/etc/app.conf", "/etc/missing"])

        assert files["/etc/app.conf"] == {
            'exists': True, 'mode': '644', 'owner': 'root', 'group': 'root',
            'size': 12, 'mtime': 1700000000, 'checksum': 'abc123',
        }
        assert files["/etc/missing"] == {'exists': False}

    def test_processes(self):
        """Processes are counted per executable, skipping the ps call."""
        ps = (
            "root 1 0.0 0.1 1000 500 ? Ss 10:00 0:01 /sbin/init\n"
            "www 10 0.0 0.1 1000 500 ? S 10:00 0:00 nginx: worker\n"
            "www 11 0.0 0.1 1000 500 ? S 10:00 0:00 nginx: worker\n"
            "root 99 0.0 0.1 1000 500 ? R 10:00 0:00 ps aux --no-headers\n"
        )
        env = stable_env({"ps aux --no-headers": CommandResult(0, stdout=ps)})
        assert SystemStateCapture(env).processes() == {'/sbin/init': 1, 'nginx:': 2}

    def test_capture_selects_components(self):
        """Only requested components are captured."""
        state = SystemStateCapture(stable_env()).capture(packages=True, services=False)
        assert set(state) == {'packages'}


class TestDiffStates:
    """Test state diffs."""

    def test_identical(self):
        """Equal captures have no differences."""
        state = {'packages': ['a:1'], 'services': {'x': {'active': 'active'}}}
        assert diff_states(state, state) == []

    def test_package_and_service_changes(self):
        """Added/removed packages and changed services are reported."""
        before = {'packages': ['a:1', 'b:1'], 'services': {'x': {'active': 'active'}}}
        after = {'packages': ['a:1', 'c:1'], 'services': {'x': {'active': 'failed'}}}
        differences = diff_states(before, after)

        assert {'type': 'packages', 'added': ['c:1']} in differences
        assert {'type': 'packages', 'removed': ['b:1']} in differences
        assert {'type': 'service', 'name': 'x', 'before': {'active': 'active'},
                'after': {'active': 'failed'}} in differences

    def test_file_removed(self):
        """A file disappearing is an exists change."""
        before = {'files': {'/a': {'exists': True, 'mode': '644'}}}
        after = {'files': {}}
        [difference] = diff_states(before, after)
        assert difference['path'] == '/a'
        assert {'attribute': 'exists', 'before': True, 'after': False} in difference['changes']

    def test_components_missing_on_one_side_ignored(self):
        """Only components present in both captures are compared."""
        assert diff_states({'packages': ['a']}, {'services': {}}) == []


class TestIdempotencyValidator:
    """Test the double-apply protocol."""

    def test_converged_recipe_passes(self):
        """Two clean runs with unchanged state pass."""
        runner = ScriptedRunner()
        validator = IdempotencyValidator(runner).validate(stable_env(), recipe_path=RECIPE)

        assert validator.success
        assert validator.warnings == []
        assert [call['dry_run'] for call in runner.calls] == [False, False, True]

    def test_second_run_changes_fail(self):
        """Changes on the second run fail validation."""
        runner = ScriptedRunner(
            ApplyResult(0, changes=[{'resource': 'file[/etc/x]'}]),
            ApplyResult(0, changes=[{'resource': 'file[/etc/x]'}]),
        )
        validator = IdempotencyValidator(runner).validate(stable_env(), recipe_path=RECIPE)

        assert not validator.success
        assert validator.errors[0].message == "Recipe is not idempotent - changes detected on second run"
        assert validator.errors[0].details['changes'] == [{'resource': 'file[/etc/x]'}]

    def test_mutating_file_detected(self):
        """A file whose checksum changes between captures fails with a file diff."""
        checksums = iter(["aaa\n", "bbb\n"])
        env = stable_env({
            "stat -c": CommandResult(0, stdout="644:root:root:12:1700000000\n"),
            "sha256sum": lambda command: CommandResult(0, stdout=next(checksums)),
        })
        validator = IdempotencyValidator(ScriptedRunner()).validate(
            env, recipe_path=RECIPE, check_packages=False, check_services=False,
            check_files=["/etc/app.conf"],
        )

        assert not validator.success
        [error] = validator.errors
        assert error.message == "System state changed during idempotent run"
        [difference] = error.details['differences']
        assert difference['type'] == 'file'
        assert difference['changes'] == [{'attribute': 'checksum', 'before': 'aaa', 'after': 'bbb'}]

    def test_first_run_failure_stops(self):
        """A failing first run is fatal and nothing else runs."""
        runner = ScriptedRunner(ApplyResult(1, output="syntax error"))
        validator = IdempotencyValidator(runner).validate(stable_env(), recipe_path=RECIPE)

        assert not validator.success
        assert validator.errors[0].message == "Recipe first run failed"
        assert len(runner.calls) == 1

    def test_runner_exception_is_error(self):
        """Runner errors become failed applications."""
        runner = ScriptedRunner(RiggingError("mitamae not found"))
        validator = IdempotencyValidator(runner).validate(stable_env(), recipe_path=RECIPE)
        assert validator.errors[0].details['output'] == "mitamae not found"

    def test_dry_run_only_warns(self):
        """Dry-run failures and predicted changes are warnings."""
        runner = ScriptedRunner(ApplyResult(0, changes=[]), ApplyResult(0, changes=[]),
                                ApplyResult(0, changes=[{'resource': 'service[nginx]'}]))
        validator = IdempotencyValidator(runner).validate(stable_env(), recipe_path=RECIPE)

        assert validator.success
        assert validator.warnings[0].message == "Dry run detected potential changes after convergence"

    def test_dry_run_failure_warns(self):
        """A failed dry run does not fail validation."""
        runner = ScriptedRunner(ApplyResult(0, changes=[]), ApplyResult(0, changes=[]), ApplyResult(2))
        validator = IdempotencyValidator(runner).validate(stable_env(), recipe_path=RECIPE)
        assert validator.success
        assert validator.warnings[0].message == "Recipe dry run failed"

    def test_missing_recipe_path(self):
        """A recipe path is required."""
        validator = IdempotencyValidator(ScriptedRunner()).validate(stable_env())
        assert validator.errors[0].message == "No recipe path provided for idempotency validation"

    def test_revalidation_clears_previous_issues(self):
        """validate() starts from a clean slate."""
        validator = IdempotencyValidator(ScriptedRunner())
        validator.validate(stable_env())
        validator.validate(stable_env(), recipe_path=RECIPE)
        assert validator.success

    def test_to_dict(self):
        """Validator results serialize with their name."""
        result = IdempotencyValidator(ScriptedRunner()).validate(stable_env(), recipe_path=RECIPE).to_dict()
        assert result == {'validator': 'idempotency', 'success': True, 'errors': [], 'warnings': []}


class TestValidatorBase:
    """Test the validator base class."""

    def test_execute_command_on_unready_environment(self):
        """Environment errors become a failed command result."""
        result = Validator().execute_command(FakeEnvironment("idle"), "true")
        assert result.exit_code == -1
        assert "not ready" in result.stderr

    def test_validate_is_abstract(self):
        """Subclasses must implement validate."""
        with pytest.raises(NotImplementedError):
            Validator().validate(FakeEnvironment("idle"))
