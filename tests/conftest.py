"""Shared test fixtures for rigging tests."""
import re
import shlex

import pytest

from rigging.core.errors import EnvironmentSetupError
from rigging.environments.base import CommandResult, Environment, EnvironmentKind

ECHO_REDIRECT = re.compile(r"^echo (.+?) > (\S+)$")
HEREDOC = re.compile(r"^cat > (\S+) << 'RIGGING_EOF'\n(.*)\nRIGGING_EOF$", re.DOTALL)


class FakeEnvironment(Environment):
    """In-memory environment with a tiny shell: echo, echo > file, heredoc, cat, rm -f.

    Commands matching a key of `responses` (substring match) return the
    mapped CommandResult, or call it when it is callable.
    """

    kind = EnvironmentKind.CONTAINER

    def __init__(self, name="fake", options=None, responses=None, setup_ok=True):
        super().__init__(name, options)
        self.responses = dict(responses or {})
        self.setup_ok = setup_ok
        self.files = {}
        self.commands = []
        self.copies = []
        self.setup_calls = 0
        self.teardown_calls = 0
        self.alive = False

    @property
    def instance_name(self):
        return f"fake-{self.name}"

    def resource_handle(self):
        return "fake-handle" if self.alive else None

    def setup(self):
        self.setup_calls += 1
        if not self.setup_ok:
            raise EnvironmentSetupError("setup failed")
        self.alive = True
        self.mark_ready()

    def teardown(self):
        self.teardown_calls += 1
        self.alive = False
        self.mark_not_ready()

    def execute(self, command, timeout=None, user=None):
        self._require_ready()
        self.commands.append(command)
        for pattern, response in self.responses.items():
            if pattern in command:
                return response(command) if callable(response) else response

        heredoc = HEREDOC.match(command)
        if heredoc:
            self.files[shlex.split(heredoc.group(1))[0]] = heredoc.group(2)
            return CommandResult(0)
        redirect = ECHO_REDIRECT.match(command)
        if redirect:
            self.files[redirect.group(2)] = shlex.split(redirect.group(1))[0]
            return CommandResult(0)
        if command.startswith("echo "):
            return CommandResult(0, stdout=shlex.split(command[5:])[0] + "\n")
        if command.startswith("cat "):
            path = shlex.split(command[4:])[0]
            if path in self.files:
                return CommandResult(0, stdout=self.files[path] + "\n")
            return CommandResult(1, stderr=f"cat: {path}: No such file or directory")
        if command.startswith("rm -f "):
            self.files.pop(shlex.split(command[6:])[0], None)
            return CommandResult(0)
        return CommandResult(0)

    def copy_to(self, source, destination):
        self.copies.append(("to", source, destination))

    def copy_from(self, source, destination):
        self.copies.append(("from", source, destination))

    def process_alive(self):
        return self.alive


class FakeRuntime:
    """Records container runtime calls and returns canned results."""

    binary = "podman"

    def __init__(self, available=True):
        self.is_available = available
        self.calls = []
        self.containers = []
        self.create_result = CommandResult(0, stdout="cid123\n")
        self.exec_handler = None

    def available(self):
        return self.is_available

    def ensure_user_service(self):
        pass

    def run(self, args, timeout=None):
        self.calls.append(("run", list(args)))
        return CommandResult(0)

    def pull(self, image):
        self.calls.append(("pull", image))
        return CommandResult(0)

    def create(self, name, image, **kwargs):
        self.calls.append(("create", name, image, kwargs))
        return self.create_result

    def start(self, container):
        self.calls.append(("start", container))
        return CommandResult(0)

    def stop(self, container, timeout=10):
        self.calls.append(("stop", container))
        return CommandResult(0)

    def remove(self, container):
        self.calls.append(("remove", container))
        return CommandResult(0)

    def exec(self, container, command, user="root", timeout=None):
        self.calls.append(("exec", command, user))
        if self.exec_handler is not None:
            return self.exec_handler(command)
        if "is-system-running" in command:
            return CommandResult(0, stdout="running\n")
        if command.startswith("echo "):
            return CommandResult(0, stdout=shlex.split(command[5:])[0] + "\n")
        return CommandResult(0)

    def copy_to(self, container, source, destination):
        self.calls.append(("copy_to", source, destination))
        return CommandResult(0)

    def copy_from(self, container, source, destination):
        self.calls.append(("copy_from", source, destination))
        return CommandResult(0)

    def inspect(self, container, fmt=None):
        return "true"

    def commit(self, container, image):
        self.calls.append(("commit", container, image))
        return CommandResult(0)

    def remove_image(self, image):
        self.calls.append(("rmi", image))
        return CommandResult(0)

    def list_containers(self, name_filter):
        return list(self.containers)

    def prune(self):
        self.calls.append(("prune",))
        return [CommandResult(0)]

    def call_names(self):
        return [call[0] for call in self.calls]


@pytest.fixture
def fake_env():
    """A ready in-memory environment."""
    env = FakeEnvironment("web")
    env.setup()
    return env


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    """Keep relative work dirs and logs inside the test's tmp_path."""
    monkeypatch.chdir(tmp_path)
