"""Shared fixtures: in-memory sandbox provider and isolated settings."""

import pytest

from e2bswarm.config import SwarmSettings
from e2bswarm.errors import SandboxError
from e2bswarm.sandbox import CommandResult
from e2bswarm.schemas import SwarmConfig, Task


class FakeSandbox:
    """
    Sandbox session that records commands and keeps files in a dict.

    Command output is scripted with `respond(fragment, result)`: the first
    registered fragment contained in a command decides its result.
    """

    def __init__(self, sandbox_id: str, responses: list | None = None):
        self.sandbox_id = sandbox_id
        self.files: dict[str, str] = {}
        self.commands: list[str] = []
        self.killed = False
        self.responses = responses if responses is not None else []

    def respond(self, fragment: str, result: CommandResult | Exception) -> None:
        self.responses.append((fragment, result))

    async def run(self, cmd: str, timeout: float | None = None) -> CommandResult:
        self.commands.append(cmd)
        for fragment, result in self.responses:
            if fragment in cmd:
                if isinstance(result, Exception):
                    raise result
                return result
        return CommandResult()

    async def write_file(self, path: str, content: str) -> None:
        self.files[path] = content

    async def read_file(self, path: str) -> str:
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    async def kill(self) -> None:
        self.killed = True

    def ran(self, fragment: str) -> bool:
        return any(fragment in cmd for cmd in self.commands)


class FakeProvider:
    """SandboxProvider handing out FakeSandbox sessions."""

    def __init__(self):
        self.sandboxes: dict[str, FakeSandbox] = {}
        self.responses: list = []
        self.create_error: Exception | None = None
        self.created: list[tuple[str, int]] = []

    def respond(self, fragment: str, result: CommandResult | Exception) -> None:
        """Script a response for every sandbox, existing or future."""
        self.responses.append((fragment, result))

    def add(self, sandbox_id: str) -> FakeSandbox:
        sandbox = FakeSandbox(sandbox_id, self.responses)
        self.sandboxes[sandbox_id] = sandbox
        return sandbox

    async def create(self, template: str, timeout: int) -> FakeSandbox:
        if self.create_error:
            raise self.create_error
        self.created.append((template, timeout))
        return self.add(f"sbx-{len(self.sandboxes) + 1}")

    async def connect(self, sandbox_id: str) -> FakeSandbox:
        if sandbox_id not in self.sandboxes:
            raise SandboxError(f"Sandbox {sandbox_id} not found")
        return self.sandboxes[sandbox_id]


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def settings(tmp_path, monkeypatch):
    for var in ("E2B_API_KEY", "ANTHROPIC_API_KEY", "GITHUB_TOKEN", "GH_TOKEN", "E2B_TEMPLATE"):
        monkeypatch.delenv(var, raising=False)
    return SwarmSettings(
        e2b_api_key="e2b-test-key",
        anthropic_api_key="sk-ant-test",
        data_dir=tmp_path / "data",
        tasks_root=tmp_path / "tasks",
        secrets_file=tmp_path / "secrets",
        ssh_dir=tmp_path / "ssh",
    )


@pytest.fixture
def config():
    return SwarmConfig(api_key="e2b-test-key", template="base", timeout=600, max_instances=5)


@pytest.fixture
def make_task():
    def _make(task_id: str, subject: str | None = None, **kwargs) -> Task:
        return Task(
            id=task_id,
            subject=subject or f"Task {task_id}",
            description=kwargs.pop("description", f"Do task {task_id}"),
            **kwargs,
        )

    return _make
