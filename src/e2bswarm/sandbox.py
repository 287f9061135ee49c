"""
Narrow adapter over the remote sandbox provisioning service.

The swarm only needs to create or reconnect to a sandbox, run shell
commands, move files, and kill it. E2BSandboxProvider implements that
on top of the e2b SDK.
"""

import logging
from dataclasses import dataclass
from typing import Protocol

from e2b import AsyncSandbox, CommandExitException

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Captured result of a shell command run inside a sandbox."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SandboxSession(Protocol):
    """A connected sandbox."""

    @property
    def sandbox_id(self) -> str: ...

    async def run(self, cmd: str, timeout: float | None = None) -> CommandResult: ...

    async def write_file(self, path: str, content: str) -> None: ...

    async def read_file(self, path: str) -> str: ...

    async def kill(self) -> None: ...


class SandboxProvider(Protocol):
    """Creates new sandboxes and reconnects to existing ones."""

    async def create(self, template: str, timeout: int) -> SandboxSession: ...

    async def connect(self, sandbox_id: str) -> SandboxSession: ...


class E2BSandbox:
    """SandboxSession backed by an e2b AsyncSandbox."""

    def __init__(self, sandbox: AsyncSandbox):
        self._sandbox = sandbox

    @property
    def sandbox_id(self) -> str:
        return self._sandbox.sandbox_id

    async def run(self, cmd: str, timeout: float | None = None) -> CommandResult:
        """Run a shell command; a non-zero exit is returned, not raised."""
        kwargs = {"timeout": timeout} if timeout is not None else {}
        try:
            result = await self._sandbox.commands.run(cmd, **kwargs)
        except CommandExitException as e:
            return CommandResult(stdout=e.stdout, stderr=e.stderr, exit_code=e.exit_code)
        return CommandResult(
            stdout=result.stdout, stderr=result.stderr, exit_code=result.exit_code
        )

    async def write_file(self, path: str, content: str) -> None:
        await self._sandbox.files.write(path, content)

    async def read_file(self, path: str) -> str:
        return await self._sandbox.files.read(path)

    async def kill(self) -> None:
        await self._sandbox.kill()


class E2BSandboxProvider:
    """SandboxProvider using the E2B cloud."""

    def __init__(self, api_key: str):
        self.api_key = api_key

    async def create(self, template: str, timeout: int) -> E2BSandbox:
        sandbox = await AsyncSandbox.create(
            template=template,
            timeout=timeout,
            api_key=self.api_key,
        )
        logger.debug(f"Created sandbox {sandbox.sandbox_id} from template {template}")
        return E2BSandbox(sandbox)

    async def connect(self, sandbox_id: str) -> E2BSandbox:
        sandbox = await AsyncSandbox.connect(sandbox_id, api_key=self.api_key)
        return E2BSandbox(sandbox)
