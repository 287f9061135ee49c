"""
Sandbox instance lifecycle: spawn, setup, launch, reconcile, collect, kill.
"""

import asyncio
import json
import logging
import shlex
from collections.abc import Callable
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from e2bswarm.config import SwarmPaths, SwarmSettings, get_settings
from e2bswarm.errors import ConfigurationError, SandboxError, SourceError
from e2bswarm.sandbox import E2BSandboxProvider, SandboxProvider, SandboxSession
from e2bswarm.schemas import (
    CollectedResults,
    InstanceStatus,
    Result,
    SourceType,
    SwarmConfig,
    SwarmInstance,
    Task,
    utcnow,
)
from e2bswarm.swarm.uploads import collect_files

logger = logging.getLogger(__name__)

WORKSPACE = "/home/user/workspace"
AGENT_DIR = f"{WORKSPACE}/.claude"
TASK_LIST_ID = "swarm"
TASKS_DIR = f"{AGENT_DIR}/tasks/{TASK_LIST_ID}"
PROMPT_FILE = f"{AGENT_DIR}/swarm-prompt.md"
OUTPUT_FILE = f"{AGENT_DIR}/swarm-output.json"
PID_FILE = f"{AGENT_DIR}/swarm-pid"

CLONE_TIMEOUT = 120
INSTALL_TIMEOUT = 180

DEFAULT_PROMPT = "Execute the assigned tasks from the swarm task list."

INSTALL_COMMAND = (
    f"cd {WORKSPACE} && "
    "if [ -f package.json ]; then bun install 2>/dev/null || npm install 2>/dev/null; fi; "
    "if [ -f requirements.txt ]; then pip install -q -r requirements.txt 2>/dev/null; fi; "
    "true"
)


def build_prompt(prompt: str, tasks: list[Task]) -> str:
    """Prompt file telling the agent to work through its task list in order."""
    task_lines = "\n".join(f"- [{t.id}] {t.subject}" for t in tasks)
    return f"""# Swarm Task Execution

{prompt}

## Assigned Tasks

{task_lines}

## Instructions

1. Read each task using TaskGet
2. Set task status to in_progress when starting
3. Complete the task following its description
4. Set task status to completed when done
5. Move to the next task

Work through all assigned tasks systematically.
"""


class SwarmManager:
    """
    Owns the lifecycle of sandbox instances.

    Spawning is the launch phase: it returns as soon as the agent has been
    started in the background. Completion is only observed by reconciling
    (check_instance / watch).

    Example:
        manager = SwarmManager(config)
        instance = await manager.spawn(
            source="https://github.com/org/repo",
            source_type="repo",
            tasks=tasks,
        )
        await manager.watch([instance], interval=30)
    """

    def __init__(
        self,
        config: SwarmConfig,
        provider: SandboxProvider | None = None,
        settings: SwarmSettings | None = None,
    ):
        self.config = config
        self.settings = settings or get_settings()
        self.provider = provider or E2BSandboxProvider(config.api_key)

    @property
    def paths(self) -> SwarmPaths:
        return self.settings.paths

    # =========================================================================
    # Launch
    # =========================================================================

    async def spawn(
        self,
        source: str,
        source_type: SourceType | str,
        tasks: list[Task],
        prompt: str = DEFAULT_PROMPT,
        branch: str | None = None,
        new_branch: str | None = None,
        include: list[str] | None = None,
        exclude: list[str] | None = None,
        auto_commit: bool | None = None,
        auto_push: bool | None = None,
        create_pr: bool | None = None,
        pr_title: str | None = None,
        pr_base: str | None = None,
    ) -> SwarmInstance:
        """
        Provision a sandbox, set it up, and start the agent.

        Never raises: any failure marks the returned instance as failed.
        """
        instance = SwarmInstance(
            template=self.config.template,
            source=source,
            source_type=SourceType(source_type),
            branch=branch,
            new_branch=new_branch,
            tasks=tasks,
            prompt=prompt,
            auto_commit=auto_commit,
            auto_push=auto_push,
            create_pr=create_pr,
            pr_title=pr_title,
            pr_base=pr_base,
        )
        export_dir, log_dir = self.paths.instance_dirs(instance.short_id)
        instance.export_dir = str(export_dir)
        instance.log_file = str(log_dir / "execution.log")

        sandbox = None
        try:
            export_dir.mkdir(parents=True, exist_ok=True)
            log_dir.mkdir(parents=True, exist_ok=True)

            self._report(instance, f"Using template: {self.config.template}")
            sandbox = await self.provider.create(self.config.template, self.config.timeout)
            instance.sandbox_id = sandbox.sandbox_id
            self._report(instance, f"Sandbox ID: {sandbox.sandbox_id}")

            if instance.source_type == SourceType.LOCAL:
                await self._setup_from_local(sandbox, instance, include, exclude)
            else:
                await self._setup_from_repo(sandbox, instance)
        except Exception as e:
            instance.fail(str(e) or e.__class__.__name__)
            logger.error(f"[{instance.short_id}] failed: {instance.error}")
            self._append_log(instance, f"ERROR: {instance.error}")
            if sandbox is not None:
                await self._discard_sandbox(sandbox, instance)

        return instance

    async def spawn_many(
        self,
        distribution: list[list[Task]],
        source: str,
        source_type: SourceType | str,
        **options,
    ) -> list[SwarmInstance]:
        """Spawn one instance per non-empty bucket, concurrently."""
        spawns = []
        for i, tasks in enumerate(distribution, 1):
            if not tasks:
                logger.warning(f"Instance {i} has no tasks assigned, skipping")
                continue
            spawns.append(self.spawn(source=source, source_type=source_type, tasks=tasks, **options))

        return list(await asyncio.gather(*spawns))

    async def _discard_sandbox(self, sandbox: SandboxSession, instance: SwarmInstance) -> None:
        """Best-effort kill of a sandbox whose setup failed."""
        try:
            await sandbox.kill()
        except Exception as e:
            logger.warning(f"[{instance.short_id}] could not kill sandbox {sandbox.sandbox_id}: {e}")
            return
        self._append_log(instance, f"Sandbox {sandbox.sandbox_id} killed after failed setup")

    async def _setup_from_local(
        self,
        sandbox: SandboxSession,
        instance: SwarmInstance,
        include: list[str] | None,
        exclude: list[str] | None,
    ) -> None:
        root = Path(instance.source)
        if not root.is_dir():
            raise SourceError(f"Local path not found: {root}")

        self._transition(instance, InstanceStatus.UPLOADING, str(root))
        await sandbox.run(f"mkdir -p {WORKSPACE}")

        files = collect_files(root, exclude=exclude, include=include)
        self._append_log(instance, f"Found {len(files)} files to upload")

        uploaded = 0
        for path in files:
            relative = path.relative_to(root).as_posix()
            try:
                content = path.read_text(encoding="utf-8")
                await sandbox.write_file(f"{WORKSPACE}/{relative}", content)
            except Exception as e:
                # Binary or unreadable files are skipped
                self._append_log(instance, f"Skipped: {relative} ({e})")
                continue
            uploaded += 1
            if uploaded % 50 == 0:
                self._report(instance, f"{uploaded}/{len(files)} files")

        self._report(instance, f"{uploaded} files uploaded")
        await self.finish_setup(sandbox, instance)

    async def _setup_from_repo(self, sandbox: SandboxSession, instance: SwarmInstance) -> None:
        self._transition(instance, InstanceStatus.CLONING, instance.source)

        branch_flag = f"--branch {shlex.quote(instance.branch)} " if instance.branch else ""
        clone_cmd = (
            f"git clone {branch_flag}--depth 1 {shlex.quote(instance.source)} {WORKSPACE}"
        )
        result = await sandbox.run(clone_cmd, timeout=CLONE_TIMEOUT)
        if not result.ok:
            raise SourceError(f"Failed to clone repo: {result.stderr.strip()}")

        self._append_log(instance, "Clone successful")
        await self.finish_setup(sandbox, instance)

    async def finish_setup(self, sandbox: SandboxSession, instance: SwarmInstance) -> None:
        """Write task and prompt files, install dependencies, launch the agent."""
        self._transition(instance, InstanceStatus.SETTING_UP, "Creating task files...")

        await sandbox.run(f"mkdir -p {TASKS_DIR}")
        for task in instance.tasks:
            await sandbox.write_file(
                f"{TASKS_DIR}/{task.id}.json", json.dumps(task.to_dict(), indent=2)
            )
        self._append_log(instance, f"Created {len(instance.tasks)} task files")

        await sandbox.write_file(PROMPT_FILE, build_prompt(instance.prompt, instance.tasks))

        self._report(instance, "Installing dependencies...")
        try:
            await sandbox.run(INSTALL_COMMAND, timeout=INSTALL_TIMEOUT)
        except Exception as e:
            logger.warning(f"[{instance.short_id}] dependency install failed: {e}")
            self._append_log(instance, f"Dependency install failed: {e}")

        api_key = self.settings.anthropic_api_key
        if not api_key:
            raise ConfigurationError(
                "ANTHROPIC_API_KEY not found. Add it to ~/.secrets:\n"
                '  export ANTHROPIC_API_KEY="your-api-key"'
            )

        self._transition(instance, InstanceStatus.RUNNING, "Starting coding agent...")
        launch_cmd = (
            f"cd {WORKSPACE} && "
            f"export ANTHROPIC_API_KEY={shlex.quote(api_key)} && "
            f"export CLAUDE_CODE_TASK_LIST_ID={TASK_LIST_ID} && "
            f'nohup claude --print "$(cat {PROMPT_FILE})" '
            "--dangerously-skip-permissions --output-format json "
            f"> {OUTPUT_FILE} 2>&1 & "
            f"echo $! > {PID_FILE}"
        )
        result = await sandbox.run(launch_cmd)
        if not result.ok:
            raise SandboxError(f"Failed to launch agent: {result.stderr.strip()}")
        self._report(instance, "Agent process started")

    # =========================================================================
    # Reconcile
    # =========================================================================

    async def check_instance(self, instance: SwarmInstance) -> SwarmInstance:
        """
        Refresh a running instance from its sandbox.

        Instances that are not running, or have no sandbox, are returned
        untouched, so this is safe to call repeatedly.
        """
        if not instance.sandbox_id or instance.status != InstanceStatus.RUNNING:
            return instance

        try:
            sandbox = await self.provider.connect(instance.sandbox_id)
            pid_result = await sandbox.run(f"cat {PID_FILE} 2>/dev/null || echo ''")
            pid = pid_result.stdout.strip()
            if not pid:
                return instance

            ps_result = await sandbox.run(f"ps -p {shlex.quote(pid)} -o pid= 2>/dev/null || echo ''")
            if not ps_result.stdout.strip():
                instance.status = InstanceStatus.COMPLETED
                instance.completed_at = utcnow()
                instance.output = await self._read_output(sandbox)
                self._report(instance, "Execution completed")
        except Exception as e:
            instance.fail(f"Sandbox connection lost: {e}")
            logger.error(f"[{instance.short_id}] {instance.error}")
            self._append_log(instance, f"ERROR: {instance.error}")

        return instance

    async def watch(
        self,
        instances: list[SwarmInstance],
        interval: float = 10.0,
        timeout: float | None = None,
        on_change: Callable[[SwarmInstance], None] | None = None,
    ) -> list[SwarmInstance]:
        """
        Poll running instances until none is left running.

        Args:
            instances: Instances to reconcile
            interval: Seconds between polls
            timeout: Give up after this many seconds (None = no limit)
            on_change: Called with each instance whose status changed
        """
        loop = asyncio.get_running_loop()
        started = loop.time()

        while True:
            running = [i for i in instances if i.status == InstanceStatus.RUNNING]
            for instance in running:
                before = instance.status
                await self.check_instance(instance)
                if instance.status != before and on_change:
                    on_change(instance)

            if not any(i.status == InstanceStatus.RUNNING for i in instances):
                break
            if timeout is not None and loop.time() - started >= timeout:
                break
            await asyncio.sleep(interval)

        return instances

    async def collect_results(self, instance: SwarmInstance) -> CollectedResults:
        """
        Read the agent output and every task file back from the sandbox.

        Task files that cannot be read or parsed are skipped. The instance
        record is not modified.

        Raises:
            SandboxError: If the instance was never provisioned
        """
        if not instance.sandbox_id:
            raise SandboxError("Instance has no sandbox ID")

        sandbox = await self.provider.connect(instance.sandbox_id)
        output = await self._read_output(sandbox)

        listing = await sandbox.run(f"ls -1 {TASKS_DIR}/*.json 2>/dev/null || true")
        tasks = []
        for path in (line.strip() for line in listing.stdout.splitlines()):
            if not path:
                continue
            try:
                tasks.append(Task.model_validate(json.loads(await sandbox.read_file(path))))
            except (json.JSONDecodeError, PydanticValidationError) as e:
                logger.debug(f"[{instance.short_id}] skipping task file {path}: {e}")
            except Exception as e:
                logger.debug(f"[{instance.short_id}] could not read {path}: {e}")

        logs = await self._read_output(sandbox)
        self._append_log(instance, f"Results collected: {len(tasks)} tasks")
        return CollectedResults(output=output, tasks=tasks, logs=logs)

    async def _read_output(self, sandbox: SandboxSession) -> str:
        result = await sandbox.run(f'cat {OUTPUT_FILE} 2>/dev/null || echo "{{}}"')
        return result.stdout

    # =========================================================================
    # Cancel
    # =========================================================================

    async def kill(self, instance: SwarmInstance) -> Result[None]:
        """
        Force-terminate an instance's sandbox.

        A kill is recorded as a failure ("Killed by user"). Instances without
        a sandbox are left untouched.
        """
        if not instance.sandbox_id:
            return Result.ok(instance_id=instance.id)

        try:
            sandbox = await self.provider.connect(instance.sandbox_id)
            await sandbox.kill()
        except Exception as e:
            logger.debug(f"Failed to kill sandbox {instance.sandbox_id}: {e}")
            return Result.failure(str(e), instance_id=instance.id)

        instance.fail("Killed by user")
        instance.completed_at = utcnow()
        self._report(instance, "Killed")
        return Result.ok(instance_id=instance.id)

    # =========================================================================
    # Logging
    # =========================================================================

    def _transition(self, instance: SwarmInstance, status: InstanceStatus, message: str) -> None:
        instance.status = status
        self._report(instance, message)

    def _report(self, instance: SwarmInstance, message: str) -> None:
        logger.info(f"[{instance.short_id}] {instance.status.value}: {message}")
        self._append_log(instance, message)

    def _append_log(self, instance: SwarmInstance, message: str) -> None:
        if not instance.log_file:
            return
        try:
            with open(instance.log_file, "a") as f:
                f.write(f"[{utcnow().isoformat()}] {message}\n")
        except OSError as e:
            logger.debug(f"Could not write instance log {instance.log_file}: {e}")

