"""Unit tests for the sandbox instance lifecycle."""

import json
from pathlib import Path

import pytest

from e2bswarm.errors import SandboxError
from e2bswarm.sandbox import CommandResult
from e2bswarm.schemas import InstanceStatus, SourceType, SwarmInstance, TaskStatus
from e2bswarm.swarm.manager import (
    OUTPUT_FILE,
    PID_FILE,
    PROMPT_FILE,
    TASKS_DIR,
    WORKSPACE,
    SwarmManager,
    build_prompt,
)


@pytest.fixture
def manager(config, provider, settings):
    return SwarmManager(config, provider=provider, settings=settings)


@pytest.fixture
def tasks(make_task):
    return [make_task("1", "Add login"), make_task("2", "Add logout", blocked_by=["1"])]


def running_instance(provider, sandbox_id="sbx-running") -> SwarmInstance:
    provider.add(sandbox_id)
    return SwarmInstance(
        sandbox_id=sandbox_id,
        template="base",
        source="https://github.com/org/repo",
        source_type=SourceType.REPO,
        status=InstanceStatus.RUNNING,
    )


class TestBuildPrompt:
    """Test the agent prompt file."""

    def test_lists_tasks_and_instructions(self, tasks):
        """Test prompt includes tasks and instructions."""
        prompt = build_prompt("Ship the auth feature", tasks)
        assert "Ship the auth feature" in prompt
        assert "- [1] Add login" in prompt
        assert "- [2] Add logout" in prompt
        assert "in_progress" in prompt
        assert "TaskGet" in prompt


class TestSpawnFromRepo:
    """Test spawning from a git repository."""

    @pytest.mark.asyncio
    async def test_spawn_reaches_running(self, manager, provider, tasks):
        """Test repo spawn clones, uploads tasks, and launches the agent."""
        instance = await manager.spawn(
            source="https://github.com/org/repo",
            source_type="repo",
            tasks=tasks,
            branch="develop",
            auto_commit=True,
        )

        assert instance.status == InstanceStatus.RUNNING
        assert instance.sandbox_id == "sbx-1"
        assert instance.error is None
        assert instance.auto_commit is True
        assert provider.created == [("base", 600)]

        sandbox = provider.sandboxes["sbx-1"]
        assert sandbox.ran("git clone --branch develop --depth 1 https://github.com/org/repo")
        assert sandbox.ran(f"mkdir -p {TASKS_DIR}")
        assert json.loads(sandbox.files[f"{TASKS_DIR}/1.json"])["subject"] == "Add login"
        assert json.loads(sandbox.files[f"{TASKS_DIR}/2.json"])["blockedBy"] == ["1"]
        assert "- [1] Add login" in sandbox.files[PROMPT_FILE]

        launch = sandbox.commands[-1]
        assert "nohup claude --print" in launch
        assert "CLAUDE_CODE_TASK_LIST_ID=swarm" in launch
        assert f"> {OUTPUT_FILE} 2>&1 &" in launch
        assert f"echo $! > {PID_FILE}" in launch

    @pytest.mark.asyncio
    async def test_spawn_creates_instance_dirs_and_log(self, manager, settings, tasks):
        """Test spawn creates export and log directories."""
        instance = await manager.spawn(source="git@github.com:o/r.git", source_type="repo", tasks=tasks)

        exports, logs = settings.paths.instance_dirs(instance.short_id)
        assert instance.export_dir == str(exports)
        assert exports.is_dir()
        log = Path(instance.log_file).read_text()
        assert "Sandbox ID: sbx-1" in log
        assert "Agent process started" in log

    @pytest.mark.asyncio
    async def test_clone_failure_marks_failed(self, manager, provider, tasks):
        """Test clone failure marks the instance failed."""
        provider.respond("git clone", CommandResult(stderr="repository not found", exit_code=128))

        instance = await manager.spawn(source="https://github.com/org/missing", source_type="repo", tasks=tasks)

        assert instance.status == InstanceStatus.FAILED
        assert "Failed to clone repo" in instance.error
        assert "repository not found" in instance.error
        assert "ERROR: Failed to clone repo" in Path(instance.log_file).read_text()

    @pytest.mark.asyncio
    async def test_failed_setup_kills_sandbox(self, manager, provider, tasks):
        """Test a sandbox whose setup failed is not left running."""
        provider.respond("git clone", CommandResult(stderr="repository not found", exit_code=128))

        instance = await manager.spawn(source="https://github.com/org/missing", source_type="repo", tasks=tasks)

        assert instance.status == InstanceStatus.FAILED
        assert instance.sandbox_id == "sbx-1"
        assert provider.sandboxes["sbx-1"].killed
        assert "killed after failed setup" in Path(instance.log_file).read_text()

    @pytest.mark.asyncio
    async def test_kill_error_after_failed_setup_keeps_setup_error(
        self, manager, provider, tasks, monkeypatch
    ):
        """Test a failing cleanup kill does not replace the setup error."""
        provider.respond("git clone", CommandResult(stderr="repository not found", exit_code=128))
        create = provider.create

        async def create_unkillable(template, timeout):
            sandbox = await create(template, timeout)

            async def kill():
                raise SandboxError("already gone")

            sandbox.kill = kill
            return sandbox

        monkeypatch.setattr(provider, "create", create_unkillable)

        instance = await manager.spawn(source="https://github.com/org/missing", source_type="repo", tasks=tasks)

        assert instance.status == InstanceStatus.FAILED
        assert "Failed to clone repo" in instance.error

    @pytest.mark.asyncio
    async def test_provisioning_failure_marks_failed(self, manager, provider, tasks):
        """Test sandbox creation failure marks the instance failed."""
        provider.create_error = SandboxError("rate limited")

        instance = await manager.spawn(source="https://github.com/org/repo", source_type="repo", tasks=tasks)

        assert instance.status == InstanceStatus.FAILED
        assert instance.error == "rate limited"
        assert instance.sandbox_id == ""

    @pytest.mark.asyncio
    async def test_missing_agent_key_marks_failed(self, manager, provider, settings, tasks):
        """Test missing Anthropic key marks the instance failed."""
        settings.anthropic_api_key = None

        instance = await manager.spawn(source="https://github.com/org/repo", source_type="repo", tasks=tasks)

        assert instance.status == InstanceStatus.FAILED
        assert "ANTHROPIC_API_KEY not found" in instance.error
        assert provider.sandboxes[instance.sandbox_id].killed

    @pytest.mark.asyncio
    async def test_dependency_install_failure_is_ignored(self, manager, provider, tasks):
        """Test dependency install errors do not stop spawn."""
        provider.respond("npm install", TimeoutError("install took too long"))

        instance = await manager.spawn(source="https://github.com/org/repo", source_type="repo", tasks=tasks)

        assert instance.status == InstanceStatus.RUNNING

    @pytest.mark.asyncio
    async def test_launch_failure_marks_failed(self, manager, provider, tasks):
        """Test agent launch failure marks the instance failed."""
        provider.respond("nohup claude", CommandResult(stderr="claude: not found", exit_code=127))

        instance = await manager.spawn(source="https://github.com/org/repo", source_type="repo", tasks=tasks)

        assert instance.status == InstanceStatus.FAILED
        assert "Failed to launch agent" in instance.error


class TestSpawnFromLocal:
    """Test spawning from a local directory."""

    @pytest.mark.asyncio
    async def test_uploads_files(self, manager, provider, tasks, tmp_path):
        """Test local spawn uploads project files."""
        project = tmp_path / "project"
        (project / "src").mkdir(parents=True)
        (project / "src" / "app.py").write_text("print('app')")
        (project / "package.json").write_text("{}")
        (project / "node_modules").mkdir()
        (project / "node_modules" / "dep.js").write_text("dep")
        (project / "logo.png").write_bytes(b"\x89PNG\xff\xfe\x00")

        instance = await manager.spawn(source=str(project), source_type="local", tasks=tasks)

        assert instance.status == InstanceStatus.RUNNING
        sandbox = provider.sandboxes[instance.sandbox_id]
        assert sandbox.files[f"{WORKSPACE}/src/app.py"] == "print('app')"
        assert f"{WORKSPACE}/package.json" in sandbox.files
        assert f"{WORKSPACE}/node_modules/dep.js" not in sandbox.files
        assert f"{WORKSPACE}/logo.png" not in sandbox.files
        assert not sandbox.ran("git clone")
        assert "Skipped: logo.png" in Path(instance.log_file).read_text()

    @pytest.mark.asyncio
    async def test_include_and_exclude(self, manager, provider, tasks, tmp_path):
        """Test include and exclude patterns."""
        (tmp_path / "a.py").write_text("a")
        (tmp_path / "b.py").write_text("b")
        (tmp_path / "c.md").write_text("c")

        instance = await manager.spawn(
            source=str(tmp_path),
            source_type="local",
            tasks=tasks,
            include=["*.py"],
            exclude=["b.py"],
        )

        files = provider.sandboxes[instance.sandbox_id].files
        uploaded = {path for path in files if "/.claude/" not in path}
        assert uploaded == {f"{WORKSPACE}/a.py"}

    @pytest.mark.asyncio
    async def test_missing_local_path_marks_failed(self, manager, tasks, tmp_path):
        """Test missing local path marks the instance failed."""
        instance = await manager.spawn(source=str(tmp_path / "nope"), source_type="local", tasks=tasks)
        assert instance.status == InstanceStatus.FAILED
        assert "Local path not found" in instance.error


class TestSpawnMany:
    """Test concurrent spawning."""

    @pytest.mark.asyncio
    async def test_skips_empty_buckets(self, manager, provider, make_task):
        """Test empty buckets are not spawned."""
        distribution = [[make_task("1")], [], [make_task("2"), make_task("3")]]

        instances = await manager.spawn_many(
            distribution, source="https://github.com/org/repo", source_type="repo"
        )

        assert len(instances) == 2
        assert [len(i.tasks) for i in instances] == [1, 2]
        assert len(provider.created) == 2
        assert len({i.id for i in instances}) == 2

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_others(self, manager, provider, make_task):
        """Test one failed spawn leaves the others running."""
        provider.respond("github.com/org/broken", CommandResult(stderr="nope", exit_code=128))

        good = await manager.spawn_many([[make_task("1")]], source="https://github.com/org/repo", source_type="repo")
        bad = await manager.spawn_many([[make_task("1")]], source="https://github.com/org/broken", source_type="repo")

        assert good[0].status == InstanceStatus.RUNNING
        assert bad[0].status == InstanceStatus.FAILED


class TestCheckInstance:
    """Test reconciling a running instance."""

    @pytest.mark.asyncio
    async def test_non_running_instance_untouched(self, manager, provider):
        """Test finished instances are left as they are."""
        instance = running_instance(provider)
        instance.status = InstanceStatus.FAILED
        await manager.check_instance(instance)
        assert instance.status == InstanceStatus.FAILED
        assert provider.sandboxes["sbx-running"].commands == []

    @pytest.mark.asyncio
    async def test_no_sandbox_untouched(self, manager):
        """Test instance without sandbox is left as it is."""
        instance = SwarmInstance(
            template="base", source="x", source_type="repo", status=InstanceStatus.RUNNING
        )
        await manager.check_instance(instance)
        assert instance.status == InstanceStatus.RUNNING

    @pytest.mark.asyncio
    async def test_empty_pid_marker_keeps_running(self, manager, provider):
        """Test missing PID marker keeps the instance running."""
        instance = running_instance(provider)
        provider.respond("swarm-pid", CommandResult(stdout="\n"))
        await manager.check_instance(instance)
        assert instance.status == InstanceStatus.RUNNING

    @pytest.mark.asyncio
    async def test_live_process_keeps_running(self, manager, provider):
        """Test live agent process keeps the instance running."""
        instance = running_instance(provider)
        provider.respond("swarm-pid", CommandResult(stdout="4242\n"))
        provider.respond("ps -p 4242", CommandResult(stdout="4242\n"))
        await manager.check_instance(instance)
        assert instance.status == InstanceStatus.RUNNING
        assert instance.completed_at is None

    @pytest.mark.asyncio
    async def test_dead_process_completes(self, manager, provider):
        """Test exited agent completes the instance."""
        instance = running_instance(provider)
        provider.respond("swarm-pid", CommandResult(stdout="4242\n"))
        provider.respond("ps -p", CommandResult(stdout=""))
        provider.respond("swarm-output.json", CommandResult(stdout='{"result": "all done"}'))

        await manager.check_instance(instance)

        assert instance.status == InstanceStatus.COMPLETED
        assert instance.completed_at is not None
        assert instance.result_text == "all done"

    @pytest.mark.asyncio
    async def test_check_is_idempotent_after_completion(self, manager, provider):
        """Test repeated checks after completion change nothing."""
        instance = running_instance(provider)
        provider.respond("swarm-pid", CommandResult(stdout="4242\n"))
        provider.respond("ps -p", CommandResult(stdout=""))

        await manager.check_instance(instance)
        completed_at = instance.completed_at
        commands = len(provider.sandboxes["sbx-running"].commands)
        await manager.check_instance(instance)

        assert instance.completed_at == completed_at
        assert len(provider.sandboxes["sbx-running"].commands) == commands

    @pytest.mark.asyncio
    async def test_lost_connection_fails(self, manager, provider):
        """Test lost sandbox connection fails the instance."""
        instance = running_instance(provider)
        del provider.sandboxes["sbx-running"]

        await manager.check_instance(instance)

        assert instance.status == InstanceStatus.FAILED
        assert instance.error.startswith("Sandbox connection lost:")


class TestWatch:
    """Test the polling loop."""

    @pytest.mark.asyncio
    async def test_stops_when_all_finished(self, manager, provider):
        """Test watch stops once nothing runs."""
        instance = running_instance(provider)
        provider.respond("swarm-pid", CommandResult(stdout="4242\n"))
        provider.respond("ps -p", CommandResult(stdout=""))
        changes = []

        await manager.watch([instance], interval=0, on_change=changes.append)

        assert instance.status == InstanceStatus.COMPLETED
        assert changes == [instance]

    @pytest.mark.asyncio
    async def test_timeout_returns_still_running(self, manager, provider):
        """Test watch timeout leaves instances running."""
        instance = running_instance(provider)
        provider.respond("swarm-pid", CommandResult(stdout="4242\n"))
        provider.respond("ps -p", CommandResult(stdout="4242\n"))

        await manager.watch([instance], interval=0, timeout=0)

        assert instance.status == InstanceStatus.RUNNING


class TestCollectResults:
    """Test reading results back from a sandbox."""

    @pytest.mark.asyncio
    async def test_requires_sandbox(self, manager):
        """Test collecting without a sandbox raises."""
        instance = SwarmInstance(template="base", source="x", source_type="repo")
        with pytest.raises(SandboxError, match="no sandbox ID"):
            await manager.collect_results(instance)

    @pytest.mark.asyncio
    async def test_reads_output_and_tasks(self, manager, provider):
        """Test output and task files read back."""
        instance = running_instance(provider)
        sandbox = provider.sandboxes["sbx-running"]
        sandbox.files[f"{TASKS_DIR}/1.json"] = json.dumps(
            {"id": "1", "subject": "a", "description": "a", "status": "completed"}
        )
        sandbox.files[f"{TASKS_DIR}/2.json"] = json.dumps(
            {"id": "2", "subject": "b", "description": "b", "status": "in_progress"}
        )
        sandbox.files[f"{TASKS_DIR}/3.json"] = "{broken"
        listing = "\n".join(f"{TASKS_DIR}/{n}.json" for n in ("1", "2", "3", "4"))
        provider.respond("ls -1", CommandResult(stdout=listing))
        provider.respond("swarm-output.json", CommandResult(stdout='{"result": "ok"}'))

        collected = await manager.collect_results(instance)

        assert [t.id for t in collected.tasks] == ["1", "2"]
        assert collected.tasks[0].status == TaskStatus.COMPLETED
        assert collected.completed_count == 1
        assert collected.output == '{"result": "ok"}'
        assert collected.logs == collected.output
        assert instance.status == InstanceStatus.RUNNING

    @pytest.mark.asyncio
    async def test_listing_split_by_line(self, manager, provider):
        """Test task file paths are taken one per line, not split on spaces."""
        instance = running_instance(provider)
        sandbox = provider.sandboxes["sbx-running"]
        path = f"{TASKS_DIR}/my task.json"
        sandbox.files[path] = json.dumps({"id": "7", "subject": "a", "description": "a"})
        provider.respond("ls -1", CommandResult(stdout=f"{path}\n\n"))

        collected = await manager.collect_results(instance)

        assert [t.id for t in collected.tasks] == ["7"]


class TestKill:
    """Test force-terminating instances."""

    @pytest.mark.asyncio
    async def test_no_sandbox_is_noop(self, manager):
        """Test killing an unprovisioned instance."""
        instance = SwarmInstance(template="base", source="x", source_type="repo")
        result = await manager.kill(instance)
        assert result.success
        assert instance.status == InstanceStatus.STARTING
        assert instance.error is None

    @pytest.mark.asyncio
    async def test_kill_marks_failed(self, manager, provider):
        """Test kill terminates the sandbox and fails the instance."""
        instance = running_instance(provider)
        result = await manager.kill(instance)

        assert result.success
        assert provider.sandboxes["sbx-running"].killed
        assert instance.status == InstanceStatus.FAILED
        assert instance.error == "Killed by user"
        assert instance.completed_at is not None

    @pytest.mark.asyncio
    async def test_unreachable_sandbox_leaves_record(self, manager, provider):
        """Test failed kill leaves the instance unchanged."""
        instance = running_instance(provider)
        del provider.sandboxes["sbx-running"]

        result = await manager.kill(instance)

        assert not result.success
        assert result.instance_id == instance.id
        assert instance.status == InstanceStatus.RUNNING
