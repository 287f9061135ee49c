"""
Command layer: spawn, status, collect, kill, sync, clean, watch.

Each command loads persisted state, works on the selected instances, and
commits the touched instances back through the StateStore.
"""

import json
import logging
from datetime import timedelta
from pathlib import Path

import httpx
from rich.console import Console
from rich.table import Table

from e2bswarm.config import SwarmSettings, get_settings, load_config
from e2bswarm.errors import SourceError, ValidationError
from e2bswarm.sandbox import SandboxProvider
from e2bswarm.schemas import (
    BatchSummary,
    DistributionMode,
    InstanceStatus,
    Result,
    SourceType,
    SwarmConfig,
    SwarmInstance,
    TaskSource,
    utcnow,
)
from e2bswarm.state import RETENTION, StateStore, prune
from e2bswarm.swarm.git_sync import sync_instance
from e2bswarm.swarm.manager import DEFAULT_PROMPT, SwarmManager
from e2bswarm.tasks import distribute_tasks, load_tasks, summarize_distribution

logger = logging.getLogger(__name__)

COLLECTABLE = (InstanceStatus.COMPLETED, InstanceStatus.RUNNING)
SYNCABLE = (
    InstanceStatus.COMPLETED,
    InstanceStatus.RUNNING,
    InstanceStatus.COMMITTING,
    InstanceStatus.PUSHING,
)

STATUS_STYLES = {
    InstanceStatus.RUNNING: "cyan",
    InstanceStatus.COMPLETED: "green",
    InstanceStatus.FAILED: "red",
}


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    minutes, hours = seconds // 60, seconds // 3600
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


class Swarm:
    """
    Runs swarm commands against the persisted state.

    Example:
        swarm = Swarm()
        summary = await swarm.spawn(
            TaskSource(kind="task-list", value="my-feature"),
            repo="https://github.com/org/repo",
            instances=3,
            mode="round-robin",
        )
        await swarm.watch(interval=30)
        await swarm.collect()
    """

    def __init__(
        self,
        settings: SwarmSettings | None = None,
        template: str | None = None,
        provider: SandboxProvider | None = None,
        store: StateStore | None = None,
        console: Console | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or StateStore(self.settings.paths.state)
        self.console = console or Console()
        self.http_client = http_client
        self._template = template
        self._provider = provider
        self._manager: SwarmManager | None = None

    @property
    def manager(self) -> SwarmManager:
        """Sandbox-facing manager, built on first use so local commands need no API key."""
        if self._manager is None:
            config = load_config(self._template, self.settings)
            self._manager = SwarmManager(config, provider=self._provider, settings=self.settings)
        return self._manager

    @property
    def config(self) -> SwarmConfig:
        return self.manager.config

    # =========================================================================
    # Spawn
    # =========================================================================

    async def spawn(
        self,
        task_source: TaskSource,
        repo: str | None = None,
        local: str | None = None,
        instances: int = 1,
        mode: DistributionMode | str = DistributionMode.ALL,
        prompt: str | None = None,
        branch: str | None = None,
        new_branch: str | None = None,
        include: list[str] | None = None,
        exclude: list[str] | None = None,
        auto_commit: bool | None = None,
        auto_push: bool | None = None,
        create_pr: bool | None = None,
        pr_title: str | None = None,
        pr_base: str | None = None,
    ) -> BatchSummary[SwarmInstance]:
        """
        Load tasks, distribute them, and spawn one sandbox per bucket.

        Raises:
            SourceError: If the workspace or task source is invalid
            ValidationError: If the instance count is out of range or a task is malformed
            ConfigurationError: If no E2B API key is configured
        """
        if bool(repo) == bool(local):
            raise SourceError("Either repo or local must be specified (not both)")

        if local:
            local_path = Path(local).resolve()
            if not local_path.is_dir():
                raise SourceError(f"Local path not found or not a directory: {local_path}")
            source, source_type = str(local_path), SourceType.LOCAL
        else:
            source, source_type = repo, SourceType.REPO

        if instances < 1 or instances > self.config.max_instances:
            raise ValidationError(
                f"Instance count must be between 1 and {self.config.max_instances}"
            )

        tasks = load_tasks(task_source, self.settings.tasks_root)
        distribution = distribute_tasks(tasks, instances, mode)
        logger.info(
            f"Distributing {len(tasks)} tasks across {instances} instances "
            f"({DistributionMode(mode).value}):\n{summarize_distribution(distribution)}"
        )

        spawned = await self.manager.spawn_many(
            distribution,
            source=source,
            source_type=source_type,
            prompt=prompt or DEFAULT_PROMPT,
            branch=branch,
            new_branch=new_branch,
            include=include,
            exclude=exclude,
            auto_commit=auto_commit,
            auto_push=auto_push,
            create_pr=create_pr,
            pr_title=pr_title,
            pr_base=pr_base,
        )
        self.store.commit(self.store.load(), spawned)

        summary: BatchSummary[SwarmInstance] = BatchSummary()
        for instance in spawned:
            if instance.status == InstanceStatus.FAILED:
                summary.add(Result.failure(instance.error or "", value=instance, instance_id=instance.id))
            else:
                summary.add(Result.ok(instance, instance_id=instance.id))

        logger.info(f"Spawned {summary.succeeded}/{summary.total} instances")
        return summary

    # =========================================================================
    # Reconcile
    # =========================================================================

    async def status(self, instance: str | None = None, auto_sync: bool = True) -> list[SwarmInstance]:
        """
        Refresh and return instances, optionally filtered by ID prefix.

        Running instances are checked one at a time. Instances that just
        completed and were spawned with auto_commit are synced.
        """
        state = self.store.load()
        selected = state.find(instance)
        if not selected:
            if instance:
                logger.warning(f"No instance found matching: {instance}")
            return []

        for inst in selected:
            if inst.status != InstanceStatus.RUNNING:
                continue
            await self.manager.check_instance(inst)
            if auto_sync and inst.status == InstanceStatus.COMPLETED and inst.auto_commit:
                logger.info(f"[{inst.short_id}] completed, auto-syncing")
                await sync_instance(
                    self.manager.provider, inst, self.settings, http_client=self.http_client
                )

        self.store.commit(state, selected)
        return selected

    async def watch(
        self,
        instance: str | None = None,
        interval: float = 10.0,
        timeout: float | None = None,
    ) -> list[SwarmInstance]:
        """Poll running instances until they finish, persisting each change."""
        state = self.store.load()
        running = [i for i in state.find(instance) if i.status == InstanceStatus.RUNNING]
        if not running:
            logger.info("No running instances to watch")
            return []

        def persist(changed: SwarmInstance) -> None:
            logger.info(f"[{changed.short_id}] {changed.status.value}")
            self.store.commit(state, [changed])

        await self.manager.watch(running, interval=interval, timeout=timeout, on_change=persist)
        self.store.commit(state, running)
        return running

    # =========================================================================
    # Collect
    # =========================================================================

    async def collect(
        self, output_dir: str | Path | None = None, instance: str | None = None
    ) -> BatchSummary[Path]:
        """
        Write per-instance results and a summary.json to output_dir.

        Without an ID prefix, completed and running instances are collected.

        Returns:
            Summary whose successful values are the written result files
        """
        state = self.store.load()
        selected = state.find(instance) if instance else [
            i for i in state.instances if i.status in COLLECTABLE
        ]
        summary: BatchSummary[Path] = BatchSummary()
        if not selected:
            logger.warning("No completed instances to collect from")
            return summary

        out = Path(output_dir) if output_dir else self.settings.paths.export_dir("collect")
        out.mkdir(parents=True, exist_ok=True)
        logger.info(f"Collecting {len(selected)} instances into {out}")

        collected_rows = []
        for inst in selected:
            try:
                if inst.status == InstanceStatus.RUNNING:
                    await self.manager.check_instance(inst)
                if not inst.sandbox_id:
                    logger.warning(f"[{inst.short_id}] No sandbox ID, skipping")
                    summary.add(Result.failure("No sandbox ID", instance_id=inst.id))
                    continue

                collected = await self.manager.collect_results(inst)
                result_data = {
                    "instanceId": inst.id,
                    "sandboxId": inst.sandbox_id,
                    "template": inst.template,
                    "source": inst.source,
                    "sourceType": inst.source_type.value,
                    "status": inst.status.value,
                    "startedAt": inst.started_at.isoformat(),
                    "completedAt": inst.completed_at.isoformat() if inst.completed_at else None,
                    "duration": int(inst.duration * 1000) if inst.completed_at else None,
                    "tasks": [t.to_dict() for t in collected.tasks],
                    "output": collected.output,
                    "logs": collected.logs,
                }
                content = json.dumps(result_data, indent=2)

                output_file = out / f"{inst.short_id}-results.json"
                output_file.write_text(content)
                if inst.export_dir:
                    Path(inst.export_dir).mkdir(parents=True, exist_ok=True)
                    (Path(inst.export_dir) / "results.json").write_text(content)

                collected_rows.append(
                    {
                        "instanceId": inst.short_id,
                        "status": inst.status.value,
                        "tasks": len(collected.tasks),
                        "completed": collected.completed_count,
                        "outputFile": str(output_file),
                    }
                )
                logger.info(
                    f"[{inst.short_id}] Collected {collected.completed_count}/{len(collected.tasks)} tasks"
                )
                summary.add(Result.ok(output_file, instance_id=inst.id))
            except Exception as e:
                logger.warning(f"[{inst.short_id}] Failed: {e}")
                summary.add(Result.failure(str(e), instance_id=inst.id))

        (out / "summary.json").write_text(
            json.dumps(
                {
                    "collectedAt": utcnow().isoformat(),
                    "outputDir": str(out),
                    "totalInstances": len(collected_rows),
                    "totalTasks": sum(r["tasks"] for r in collected_rows),
                    "completedTasks": sum(r["completed"] for r in collected_rows),
                    "instances": collected_rows,
                },
                indent=2,
            )
        )

        self.store.commit(state, selected)
        return summary

    # =========================================================================
    # Kill / sync / clean
    # =========================================================================

    async def kill(self, instance: str | None = None) -> BatchSummary[None]:
        """Kill every non-terminal instance, or those matching an ID prefix."""
        state = self.store.load()
        selected = [i for i in state.find(instance) if not i.is_terminal]
        summary: BatchSummary[None] = BatchSummary()
        if not selected:
            logger.info("No running instances to kill")
            return summary

        for inst in selected:
            result = await self.manager.kill(inst)
            if not result.success:
                logger.warning(f"[{inst.short_id}] Could not kill sandbox: {result.error}")
            summary.add(result)

        self.store.commit(state, selected)
        logger.info(f"Killed {summary.succeeded}/{summary.total} instances")
        return summary

    async def sync(
        self,
        instance: str | None = None,
        commit: bool | None = None,
        push: bool | None = None,
        create_pr: bool | None = None,
        pr_title: str | None = None,
        pr_base: str | None = None,
        message: str | None = None,
    ) -> BatchSummary[str]:
        """
        Commit/push/PR instance workspaces one at a time.

        Running instances are reconciled first. Those whose agent is still
        alive get their partial work synced and stay running.
        """
        state = self.store.load()
        selected = state.find(instance) if instance else [
            i for i in state.instances if i.status in SYNCABLE
        ]
        summary: BatchSummary[str] = BatchSummary()
        if not selected:
            logger.warning("No instances to sync")
            return summary

        for inst in selected:
            if inst.status == InstanceStatus.RUNNING:
                await self.manager.check_instance(inst)
                if inst.status == InstanceStatus.FAILED:
                    summary.add(Result.failure(inst.error or "", instance_id=inst.id))
                    continue
            summary.add(
                await sync_instance(
                    self.manager.provider,
                    inst,
                    self.settings,
                    commit=commit,
                    push=push,
                    create_pr=create_pr,
                    pr_title=pr_title,
                    pr_base=pr_base,
                    message=message,
                    http_client=self.http_client,
                )
            )

        self.store.commit(state, selected)

        committed = sum(1 for i in selected if i.committed)
        pushed = sum(1 for i in selected if i.pushed)
        logger.info(f"Sync complete: {committed} committed, {pushed} pushed")
        for inst in selected:
            if inst.pr_url:
                logger.info(f"[{inst.short_id}] {inst.pr_url}")
        return summary

    def clean(self, max_age: timedelta = RETENTION) -> int:
        """Drop finished instances older than max_age from the state."""
        state = self.store.load()
        removed = prune(state, max_age)
        self.store.replace(state)
        logger.info(f"Cleaned {removed} old instances")
        return removed

    # =========================================================================
    # Rendering
    # =========================================================================

    def print_status(self, instances: list[SwarmInstance]) -> None:
        if not instances:
            self.console.print("[yellow]No instances found.[/yellow]")
            return

        table = Table(title="Instance Status")
        table.add_column("ID", style="dim")
        table.add_column("Status")
        table.add_column("Tasks", justify="right")
        table.add_column("Source")
        table.add_column("Duration", justify="right")
        table.add_column("Sandbox", style="dim")
        table.add_column("Error", style="red")

        for inst in instances:
            style = STATUS_STYLES.get(inst.status, "yellow")
            table.add_row(
                inst.short_id,
                f"[{style}]{inst.status.value}[/{style}]",
                f"{inst.completed_task_count}/{len(inst.tasks)}",
                inst.source[:50],
                format_duration(inst.duration),
                inst.sandbox_id or "N/A",
                (inst.error or "")[:60],
            )

        self.console.print(table)

        counts = {s: sum(1 for i in instances if i.status == s) for s in InstanceStatus}
        self.console.print(
            f"Total: {len(instances)} | Running: {counts[InstanceStatus.RUNNING]} | "
            f"Completed: {counts[InstanceStatus.COMPLETED]} | Failed: {counts[InstanceStatus.FAILED]}"
        )

    def print_summary(self, summary: BatchSummary, title: str = "Summary") -> None:
        self.console.print(
            f"[bold]{title}:[/bold] [green]{summary.succeeded} succeeded[/green], "
            f"[red]{summary.failed} failed[/red] of {summary.total}"
        )
        if not summary.errors:
            return

        table = Table(title="Errors")
        table.add_column("Instance", style="dim")
        table.add_column("Error", style="red")
        for instance_id, error in summary.errors.items():
            table.add_row(instance_id[:8], error[:100])
        self.console.print(table)

