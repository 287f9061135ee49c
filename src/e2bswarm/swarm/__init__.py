"""
Sandbox swarm: spawn coding agents across E2B sandboxes and reconcile them.

Example:
    from e2bswarm.swarm import Swarm
    from e2bswarm.tasks import determine_task_source

    swarm = Swarm()
    await swarm.spawn(
        determine_task_source(tasks="my-feature"),
        repo="https://github.com/org/repo",
        instances=3,
        mode="by-dependency",
    )
    swarm.print_status(await swarm.status())
"""

from .coordinator import Swarm, format_duration
from .git_sync import (
    commit_changes,
    create_branch,
    create_pull_request,
    download_changed_files,
    get_git_status,
    push_changes,
    setup_github_auth,
    sync_instance,
)
from .manager import SwarmManager, build_prompt
from .uploads import DEFAULT_EXCLUDE, collect_files

__all__ = [
    "Swarm",
    "SwarmManager",
    "build_prompt",
    "collect_files",
    "DEFAULT_EXCLUDE",
    "format_duration",
    "setup_github_auth",
    "get_git_status",
    "create_branch",
    "commit_changes",
    "push_changes",
    "create_pull_request",
    "download_changed_files",
    "sync_instance",
]
