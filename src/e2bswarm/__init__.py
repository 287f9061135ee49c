"""
e2bswarm - run a swarm of coding agents in E2B sandboxes.

Loads a task list, distributes it across sandbox instances, launches a
coding agent in each, and reconciles, collects, and syncs their work.
"""

from e2bswarm.config import SwarmPaths, SwarmSettings, get_settings, load_config
from e2bswarm.errors import (
    ConfigurationError,
    SandboxError,
    SourceError,
    StateConflictError,
    SwarmError,
    SyncError,
    ValidationError,
)
from e2bswarm.schemas import (
    DistributionMode,
    InstanceStatus,
    SourceType,
    SwarmConfig,
    SwarmInstance,
    SwarmState,
    Task,
    TaskSource,
    TaskStatus,
)
from e2bswarm.state import StateStore, load_state, prune, save_state
from e2bswarm.tasks import (
    determine_task_source,
    distribute_tasks,
    filter_pending_tasks,
    load_tasks,
    validate_tasks,
)

__version__ = "0.4.0"

__all__ = [
    "ConfigurationError",
    "DistributionMode",
    "InstanceStatus",
    "SandboxError",
    "SourceError",
    "SourceType",
    "StateConflictError",
    "StateStore",
    "SwarmConfig",
    "SwarmError",
    "SwarmInstance",
    "SwarmPaths",
    "SwarmSettings",
    "SwarmState",
    "SyncError",
    "Task",
    "TaskSource",
    "TaskStatus",
    "ValidationError",
    "determine_task_source",
    "distribute_tasks",
    "filter_pending_tasks",
    "get_settings",
    "load_config",
    "load_state",
    "load_tasks",
    "prune",
    "save_state",
    "validate_tasks",
]
