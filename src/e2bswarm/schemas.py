"""
Schemas for swarm tasks, instances, and persisted state.

Serialized documents use camelCase keys so task files stay readable by the
coding agent; Python code uses the snake_case attribute names.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        """Serialize with camelCase keys, dropping unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TaskStatus(str, Enum):
    """Task progress as tracked by the coding agent."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class InstanceStatus(str, Enum):
    """Sandbox instance lifecycle status."""

    STARTING = "starting"
    CLONING = "cloning"
    UPLOADING = "uploading"
    SETTING_UP = "setting-up"
    RUNNING = "running"
    COMMITTING = "committing"
    PUSHING = "pushing"
    CREATING_PR = "creating-pr"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (InstanceStatus.COMPLETED, InstanceStatus.FAILED)


class SourceType(str, Enum):
    """Where an instance's workspace comes from."""

    REPO = "repo"
    LOCAL = "local"


class DistributionMode(str, Enum):
    """Algorithm used to assign tasks to instances."""

    ALL = "all"
    ROUND_ROBIN = "round-robin"
    BY_DEPENDENCY = "by-dependency"


class TaskSourceKind(str, Enum):
    JSON = "json"
    FILE = "file"
    DIRECTORY = "directory"
    TASK_LIST = "task-list"


class TaskSource(BaseModel):
    """A resolved task source: inline JSON, a file, a directory, or a named list."""

    kind: TaskSourceKind
    value: str


class Task(CamelModel):
    """A unit of work with optional dependency links."""

    id: str
    subject: str
    description: str
    active_form: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    blocks: list[str] = Field(default_factory=list)
    blocked_by: list[str] = Field(default_factory=list)
    metadata: Optional[dict[str, Any]] = None


class SwarmInstance(CamelModel):
    """
    Local record of one spawned sandbox.

    Attributes:
        id: UUID of the instance
        sandbox_id: Remote sandbox ID, empty until provisioning succeeds
        status: Current lifecycle status
        source: Repository URL or local path
        source_type: Whether source is a repo or a local directory
        tasks: Tasks assigned to this instance
        export_dir: Local directory for collected artifacts
        log_file: Local execution log for this instance
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    sandbox_id: str = ""
    template: str
    status: InstanceStatus = InstanceStatus.STARTING
    source: str
    source_type: SourceType
    branch: Optional[str] = None
    new_branch: Optional[str] = None
    tasks: list[Task] = Field(default_factory=list)
    prompt: str = ""
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    output: Optional[str] = None
    error: Optional[str] = None
    export_dir: Optional[str] = None
    log_file: Optional[str] = None

    # Git integration
    auto_commit: Optional[bool] = None
    auto_push: Optional[bool] = None
    create_pr: Optional[bool] = None
    pr_title: Optional[str] = None
    pr_base: Optional[str] = None
    pr_url: Optional[str] = None
    committed: Optional[bool] = None
    pushed: Optional[bool] = None

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration(self) -> float:
        """Run duration in seconds, up to now for unfinished instances."""
        end = self.completed_at or utcnow()
        return (end - self.started_at).total_seconds()

    @property
    def completed_task_count(self) -> int:
        return sum(1 for t in self.tasks if t.status == TaskStatus.COMPLETED)

    @property
    def result_data(self) -> dict | None:
        """Agent output parsed as JSON, if it is a JSON object."""
        if not self.output:
            return None
        try:
            data = json.loads(self.output.strip())
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    @property
    def result_text(self) -> str | None:
        """The agent's result text, falling back to the raw output."""
        data = self.result_data
        if data is not None and "result" in data:
            return str(data["result"])
        return self.output

    def fail(self, error: str) -> None:
        self.status = InstanceStatus.FAILED
        self.error = error


class SwarmConfig(BaseModel):
    """Per-invocation swarm configuration; never persisted."""

    api_key: str
    template: str = "base"
    timeout: int = 30 * 60  # seconds
    max_instances: int = 10


class SwarmState(CamelModel):
    """The single persisted document listing every spawned instance."""

    instances: list[SwarmInstance] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    def find(self, prefix: str | None = None) -> list[SwarmInstance]:
        """Instances whose ID starts with prefix (all when prefix is empty)."""
        if not prefix:
            return list(self.instances)
        return [i for i in self.instances if i.id.startswith(prefix)]


class CollectedResults(BaseModel):
    """Output and task files read back from a sandbox."""

    output: str = ""
    tasks: list[Task] = Field(default_factory=list)
    logs: str = ""

    @property
    def completed_count(self) -> int:
        return sum(1 for t in self.tasks if t.status == TaskStatus.COMPLETED)


class GitStatus(BaseModel):
    """Parsed `git status --porcelain` of a sandbox workspace."""

    branch: str = ""
    modified: list[str] = Field(default_factory=list)
    added: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.modified or self.added or self.deleted)


@dataclass
class GitResult:
    """Outcome of one git step; failures are returned, not raised."""

    success: bool
    error: str | None = None
    pr_url: str | None = None


@dataclass
class Result(Generic[T]):
    """Outcome of an instance-level operation."""

    success: bool
    value: T | None = None
    error: str | None = None
    instance_id: str | None = None

    @classmethod
    def ok(cls, value: T | None = None, instance_id: str | None = None) -> "Result[T]":
        return cls(success=True, value=value, instance_id=instance_id)

    @classmethod
    def failure(
        cls, error: str, value: T | None = None, instance_id: str | None = None
    ) -> "Result[T]":
        return cls(success=False, value=value, error=error, instance_id=instance_id)


@dataclass
class BatchSummary(Generic[T]):
    """Aggregated per-instance outcomes of a batch command."""

    results: list[Result[T]] = field(default_factory=list)

    def add(self, result: Result[T]) -> None:
        self.results.append(result)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def errors(self) -> dict[str, str]:
        return {r.instance_id or "?": r.error or "" for r in self.results if not r.success}
