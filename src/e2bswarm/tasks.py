"""
Task loading, validation, and distribution across instances.
"""

import json
import logging
from pathlib import Path
from typing import Any

from e2bswarm.errors import SourceError, ValidationError
from e2bswarm.schemas import DistributionMode, Task, TaskSource, TaskSourceKind, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_TASKS_ROOT = Path.home() / ".claude" / "tasks"


def determine_task_source(
    tasks: str | None = None,
    tasks_dir: str | None = None,
    tasks_file: str | None = None,
    tasks_json: str | None = None,
) -> TaskSource:
    """
    Pick the task source from the supplied options.

    Precedence is inline JSON, file, directory, then `tasks`, which is treated
    as a file when it looks like a path and as a task list ID otherwise.
    """
    if tasks_json:
        return TaskSource(kind=TaskSourceKind.JSON, value=tasks_json)
    if tasks_file:
        return TaskSource(kind=TaskSourceKind.FILE, value=str(Path(tasks_file).resolve()))
    if tasks_dir:
        return TaskSource(kind=TaskSourceKind.DIRECTORY, value=str(Path(tasks_dir).resolve()))
    if tasks:
        if "/" in tasks or tasks.endswith(".json"):
            return TaskSource(kind=TaskSourceKind.FILE, value=str(Path(tasks).resolve()))
        return TaskSource(kind=TaskSourceKind.TASK_LIST, value=tasks)

    raise SourceError(
        "No task source provided. Use one of:\n"
        "  tasks=<task-list-id>     Load from ~/.claude/tasks/<id>/\n"
        "  tasks_dir=<directory>    Load from a local directory\n"
        "  tasks_file=<file.json>   Load from a JSON file\n"
        "  tasks_json='[...]'       Inline JSON array"
    )


def load_tasks(source: TaskSource, tasks_root: Path | None = None) -> list[Task]:
    """
    Load and validate tasks from a source.

    Args:
        source: Resolved task source
        tasks_root: Root holding named task lists (default: ~/.claude/tasks)

    Raises:
        SourceError: If the source cannot be found or parsed
        ValidationError: If a task record is malformed
    """
    if source.kind == TaskSourceKind.JSON:
        raw = _parse_json(source.value, "tasks JSON")
    elif source.kind == TaskSourceKind.FILE:
        raw = _load_file(Path(source.value))
    elif source.kind == TaskSourceKind.DIRECTORY:
        directory = Path(source.value)
        if not directory.is_dir():
            raise SourceError(f"Directory not found: {directory}")
        raw = _load_directory(directory)
        if not raw:
            raise SourceError(f"No JSON files found in directory: {directory}")
    elif source.kind == TaskSourceKind.TASK_LIST:
        directory = (tasks_root or DEFAULT_TASKS_ROOT) / source.value
        if not directory.is_dir():
            raise SourceError(
                f"Task list not found: {source.value}\n"
                f"Expected location: {directory}"
            )
        raw = _load_directory(directory)
        if not raw:
            raise SourceError(f"No tasks found in task list: {source.value}")
    else:
        raise SourceError(f"Unknown task source type: {source.kind}")

    logger.debug(f"Loaded {len(raw)} tasks from {source.kind.value}")
    return validate_tasks(raw)


def _parse_json(content: str, origin: str) -> list[Any]:
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as e:
        raise SourceError(f"Failed to parse {origin}: {e}") from e
    return parsed if isinstance(parsed, list) else [parsed]


def _load_file(path: Path) -> list[Any]:
    try:
        content = path.read_text()
    except OSError as e:
        raise SourceError(f"Failed to load tasks from file {path}: {e}") from e
    return _parse_json(content, f"tasks file {path}")


def _load_directory(directory: Path) -> list[Any]:
    """One task per *.json file, in file name order."""
    raw = []
    for path in sorted(directory.glob("*.json")):
        try:
            raw.append(json.loads(path.read_text()))
        except (OSError, json.JSONDecodeError) as e:
            raise SourceError(f"Failed to load task file {path}: {e}") from e
    return raw


def validate_tasks(tasks: list[Any]) -> list[Task]:
    """
    Normalize raw task records.

    Missing ids default to the 1-based position, status to pending, and
    dependency lists to empty.

    Raises:
        ValidationError: If a record is not an object or has neither
            subject nor description, or its id is not a plain file name
    """
    validated = []
    for index, task in enumerate(tasks):
        if not isinstance(task, dict):
            raise ValidationError(f"Task at index {index} is not an object")

        task_id = str(task["id"]) if task.get("id") not in (None, "") else str(index + 1)
        if not _is_safe_task_id(task_id):
            raise ValidationError(
                f"Task id {task_id!r} (index {index}) has a path separator or whitespace"
            )
        subject = task.get("subject") or ""
        description = task.get("description") or ""
        if not subject and not description:
            raise ValidationError(
                f"Task {task_id} (index {index}) must have a subject or description"
            )

        try:
            status = TaskStatus(task.get("status") or TaskStatus.PENDING)
        except ValueError as e:
            raise ValidationError(f"Task {task_id} has invalid status: {task.get('status')}") from e

        active_form = task.get("activeForm", task.get("active_form"))
        blocked_by = task.get("blockedBy", task.get("blocked_by"))
        blocks = task.get("blocks")

        validated.append(
            Task(
                id=task_id,
                subject=str(subject or description),
                description=str(description or subject),
                active_form=str(active_form) if active_form else None,
                status=status,
                blocks=[str(b) for b in blocks] if isinstance(blocks, list) else [],
                blocked_by=[str(b) for b in blocked_by] if isinstance(blocked_by, list) else [],
                metadata=task.get("metadata") if isinstance(task.get("metadata"), dict) else None,
            )
        )
    return validated


def _is_safe_task_id(task_id: str) -> bool:
    """Task ids become file names inside the sandbox task directory."""
    if task_id in (".", ".."):
        return False
    return not any(c in "/\\" or c.isspace() for c in task_id)


def filter_pending_tasks(tasks: list[Task]) -> list[Task]:
    """Drop completed tasks."""
    return [t for t in tasks if t.status != TaskStatus.COMPLETED]


def distribute_tasks(
    tasks: list[Task],
    instance_count: int,
    mode: DistributionMode | str = DistributionMode.ALL,
) -> list[list[Task]]:
    """
    Partition pending tasks into exactly `instance_count` buckets.

    Modes:
        all: every bucket holds every pending task
        round-robin: task i goes to bucket i % instance_count
        by-dependency: dependency chains kept together, merged smallest-first
            until they fit
    """
    if instance_count < 1:
        raise ValidationError("Instance count must be a positive number")
    mode = DistributionMode(mode)

    pending = filter_pending_tasks(tasks)
    if not pending:
        logger.warning("No pending tasks to distribute")
        return [[] for _ in range(instance_count)]

    if mode == DistributionMode.ALL:
        return [list(pending) for _ in range(instance_count)]
    if mode == DistributionMode.ROUND_ROBIN:
        return _distribute_round_robin(pending, instance_count)
    return _distribute_by_dependency(pending, instance_count)


def _distribute_round_robin(tasks: list[Task], instance_count: int) -> list[list[Task]]:
    buckets: list[list[Task]] = [[] for _ in range(instance_count)]
    for i, task in enumerate(tasks):
        buckets[i % instance_count].append(task)
    return buckets


def _distribute_by_dependency(tasks: list[Task], max_groups: int) -> list[list[Task]]:
    chains: list[list[Task]] = []
    assigned: set[str] = set()

    for root in (t for t in tasks if not t.blocked_by):
        if root.id in assigned:
            continue
        chain = _collect_dependency_chain(root, tasks, assigned)
        if chain:
            chains.append(chain)

    # Tasks unreachable from any root (cycles, dangling blockers)
    for task in tasks:
        if task.id not in assigned:
            chains.append([task])
            assigned.add(task.id)

    # Greedy: fold the smallest chain into the next smallest
    while len(chains) > max_groups and len(chains) > 1:
        smallest = chains.pop(_index_of_smallest(chains))
        chains[_index_of_smallest(chains)].extend(smallest)

    while len(chains) < max_groups:
        chains.append([])

    return chains


def _index_of_smallest(chains: list[list[Task]]) -> int:
    smallest = 0
    for i in range(1, len(chains)):
        if len(chains[i]) < len(chains[smallest]):
            smallest = i
    return smallest


def _collect_dependency_chain(root: Task, all_tasks: list[Task], assigned: set[str]) -> list[Task]:
    """Depth-first pre-order walk from root over the tasks it blocks."""
    chain: list[Task] = []
    stack = [root]
    while stack:
        task = stack.pop()
        if task.id in assigned:
            continue
        assigned.add(task.id)
        chain.append(task)
        dependents = [t for t in all_tasks if task.id in t.blocked_by]
        stack.extend(reversed(dependents))
    return chain


def serialize_tasks(tasks: list[Task]) -> str:
    return json.dumps([t.to_dict() for t in tasks], indent=2)


def summarize_distribution(distribution: list[list[Task]]) -> str:
    lines = []
    for i, tasks in enumerate(distribution, 1):
        subjects = [t.subject[:40] for t in tasks[:3]]
        more = f" (+{len(tasks) - 3} more)" if len(tasks) > 3 else ""
        lines.append(f"  Instance {i}: {len(tasks)} tasks{more}")
        lines.extend(f"    {subject}" for subject in subjects)
    return "\n".join(lines)
