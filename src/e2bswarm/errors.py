"""
Error taxonomy for swarm operations.

Source and task-loading errors abort a whole command. Errors raised while
working on a single instance are caught and recorded on that instance.
"""


class SwarmError(Exception):
    """Base class for all swarm errors."""


class ConfigurationError(SwarmError):
    """Missing credentials or template configuration."""


class SourceError(SwarmError):
    """Bad task source, failed clone, or missing local path."""


class SandboxError(SwarmError):
    """Sandbox provisioning or connection failure."""


class SyncError(SwarmError):
    """Commit, push, or pull request failure."""


class ValidationError(SwarmError):
    """Malformed task record or invalid command argument."""


class StateConflictError(SwarmError):
    """The state document changed on disk since it was loaded."""
