"""
Configuration and data-directory layout.

Settings come from the environment; credentials missing there are read
from ~/.secrets (lines like `export E2B_API_KEY="..."`).
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from e2bswarm.errors import ConfigurationError
from e2bswarm.schemas import SwarmConfig

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = "base"
DEFAULT_TIMEOUT = 30 * 60
DEFAULT_MAX_INSTANCES = 10

# Keys that may be filled in from the secrets file
SECRET_KEYS = {
    "e2b_api_key": "E2B_API_KEY",
    "anthropic_api_key": "ANTHROPIC_API_KEY",
    "github_token": "GITHUB_TOKEN",
}


class SwarmSettings(BaseSettings):
    """Environment-backed settings shared by every command."""

    model_config = SettingsConfigDict(
        env_prefix="E2BSWARM_", extra="ignore", populate_by_name=True
    )

    e2b_api_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("E2B_API_KEY", "e2b_api_key")
    )
    template: str = Field(
        default=DEFAULT_TEMPLATE, validation_alias=AliasChoices("E2B_TEMPLATE", "template")
    )
    anthropic_api_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("ANTHROPIC_API_KEY", "anthropic_api_key")
    )
    github_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GITHUB_TOKEN", "GH_TOKEN", "github_token"),
    )
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".e2bswarm",
        validation_alias=AliasChoices("E2BSWARM_DATA_DIR", "data_dir"),
    )
    tasks_root: Path = Field(
        default_factory=lambda: Path.home() / ".claude" / "tasks",
        validation_alias=AliasChoices("E2BSWARM_TASKS_ROOT", "tasks_root"),
    )
    secrets_file: Path = Field(
        default_factory=lambda: Path.home() / ".secrets",
        validation_alias=AliasChoices("E2BSWARM_SECRETS_FILE", "secrets_file"),
    )
    ssh_dir: Path = Field(default_factory=lambda: Path.home() / ".ssh")
    timeout: int = DEFAULT_TIMEOUT
    max_instances: int = DEFAULT_MAX_INSTANCES

    @model_validator(mode="after")
    def _fill_from_secrets(self) -> "SwarmSettings":
        missing = [attr for attr in SECRET_KEYS if getattr(self, attr) is None]
        if not missing:
            return self
        secrets = read_secrets_file(self.secrets_file)
        for attr in missing:
            value = secrets.get(SECRET_KEYS[attr])
            if attr == "github_token" and value is None:
                value = secrets.get("GH_TOKEN")
            if value:
                setattr(self, attr, value)
        return self

    @property
    def paths(self) -> "SwarmPaths":
        return SwarmPaths(self.data_dir)


_SECRET_LINE = re.compile(r"""^\s*(?:export\s+)?([A-Z0-9_]+)=["']?([^"'\n]*)["']?\s*$""")


def read_secrets_file(path: Path) -> dict[str, str]:
    """Parse KEY=value lines from a shell-style secrets file."""
    try:
        content = path.read_text()
    except OSError:
        return {}

    secrets = {}
    for line in content.splitlines():
        match = _SECRET_LINE.match(line)
        if match and match.group(2):
            secrets[match.group(1)] = match.group(2)
    return secrets


@dataclass(frozen=True)
class SwarmPaths:
    """
    Data directory layout:

        <root>/
        ├── exports/     # collected results, per-instance artifacts
        ├── logs/        # per-instance execution logs
        ├── cache/
        ├── config/
        └── state.json
    """

    root: Path

    @property
    def exports(self) -> Path:
        return self.root / "exports"

    @property
    def logs(self) -> Path:
        return self.root / "logs"

    @property
    def cache(self) -> Path:
        return self.root / "cache"

    @property
    def config(self) -> Path:
        return self.root / "config"

    @property
    def state(self) -> Path:
        return self.root / "state.json"

    def ensure(self) -> None:
        for directory in (self.exports, self.logs, self.cache, self.config):
            directory.mkdir(parents=True, exist_ok=True)

    def export_dir(self, prefix: str | None = None) -> Path:
        """Timestamped export directory, e.g. exports/collect-2026-01-01T10-00-00."""
        timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
        name = f"{prefix}-{timestamp}" if prefix else timestamp
        return self.exports / name

    def instance_dirs(self, short_id: str) -> tuple[Path, Path]:
        """(exports, logs) directories for one instance."""
        return self.exports / short_id, self.logs / short_id


def get_settings(**overrides) -> SwarmSettings:
    return SwarmSettings(**overrides)


def load_config(template: str | None = None, settings: SwarmSettings | None = None) -> SwarmConfig:
    """
    Build the per-invocation swarm config.

    Args:
        template: Sandbox template overriding the configured default
        settings: Settings to use (read from the environment if omitted)

    Raises:
        ConfigurationError: If no E2B API key is available
    """
    settings = settings or get_settings()
    settings.paths.ensure()

    if not settings.e2b_api_key:
        raise ConfigurationError(
            "E2B_API_KEY not found. Add it to ~/.secrets:\n"
            '  export E2B_API_KEY="your-api-key"\n\n'
            "Get your API key at: https://e2b.dev/dashboard"
        )

    template = template or settings.template
    if not template:
        raise ConfigurationError("No sandbox template configured")

    logger.debug(f"Loaded config (template: {template})")
    return SwarmConfig(
        api_key=settings.e2b_api_key,
        template=template,
        timeout=settings.timeout,
        max_instances=settings.max_instances,
    )
