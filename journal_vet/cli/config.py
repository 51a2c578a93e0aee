"""Runtime configuration helpers shared by CLI command handlers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..env import load_env
from ..workspace.service import WorkspaceSettings


@dataclass(frozen=True)
class RuntimeConfig:
    """Resolved configuration for command handlers."""

    log_level: str
    database_url: Optional[str] = None

    def workspace_settings(self) -> WorkspaceSettings:
        return WorkspaceSettings.from_env(database_url=self.database_url)


def bootstrap(env_file: Optional[str] = None) -> None:
    """Load environment variables once."""

    load_env(extra_paths=[env_file] if env_file else None)


def build_runtime_config(*, log_level: str, database_url: Optional[str] = None) -> RuntimeConfig:
    return RuntimeConfig(log_level=log_level, database_url=database_url)
