"""Process-level settings read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _split_names(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [name.strip() for name in raw.split(",") if name.strip()]


@dataclass
class Settings:
    """Where the CLI finds its defaults. Loop tuning lives in ``TaskConfig``."""

    provider: str | None = None
    model: str = "claude-sonnet-4-5-20250929"
    log_level: str = "info"
    log_format: str = "console"
    store_dir: str = ".taskpilot/tasks"
    working_dir: str = field(default_factory=os.getcwd)
    auto_approve: list[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from ``TASKPILOT_*`` environment variables."""
        defaults = cls()
        return cls(
            provider=os.getenv("TASKPILOT_PROVIDER") or None,
            model=os.getenv("TASKPILOT_MODEL", defaults.model),
            log_level=os.getenv("TASKPILOT_LOG_LEVEL", defaults.log_level),
            log_format=os.getenv("TASKPILOT_LOG_FORMAT", defaults.log_format),
            store_dir=os.getenv("TASKPILOT_STORE_DIR", defaults.store_dir),
            working_dir=os.getenv("TASKPILOT_WORKING_DIR", defaults.working_dir),
            auto_approve=_split_names(os.getenv("TASKPILOT_AUTO_APPROVE")),
        )
