"""JSON task store: one directory per task under a root folder."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

from taskpilot.agent.errors import TaskStateError

_RECORD_FILE = "task.json"


class TaskStore:
    """Persists task records as ``<root>/<task_id>/task.json``."""

    def __init__(self, root: str | os.PathLike) -> None:
        self.root = Path(root)

    def _path(self, task_id: str) -> Path:
        return self.root / task_id / _RECORD_FILE

    def save(self, record: dict) -> Path:
        path = self._path(record["id"])
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write then rename so a crash never leaves a half-written record.
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".task-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f, indent=2, default=str)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        return path

    def load(self, task_id: str) -> dict:
        path = self._path(task_id)
        if not path.exists():
            raise TaskStateError(f"no stored task with id {task_id}")
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def exists(self, task_id: str) -> bool:
        return self._path(task_id).exists()

    def list_ids(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(p.parent.name for p in self.root.glob(f"*/{_RECORD_FILE}"))
