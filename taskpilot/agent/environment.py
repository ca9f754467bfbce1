"""Where tools run: file access, shell commands and search, behind one interface."""

from __future__ import annotations

import fnmatch
import os
import platform as _platform
import re
import signal
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskpilot.agent.errors import UnsupportedToolError

# Directories never descended into when listing recursively.
_IGNORED_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache", "dist", "build"}

BROWSER_ACTIONS = ("launch", "click", "type", "scroll_down", "scroll_up", "close")


@dataclass
class ExecResult:
    output: str
    exit_code: int
    timed_out: bool
    duration_ms: int


@dataclass
class FileListing:
    paths: list[str]
    hit_limit: bool


class ExecutionEnvironment(ABC):
    """Abstract interface for tool execution backends."""

    @abstractmethod
    def read_file(self, path: str) -> str: ...

    @abstractmethod
    def write_file(self, path: str, content: str) -> None: ...

    @abstractmethod
    def file_exists(self, path: str) -> bool: ...

    @abstractmethod
    def list_files(self, path: str, recursive: bool = False, limit: int = 200) -> FileListing: ...

    @abstractmethod
    def exec_command(self, command: str, timeout_ms: int = 600_000, working_dir: str | None = None) -> ExecResult: ...

    @abstractmethod
    def search(self, regex: str, path: str, file_pattern: str | None = None, max_results: int = 300) -> str: ...

    @abstractmethod
    def working_directory(self) -> str: ...

    @abstractmethod
    def platform(self) -> str: ...

    @abstractmethod
    def os_version(self) -> str: ...

    def browser_action(self, action: str, url: str | None = None, coordinate: str | None = None,
                       text: str | None = None) -> str:
        raise UnsupportedToolError(f"browser action '{action}' is not available in this environment")

    def default_shell(self) -> str:
        return os.environ.get("SHELL", "/bin/sh")

    def home_directory(self) -> str:
        return os.path.expanduser("~")


# ---------------------------------------------------------------------------
# Subprocess helpers
# ---------------------------------------------------------------------------

# Credentials in the agent's own environment are not handed to commands.
_SECRET_SUFFIXES = ("_API_KEY", "_SECRET", "_TOKEN", "_PASSWORD", "_CREDENTIAL")


def _subprocess_env() -> dict[str, str]:
    return {k: v for k, v in os.environ.items() if not k.upper().endswith(_SECRET_SUFFIXES)}


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    if sys.platform == "win32":
        proc.kill()
        return
    try:
        os.killpg(os.getpgid(proc.pid), sig)
    except ProcessLookupError:
        pass


class LocalExecutionEnvironment(ExecutionEnvironment):
    """Runs tools directly on the local machine, rooted at a working directory."""

    def __init__(self, working_dir: str = ".") -> None:
        self._working_dir = os.path.abspath(working_dir)

    def _resolve(self, path: str) -> Path:
        target = Path(path)
        return target if target.is_absolute() else Path(os.path.normpath(os.path.join(self._working_dir, path)))

    def read_file(self, path: str) -> str:
        target = self._resolve(path)
        if target.is_dir():
            raise IsADirectoryError(f"{path} is a directory")
        return target.read_text(encoding="utf-8", errors="replace")

    def write_file(self, path: str, content: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    def file_exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def list_files(self, path: str, recursive: bool = False, limit: int = 200) -> FileListing:
        root = self._resolve(path)
        if not root.exists():
            raise FileNotFoundError(f"No such directory: {path}")
        if not root.is_dir():
            raise NotADirectoryError(f"{path} is not a directory")

        paths: list[str] = []
        if recursive:
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames[:] = sorted(d for d in dirnames if d not in _IGNORED_DIRS)
                rel_dir = Path(dirpath).relative_to(root)
                for d in dirnames:
                    paths.append(f"{(rel_dir / d).as_posix()}/")
                for name in sorted(filenames):
                    paths.append((rel_dir / name).as_posix())
                if len(paths) > limit:
                    break
        else:
            for entry in sorted(root.iterdir(), key=lambda p: p.name.lower()):
                paths.append(f"{entry.name}/" if entry.is_dir() else entry.name)

        return FileListing(paths=paths[:limit], hit_limit=len(paths) > limit)

    def exec_command(self, command: str, timeout_ms: int = 600_000, working_dir: str | None = None) -> ExecResult:
        """Run ``command`` in a shell, with stdout and stderr interleaved as a terminal shows them.

        On timeout the whole process group gets SIGTERM, then SIGKILL a second
        later if it is still alive.
        """
        popen_kwargs: dict[str, Any] = {"start_new_session": True} if sys.platform != "win32" else {}
        started = time.monotonic()
        proc = subprocess.Popen(
            command,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            cwd=working_dir or self._working_dir,
            env=_subprocess_env(),
            **popen_kwargs,
        )
        timed_out = False
        try:
            raw, _ = proc.communicate(timeout=timeout_ms / 1000)
        except subprocess.TimeoutExpired:
            timed_out = True
            _signal_group(proc, signal.SIGTERM)
            try:
                raw, _ = proc.communicate(timeout=1)
            except subprocess.TimeoutExpired:
                _signal_group(proc, signal.SIGKILL)
                raw, _ = proc.communicate()

        return ExecResult(
            output=raw.decode("utf-8", errors="replace").rstrip(),
            exit_code=proc.returncode if proc.returncode is not None else -1,
            timed_out=timed_out,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    def search(self, regex: str, path: str, file_pattern: str | None = None, max_results: int = 300) -> str:
        try:
            compiled = re.compile(regex)
        except re.error as exc:
            raise ValueError(f"Invalid regex: {exc}") from exc

        target = self._resolve(path)
        if not target.exists():
            raise FileNotFoundError(f"No such file or directory: {path}")
        files = [target] if target.is_file() else sorted(target.rglob("*"))

        results: list[str] = []
        for file_path in files:
            if not file_path.is_file():
                continue
            if any(part in _IGNORED_DIRS for part in file_path.parts):
                continue
            if file_pattern and not fnmatch.fnmatch(file_path.name, file_pattern):
                continue
            try:
                text = file_path.read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            rel = os.path.relpath(file_path, self._working_dir)
            for lineno, line in enumerate(text.splitlines(), 1):
                if compiled.search(line):
                    results.append(f"{rel}:{lineno}: {line}")
                    if len(results) >= max_results:
                        return "\n".join(results) + f"\n\n(Showing first {max_results} results.)"
        return "\n".join(results) if results else "Found 0 results."

    def working_directory(self) -> str:
        return self._working_dir

    def platform(self) -> str:
        for prefix, name in (("darwin", "darwin"), ("linux", "linux"), ("win32", "windows")):
            if sys.platform.startswith(prefix):
                return name
        return "unknown"

    def os_version(self) -> str:
        return _platform.platform()

