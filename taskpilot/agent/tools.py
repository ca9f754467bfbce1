"""Tool registry and the built-in tool set."""

from __future__ import annotations

import difflib
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Union

from taskpilot.agent.environment import BROWSER_ACTIONS, ExecutionEnvironment
from taskpilot.agent.errors import CommandFailedError, EditFailedError, ToolTimeoutError, UnsupportedToolError


class ParamType(str, Enum):
    STRING = "string"
    PATH = "path"
    ENUM = "enum"
    BOOLEAN = "boolean"
    INTEGER = "integer"


@dataclass(frozen=True)
class ParamSpec:
    name: str
    type: ParamType = ParamType.STRING
    required: bool = True
    description: str = ""
    choices: tuple[str, ...] = ()
    # Multi-line values (file contents) may contain text that looks like tags.
    multiline: bool = False


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    params: tuple[ParamSpec, ...] = ()
    # Interactive tools ask the user something; they are never auto-approved.
    interactive: bool = False
    example: str | None = None

    def param(self, name: str) -> ParamSpec | None:
        return next((p for p in self.params if p.name == name), None)


ToolHandler = Callable[[dict, ExecutionEnvironment], Union[str, Awaitable[str]]]


@dataclass
class RegisteredTool:
    spec: ToolSpec
    handler: ToolHandler


class ToolRegistry:
    """Registry mapping tool names to handlers."""

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(self, tool: RegisteredTool) -> None:
        self._tools[tool.spec.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> RegisteredTool | None:
        return self._tools.get(name)

    def specs(self) -> list[ToolSpec]:
        return [t.spec for t in self._tools.values()]

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._tools


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

def create_pretty_patch(filename: str, old: str, new: str) -> str:
    """Unified diff of a file change, as shown to the model and the user."""
    diff = difflib.unified_diff(
        old.splitlines(keepends=True),
        new.splitlines(keepends=True),
        fromfile=f"a/{filename}",
        tofile=f"b/{filename}",
    )
    return "".join(line if line.endswith("\n") else line + "\n" for line in diff)


def format_files_list(paths: list[str], hit_limit: bool) -> str:
    if not paths:
        return "No files found."
    listing = "\n".join(paths)
    if hit_limit:
        listing += "\n\n(File list truncated. Use list_files on specific subdirectories if you need to explore further.)"
    return listing


# ---------------------------------------------------------------------------
# Search/replace edits
# ---------------------------------------------------------------------------

SEARCH_MARKER = "<<<<<<< SEARCH"
DIVIDER_MARKER = "======="
REPLACE_MARKER = ">>>>>>> REPLACE"


def parse_edit_blocks(diff: str) -> list[tuple[str, str]]:
    """Split a diff into ``(search, replace)`` pairs.

    Lines outside a block are ignored. A ``=======`` line inside the
    replacement text is kept as content.
    """
    blocks: list[tuple[str, str]] = []
    section: str | None = None
    search: list[str] = []
    replace: list[str] = []
    for line in diff.split("\n"):
        marker = line.rstrip()
        if marker == SEARCH_MARKER:
            if section is not None:
                raise EditFailedError(f"Found {SEARCH_MARKER} before the previous block was closed with {REPLACE_MARKER}")
            section, search, replace = "search", [], []
        elif marker == DIVIDER_MARKER and section == "search":
            section = "replace"
        elif marker == REPLACE_MARKER and section == "replace":
            blocks.append(("\n".join(search), "\n".join(replace)))
            section = None
        elif section == "search":
            search.append(line)
        elif section == "replace":
            replace.append(line)
    if section is not None:
        raise EditFailedError(f"The last SEARCH/REPLACE block is not closed with {REPLACE_MARKER}")
    if not blocks:
        raise EditFailedError("Invalid diff format - missing required SEARCH/REPLACE sections")
    return blocks


def _find_lines(lines: list[str], target: list[str]) -> int | None:
    # Exact match first, then ignore leading and trailing whitespace per line.
    for normalize in (lambda s: s, str.strip):
        wanted = [normalize(t) for t in target]
        for i in range(len(lines) - len(target) + 1):
            if all(normalize(lines[i + j]) == w for j, w in enumerate(wanted)):
                return i
    return None


def apply_edit_blocks(content: str, blocks: list[tuple[str, str]]) -> str:
    """Apply blocks in order, each to the first match of its search text."""
    lines = content.split("\n")
    for n, (search, replace) in enumerate(blocks, 1):
        if not search.strip():
            raise EditFailedError(
                f"Block {n} has an empty SEARCH section. Use write_file to create or overwrite a whole file."
            )
        search_lines = search.split("\n")
        start = _find_lines(lines, search_lines)
        if start is None:
            raise EditFailedError(
                f"Block {n}: the SEARCH text was not found in the file. It must match existing lines exactly, "
                "including indentation. Use read_file to get the current content and retry.\n"
                f"<search>\n{search}\n</search>"
            )
        lines[start:start + len(search_lines)] = replace.split("\n") if replace else []
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Built-in tool handlers
# ---------------------------------------------------------------------------

def read_file_handler(args: dict, env: ExecutionEnvironment) -> str:
    content = env.read_file(args["path"])
    lines = content.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return "\n".join(f"{i} | {line}" for i, line in enumerate(lines, 1))


def write_file_handler(args: dict, env: ExecutionEnvironment) -> str:
    path = args["path"]
    content = args["content"]
    if not content.endswith("\n"):
        content += "\n"
    existed = env.file_exists(path)
    old = env.read_file(path) if existed else ""
    env.write_file(path, content)

    verb = "updated" if existed else "created"
    patch = create_pretty_patch(path, old, content)
    if not patch:
        return f"No changes needed for {path}; the content is identical."
    return f"The content was successfully {verb} in {path}.\n\n{patch}".rstrip()


def replace_in_file_handler(args: dict, env: ExecutionEnvironment) -> str:
    path = args["path"]
    old = env.read_file(path)
    new = apply_edit_blocks(old, parse_edit_blocks(args["diff"]))
    if new == old:
        return f"No changes needed for {path}; the content is identical."
    env.write_file(path, new)
    return f"The content was successfully updated in {path}.\n\n{create_pretty_patch(path, old, new)}".rstrip()


def execute_command_handler(args: dict, env: ExecutionEnvironment, timeout_ms: int = 600_000) -> str:
    command = args["command"]
    result = env.exec_command(command=command, timeout_ms=timeout_ms)
    if result.timed_out:
        raise ToolTimeoutError(
            f"Command timed out after {timeout_ms}ms. Partial output:\n{result.output}".rstrip()
        )
    if result.exit_code != 0:
        raise CommandFailedError(command, result.exit_code, result.output)
    if not result.output:
        return "Command executed successfully with no output."
    return f"Command executed.\nOutput:\n{result.output}"


def list_files_handler(args: dict, env: ExecutionEnvironment) -> str:
    listing = env.list_files(args["path"], recursive=bool(args.get("recursive", False)))
    return format_files_list(listing.paths, listing.hit_limit)


def search_files_handler(args: dict, env: ExecutionEnvironment) -> str:
    return env.search(args["regex"], args["path"], args.get("file_pattern"))


def browser_action_handler(args: dict, env: ExecutionEnvironment) -> str:
    return env.browser_action(
        args["action"],
        url=args.get("url"),
        coordinate=args.get("coordinate"),
        text=args.get("text"),
    )


def ask_followup_question_handler(args: dict, env: ExecutionEnvironment) -> str:
    # The answer arrives with the approval decision; the handler only records
    # that the question was put to the user.
    return f"Asked the user: {args['question']}"


def attempt_completion_handler(args: dict, env: ExecutionEnvironment) -> str:
    # The loop ends the task on attempt_completion before anything is dispatched.
    raise UnsupportedToolError("attempt_completion is handled by the agent loop, not executed as a tool")


# ---------------------------------------------------------------------------
# Default registry factory
# ---------------------------------------------------------------------------

DEFAULT_TOOL_SPECS: tuple[ToolSpec, ...] = (
    ToolSpec(
        name="read_file",
        description=(
            "Request to read the contents of a file at the specified path. Use this when you need to examine "
            "the contents of an existing file you do not know the contents of. The output includes line numbers "
            "prefixed to each line (e.g. \"1 | const x = 1\")."
        ),
        params=(ParamSpec("path", ParamType.PATH, description="The path of the file to read"),),
        example="<read_file>\n<path>frontend-config.json</path>\n</read_file>",
    ),
    ToolSpec(
        name="write_file",
        description=(
            "Request to write content to a file at the specified path. If the file exists, it will be "
            "overwritten with the provided content. If the file doesn't exist, it will be created. Parent "
            "directories are created as needed. Always provide the COMPLETE intended content of the file."
        ),
        params=(
            ParamSpec("path", ParamType.PATH, description="The path of the file to write to"),
            ParamSpec("content", ParamType.STRING, description="The complete content to write to the file",
                      multiline=True),
        ),
        example="<write_file>\n<path>notes.txt</path>\n<content>\nfirst line\nsecond line\n</content>\n</write_file>",
    ),
    ToolSpec(
        name="replace_in_file",
        description=(
            "Request to change part of an existing file with SEARCH/REPLACE blocks. Each SEARCH section must "
            "match existing lines exactly, including whitespace and indentation, and is replaced where it first "
            "occurs. Blocks are applied in order, so list them in the order they appear in the file. Use "
            "read_file first if you are not sure of the exact content; use write_file for new files.\n"
            "Block format:\n"
            "<<<<<<< SEARCH\n[exact content to find]\n=======\n[new content to replace with]\n>>>>>>> REPLACE"
        ),
        params=(
            ParamSpec("path", ParamType.PATH, description="The path of the file to modify"),
            ParamSpec("diff", ParamType.STRING, description="One or more SEARCH/REPLACE blocks", multiline=True),
        ),
        example=(
            "<replace_in_file>\n<path>src/settings.py</path>\n<diff>\n<<<<<<< SEARCH\nDEBUG = True\n=======\n"
            "DEBUG = False\n>>>>>>> REPLACE\n</diff>\n</replace_in_file>"
        ),
    ),
    ToolSpec(
        name="execute_command",
        description=(
            "Request to execute a CLI command on the system. Commands run in the current working directory. "
            "A non-zero exit status is reported as a failure together with the command output."
        ),
        params=(ParamSpec("command", ParamType.STRING, description="The CLI command to execute"),),
        example="<execute_command>\n<command>npm run dev</command>\n</execute_command>",
    ),
    ToolSpec(
        name="list_files",
        description=(
            "Request to list files and directories within the specified directory. If recursive is true, it "
            "will list all files and directories recursively."
        ),
        params=(
            ParamSpec("path", ParamType.PATH, description="The path of the directory to list contents for"),
            ParamSpec("recursive", ParamType.BOOLEAN, required=False,
                      description="Whether to list files recursively (true or false)"),
        ),
        example="<list_files>\n<path>.</path>\n<recursive>false</recursive>\n</list_files>",
    ),
    ToolSpec(
        name="search_files",
        description=(
            "Request to perform a regex search across files in a specified directory. Each match is reported "
            "as path:line: text."
        ),
        params=(
            ParamSpec("path", ParamType.PATH, description="The path of the directory to search in"),
            ParamSpec("regex", ParamType.STRING, description="The regular expression pattern to search for"),
            ParamSpec("file_pattern", ParamType.STRING, required=False,
                      description="Glob pattern to filter files (e.g. '*.ts')"),
        ),
        example="<search_files>\n<path>.</path>\n<regex>TODO</regex>\n<file_pattern>*.py</file_pattern>\n</search_files>",
    ),
    ToolSpec(
        name="browser_action",
        description=(
            "Request to interact with a browser. Every session must start with launch and end with close. "
            "Available actions: " + ", ".join(BROWSER_ACTIONS) + "."
        ),
        params=(
            ParamSpec("action", ParamType.ENUM, choices=BROWSER_ACTIONS, description="The action to perform"),
            ParamSpec("url", ParamType.STRING, required=False, description="URL for the launch action"),
            ParamSpec("coordinate", ParamType.STRING, required=False, description="x,y position for click"),
            ParamSpec("text", ParamType.STRING, required=False, description="Text for the type action"),
        ),
        example="<browser_action>\n<action>launch</action>\n<url>http://localhost:3000</url>\n</browser_action>",
    ),
    ToolSpec(
        name="ask_followup_question",
        description=(
            "Ask the user a question to gather additional information needed to complete the task. Use this "
            "when you encounter ambiguities or need clarification."
        ),
        params=(ParamSpec("question", ParamType.STRING, description="The question to ask the user",
                          multiline=True),),
        interactive=True,
        example="<ask_followup_question>\n<question>Which license should I use?</question>\n</ask_followup_question>",
    ),
    ToolSpec(
        name="attempt_completion",
        description=(
            "Once the task is complete, use this tool to present the result of your work to the user. "
            "Optionally provide a CLI command that showcases the result."
        ),
        params=(
            ParamSpec("result", ParamType.STRING, description="The result of the task", multiline=True),
            ParamSpec("command", ParamType.STRING, required=False,
                      description="A CLI command to demonstrate the result"),
        ),
        example="<attempt_completion>\n<result>\nI have completed the task...\n</result>\n</attempt_completion>",
    ),
)

_DEFAULT_HANDLERS: dict[str, ToolHandler] = {
    "read_file": read_file_handler,
    "write_file": write_file_handler,
    "replace_in_file": replace_in_file_handler,
    "execute_command": execute_command_handler,
    "list_files": list_files_handler,
    "search_files": search_files_handler,
    "browser_action": browser_action_handler,
    "ask_followup_question": ask_followup_question_handler,
    "attempt_completion": attempt_completion_handler,
}


def create_default_registry(command_timeout_ms: int | None = None) -> ToolRegistry:
    """Create a registry populated with all built-in tools."""
    registry = ToolRegistry()
    for spec in DEFAULT_TOOL_SPECS:
        handler = _DEFAULT_HANDLERS[spec.name]
        if spec.name == "execute_command" and command_timeout_ms is not None:
            handler = _command_handler_with_timeout(command_timeout_ms)
        registry.register(RegisteredTool(spec=spec, handler=handler))
    return registry


def _command_handler_with_timeout(timeout_ms: int) -> ToolHandler:
    def handler(args: dict, env: ExecutionEnvironment) -> str:
        return execute_command_handler(args, env, timeout_ms=timeout_ms)

    return handler
