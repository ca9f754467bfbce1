"""Model-facing text: the system prompt, task framing and tool-result wording."""

from __future__ import annotations

import re
from datetime import datetime

from taskpilot.agent.environment import ExecutionEnvironment
from taskpilot.agent.tools import ParamType, ToolSpec, format_files_list
from taskpilot.agent.truncation import limit_tool_output
from taskpilot.logging import get_logger

log = get_logger(__name__)

TOOL_USE_INSTRUCTIONS_REMINDER = """# Reminder: Instructions for Tool Use

Tool uses are formatted using XML-style tags. The tool name is enclosed in opening and closing tags, and each parameter is similarly enclosed within its own set of tags. Here's the structure:

<tool_name>
<parameter1_name>value1</parameter1_name>
<parameter2_name>value2</parameter2_name>
...
</tool_name>

For example:

<attempt_completion>
<result>
I have completed the task...
</result>
</attempt_completion>

Always adhere to this format for all tool uses to ensure proper parsing and execution."""

INTERRUPTED_MARKER = "[Response interrupted by user]"


# ---------------------------------------------------------------------------
# Tool-result wording
# ---------------------------------------------------------------------------

def tool_denied() -> str:
    return "The user denied this operation."


def tool_denied_with_feedback(feedback: str | None) -> str:
    return (
        "The user denied this operation and provided the following feedback:\n"
        f"<feedback>\n{feedback or ''}\n</feedback>"
    )


def tool_approved_with_feedback(feedback: str | None) -> str:
    return (
        "The user approved this operation and provided the following context:\n"
        f"<feedback>\n{feedback or ''}\n</feedback>"
    )


def tool_error(error: str | None) -> str:
    return f"The tool execution failed with the following error:\n<error>\n{error or ''}\n</error>"


def tool_cancelled() -> str:
    return "The tool execution was cancelled by the user before it finished."


def missing_tool_parameter_error(param_name: str) -> str:
    return (
        f"Missing value for required parameter '{param_name}'. Please retry with complete response.\n\n"
        f"{TOOL_USE_INSTRUCTIONS_REMINDER}"
    )


def invalid_tool_parameter_error(param_name: str, problem: str) -> str:
    return (
        f"Invalid value for parameter '{param_name}': {problem}. Please retry with a valid value.\n\n"
        f"{TOOL_USE_INSTRUCTIONS_REMINDER}"
    )


def unterminated_tool_error(tool_name: str) -> str:
    return (
        f"The <{tool_name}> tool use was not closed with </{tool_name}>. Please retry with complete response.\n\n"
        f"{TOOL_USE_INSTRUCTIONS_REMINDER}"
    )


def tool_skipped_after_denial(tool_name: str) -> str:
    return f"Skipping tool [{tool_name}] due to user rejecting a previous tool."


def format_answer(answer: str | None) -> str:
    return f"<answer>\n{answer or ''}\n</answer>"


def tool_result_header(tool_name: str, params: dict) -> str:
    """``[read_file for 'src/app.py'] Result:`` style header."""
    target = params.get("path") or params.get("command") or params.get("regex") or params.get("action")
    if target is None:
        return f"[{tool_name}] Result:"
    return f"[{tool_name} for '{target}'] Result:"


def loop_detected_warning(window: int) -> str:
    return (
        f"[NOTE] Your last {window} tool uses repeat the same pattern without making progress. "
        "Stop and try a different approach, or use ask_followup_question if you are stuck."
    )


# ---------------------------------------------------------------------------
# Mentions
# ---------------------------------------------------------------------------

# "@/src/app.py", "@/src/" or "@git-changes"; trailing punctuation is not part of the path.
_MENTION_RE = re.compile(r"(?<!\S)@(/\S*?|git-changes)(?=[.,;:!?)\]]*(?:\s|$))")

GIT_CHANGES_MENTION = "git-changes"


def _mention_label(mention: str) -> str:
    if mention == GIT_CHANGES_MENTION:
        return "Working directory changes (see below for details)"
    kind = "folder" if mention.endswith("/") else "file"
    return f"'{mention.lstrip('/') or '.'}' (see below for {kind} content)"


def _git_changes(env: ExecutionEnvironment) -> str:
    status = env.exec_command("git status --short", timeout_ms=10_000)
    if status.exit_code != 0:
        return f"Error fetching git changes: {status.output or 'not a git repository'}"
    if not status.output.strip():
        return "No changes in working directory."
    parts = ["Working directory changes:", status.output]
    diff = env.exec_command("git --no-pager diff HEAD", timeout_ms=10_000)
    if diff.exit_code == 0 and diff.output:
        parts += ["", diff.output]
    return "\n".join(parts)


def _mention_content(mention: str, env: ExecutionEnvironment) -> str:
    if mention == GIT_CHANGES_MENTION:
        return f"<git_working_state>\n{limit_tool_output(_git_changes(env), 'execute_command')}\n</git_working_state>"
    path = mention.lstrip("/") or "."
    tag = "folder_content" if mention.endswith("/") else "file_content"
    try:
        if tag == "folder_content":
            listing = env.list_files(path)
            body = format_files_list(listing.paths, listing.hit_limit)
        else:
            body = limit_tool_output(env.read_file(path).rstrip("\n"), "read_file")
    except OSError as exc:
        body = f"Error fetching content: {exc}"
    return f'<{tag} path="{path}">\n{body}\n</{tag}>'


def expand_mentions(text: str, env: ExecutionEnvironment) -> str:
    """Attach the files, folders and git changes a message mentions with ``@``.

    ``@/src/app.py`` attaches the file, ``@/src/`` the folder listing and
    ``@git-changes`` the uncommitted changes. Paths are relative to the
    working directory. A mention that cannot be read is attached as an error
    note rather than failing the task.
    """
    mentions = list(dict.fromkeys(m.group(1) for m in _MENTION_RE.finditer(text)))
    if not mentions:
        return text
    parsed = _MENTION_RE.sub(lambda m: _mention_label(m.group(1)), text)
    return parsed + "\n\n" + "\n\n".join(_mention_content(m, env) for m in mentions)


# ---------------------------------------------------------------------------
# Task framing
# ---------------------------------------------------------------------------

def environment_details(env: ExecutionEnvironment, include_files: bool = True, now: datetime | None = None) -> str:
    now = (now or datetime.now()).astimezone()
    offset = now.utcoffset()
    hours = offset.total_seconds() / 3600 if offset is not None else 0.0
    details = [
        "# Current Time",
        f"{now.strftime('%Y-%m-%d %I:%M:%S %p')} ({now.tzname()}, UTC{hours:+g}:00)",
    ]
    if include_files:
        cwd = env.working_directory()
        details += ["", f"# Current Working Directory ({cwd}) Files"]
        try:
            listing = env.list_files(".", recursive=True)
        except OSError as exc:
            details.append(f"(Unable to list files: {exc})")
        else:
            details.append("\n".join(listing.paths) if listing.paths else "No files found.")
            if listing.hit_limit:
                details.append("(File list truncated. Use list_files to explore further.)")
    return "<environment_details>\n" + "\n".join(details) + "\n</environment_details>"


def format_task(prompt: str, details: str | None = None, env: ExecutionEnvironment | None = None) -> str:
    if env is not None:
        prompt = expand_mentions(prompt, env)
    text = f"<task>\n{prompt}\n</task>"
    if details:
        text += f"\n\n{details}"
    return text


# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------

def describe_tool(spec: ToolSpec, cwd: str) -> str:
    lines = [f"## {spec.name}", f"Description: {spec.description}", "Parameters:"]
    for p in spec.params:
        need = "required" if p.required else "optional"
        desc = p.description
        if p.type == ParamType.PATH:
            desc += f" (relative to the current working directory {cwd})"
        elif p.type == ParamType.ENUM and p.choices:
            desc += f" (one of: {', '.join(p.choices)})"
        lines.append(f"- {p.name}: ({need}) {desc}")
    lines.append("Usage:")
    lines.append(f"<{spec.name}>")
    for p in spec.params:
        lines.append(f"<{p.name}>{p.name.replace('_', ' ')} here</{p.name}>")
    lines.append(f"</{spec.name}>")
    if spec.example:
        lines += ["", "Example:", spec.example]
    return "\n".join(lines)


RULES_FILE = ".taskpilotrules"


def custom_instructions_section(env: ExecutionEnvironment, custom_instructions: str | None = None) -> str:
    """User instructions and the project's rules file, or "" when there are none."""
    sections = []
    if custom_instructions and custom_instructions.strip():
        sections.append(f"Global Instructions:\n{custom_instructions.strip()}")
    try:
        rules = env.read_file(RULES_FILE).strip() if env.file_exists(RULES_FILE) else ""
    except OSError as exc:
        log.warning("Could not read rules file", path=RULES_FILE, error=str(exc))
        rules = ""
    if rules:
        sections.append(f"Rules:\n\n# Rules from {RULES_FILE}:\n{rules}")
    if not sections:
        return ""
    return (
        "====\n\nUSER'S CUSTOM INSTRUCTIONS\n\n"
        "The following additional instructions are provided by the user, and should be followed to the best "
        "of your ability without interfering with the TOOL USE guidelines.\n\n" + "\n\n".join(sections)
    )


def build_system_prompt(
    specs: list[ToolSpec],
    env: ExecutionEnvironment,
    max_calls_per_turn: int = 1,
    custom_instructions: str | None = None,
) -> str:
    cwd = env.working_directory()
    if max_calls_per_turn == 1:
        per_turn = "You can use one tool per message"
    else:
        per_turn = f"You can use up to {max_calls_per_turn} tools per message"
    parts = [
        "You are an autonomous software engineer working in the user's project. You accomplish the task "
        "step by step, using tools to read and change the project.",
        "",
        "====",
        "",
        "TOOL USE",
        "",
        f"You have access to a set of tools that are executed upon the user's approval. {per_turn}, and "
        "will receive the result of that tool use in the user's response.",
        "",
        "# Tools",
        "",
        "\n\n".join(describe_tool(spec, cwd) for spec in specs),
        "",
        TOOL_USE_INSTRUCTIONS_REMINDER,
        "",
        "====",
        "",
        "SYSTEM INFORMATION",
        "",
        f"Operating System: {env.os_version()}",
        f"Default Shell: {env.default_shell()}",
        f"Home Directory: {env.home_directory()}",
        f"Current Working Directory: {cwd}",
        "",
        "====",
        "",
        "OBJECTIVE",
        "",
        "1. Analyze the task and set clear, achievable goals.",
        "2. Work through the goals sequentially, waiting for each tool result before the next step.",
        "3. When the task is complete, use attempt_completion to present the result. Do not end your result "
        "with questions or offers for further assistance.",
    ]
    custom = custom_instructions_section(env, custom_instructions)
    if custom:
        parts += ["", custom]
    return "\n".join(parts)
