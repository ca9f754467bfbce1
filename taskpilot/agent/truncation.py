"""Size limits applied to tool output before it becomes part of the history."""

from __future__ import annotations

from dataclasses import dataclass


def clip_middle(text: str, max_chars: int) -> str:
    """Keep the first and last ``max_chars // 2`` characters."""
    if len(text) <= max_chars:
        return text
    half = max_chars // 2
    dropped = len(text) - 2 * half
    return f"{text[:half]}\n\n[... {dropped} characters removed from middle of output ...]\n\n{text[len(text) - half:]}"


def keep_end(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    dropped = len(text) - max_chars
    return f"[output truncated: first {dropped} characters dropped]\n\n{text[-max_chars:]}"


def clip_lines(text: str, max_lines: int) -> str:
    lines = text.split("\n")
    if len(lines) <= max_lines:
        return text
    head = lines[: max_lines // 2]
    tail = lines[len(lines) - (max_lines - len(head)):]
    skipped = len(lines) - len(head) - len(tail)
    return "\n".join([*head, f"[... {skipped} lines omitted ...]", *tail])


@dataclass(frozen=True)
class OutputLimit:
    max_chars: int
    # Command output and file contents matter at both ends; for the rest
    # the end is what the model needs.
    keep_both_ends: bool = False
    max_lines: int | None = None

    def apply(self, text: str, max_chars: int | None = None) -> str:
        limit = max_chars if max_chars is not None else self.max_chars
        text = clip_middle(text, limit) if self.keep_both_ends else keep_end(text, limit)
        if self.max_lines:
            text = clip_lines(text, self.max_lines)
        return text


FALLBACK_LIMIT = OutputLimit(max_chars=10_000)

TOOL_LIMITS: dict[str, OutputLimit] = {
    "read_file": OutputLimit(50_000, keep_both_ends=True),
    "write_file": OutputLimit(20_000, keep_both_ends=True),
    "replace_in_file": OutputLimit(20_000, keep_both_ends=True),
    "execute_command": OutputLimit(30_000, keep_both_ends=True, max_lines=500),
    "list_files": OutputLimit(20_000, keep_both_ends=True, max_lines=500),
    "search_files": OutputLimit(20_000, keep_both_ends=True, max_lines=300),
}


def limit_tool_output(text: str, tool_name: str, char_limits: dict[str, int] | None = None) -> str:
    """Apply the tool's limit; ``char_limits`` overrides the character cap per tool."""
    limit = TOOL_LIMITS.get(tool_name, FALLBACK_LIMIT)
    return limit.apply(text, (char_limits or {}).get(tool_name))
