"""Tool-call parsing of assistant text.

Assistant text is prose with XML-style tool blocks mixed in::

    Let me look at the config first.
    <read_file>
    <path>config.json</path>
    </read_file>

The parser never raises on model output. It splits the text into an ordered
list of segments: ``PlainText``, ``ToolCallRequest`` or ``MalformedToolCall``.
Tags that do not name a registered tool are prose.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterable, Union

from taskpilot.agent import prompts
from taskpilot.agent.tools import ParamSpec, ParamType, ToolSpec

_OPEN_TAG_RE = re.compile(r"<([a-z_][a-z0-9_]*)>")
_TRUE = {"true"}
_FALSE = {"false"}


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlainText:
    text: str
    offset: int


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    name: str
    params: dict[str, str | bool | int] = field(hash=False)
    offset: int
    raw: str


@dataclass(frozen=True)
class MalformedToolCall:
    id: str
    name: str
    offset: int
    raw: str
    reason: str


Segment = Union[PlainText, ToolCallRequest, MalformedToolCall]


def tool_calls(segments: Iterable[Segment]) -> list[ToolCallRequest | MalformedToolCall]:
    """The actionable segments, in order."""
    return [s for s in segments if not isinstance(s, PlainText)]


class _ParamError(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class ToolCallParser:
    """Incremental parser for one assistant turn at a time.

    ``feed()`` accepts text as it streams in and returns only segments that can
    no longer change; an open tool block, or a trailing ``<rea`` that may still
    grow into a tool tag, is held back. ``finish()`` flushes the rest.
    ``parse()`` handles a complete text in one go.

    Only the first ``max_calls_per_turn`` tool blocks are actionable; later
    blocks are returned as plain text.
    """

    def __init__(
        self,
        specs: Iterable[ToolSpec],
        max_calls_per_turn: int = 1,
        id_factory: Callable[[], str] = _new_call_id,
    ) -> None:
        if max_calls_per_turn < 1:
            raise ValueError("max_calls_per_turn must be at least 1")
        self._specs: dict[str, ToolSpec] = {s.name: s for s in specs}
        self.max_calls_per_turn = max_calls_per_turn
        self._id_factory = id_factory
        self.reset()

    def reset(self) -> None:
        self._buffer = ""
        self._pos = 0
        self._actionable = 0
        self._finished = False

    @property
    def text(self) -> str:
        return self._buffer

    def feed(self, delta: str) -> list[Segment]:
        if self._finished:
            raise ValueError("parser already finished this turn; call reset() first")
        self._buffer += delta
        return self._scan(final=False)

    def finish(self) -> list[Segment]:
        if self._finished:
            return []
        segments = self._scan(final=True)
        self._finished = True
        return segments

    def parse(self, text: str) -> list[Segment]:
        self.reset()
        self._buffer = text
        return self.finish()

    # -- scanning ---------------------------------------------------------------

    def _scan(self, final: bool) -> list[Segment]:
        buf = self._buffer
        segments: list[Segment] = []
        text_start = i = self._pos

        while True:
            m = _OPEN_TAG_RE.search(buf, i)
            if m is None:
                break
            spec = self._specs.get(m.group(1))
            if spec is None:
                i = m.start() + 1
                continue

            parsed = self._read_block(spec, m.end())
            if parsed is None:
                if not final:
                    self._emit_text(segments, text_start, m.start())
                    self._pos = m.start()
                    return segments
                if not self._has_param_tag(spec, m.end()):
                    # Prose that happens to mention a tool tag.
                    i = m.start() + 1
                    continue
                self._emit_text(segments, text_start, m.start())
                self._emit_block(segments, spec, m.start(), len(buf), None,
                                 prompts.unterminated_tool_error(spec.name))
                text_start = i = len(buf)
                break

            end, params, error = parsed
            self._emit_text(segments, text_start, m.start())
            self._emit_block(segments, spec, m.start(), end, params, error)
            text_start = i = end

        if final:
            self._emit_text(segments, text_start, len(buf))
            self._pos = len(buf)
        else:
            hold = self._partial_tag_start(text_start)
            self._emit_text(segments, text_start, hold)
            self._pos = hold
        return segments

    def _read_block(self, spec: ToolSpec, start: int) -> tuple[int, dict[str, str], str | None] | None:
        """Read parameters up to the tool's closing tag.

        Returns ``(end, raw_params, error)`` or None when the block is not
        closed yet. Text between parameters is ignored.
        """
        buf = self._buffer
        close_tag = f"</{spec.name}>"
        pos = start
        raw: dict[str, str] = {}
        error: str | None = None

        while True:
            nxt = self._next_param_or_close(spec, pos)
            if nxt is None:
                return None
            tag_start, param = nxt
            if param is None:
                end = tag_start + len(close_tag)
                return end, raw, error

            value_start = tag_start + len(param.name) + 2
            value_end = self._find_param_close(spec, param, value_start)
            if value_end is None:
                return None
            if param.name in raw and error is None:
                error = prompts.invalid_tool_parameter_error(param.name, "given more than once")
            raw.setdefault(param.name, buf[value_start:value_end])
            pos = value_end + len(param.name) + 3

    def _next_param_or_close(self, spec: ToolSpec, pos: int) -> tuple[int, ParamSpec | None] | None:
        buf = self._buffer
        close_at = buf.find(f"</{spec.name}>", pos)
        for m in _OPEN_TAG_RE.finditer(buf, pos):
            if close_at != -1 and m.start() > close_at:
                break
            param = spec.param(m.group(1))
            if param is not None:
                return m.start(), param
        if close_at == -1:
            return None
        return close_at, None

    def _find_param_close(self, spec: ToolSpec, param: ParamSpec, value_start: int) -> int | None:
        buf = self._buffer
        close = f"</{param.name}>"
        idx = buf.find(close, value_start)
        if not param.multiline:
            return idx if idx != -1 else None

        # A multi-line value ends at the first closing tag that is followed by
        # another parameter or the end of the tool block.
        while idx != -1:
            after = buf[idx + len(close):].lstrip()
            if after.startswith(f"</{spec.name}>"):
                return idx
            m = _OPEN_TAG_RE.match(after)
            if m and spec.param(m.group(1)) is not None:
                return idx
            idx = buf.find(close, idx + 1)
        return None

    def _has_param_tag(self, spec: ToolSpec, pos: int) -> bool:
        return any(spec.param(m.group(1)) is not None for m in _OPEN_TAG_RE.finditer(self._buffer, pos))

    def _partial_tag_start(self, text_start: int) -> int:
        """Where a trailing, possibly incomplete tool tag begins (or end of buffer)."""
        buf = self._buffer
        idx = buf.rfind("<", text_start)
        if idx == -1:
            return len(buf)
        fragment = buf[idx:]
        if ">" in fragment:
            return len(buf)
        if any(f"<{name}>".startswith(fragment) for name in self._specs):
            return idx
        return len(buf)

    # -- segment construction ---------------------------------------------------

    def _emit_text(self, segments: list[Segment], start: int, end: int) -> None:
        if end <= start:
            return
        text = self._buffer[start:end]
        if segments and isinstance(segments[-1], PlainText):
            last = segments[-1]
            segments[-1] = PlainText(text=last.text + text, offset=last.offset)
        else:
            segments.append(PlainText(text=text, offset=start))

    def _emit_block(
        self,
        segments: list[Segment],
        spec: ToolSpec,
        start: int,
        end: int,
        raw_params: dict[str, str] | None,
        error: str | None,
    ) -> None:
        raw = self._buffer[start:end]
        if self._actionable >= self.max_calls_per_turn:
            self._emit_text(segments, start, end)
            return
        self._actionable += 1

        if error is None and raw_params is not None:
            try:
                params = self._validate(spec, raw_params)
            except _ParamError as exc:
                error = exc.reason
            else:
                segments.append(ToolCallRequest(
                    id=self._id_factory(), name=spec.name, params=params, offset=start, raw=raw,
                ))
                return

        segments.append(MalformedToolCall(
            id=self._id_factory(), name=spec.name, offset=start, raw=raw,
            reason=error or prompts.unterminated_tool_error(spec.name),
        ))

    @staticmethod
    def _validate(spec: ToolSpec, raw_params: dict[str, str]) -> dict[str, str | bool | int]:
        params: dict[str, str | bool | int] = {}
        for p in spec.params:
            value = raw_params.get(p.name)
            if value is not None:
                value = value.strip("\r\n") if p.type == ParamType.STRING else value.strip()
            if not value:
                if p.required:
                    raise _ParamError(prompts.missing_tool_parameter_error(p.name))
                continue
            params[p.name] = _coerce(p, value)
        return params


def _coerce(param: ParamSpec, value: str) -> str | bool | int:
    if param.type == ParamType.BOOLEAN:
        lowered = value.lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise _ParamError(prompts.invalid_tool_parameter_error(param.name, f"expected true or false, got {value!r}"))
    if param.type == ParamType.INTEGER:
        try:
            return int(value)
        except ValueError:
            raise _ParamError(prompts.invalid_tool_parameter_error(param.name, f"expected an integer, got {value!r}")) from None
    if param.type == ParamType.ENUM and param.choices and value not in param.choices:
        allowed = ", ".join(param.choices)
        raise _ParamError(prompts.invalid_tool_parameter_error(param.name, f"expected one of {allowed}, got {value!r}"))
    return value
