"""Agent runtime – streamed model turns, tool calls, approvals and task lifecycle."""

from taskpilot.agent.task import Task, TaskConfig, TaskStatus
from taskpilot.agent.controller import AgentController
from taskpilot.agent.loop import run_task
from taskpilot.agent.approval import ApprovalDecision, ApprovalGate, AutoApprovePolicy
from taskpilot.agent.context import ContextManager, Message, Role
from taskpilot.agent.executor import ToolExecutor, ToolOutcome, ToolResult
from taskpilot.agent.parser import MalformedToolCall, PlainText, ToolCallParser, ToolCallRequest
from taskpilot.agent.stream import StreamAssembler, StreamChunk
from taskpilot.agent.environment import ExecutionEnvironment, LocalExecutionEnvironment
from taskpilot.agent.tools import ParamSpec, ParamType, RegisteredTool, ToolRegistry, ToolSpec, create_default_registry
from taskpilot.agent.events import EventEmitter, EventKind, TaskEvent
from taskpilot.agent.store import TaskStore

__all__ = [
    "Task", "TaskConfig", "TaskStatus", "AgentController", "run_task",
    "ApprovalDecision", "ApprovalGate", "AutoApprovePolicy",
    "ContextManager", "Message", "Role",
    "ToolExecutor", "ToolOutcome", "ToolResult",
    "ToolCallParser", "ToolCallRequest", "MalformedToolCall", "PlainText",
    "StreamAssembler", "StreamChunk",
    "ExecutionEnvironment", "LocalExecutionEnvironment",
    "ToolRegistry", "RegisteredTool", "ToolSpec", "ParamSpec", "ParamType", "create_default_registry",
    "EventKind", "TaskEvent", "EventEmitter",
    "TaskStore",
]
