"""Runnable targets: agent definitions and todo checklists."""

from agent_runner.targets.agents import AgentDefinition, AgentRunner, UnknownAgentError
from agent_runner.targets.todos import TodoItem, TodoRunner, UnknownTodoError

__all__ = [
    "AgentDefinition",
    "AgentRunner",
    "TodoItem",
    "TodoRunner",
    "UnknownAgentError",
    "UnknownTodoError",
]
