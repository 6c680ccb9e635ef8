"""Run external AI-agent CLI tasks with durable logs and execution history."""

__version__ = "0.3.0"
