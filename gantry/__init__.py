"""gantry: a tool-calling coding assistant with approval gating."""

from .report import AgentError, ConfigError
from .session import Result, Session

__all__ = ["AgentError", "ConfigError", "Result", "Session"]
