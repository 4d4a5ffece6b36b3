"""Agent backend implementations."""

from agent_taskflow.runner.backend.base import (
    AgentBackend,
    AgentTimeoutError,
    BackendRunError,
    InvocationResult,
)
from agent_taskflow.runner.backend.cli_backend import CliAgentBackend

__all__ = [
    "AgentBackend",
    "AgentTimeoutError",
    "BackendRunError",
    "CliAgentBackend",
    "InvocationResult",
]
