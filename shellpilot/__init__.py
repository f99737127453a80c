"""Shellpilot - a terminal agent that plans and runs shell commands."""

__version__ = "0.1.0"

from shellpilot.config import Config
from shellpilot.runtime import AgentRuntime

__all__ = ["AgentRuntime", "Config", "__version__"]
