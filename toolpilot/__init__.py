"""toolpilot - tool orchestration core for a local-first coding agent."""

__version__ = "0.1.0"

from toolpilot.config import Config
from toolpilot.orchestrator import ToolExecutionOrchestrator

__all__ = ["Config", "ToolExecutionOrchestrator", "__version__"]
