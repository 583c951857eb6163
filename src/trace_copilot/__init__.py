"""Trace Copilot package."""

from .config import CopilotConfig, ReasoningConfig, SamplingConfig, StreamingConfig

__all__ = ["CopilotConfig", "ReasoningConfig", "SamplingConfig", "StreamingConfig"]
