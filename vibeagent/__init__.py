"""
Vibe agent — identity vault, permission gate and data transport for embedded apps.
"""

from vibeagent.agent import AgentContext, AgentFacade
from vibeagent.prompts import CallbackPrompts, PromptChannel

__version__ = "0.1.0"

__all__ = ["AgentContext", "AgentFacade", "CallbackPrompts", "PromptChannel"]
