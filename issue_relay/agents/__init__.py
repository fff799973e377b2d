"""Agent runner, stage instructions and context hand-off"""

from .agent_runner import AgentRunner
from .context_extractor import EXTRACTION_PLACEHOLDER, extract

__all__ = [
    'AgentRunner',
    'EXTRACTION_PLACEHOLDER',
    'extract',
]
