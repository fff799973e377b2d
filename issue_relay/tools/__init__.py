"""Tool-server launch and invocation."""
from .tool_session import MissingToolError, ToolCallOutcome, ToolServerPool, ToolServerSession

__all__ = [
    'MissingToolError',
    'ToolCallOutcome',
    'ToolServerPool',
    'ToolServerSession',
]
