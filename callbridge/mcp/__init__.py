"""Protocol proxy adding call tools on top of the Telnyx MCP server."""

from .client import ResultClient
from .proxy import PROXY_ID_BASE, PendingRequest, ProtocolProxy, create_proxy
from .tools import (
    CallAndConverseTool,
    CallAndSpeakTool,
    CheckCallResultTool,
    SyntheticToolRegistry,
    Tool,
)

__all__ = [
    "ProtocolProxy",
    "PendingRequest",
    "PROXY_ID_BASE",
    "create_proxy",
    "ResultClient",
    "Tool",
    "SyntheticToolRegistry",
    "CallAndSpeakTool",
    "CallAndConverseTool",
    "CheckCallResultTool",
]
