from conductor.gateway.base import (
    ChatMessage,
    Gateway,
    GatewayError,
    GatewayResponse,
    ToolCall,
    force_tool,
)
from conductor.gateway.keyword import KeywordGateway
from conductor.gateway.openai_gateway import OpenAIGateway

__all__ = [
    "ChatMessage",
    "Gateway",
    "GatewayError",
    "GatewayResponse",
    "KeywordGateway",
    "OpenAIGateway",
    "ToolCall",
    "force_tool",
]
