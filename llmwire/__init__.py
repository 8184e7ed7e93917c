from .client import CallableToolHost, ToolHost, UnifiedChatClient
from .config import GenerationConfig, ProviderConfig, Settings, ThinkingConfig
from .context import ConversationContext
from .credentials import CredentialStore, InMemoryCredentialStore
from .errors import (
    ErrorKind, HTTPError, LLMWireError, ParseError, ProviderAPIError,
    RequestCancelled, TransportError,
)
from .id_map import CrossProviderIdMap
from .lifecycle import LifecycleState, RequestLifecycle, RetryReason
from .logging_config import init_logging
from .orchestrator import MultiStreamOrchestrator, RequestTemplate
from .providers import AnthropicAdapter, GeminiAdapter, OpenAIAdapter, create_adapter
from .rich_llm_printer import RichPrinter, RichStreamPrinter
from .transport import CancelToken, HttpTransport
from .types import Message, ProviderFormat, Reply, StreamEvent, Tool, ToolCall, ToolResult
from .xml_tools import XMLToolAccumulator

__version__ = "0.1.0"

__all__ = [
    "UnifiedChatClient",
    "ToolHost",
    "CallableToolHost",
    "GenerationConfig",
    "ProviderConfig",
    "Settings",
    "ThinkingConfig",
    "ConversationContext",
    "CredentialStore",
    "InMemoryCredentialStore",
    "ErrorKind",
    "HTTPError",
    "LLMWireError",
    "ParseError",
    "ProviderAPIError",
    "RequestCancelled",
    "TransportError",
    "CrossProviderIdMap",
    "LifecycleState",
    "RequestLifecycle",
    "RetryReason",
    "init_logging",
    "MultiStreamOrchestrator",
    "RequestTemplate",
    "AnthropicAdapter",
    "GeminiAdapter",
    "OpenAIAdapter",
    "create_adapter",
    "RichPrinter",
    "RichStreamPrinter",
    "CancelToken",
    "HttpTransport",
    "Message",
    "ProviderFormat",
    "Reply",
    "StreamEvent",
    "Tool",
    "ToolCall",
    "ToolResult",
    "XMLToolAccumulator",
]
