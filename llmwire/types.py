from enum import Enum
from typing import Literal, List, Dict, Any, Union, TypedDict, Optional

# =============================================================================
# Provider Formats
# =============================================================================

class ProviderFormat(str, Enum):
    """
    Wire protocol family spoken by a provider endpoint.

    Selected once per request from the provider's configuration and used to
    pick the adapter, response parser and stream parser.
    """
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


ApiMode = Literal["chat", "responses"]
Role = Literal["system", "user", "assistant"]


# =============================================================================
# Message Parts
# =============================================================================

class TextPart(TypedDict):
    """
    Plain text part.
    """
    type: Literal["text"]
    text: str


class ImagePart(TypedDict, total=False):
    """
    Image part.

    Either ``data`` (raw base64 with ``mime_type``) or ``url`` (a data URI or
    an http(s) URL) is set.
    """
    type: Literal["image"]
    mime_type: str
    data: str
    url: str


class ThinkingPart(TypedDict, total=False):
    """
    Reasoning text produced by the model, with an optional opaque signature.
    """
    type: Literal["thinking"]
    text: str
    signature: str


class ToolUsePart(TypedDict, total=False):
    """
    A tool invocation requested by the model.
    """
    type: Literal["tool_use"]
    id: str
    name: str
    arguments: Any
    thought_signature: str


class ToolResultPart(TypedDict, total=False):
    """
    The output of a tool invocation, sent back to the model.
    """
    type: Literal["tool_result"]
    tool_use_id: str
    content: Any  # str or JSON object (may carry "text"/"image" keys)
    name: str
    is_error: bool


Part = Union[TextPart, ImagePart, ThinkingPart, ToolUsePart, ToolResultPart]
MessageContent = Union[str, List[Part]]


class Message(TypedDict, total=False):
    """
    Canonical chat message.

    Roles:
    - "system": System prompt / instructions
    - "user": User message (also carries tool_result parts)
    - "assistant": Model response (also carries thinking and tool_use parts)
    """
    role: Role
    content: MessageContent
    id: str
    thought_signature: str  # Gemini opaque reasoning signature
    encrypted_reasoning: str  # OpenAI Responses encrypted reasoning blob


# =============================================================================
# Tool Calling Type Definitions
# =============================================================================

class Tool(TypedDict, total=False):
    """
    Provider-neutral tool declaration. ``parameters`` is a JSON schema that
    is forwarded untouched.
    """
    name: str
    description: str
    parameters: Dict[str, Any]


class ToolCall(TypedDict, total=False):
    """
    Tool call from an LLM response.
    """
    id: str
    name: str
    arguments: Any  # Parsed JSON arguments
    thought_signature: str


class ToolResult(TypedDict, total=False):
    """
    Tool result produced by a tool host.
    """
    tool_call_id: str
    content: Any
    name: str
    is_error: bool


# =============================================================================
# Replies
# =============================================================================

class Usage(TypedDict, total=False):
    input_tokens: Optional[int]
    output_tokens: Optional[int]
    total_tokens: Optional[int]
    reasoning_tokens: Optional[int]
    raw: Optional[Dict[str, Any]]


class Reply(TypedDict, total=False):
    """
    Canonical outcome of one model turn.

    When ``has_tool_calls`` is true the turn ended in tool invocations and
    ``content`` is informational only.
    """
    content: str
    thinking_content: str
    content_parts: List[Part]
    tool_calls: List[ToolCall]
    has_tool_calls: bool
    thought_signature: str
    encrypted_reasoning: str
    is_error: bool
    error_kind: str
    error_message: str
    grounding_metadata: Dict[str, Any]
    usage: Usage
    finish_reason: str
    provider: str
    model: str
    all_errors: List[Dict[str, Any]]


# =============================================================================
# Stream Events
# =============================================================================

class TextDelta(TypedDict):
    type: Literal["text_delta"]
    text: str


class ThinkingDelta(TypedDict):
    type: Literal["thinking_delta"]
    text: str


class ToolCallDelta(TypedDict, total=False):
    """
    Incremental tool-call data. ``id`` and ``name`` appear on the first delta
    of a call; ``arguments_delta`` is a raw JSON fragment.
    """
    type: Literal["tool_call_delta"]
    index: int
    id: str
    name: str
    arguments_delta: str


class ImageEvent(TypedDict):
    type: Literal["image"]
    mime_type: str
    data: str


class GroundingEvent(TypedDict):
    type: Literal["grounding"]
    metadata: Dict[str, Any]


class UsageEvent(TypedDict):
    type: Literal["usage"]
    usage: Usage


class ErrorEvent(TypedDict, total=False):
    """
    Error observed while streaming. ``terminal`` errors end the stream;
    non-terminal ones were recovered locally.
    """
    type: Literal["error"]
    error_kind: str
    message: str
    status_code: Optional[int]
    retryable: bool
    terminal: bool


class DoneEvent(TypedDict):
    type: Literal["done"]
    reply: Reply


StreamEvent = Union[
    TextDelta, ThinkingDelta, ToolCallDelta, ImageEvent,
    GroundingEvent, UsageEvent, ErrorEvent, DoneEvent,
]
