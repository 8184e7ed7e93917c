from typing import Any, Dict, List, Optional, Union

from .errors import (
    CapacityError, ErrorKind, HTTPError, LLMWireError, ParseError,
    ProviderAPIError, RequestCancelled, TransportError, classify_status,
    format_error_message,
)
from .types import Part, Reply, ToolCall, Usage


def normalize_usage(
    provider: str,
    *,
    input_tokens: Optional[int],
    output_tokens: Optional[int],
    total_tokens: Optional[int] = None,
    reasoning_tokens: Optional[int] = None,
    raw: Optional[Dict[str, Any]] = None,
) -> Usage:
    """
    Normalize token usage information across providers.

    Args:
        provider (str): Name of the provider.
        input_tokens (int, optional): Number of prompt tokens.
        output_tokens (int, optional): Number of generated tokens.
        total_tokens (int, optional): Total token count, computed when missing.
        reasoning_tokens (int, optional): Tokens spent on reasoning.
        raw (dict, optional): Raw usage data from the provider response.

    Returns:
        Usage: Standardized usage dictionary.
    """
    if total_tokens is None and input_tokens is not None and output_tokens is not None:
        total_tokens = input_tokens + output_tokens

    usage: Usage = {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": total_tokens,
        "raw": {"provider": provider, **raw} if raw is not None else None,
    }
    if reasoning_tokens is not None:
        usage["reasoning_tokens"] = reasoning_tokens
    return usage


def append_part(parts: List[Part], part_type: str, text: str) -> None:
    """Append text to ``parts``, merging with the last part of the same type."""
    if not text:
        return
    if parts and parts[-1].get("type") == part_type and "signature" not in parts[-1]:
        parts[-1]["text"] += text
    else:
        parts.append({"type": part_type, "text": text})


def build_reply(
    *,
    content: str = "",
    thinking: str = "",
    parts: Optional[List[Part]] = None,
    tool_calls: Optional[List[ToolCall]] = None,
    thought_signature: Optional[str] = None,
    encrypted_reasoning: Optional[str] = None,
    grounding_metadata: Optional[Dict[str, Any]] = None,
    usage: Optional[Usage] = None,
    finish_reason: Optional[str] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> Reply:
    """Assemble a Reply, leaving out empty optional fields."""
    reply: Reply = {
        "content": content,
        "has_tool_calls": bool(tool_calls),
        "is_error": False,
    }
    optional = {
        "thinking_content": thinking,
        "content_parts": parts,
        "tool_calls": tool_calls,
        "thought_signature": thought_signature,
        "encrypted_reasoning": encrypted_reasoning,
        "grounding_metadata": grounding_metadata,
        "usage": usage,
        "finish_reason": finish_reason,
        "provider": provider,
        "model": model,
    }
    reply.update({k: v for k, v in optional.items() if v})
    return reply


def error_details(error: Union[LLMWireError, BaseException]) -> Dict[str, Any]:
    """Flat description of an error, as listed in ``Reply.all_errors``."""
    details: Dict[str, Any] = {"message": str(error)}
    if isinstance(error, ProviderAPIError):
        details.update(
            kind=error.kind.value,
            status_code=error.status_code,
            type=error.error_type,
            code=error.code,
        )
    elif isinstance(error, HTTPError):
        details.update(kind=classify_status(error.status_code).value, status_code=error.status_code)
    elif isinstance(error, LLMWireError):
        details["kind"] = error_kind_of(error).value
    else:
        details["kind"] = ErrorKind.UNKNOWN.value
    return details


def error_kind_of(error: BaseException) -> ErrorKind:
    if isinstance(error, ProviderAPIError):
        return error.kind
    if isinstance(error, HTTPError):
        return classify_status(error.status_code)
    if isinstance(error, TransportError):
        return ErrorKind.TRANSPORT
    if isinstance(error, ParseError):
        return ErrorKind.PARSE
    if isinstance(error, CapacityError):
        return ErrorKind.CAPACITY
    if isinstance(error, RequestCancelled):
        return ErrorKind.CANCELLED
    return ErrorKind.UNKNOWN


def error_reply(
    error: Union[LLMWireError, BaseException],
    *,
    partial: Optional[Reply] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> Reply:
    """
    Error-flavored Reply with a humanized message. Content already received
    (``partial``) is kept.
    """
    kind = error_kind_of(error)
    status_code = getattr(error, "status_code", None)
    error_type = getattr(error, "error_type", None)
    reply: Reply = dict(partial or {"content": "", "has_tool_calls": False})
    reply.setdefault("content", "")
    reply.update(
        is_error=True,
        error_kind=kind.value,
        error_message=format_error_message(
            str(error), status_code=status_code, error_type=error_type, kind=kind
        ),
    )
    if provider:
        reply["provider"] = provider
    if model:
        reply["model"] = model
    return reply
