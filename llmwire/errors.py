"""
Error taxonomy for llmwire.

TransportError propagates to the caller. HTTPError and ProviderAPIError are
turned into error replies. ParseError and CapacityError are recovered at the
parser boundary and only logged or reported as non-terminal events.
"""
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class ErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    INVALID_REQUEST = "invalid_request"
    INVALID_CONFIG = "invalid_config"
    PLATFORM_UNSUPPORTED = "platform_unsupported"
    CONTENT_FILTERED = "content_filtered"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    TRANSPORT = "transport"
    PARSE = "parse"
    CAPACITY = "capacity"
    CANCELLED = "cancelled"
    EMPTY_RESPONSE = "empty_response"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({
    ErrorKind.AUTH,
    ErrorKind.RATE_LIMIT,
    ErrorKind.TIMEOUT,
    ErrorKind.SERVER_ERROR,
    ErrorKind.TRANSPORT,
})

# Statuses that trigger a credential rotation
ROTATION_STATUS_CODES = frozenset({401, 403, 429})


class LLMWireError(Exception):
    """Base exception for all llmwire errors."""

    def __init__(self, message: str, *, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.hint = hint


class TransportError(LLMWireError):
    """Network, DNS or timeout failure before a response was received."""

    retryable = True


class HTTPError(LLMWireError):
    """Non-2xx response. ``body`` is the parsed JSON body when it parsed."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        body: Any = None,
        hint: Optional[str] = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.status_code = status_code
        self.body = body


class ProviderAPIError(LLMWireError):
    """
    Structured error reported by the provider, either in an error body or
    inside a stream event.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        code: Any = None,
        error_type: Optional[str] = None,
        status_code: Optional[int] = None,
        provider: Optional[str] = None,
        retry_after_s: Optional[float] = None,
        hint: Optional[str] = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.kind = kind
        self.code = code
        self.error_type = error_type
        self.status_code = status_code
        self.provider = provider
        self.retry_after_s = retry_after_s

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def should_rotate(self) -> bool:
        if self.status_code in ROTATION_STATUS_CODES:
            return True
        return self.kind in (ErrorKind.AUTH, ErrorKind.RATE_LIMIT)


class ParseError(LLMWireError):
    """Malformed stream line or unparseable tool arguments."""


class CapacityError(LLMWireError):
    """A buffer or tag-size cap was exceeded."""


class RequestCancelled(LLMWireError):
    """The logical send was cancelled through its token."""


# =============================================================================
# Classification
# =============================================================================

_TYPE_KINDS: Dict[str, ErrorKind] = {
    "authentication_error": ErrorKind.AUTH,
    "invalid_api_key": ErrorKind.AUTH,
    "permission_error": ErrorKind.AUTH,
    "permission_denied": ErrorKind.AUTH,
    "unauthenticated": ErrorKind.AUTH,
    "rate_limit_error": ErrorKind.RATE_LIMIT,
    "rate_limit_exceeded": ErrorKind.RATE_LIMIT,
    "insufficient_quota": ErrorKind.RATE_LIMIT,
    "resource_exhausted": ErrorKind.RATE_LIMIT,
    "overloaded_error": ErrorKind.SERVER_ERROR,
    "overloaded": ErrorKind.SERVER_ERROR,
    "api_error": ErrorKind.SERVER_ERROR,
    "server_error": ErrorKind.SERVER_ERROR,
    "internal": ErrorKind.SERVER_ERROR,
    "unavailable": ErrorKind.SERVER_ERROR,
    "deadline_exceeded": ErrorKind.TIMEOUT,
    "timeout": ErrorKind.TIMEOUT,
    "timeout_error": ErrorKind.TIMEOUT,
    "invalid_request_error": ErrorKind.INVALID_REQUEST,
    "invalid_argument": ErrorKind.INVALID_REQUEST,
    "context_length_exceeded": ErrorKind.INVALID_REQUEST,
    "model_not_found": ErrorKind.INVALID_CONFIG,
    "not_found_error": ErrorKind.INVALID_CONFIG,
    "not_found": ErrorKind.INVALID_CONFIG,
    "failed_precondition": ErrorKind.PLATFORM_UNSUPPORTED,
    "request_too_large": ErrorKind.PAYLOAD_TOO_LARGE,
}


def classify_status(status_code: Optional[int]) -> ErrorKind:
    """Map an HTTP status code to an error kind."""
    if status_code is None:
        return ErrorKind.UNKNOWN
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    if status_code in (408, 504):
        return ErrorKind.TIMEOUT
    if status_code == 413:
        return ErrorKind.PAYLOAD_TOO_LARGE
    if status_code == 404:
        return ErrorKind.INVALID_CONFIG
    if status_code >= 500:
        return ErrorKind.SERVER_ERROR
    if status_code >= 400:
        return ErrorKind.INVALID_REQUEST
    return ErrorKind.UNKNOWN


def _error_envelope(payload: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        return error
    if isinstance(error, str):
        return {"message": error}
    if payload.get("type") == "error" and isinstance(payload.get("error"), dict):
        return payload["error"]
    return None


def classify_error_payload(
    payload: Any,
    *,
    status_code: Optional[int] = None,
    provider: Optional[str] = None,
) -> Optional[ProviderAPIError]:
    """
    Build a ProviderAPIError from a provider error envelope.

    Understands ``{"error": {"type", "code", "message"}}`` (OpenAI/Anthropic)
    and ``{"error": {"code", "status", "message"}}`` (Gemini).

    Returns:
        Optional[ProviderAPIError]: None when the payload carries no error.
    """
    error = _error_envelope(payload)
    if error is None:
        return None

    message = str(error.get("message") or "Unknown error")
    error_type = error.get("type") or error.get("status")
    code = error.get("code")
    if status_code is None and isinstance(code, int) and 400 <= code < 600:
        status_code = code

    kind = ErrorKind.UNKNOWN
    for candidate in (code, error_type):
        if isinstance(candidate, str) and candidate.lower() in _TYPE_KINDS:
            kind = _TYPE_KINDS[candidate.lower()]
            break
    if kind is ErrorKind.UNKNOWN:
        kind = classify_status(status_code)

    return ProviderAPIError(
        message,
        kind=kind,
        code=code,
        error_type=error_type if isinstance(error_type, str) else None,
        status_code=status_code,
        provider=provider,
    )


# =============================================================================
# Humanized messages
# =============================================================================

_HUMANIZED: Dict[Any, Tuple[str, str]] = {
    400: ("Bad request", "Check that the message content is valid for this model."),
    401: ("Authentication failed", "Check that the API key is correct."),
    403: ("Access denied", "Your account may not have access to this model."),
    404: ("Not found", "Check the endpoint address or model name."),
    413: ("Request too large", "Remove or shrink attached images."),
    429: ("Too many requests", "Wait a moment or check your quota."),
    500: ("Internal server error", "The provider had a problem. Try again later."),
    502: ("Bad gateway", "The service is temporarily unavailable."),
    503: ("Service unavailable", "The server is overloaded or under maintenance."),
    504: ("Gateway timeout", "The request timed out. Try again."),
    "invalid_api_key": ("Invalid API key", "Check that the key is correct."),
    "insufficient_quota": ("Quota exceeded", "Check your balance or upgrade your plan."),
    "rate_limit_exceeded": ("Rate limited", "Requests are too frequent, wait a moment."),
    "context_length_exceeded": ("Message too long", "Shorten the conversation or the message."),
    "model_not_found": ("Model not found", "Check the model name."),
    "overloaded": ("Service busy", "The provider is under heavy load, try again later."),
    "overloaded_error": ("Service busy", "The provider is under heavy load, try again later."),
    "authentication_error": ("Authentication error", "Check the API key."),
    "permission_denied": ("Permission denied", "You are not allowed to use this model."),
    "SAFETY": ("Blocked by safety filter", "The message triggered a safety filter."),
    "RECITATION": ("Recitation blocked", "The reply may contain copyrighted material."),
    "OTHER": ("Generation stopped", "The model stopped generating."),
    ErrorKind.TRANSPORT: ("Network error", "Check your network connection."),
    ErrorKind.TIMEOUT: ("Request timed out", "The service responded too slowly, try again."),
    ErrorKind.CANCELLED: ("Request cancelled", "The request was cancelled."),
    ErrorKind.EMPTY_RESPONSE: ("Empty response", "The model returned no content."),
    ErrorKind.PARSE: ("Malformed response", "The provider sent data that could not be read."),
}

_MESSAGE_HINTS = (
    (("api key", "apikey", "unauthorized"), "invalid_api_key"),
    (("quota", "billing"), "insufficient_quota"),
    (("rate limit", "too many requests"), "rate_limit_exceeded"),
    (("context_length", "context length", "max_tokens", "token limit",
      "too long", "too many tokens"), "context_length_exceeded"),
    (("not found", "does not exist"), "model_not_found"),
    (("overloaded", "capacity"), "overloaded"),
)


def humanize_error(
    *,
    status_code: Optional[int] = None,
    error_type: Optional[str] = None,
    kind: Optional[ErrorKind] = None,
    message: str = "",
) -> Tuple[str, str]:
    """
    Produce a short (title, hint) pair for showing an error to a user.

    Lookup order: HTTP status, provider error type, error kind, then keywords
    found in the message.
    """
    if status_code in _HUMANIZED:
        return _HUMANIZED[status_code]
    if error_type and error_type in _HUMANIZED:
        return _HUMANIZED[error_type]
    if kind is not None and kind in _HUMANIZED:
        return _HUMANIZED[kind]

    lowered = (message or "").lower()
    for needles, key in _MESSAGE_HINTS:
        if any(needle in lowered for needle in needles):
            return _HUMANIZED[key]

    return ("Request failed", message or "An unknown error occurred.")


def format_error_message(
    message: str,
    *,
    status_code: Optional[int] = None,
    error_type: Optional[str] = None,
    kind: Optional[ErrorKind] = None,
) -> str:
    """Humanized one-line message with the raw provider message appended."""
    title, hint = humanize_error(
        status_code=status_code, error_type=error_type, kind=kind, message=message
    )
    text = f"{title}: {hint}"
    if message and message != hint:
        text += f" ({message})"
    return text
