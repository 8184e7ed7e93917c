from llmwire.errors import (
    ErrorKind, HTTPError, ProviderAPIError, TransportError, classify_error_payload,
    classify_status, format_error_message, humanize_error,
)
from llmwire.replies import build_reply, error_details, error_kind_of, error_reply, normalize_usage


class TestClassification:
    def test_status_codes(self):
        assert classify_status(401) is ErrorKind.AUTH
        assert classify_status(403) is ErrorKind.AUTH
        assert classify_status(429) is ErrorKind.RATE_LIMIT
        assert classify_status(413) is ErrorKind.PAYLOAD_TOO_LARGE
        assert classify_status(503) is ErrorKind.SERVER_ERROR
        assert classify_status(400) is ErrorKind.INVALID_REQUEST
        assert classify_status(None) is ErrorKind.UNKNOWN

    def test_openai_envelope(self):
        error = classify_error_payload(
            {"error": {"type": "insufficient_quota", "code": "insufficient_quota", "message": "No credit"}},
            status_code=429,
            provider="openai",
        )
        assert error.kind is ErrorKind.RATE_LIMIT
        assert error.status_code == 429
        assert error.should_rotate
        assert error.retryable

    def test_anthropic_envelope(self):
        error = classify_error_payload(
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}
        )
        assert error.kind is ErrorKind.SERVER_ERROR
        assert error.error_type == "overloaded_error"
        assert not error.should_rotate

    def test_gemini_envelope_takes_status_from_code(self):
        error = classify_error_payload(
            {"error": {"code": 403, "status": "PERMISSION_DENIED", "message": "denied"}}
        )
        assert error.status_code == 403
        assert error.kind is ErrorKind.AUTH
        assert error.should_rotate

    def test_code_wins_over_type(self):
        error = classify_error_payload(
            {"error": {"type": "invalid_request_error", "code": "invalid_api_key", "message": "Incorrect API key"}},
            status_code=401,
        )
        assert error.kind is ErrorKind.AUTH
        assert error.should_rotate

    def test_no_error(self):
        assert classify_error_payload({"choices": []}) is None
        assert classify_error_payload("text") is None

    def test_non_retryable_kinds(self):
        assert not ProviderAPIError("x", kind=ErrorKind.INVALID_CONFIG).retryable
        assert not ProviderAPIError("x", kind=ErrorKind.PLATFORM_UNSUPPORTED).retryable
        assert TransportError("down").retryable


class TestHumanizedMessages:
    def test_status_first(self):
        title, _ = humanize_error(status_code=401, error_type="rate_limit_exceeded")
        assert title == "Authentication failed"

    def test_keyword_fallback(self):
        title, _ = humanize_error(message="You exceeded your current quota")
        assert title == "Quota exceeded"

    def test_unknown(self):
        assert humanize_error(message="weird") == ("Request failed", "weird")

    def test_format_appends_raw_message(self):
        text = format_error_message("Incorrect API key provided", status_code=401)
        assert text.startswith("Authentication failed:")
        assert "(Incorrect API key provided)" in text


class TestReplies:
    def test_normalize_usage_computes_total(self):
        usage = normalize_usage("openai", input_tokens=3, output_tokens=4, raw={"x": 1})
        assert usage["total_tokens"] == 7
        assert usage["raw"] == {"provider": "openai", "x": 1}

    def test_build_reply_omits_empty_fields(self):
        reply = build_reply(content="hi", provider="openai")
        assert reply == {"content": "hi", "has_tool_calls": False, "is_error": False, "provider": "openai"}

    def test_error_reply_keeps_partial_content(self):
        partial = build_reply(content="half an ans")
        reply = error_reply(HTTPError("HTTP 503", status_code=503), partial=partial, model="m")
        assert reply["is_error"] is True
        assert reply["content"] == "half an ans"
        assert reply["error_kind"] == "server_error"
        assert reply["error_message"].startswith("Service unavailable")
        assert reply["model"] == "m"

    def test_error_kind_of(self):
        assert error_kind_of(TransportError("x")) is ErrorKind.TRANSPORT
        assert error_kind_of(ValueError("x")) is ErrorKind.UNKNOWN

    def test_error_details(self):
        details = error_details(ProviderAPIError("bad", kind=ErrorKind.AUTH, status_code=401))
        assert details["kind"] == "auth"
        assert details["status_code"] == 401
