from unittest.mock import mock_open, patch

import httpx
import pytest

from llmwire.client import UnifiedChatClient
from llmwire.utils import (
    base64_decoded_size, encode_image_url, image_inline_data, parse_data_uri,
    tool_content_image, tool_content_text,
)


class TestUtils:

    def test_create_text_content(self):
        content = UnifiedChatClient.create_text_content("Hello")
        assert content == {"type": "text", "text": "Hello"}

    def test_create_image_content_from_url(self):
        content = UnifiedChatClient.create_image_content("https://example.com/img.jpg")
        assert content == {"type": "image", "url": "https://example.com/img.jpg"}

    def test_create_image_content_from_base64(self):
        content = UnifiedChatClient.create_image_content("SGVsbG8=", mime_type="image/png")
        assert content == {"type": "image", "mime_type": "image/png", "data": "SGVsbG8="}

    def test_create_image_content_from_data_uri(self):
        content = UnifiedChatClient.create_image_content("data:image/webp;base64,SGVsbG8=")
        assert content == {"type": "image", "mime_type": "image/webp", "data": "SGVsbG8="}

    def test_create_image_content_unknown_source(self):
        with pytest.raises(ValueError, match="Cannot determine image source"):
            UnifiedChatClient.create_image_content("not-a-file.png")

    def test_create_message_text(self):
        msg = UnifiedChatClient.create_message("user", "Hello world")
        assert msg == {"role": "user", "content": "Hello world"}

    def test_create_message_multimodal(self):
        content = [
            "Look at this",
            UnifiedChatClient.create_image_content("https://example.com/cat.jpg")
        ]
        msg = UnifiedChatClient.create_message("user", content)
        assert msg["role"] == "user"
        assert len(msg["content"]) == 2
        assert msg["content"][0] == {"type": "text", "text": "Look at this"}

    @patch("pathlib.Path.exists")
    @patch("builtins.open", new_callable=mock_open, read_data=b"image data")
    def test_encode_image_file(self, mock_file, mock_exists):
        mock_exists.return_value = True

        b64_data, mime_type = UnifiedChatClient.encode_image_file("test.jpg")

        assert mime_type == "image/jpeg"
        # "image data" in base64 is "aW1hZ2UgZGF0YQ=="
        assert b64_data == "aW1hZ2UgZGF0YQ=="

    def test_encode_image_file_missing(self):
        with pytest.raises(FileNotFoundError):
            UnifiedChatClient.encode_image_file("/nonexistent/test.png")

    @pytest.mark.asyncio
    async def test_encode_image_url(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, content=b"image data", headers={"content-type": "image/gif; q=1"})
        ))
        b64_data, mime_type = await encode_image_url("https://example.com/a.gif", client=client)
        await client.aclose()
        assert (b64_data, mime_type) == ("aW1hZ2UgZGF0YQ==", "image/gif")

    def test_create_tool(self):
        tool = UnifiedChatClient.create_tool(
            name="get_weather",
            description="Get weather",
            parameters={"location": {"type": "string"}},
            required=["location"]
        )
        assert tool["name"] == "get_weather"
        assert tool["parameters"]["type"] == "object"
        assert tool["parameters"]["required"] == ["location"]

    def test_create_tool_result(self):
        result = UnifiedChatClient.create_tool_result("call_123", "result content")
        assert result == {"tool_call_id": "call_123", "content": "result content"}

        failed = UnifiedChatClient.create_tool_result("call_123", "boom", name="f", is_error=True)
        assert failed["is_error"] is True
        assert failed["name"] == "f"

    def test_create_assistant_message_with_tool_calls(self):
        thinking = {"type": "thinking", "text": "plan", "signature": "sig"}
        msg = UnifiedChatClient.create_assistant_message_with_tool_calls(
            "Checking",
            [{"id": "call_1", "name": "f", "arguments": {"a": 1}, "thought_signature": "ts"}],
            thinking=thinking,
            thought_signature="ts",
        )
        assert msg["role"] == "assistant"
        assert [p["type"] for p in msg["content"]] == ["thinking", "text", "tool_use"]
        assert msg["content"][2]["thought_signature"] == "ts"
        assert msg["thought_signature"] == "ts"
        assert "encrypted_reasoning" not in msg

    def test_create_tool_result_message(self):
        msg = UnifiedChatClient.create_tool_result_message([
            {"tool_call_id": "call_1", "content": "ok", "name": "f"},
            {"tool_call_id": "call_2", "content": "bad", "is_error": True},
        ])
        assert msg["role"] == "user"
        assert msg["content"][0] == {"type": "tool_result", "tool_use_id": "call_1", "content": "ok", "name": "f"}
        assert msg["content"][1]["is_error"] is True


class TestImageData:
    def test_parse_data_uri(self):
        assert parse_data_uri("data:image/png;base64,AAAA") == ("AAAA", "image/png")
        with pytest.raises(ValueError):
            parse_data_uri("https://example.com/a.png")

    def test_inline_data(self):
        assert image_inline_data({"type": "image", "data": "AAAA"}) == ("AAAA", "image/jpeg")
        assert image_inline_data({"type": "image", "url": "data:image/png;base64,BBBB"}) == ("BBBB", "image/png")
        assert image_inline_data({"type": "image", "url": "https://example.com/a.png"}) is None

    def test_decoded_size(self):
        assert base64_decoded_size("aW1hZ2UgZGF0YQ==") == len(b"image data")


class TestToolContent:
    def test_text(self):
        assert tool_content_text(None) == ""
        assert tool_content_text("plain") == "plain"
        assert tool_content_text({"text": "chart", "image": "data:image/png;base64,AAAA"}) == "chart"
        assert tool_content_text({"temp": 21}) == '{"temp": 21}'

    def test_image(self):
        assert tool_content_image({"text": "chart", "image": "data:image/png;base64,AAAA"}) == "data:image/png;base64,AAAA"
        assert tool_content_image("plain") is None
