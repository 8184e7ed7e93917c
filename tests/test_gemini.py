import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from llmwire.config import GenerationConfig, ProviderConfig, ThinkingConfig
from llmwire.context import ConversationContext
from llmwire.providers.gemini import GeminiAdapter, GeminiStreamParser, clean_schema, safety_settings
from llmwire.types import ProviderFormat


def gemini_line(*parts, **extra):
    payload = {"candidates": [{"content": {"role": "model", "parts": list(parts)}}]}
    payload.update(extra)
    return f"data: {json.dumps(payload)}\n\n".encode()


class TestGeminiBuild:
    @pytest.mark.asyncio
    async def test_endpoint_and_key_param(self, gemini_config, context):
        request = await GeminiAdapter(gemini_config).build(
            context, GenerationConfig(), api_key="AIza-test", model="gemini-2.5-flash"
        )
        assert request.url == (
            "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash:streamGenerateContent"
        )
        assert request.params == {"key": "AIza-test", "alt": "sse"}
        assert "x-goog-api-key" not in request.headers

    @pytest.mark.asyncio
    async def test_key_in_header_non_streaming(self, context):
        config = ProviderConfig(id="gemini", format=ProviderFormat.GEMINI, key_in_header=True)
        request = await GeminiAdapter(config).build(
            context, GenerationConfig(stream=False), api_key="AIza-test", model="gemini-2.5-flash"
        )
        assert request.url.endswith(":generateContent")
        assert request.params == {}
        assert request.headers["x-goog-api-key"] == "AIza-test"

    @pytest.mark.asyncio
    async def test_generation_defaults_always_sent(self, gemini_config, context):
        body = await GeminiAdapter(gemini_config).build_body(
            context, GenerationConfig(temperature=0.3), model="gemini-2.5-flash"
        )
        assert body["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]
        assert body["generationConfig"] == {
            "temperature": 0.3, "topK": 40, "topP": 0.95, "maxOutputTokens": 8192,
        }
        assert len(body["safetySettings"]) == 5
        assert "systemInstruction" not in body

    @pytest.mark.asyncio
    async def test_system_instruction_and_roles(self, gemini_config):
        context = ConversationContext(system_prompt="Be brief.", messages=[
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "bye"},
        ])
        body = await GeminiAdapter(gemini_config).build_body(context, GenerationConfig(), model="m")
        assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
        assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]

    @pytest.mark.asyncio
    async def test_thinking_budget_and_level(self, gemini_config, context):
        adapter = GeminiAdapter(gemini_config)
        generation = GenerationConfig(thinking=ThinkingConfig(enabled=True, strength="low"))
        body = await adapter.build_body(context, generation, model="gemini-2.5-pro")
        assert body["generationConfig"]["thinkingConfig"] == {"thinkingBudget": 4096, "includeThoughts": True}

        body = await adapter.build_body(context, generation, model="gemini-3-pro-preview")
        assert body["generationConfig"]["thinkingConfig"] == {"thinkingLevel": "LOW", "includeThoughts": True}

    @pytest.mark.asyncio
    async def test_builtin_tools_and_declarations(self, gemini_config, context):
        context.tools = [{
            "name": "search",
            "description": "Search",
            "parameters": {"type": "object", "additionalProperties": False, "$schema": "x",
                           "properties": {"q": {"type": "string"}}},
        }]
        body = await GeminiAdapter(gemini_config).build_body(
            context, GenerationConfig(web_search=True, code_execution=True), model="m"
        )
        assert body["tools"][:3] == [{"codeExecution": {}}, {"googleSearch": {}}, {"urlContext": {}}]
        declaration = body["tools"][3]["functionDeclarations"][0]
        assert declaration["parameters"] == {"type": "object", "properties": {"q": {"type": "string"}}}

    @pytest.mark.asyncio
    async def test_function_call_round_trip(self, gemini_config):
        context = ConversationContext(messages=[
            {"role": "user", "content": "weather?"},
            {"role": "assistant", "content": [
                {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "arguments": {"city": "Paris"},
                 "thought_signature": "sig-1"},
            ]},
            {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "toolu_1", "content": '{"temp": 21}'},
            ]},
        ])
        body = await GeminiAdapter(gemini_config).build_body(context, GenerationConfig(), model="m")
        call_part = body["contents"][1]["parts"][0]
        response_part = body["contents"][2]["parts"][0]

        assert call_part["functionCall"]["name"] == "get_weather"
        assert call_part["thoughtSignature"] == "sig-1"
        # Locally minted Gemini ids are not sent
        assert "id" not in call_part["functionCall"]
        assert response_part["functionResponse"] == {"name": "get_weather", "response": {"result": {"temp": 21}}}

    @pytest.mark.asyncio
    async def test_native_gemini_ids_are_kept(self, gemini_config):
        context = ConversationContext(messages=[
            {"role": "user", "content": "go"},
            {"role": "assistant", "content": [{"type": "tool_use", "id": "fc-123", "name": "f", "arguments": {}}]},
            {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "fc-123", "content": "ok",
                                          "is_error": True}]},
        ])
        # Ids Gemini itself returned are registered when the reply is parsed
        context.id_map.register("fc-123", ProviderFormat.GEMINI)
        body = await GeminiAdapter(gemini_config).build_body(context, GenerationConfig(), model="m")
        assert body["contents"][1]["parts"][0]["functionCall"]["id"] == "fc-123"
        response = body["contents"][2]["parts"][0]["functionResponse"]
        assert response["id"] == "fc-123"
        assert response["response"] == {"error": "ok"}

    @pytest.mark.asyncio
    async def test_newest_message_signature_applied_to_model_parts(self, gemini_config):
        context = ConversationContext(messages=[
            {"role": "user", "content": "a"},
            {"role": "assistant", "content": "b", "thought_signature": "old"},
            {"role": "user", "content": "c"},
            {"role": "assistant", "content": "d", "thought_signature": "new"},
            {"role": "user", "content": "e"},
        ])
        body = await GeminiAdapter(gemini_config).build_body(context, GenerationConfig(), model="m")
        model_parts = [p for c in body["contents"] if c["role"] == "model" for p in c["parts"]]
        assert [p["thoughtSignature"] for p in model_parts] == ["new", "new"]

    @pytest.mark.asyncio
    async def test_tool_result_image(self, gemini_config):
        context = ConversationContext(messages=[
            {"role": "user", "content": "plot"},
            {"role": "assistant", "content": [{"type": "tool_use", "id": "call_1", "name": "plot", "arguments": {}}]},
            {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "call_1",
                                          "content": {"text": "chart", "image": "data:image/png;base64,aGVsbG8="}}]},
        ])
        body = await GeminiAdapter(gemini_config).build_body(context, GenerationConfig(), model="m")
        response = body["contents"][2]["parts"][0]["functionResponse"]
        assert response["response"] == {"result": "chart"}
        assert response["parts"] == [{"inlineData": {"mimeType": "image/png", "data": "aGVsbG8="}}]

    @pytest.mark.asyncio
    async def test_remote_image_is_fetched(self, gemini_config):
        def handler(request):
            return httpx.Response(200, content=b"hello", headers={"content-type": "image/png"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        context = ConversationContext(messages=[{"role": "user", "content": [
            {"type": "image", "url": "https://example.com/cat.png"},
        ]}])
        body = await GeminiAdapter(gemini_config, http_client=client).build_body(context, GenerationConfig(), model="m")
        await client.aclose()
        assert body["contents"][0]["parts"][0] == {"inlineData": {"mimeType": "image/png", "data": "aGVsbG8="}}

    @pytest.mark.asyncio
    async def test_remote_image_failure(self, gemini_config):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
        context = ConversationContext(messages=[{"role": "user", "content": [
            {"type": "image", "url": "https://example.com/missing.png"},
        ]}])
        with pytest.raises(ValueError):
            await GeminiAdapter(gemini_config, http_client=client).build_body(context, GenerationConfig(), model="m")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_empty_contents_rejected(self, gemini_config):
        context = ConversationContext(messages=[{"role": "user", "content": ""}])
        with pytest.raises(ValueError):
            await GeminiAdapter(gemini_config).build_body(context, GenerationConfig(), model="m")


class TestGeminiHelpers:
    def test_vertex_safety_settings(self):
        settings = safety_settings("https://us-central1-aiplatform.googleapis.com")
        assert len(settings) == 10
        assert {s["threshold"] for s in settings} == {"OFF"}
        assert {s["threshold"] for s in safety_settings("https://generativelanguage.googleapis.com")} == {"BLOCK_NONE"}

    def test_clean_schema_is_recursive(self):
        schema = {"type": "object", "properties": {"a": {"type": "object", "additionalProperties": True}}}
        assert clean_schema(schema) == {"type": "object", "properties": {"a": {"type": "object"}}}

    def test_base_url_strips_foreign_paths(self):
        config = ProviderConfig(id="g", format=ProviderFormat.GEMINI, endpoint="https://proxy.example/v1/chat/completions")
        assert GeminiAdapter(config).base_url == "https://proxy.example"


class TestGeminiParseResponse:
    def test_parts(self, gemini_config):
        context = ConversationContext()
        reply = GeminiAdapter(gemini_config).parse_response({
            "modelVersion": "gemini-2.5-flash",
            "candidates": [{
                "content": {"parts": [
                    {"text": "Considering", "thought": True},
                    {"text": "Answer"},
                    {"functionCall": {"name": "f", "args": {"x": 1}}, "thoughtSignature": "sig"},
                ]},
                "finishReason": "STOP",
                "groundingMetadata": {"webSearchQueries": ["q"]},
            }],
            "usageMetadata": {"promptTokenCount": 2, "candidatesTokenCount": 3, "totalTokenCount": 5,
                              "thoughtsTokenCount": 1},
        }, context)
        assert reply["content"] == "Answer"
        assert reply["thinking_content"] == "Considering"
        assert reply["thought_signature"] == "sig"
        call = reply["tool_calls"][0]
        assert call["id"].startswith("gemini_")
        assert call["thought_signature"] == "sig"
        assert call["id"] in context.id_map
        assert reply["grounding_metadata"] == {"webSearchQueries": ["q"]}
        assert reply["usage"]["reasoning_tokens"] == 1
        assert reply["model"] == "gemini-2.5-flash"

    def test_blocked_prompt(self, gemini_config):
        reply = GeminiAdapter(gemini_config).parse_response({"promptFeedback": {"blockReason": "SAFETY"}})
        assert reply["is_error"] is True
        assert reply["error_kind"] == "content_filtered"
        assert reply["error_message"].startswith("Blocked by safety filter")

    def test_code_execution_parts(self, gemini_config):
        reply = GeminiAdapter(gemini_config).parse_response({"candidates": [{"content": {"parts": [
            {"executableCode": {"language": "PYTHON", "code": "print(1)"}},
            {"codeExecutionResult": {"output": "1"}},
        ]}}]})
        assert "```python\nprint(1)\n```" in reply["content"]

    def test_image_output(self, gemini_config):
        reply = GeminiAdapter(gemini_config).parse_response({"candidates": [{"content": {"parts": [
            {"inlineData": {"mimeType": "image/png", "data": "aGVsbG8="}},
        ]}}]})
        assert reply["content_parts"] == [{"type": "image", "mime_type": "image/png", "data": "aGVsbG8="}]

    @pytest.mark.asyncio
    async def test_text_round_trip(self, gemini_config):
        context = ConversationContext(messages=[
            {"role": "user", "content": [{"type": "text", "text": "Say hello"}]},
            {"role": "assistant", "content": [{"type": "text", "text": "Hello, world!"}]},
        ])
        adapter = GeminiAdapter(gemini_config)
        request = await adapter.build(context, api_key="AIza-test", model="gemini-2.5-flash")
        turn = request.body["contents"][-1]
        reply = adapter.parse_response({"candidates": [{"content": turn}]}, context)
        assert reply["content"] == "Hello, world!"

    def test_no_candidates(self, gemini_config):
        assert GeminiAdapter(gemini_config).parse_response({"candidates": []}) is None


class TestGeminiStreamParser:
    def test_sse_stream(self):
        parser = GeminiStreamParser()
        events = parser.feed(gemini_line({"text": "plan", "thought": True, "thoughtSignature": "sig"}))
        events += parser.feed(gemini_line({"text": "Hel"}))
        events += parser.feed(gemini_line(
            {"text": "lo"},
            usageMetadata={"promptTokenCount": 1, "candidatesTokenCount": 2},
        ))
        events += parser.close()

        assert [e["type"] for e in events] == ["thinking_delta", "text_delta", "text_delta", "usage", "done"]
        reply = events[-1]["reply"]
        assert reply["content"] == "Hello"
        assert reply["thought_signature"] == "sig"
        assert reply["content_parts"][0] == {"type": "thinking", "text": "plan", "signature": "sig"}

    def test_bare_json_array_stream(self):
        body = (
            "[\n"
            + json.dumps({"candidates": [{"content": {"parts": [{"text": "A"}]}}]}) + "\n"
            + ",\n"
            + json.dumps({"candidates": [{"content": {"parts": [{"text": "B"}]}, "finishReason": "STOP"}]}) + "\n"
            + "]\n"
        )
        parser = GeminiStreamParser()
        events = parser.feed(body.encode()) + parser.close()
        assert events[-1]["reply"]["content"] == "AB"
        assert events[-1]["reply"]["finish_reason"] == "STOP"

    def test_function_call_event(self):
        parser = GeminiStreamParser()
        events = parser.feed(gemini_line({"functionCall": {"name": "f", "args": {"a": 1}}}))
        events += parser.close()
        assert events[0]["type"] == "tool_call_delta"
        assert json.loads(events[0]["arguments_delta"]) == {"a": 1}
        assert events[-1]["reply"]["tool_calls"][0]["name"] == "f"

    def test_inline_image_event(self):
        parser = GeminiStreamParser()
        events = parser.feed(gemini_line({"inlineData": {"mimeType": "image/png", "data": "aGVsbG8="}}))
        assert events == [{"type": "image", "mime_type": "image/png", "data": "aGVsbG8="}]

    def test_blocked_prompt_in_stream(self):
        parser = GeminiStreamParser()
        events = parser.feed(f"data: {json.dumps({'promptFeedback': {'blockReason': 'SAFETY'}})}\n\n".encode())
        assert [e["type"] for e in events] == ["error", "done"]
        assert events[0]["error_kind"] == "content_filtered"


class TestGeminiListModels:
    @pytest.mark.asyncio
    @patch("llmwire.providers.gemini.genai")
    async def test_list_models(self, mock_genai, gemini_config):
        flash = MagicMock(supported_actions=["generateContent"])
        flash.name = "models/gemini-2.5-flash"
        embed = MagicMock(supported_actions=["embedContent"])
        embed.name = "models/text-embedding-004"
        mock_genai.Client.return_value.models.list.return_value = [flash, embed]

        models = await GeminiAdapter(gemini_config).list_models("AIza-test")

        assert models == ["gemini-2.5-flash"]
        mock_genai.Client.assert_called_once_with(api_key="AIza-test")
