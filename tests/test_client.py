import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from llmwire.client import CallableToolHost, UnifiedChatClient
from llmwire.config import GenerationConfig, ProviderConfig, Settings
from llmwire.transport import HttpTransport
from llmwire.types import ProviderFormat


def chat_response(content=None, tool_calls=None):
    message = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "model": "gpt-4o",
        "choices": [{"index": 0, "message": message, "finish_reason": "tool_calls" if tool_calls else "stop"}],
    }


def function_call(call_id, name, arguments):
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": json.dumps(arguments)}}


def make_client(handler, **kwargs) -> UnifiedChatClient:
    settings = Settings(
        providers={"openai": ProviderConfig(id="openai", format=ProviderFormat.OPENAI)},
        api_keys={"openai": ["sk-test"]},
    )
    transport = HttpTransport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return UnifiedChatClient(settings, transport=transport, **kwargs)


class TestUnifiedChatClient:

    def test_init_with_env(self, mock_env):
        """Client picks up every provider configured in the environment."""
        client = UnifiedChatClient.from_env(env_file=None)
        assert set(client.providers) == {"openai", "anthropic", "gemini", "deepseek"}
        assert client.providers["deepseek"].format is ProviderFormat.OPENAI
        assert client.credentials.current_key("anthropic") == "sk-test-anthropic"

    def test_adapter_is_cached(self, mock_env):
        client = UnifiedChatClient.from_env(env_file=None)
        adapter = client.adapter("gemini")
        assert adapter is client.adapter("gemini")
        assert adapter.format is ProviderFormat.GEMINI

    def test_add_provider(self):
        client = UnifiedChatClient()
        client.add_provider(
            ProviderConfig(id="local", format=ProviderFormat.OPENAI, endpoint="http://localhost:8000/v1/chat/completions"),
            ["sk-local"],
        )
        assert client.adapter("local").config.endpoint == "http://localhost:8000/v1/chat/completions"
        assert client.credentials.current_key("local") == "sk-local"

    def test_new_context_uses_xml_setting(self):
        client = UnifiedChatClient(Settings(xml_tool_calling=True))
        context = client.new_context([{"role": "user", "content": "hi"}], system_prompt="Be brief.")
        assert context.xml_tool_calling is True
        assert context.system_prompt == "Be brief."

    @pytest.mark.asyncio
    async def test_chat(self, context):
        client = make_client(lambda request: httpx.Response(200, json=chat_response("Hello")))
        reply = await client.chat("openai", "gpt-4o", context, GenerationConfig(temperature=0.2))
        assert reply["content"] == "Hello"
        assert reply["provider"] == "openai"
        # The conversation is not modified by chat()
        assert len(context.messages) == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_astream(self, context):
        body = (
            b'data: {"choices": [{"index": 0, "delta": {"content": "Hi"}}]}\n\n'
            b"data: [DONE]\n\n"
        )
        client = make_client(lambda request: httpx.Response(200, content=body))
        events = [e async for e in client.astream("openai", "gpt-4o", context)]
        assert [e["type"] for e in events] == ["text_delta", "done"]
        assert events[-1]["reply"]["content"] == "Hi"

    @pytest.mark.asyncio
    async def test_chat_multi(self, context):
        client = make_client(lambda request: httpx.Response(200, json=chat_response("same")))
        replies = await client.chat_multi("openai", "gpt-4o", context, 2, GenerationConfig(stream=False))
        assert [r["content"] for r in replies] == ["same", "same"]

    @pytest.mark.asyncio
    async def test_chat_invalid_provider(self, context):
        client = UnifiedChatClient()
        with pytest.raises(ValueError, match="not configured or not supported"):
            await client.chat("invalid_provider", "model", context)
        with pytest.raises(ValueError, match="not configured or not supported"):
            await client.chat_multi("invalid_provider", "model", context, 2)

    @pytest.mark.asyncio
    async def test_list_models_delegation(self, mock_env):
        client = UnifiedChatClient.from_env(env_file=None)
        with patch("llmwire.providers.openai.OpenAIAdapter.list_models", new_callable=AsyncMock) as mock_list:
            mock_list.return_value = ["model-a", "model-b"]
            models = await client.list_models("openai")
        assert models == ["model-a", "model-b"]
        mock_list.assert_awaited_once_with("sk-test-openai")


class TestChatWithTools:

    @pytest.mark.asyncio
    async def test_tool_loop(self):
        requests = []
        responses = [
            chat_response(None, [function_call("call_1", "get_weather", {"city": "Paris"}),
                                 function_call("call_2", "get_time", {})]),
            chat_response("Sunny, 21C"),
        ]

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(200, json=responses[len(requests) - 1])

        async def get_time(arguments):
            return "12:00"

        host = CallableToolHost({"get_weather": lambda args: {"temp": 21, "city": args["city"]}})
        host.register("get_time", get_time)
        assert host.tool_names == ["get_weather", "get_time"]
        client = make_client(handler)
        context = client.new_context([{"role": "user", "content": "Weather in Paris?"}])

        reply = await client.chat_with_tools("openai", "gpt-4o", context, host, GenerationConfig(stream=False))

        assert reply["content"] == "Sunny, 21C"
        assert [m["role"] for m in context.messages] == ["user", "assistant", "user"]
        results = context.messages[2]["content"]
        assert results[0] == {"type": "tool_result", "tool_use_id": "call_1",
                              "content": {"temp": 21, "city": "Paris"}, "name": "get_weather"}
        assert results[1]["content"] == "12:00"

        tool_messages = [m for m in requests[1]["messages"] if m["role"] == "tool"]
        assert [m["tool_call_id"] for m in tool_messages] == ["call_1", "call_2"]
        assert json.loads(tool_messages[0]["content"]) == {"temp": 21, "city": "Paris"}

    @pytest.mark.asyncio
    async def test_tool_exception_becomes_error_result(self):
        responses = [
            chat_response(None, [function_call("call_1", "explode", {})]),
            chat_response("It failed."),
        ]
        calls = iter(responses)

        def explode(arguments):
            raise RuntimeError("kaboom")

        client = make_client(lambda request: httpx.Response(200, json=next(calls)))
        context = client.new_context([{"role": "user", "content": "go"}])

        reply = await client.chat_with_tools(
            "openai", "gpt-4o", context, CallableToolHost({"explode": explode}), GenerationConfig(stream=False)
        )

        assert reply["content"] == "It failed."
        result = context.messages[2]["content"][0]
        assert result["is_error"] is True
        assert "kaboom" in result["content"]

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        host = CallableToolHost()
        result = await host.execute({"id": "call_9", "name": "missing", "arguments": {}})
        assert result["is_error"] is True
        assert result["content"] == "Error: No handler for tool 'missing'"

    @pytest.mark.asyncio
    async def test_iteration_limit(self):
        loop_reply = chat_response(None, [function_call("call_1", "noop", {})])
        client = make_client(lambda request: httpx.Response(200, json=loop_reply))
        context = client.new_context([{"role": "user", "content": "go"}])

        reply = await client.chat_with_tools(
            "openai", "gpt-4o", context, CallableToolHost({"noop": lambda args: 1}),
            GenerationConfig(stream=False), max_iterations=2,
        )

        assert reply["has_tool_calls"] is True
        assert len(context.messages) == 5
        assert context.messages[2]["content"][0]["content"] == "1"

    @pytest.mark.asyncio
    async def test_error_reply_stops_loop(self, context):
        client = make_client(lambda request: httpx.Response(500, text="down"))
        reply = await client.chat_with_tools(
            "openai", "gpt-4o", context, CallableToolHost(), GenerationConfig(stream=False)
        )
        assert reply["is_error"] is True
        assert len(context.messages) == 1
