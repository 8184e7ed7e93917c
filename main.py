"""
Demo: one conversation, several providers.

Reads keys from the environment or ``.env`` (OPENAI_API_KEY, ANTHROPIC_API_KEY,
GOOGLE_API_KEY, DEEPSEEK_API_KEY) and runs a streamed question, a tool-calling
round and a three-way fan-out against every configured provider.
"""
import asyncio

from llmwire import (
    CallableToolHost, GenerationConfig, RichPrinter, RichStreamPrinter,
    ThinkingConfig, UnifiedChatClient, init_logging,
)

MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-5-haiku-latest",
    "gemini": "gemini-2.5-flash",
    "deepseek": "deepseek-chat",
}


# =============================================================================
# Mock tools
# =============================================================================

def get_weather(args: dict) -> dict:
    """Mock weather lookup."""
    weather = {
        "Paris": {"temp": 18, "condition": "Partly cloudy"},
        "Tokyo": {"temp": 22, "condition": "Sunny"},
    }
    location = args.get("location", "")
    return {"location": location, **weather.get(location, {"temp": 15, "condition": "Unknown"})}


WEATHER_TOOL = UnifiedChatClient.create_tool(
    name="get_weather",
    description="Get the current weather for a city",
    parameters={"location": {"type": "string", "description": "City name"}},
    required=["location"],
)


# =============================================================================
# Demos
# =============================================================================

async def stream_question(client: UnifiedChatClient, provider: str, model: str):
    context = client.new_context(
        [client.create_message("user", "Explain in two sentences why the sky is blue.")]
    )
    generation = GenerationConfig(thinking=ThinkingConfig(enabled=provider != "deepseek", strength="low"))
    printer = RichStreamPrinter(title=f"{provider} / {model}")
    await printer.print_stream(client.astream(provider, model, context, generation))


async def tool_round(client: UnifiedChatClient, provider: str, model: str):
    context = client.new_context(
        [client.create_message("user", "What's the weather in Paris and in Tokyo?")],
        tools=[WEATHER_TOOL],
    )
    host = CallableToolHost({"get_weather": get_weather})
    reply = await client.chat_with_tools(provider, model, context, host, GenerationConfig(stream=False))
    RichPrinter(title=f"{provider} tools").print_reply(reply)


async def fan_out(client: UnifiedChatClient, provider: str, model: str):
    context = client.new_context([client.create_message("user", "Suggest a name for a pet turtle.")])
    replies = await client.chat_multi(provider, model, context, 3, GenerationConfig(temperature=1.0))
    printer = RichPrinter(show_metadata=False)
    for index, reply in enumerate(replies):
        printer.title = f"{provider} reply {index + 1}"
        printer.print_reply(reply)


async def main():
    logger = init_logging("INFO")
    async with UnifiedChatClient.from_env() as client:
        if not client.providers:
            logger.error("No provider keys found; set OPENAI_API_KEY, ANTHROPIC_API_KEY or GOOGLE_API_KEY")
            return
        for provider in client.providers:
            model = MODELS.get(provider)
            if model is None:
                continue
            logger.info("Running demos against %s (%s)", provider, model)
            await stream_question(client, provider, model)
            await tool_round(client, provider, model)
            await fan_out(client, provider, model)


if __name__ == "__main__":
    asyncio.run(main())
