import json

import pytest

from llmwire.config import ProviderConfig
from llmwire.context import ConversationContext
from llmwire.types import ProviderFormat


@pytest.fixture
def mock_env(monkeypatch):
    """Mock environment variables for API keys."""
    for var in ("OPENAI_API_KEYS", "ANTHROPIC_API_KEYS", "GOOGLE_API_KEYS", "DEEPSEEK_API_KEYS",
                "GEMINI_API_KEY", "LLMWIRE_TIMEOUT", "LLMWIRE_XML_TOOLS",
                "OPENAI_BASE_URL", "ANTHROPIC_BASE_URL", "GEMINI_BASE_URL", "DEEPSEEK_BASE_URL"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-openai")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test-anthropic")
    monkeypatch.setenv("GOOGLE_API_KEY", "AIza-test-google")
    monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test-deepseek")


@pytest.fixture
def context():
    """A one-turn text conversation."""
    return ConversationContext(messages=[{"role": "user", "content": [{"type": "text", "text": "hi"}]}])


@pytest.fixture
def openai_config():
    return ProviderConfig(id="openai", format=ProviderFormat.OPENAI)


@pytest.fixture
def anthropic_config():
    return ProviderConfig(id="anthropic", format=ProviderFormat.ANTHROPIC)


@pytest.fixture
def gemini_config():
    return ProviderConfig(id="gemini", format=ProviderFormat.GEMINI)


@pytest.fixture
def sse():
    """Encode payloads as a ``data:`` event stream body."""
    def encode(*payloads):
        lines = []
        for payload in payloads:
            data = payload if isinstance(payload, str) else json.dumps(payload)
            lines.append(f"data: {data}\n\n")
        return "".join(lines).encode()
    return encode
