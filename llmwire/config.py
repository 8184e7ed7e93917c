import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

import dotenv

from .types import ApiMode, ProviderFormat

ThinkingStrength = Literal["low", "medium", "high", "custom"]

DEFAULT_THINKING_BUDGET = 16384

ANTHROPIC_THINKING_BUDGETS: Dict[str, int] = {"low": 2048, "medium": 8192, "high": 16384}
GEMINI_THINKING_BUDGETS: Dict[str, int] = {"low": 4096, "medium": 8192, "high": 16384}

DEFAULT_ENDPOINTS: Dict[ProviderFormat, str] = {
    ProviderFormat.OPENAI: "https://api.openai.com/v1/chat/completions",
    ProviderFormat.ANTHROPIC: "https://api.anthropic.com/v1/messages",
    ProviderFormat.GEMINI: "https://generativelanguage.googleapis.com",
}


@dataclass
class ThinkingConfig:
    """
    Reasoning ("thinking") settings.

    Attributes:
        enabled: Whether to request reasoning output.
        strength: Preset level, or "custom" to use ``budget``.
        budget: Token budget used when ``strength`` is "custom".
        none_mode: For OpenAI Responses, send ``effort: "none"`` when disabled
            instead of omitting the field.
    """
    enabled: bool = False
    strength: ThinkingStrength = "medium"
    budget: Optional[int] = None
    none_mode: bool = False

    def __post_init__(self) -> None:
        if self.strength not in ("low", "medium", "high", "custom"):
            raise ValueError(f"Unknown thinking strength: {self.strength!r}")
        if self.budget is not None and self.budget < 0:
            raise ValueError("ThinkingConfig.budget must be >= 0")

    def budget_for(self, presets: Dict[str, int]) -> int:
        """Resolve the token budget against a provider's preset table."""
        if self.strength == "custom":
            return self.budget if self.budget is not None else DEFAULT_THINKING_BUDGET
        return presets.get(self.strength, DEFAULT_THINKING_BUDGET)

    @property
    def effort(self) -> str:
        """OpenAI reasoning effort. Custom budgets map to "high"."""
        return "high" if self.strength == "custom" else self.strength


@dataclass
class GenerationConfig:
    """
    Sampling and feature knobs for one request.

    Unset (None) values follow each provider's own default-or-omit rule.
    """
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: Optional[List[str]] = None
    stream: bool = True
    thinking: ThinkingConfig = field(default_factory=ThinkingConfig)
    verbosity: Optional[Literal["low", "medium", "high"]] = None
    web_search: bool = False
    code_execution: bool = False
    image_size: Optional[str] = None  # Gemini image generation, e.g. "2K"

    def __post_init__(self) -> None:
        if self.max_tokens is not None and self.max_tokens < 1:
            raise ValueError("GenerationConfig.max_tokens must be >= 1")
        if self.temperature is not None and self.temperature < 0:
            raise ValueError("GenerationConfig.temperature must be >= 0")


@dataclass
class ProviderConfig:
    """
    One configured provider endpoint.

    Attributes:
        id: Identifier used for credentials and logging (e.g. "openai", "deepseek").
        format: Native wire format. Parsers are always chosen from this.
        endpoint: Full request URL (OpenAI/Anthropic) or base URL (Gemini).
        api_mode: OpenAI-style only: "chat" or "responses".
        custom_headers: Extra headers merged last into every request.
        key_in_header: Gemini only: send the key as ``x-goog-api-key``
            instead of the ``key`` query parameter.
        display_format: Format shown to the user; informational only.
    """
    id: str
    format: ProviderFormat
    endpoint: Optional[str] = None
    api_mode: ApiMode = "chat"
    custom_headers: Dict[str, str] = field(default_factory=dict)
    key_in_header: bool = False
    display_format: Optional[ProviderFormat] = None

    def __post_init__(self) -> None:
        self.format = ProviderFormat(self.format)
        if self.display_format is not None:
            self.display_format = ProviderFormat(self.display_format)
        if self.api_mode not in ("chat", "responses"):
            raise ValueError(f"Unknown api_mode: {self.api_mode!r}")
        if not self.endpoint:
            self.endpoint = DEFAULT_ENDPOINTS[self.format]


# =============================================================================
# Environment settings
# =============================================================================

_ENV_PROVIDERS = (
    # (provider id, format, key variables, endpoint variable, default endpoint)
    ("openai", ProviderFormat.OPENAI, ("OPENAI_API_KEYS", "OPENAI_API_KEY"), "OPENAI_BASE_URL", None),
    ("anthropic", ProviderFormat.ANTHROPIC, ("ANTHROPIC_API_KEYS", "ANTHROPIC_API_KEY"), "ANTHROPIC_BASE_URL", None),
    ("gemini", ProviderFormat.GEMINI, ("GOOGLE_API_KEYS", "GOOGLE_API_KEY", "GEMINI_API_KEY"), "GEMINI_BASE_URL", None),
    ("deepseek", ProviderFormat.OPENAI, ("DEEPSEEK_API_KEYS", "DEEPSEEK_API_KEY"), "DEEPSEEK_BASE_URL",
     "https://api.deepseek.com/chat/completions"),
)


def _split_keys(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [k.strip() for k in raw.split(",") if k.strip()]


@dataclass
class Settings:
    """
    Provider configuration and keys loaded from the environment / ``.env``.
    """
    providers: Dict[str, ProviderConfig] = field(default_factory=dict)
    api_keys: Dict[str, List[str]] = field(default_factory=dict)
    timeout: Optional[float] = None
    xml_tool_calling: bool = False

    @classmethod
    def from_env(cls, env_file: Optional[Union[str, Path]] = ".env") -> "Settings":
        """
        Build settings from process environment variables, falling back to
        values in ``env_file``.

        Comma separated ``*_API_KEYS`` variables configure several keys for
        rotation. A provider is configured only when at least one key is found.
        """
        values: Dict[str, Optional[str]] = {}
        if env_file and Path(env_file).exists():
            values.update(dotenv.dotenv_values(env_file))
        values.update(os.environ)

        settings = cls()
        for provider_id, fmt, key_vars, endpoint_var, default_endpoint in _ENV_PROVIDERS:
            keys: List[str] = []
            for var in key_vars:
                keys = _split_keys(values.get(var))
                if keys:
                    break
            if not keys:
                continue
            settings.providers[provider_id] = ProviderConfig(
                id=provider_id,
                format=fmt,
                endpoint=values.get(endpoint_var) or default_endpoint,
            )
            settings.api_keys[provider_id] = keys

        timeout = values.get("LLMWIRE_TIMEOUT")
        if timeout:
            settings.timeout = float(timeout)
        settings.xml_tool_calling = (values.get("LLMWIRE_XML_TOOLS") or "").lower() in ("1", "true", "yes")
        return settings
