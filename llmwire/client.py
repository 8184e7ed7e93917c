import asyncio
import inspect
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Tuple, Union

from .config import GenerationConfig, ProviderConfig, Settings
from .context import ConversationContext
from .credentials import CredentialStore, InMemoryCredentialStore, KeyStrategy
from .errors import LLMWireError
from .lifecycle import RequestLifecycle
from .orchestrator import MultiStreamOrchestrator, RequestTemplate
from .providers import BaseProviderAdapter, ImageResolver, create_adapter
from .transport import HttpTransport
from .types import ImagePart, Message, Part, Reply, StreamEvent, TextPart, Tool, ToolCall, ToolResult
from .utils import (
    create_assistant_message_with_tool_calls, create_image_content, create_message,
    create_text_content, create_tool, create_tool_result, create_tool_result_message,
    encode_image_file, encode_image_url,
)

logger = logging.getLogger(__name__)


class ToolHost(Protocol):
    """Executes the tool calls a model requests."""

    async def execute(self, call: ToolCall) -> ToolResult:
        ...


class CallableToolHost:
    """
    Tool host backed by plain Python callables.

    Each handler receives the parsed arguments dict and may be sync or async.
    Handlers returning a dict with ``text``/``image`` keys produce multimodal
    tool results.

    Args:
        handlers (Dict[str, Callable]): Tool name -> handler.
    """

    def __init__(self, handlers: Optional[Dict[str, Callable[[Dict[str, Any]], Any]]] = None):
        self.handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = dict(handlers or {})

    @property
    def tool_names(self) -> List[str]:
        return list(self.handlers)

    def register(self, name: str, handler: Callable[[Dict[str, Any]], Any]) -> None:
        self.handlers[name] = handler

    async def execute(self, call: ToolCall) -> ToolResult:
        name = call.get("name", "")
        handler = self.handlers.get(name)
        if handler is None:
            return create_tool_result(
                call.get("id", ""), f"Error: No handler for tool '{name}'", name=name, is_error=True
            )
        arguments = call.get("arguments") or {}
        result = handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        if not isinstance(result, (str, dict)):
            result = str(result)
        return create_tool_result(call.get("id", ""), result, name=name)


class UnifiedChatClient:
    """
    Unified client for OpenAI-, Anthropic- and Gemini-format providers.

    Conversations live in ConversationContext objects owned by the caller;
    the client only holds configuration, keys and the shared HTTP transport.

    Args:
        settings (Settings, optional): Providers and keys. Empty when omitted.
        credentials (CredentialStore, optional): Key store. Built from
            ``settings`` when omitted.
        transport (HttpTransport, optional): Shared HTTP transport.
        image_resolver (ImageResolver, optional): Upload step for large images.
        key_strategy (KeyStrategy): Selection strategy of the built key store.
        max_retries (int): Retry bound of each request lifecycle.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        credentials: Optional[CredentialStore] = None,
        transport: Optional[HttpTransport] = None,
        image_resolver: Optional[ImageResolver] = None,
        key_strategy: KeyStrategy = "fixed",
        max_retries: int = 1,
    ):
        self.settings = settings or Settings()
        self.credentials = credentials or InMemoryCredentialStore.from_settings(self.settings, key_strategy)
        self.transport = transport or HttpTransport()
        self.image_resolver = image_resolver
        self.max_retries = max_retries
        self.providers: Dict[str, ProviderConfig] = dict(self.settings.providers)
        self._adapters: Dict[str, BaseProviderAdapter] = {}
        self.orchestrator = MultiStreamOrchestrator(
            self.transport,
            self.credentials,
            image_resolver=image_resolver,
            max_retries=max_retries,
        )

    @classmethod
    def from_env(cls, env_file: Optional[Union[str, Path]] = ".env", **kwargs) -> "UnifiedChatClient":
        """Client configured from environment variables and ``env_file``."""
        return cls(Settings.from_env(env_file), **kwargs)

    async def aclose(self) -> None:
        await self.transport.aclose()

    async def __aenter__(self) -> "UnifiedChatClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ==========================================================================
    # Providers
    # ==========================================================================

    def add_provider(self, config: ProviderConfig, api_keys: Optional[List[str]] = None) -> None:
        """
        Register (or replace) a provider. ``api_keys`` are added to the key
        store when it supports ``add_key``.
        """
        self.providers[config.id] = config
        self._adapters.pop(config.id, None)
        if api_keys:
            add_key = getattr(self.credentials, "add_key", None)
            if add_key is None:
                raise LLMWireError(
                    f"Cannot add keys for '{config.id}'",
                    hint="The configured credential store does not accept new keys.",
                )
            for key in api_keys:
                add_key(config.id, key)

    def adapter(self, provider_id: str) -> BaseProviderAdapter:
        """
        Raises:
            ValueError: If the provider is not configured.
        """
        config = self.providers.get(provider_id)
        if config is None:
            raise ValueError(f"Provider '{provider_id}' not configured or not supported.")
        adapter = self._adapters.get(provider_id)
        if adapter is None:
            adapter = create_adapter(
                config, image_resolver=self.image_resolver, http_client=self.transport.client
            )
            self._adapters[provider_id] = adapter
        return adapter

    def new_context(
        self,
        messages: Optional[List[Message]] = None,
        *,
        system_prompt: Optional[str] = None,
        tools: Optional[List[Tool]] = None,
        xml_tool_calling: Optional[bool] = None,
    ) -> ConversationContext:
        if xml_tool_calling is None:
            xml_tool_calling = self.settings.xml_tool_calling
        return ConversationContext(
            messages=list(messages or []),
            system_prompt=system_prompt,
            tools=list(tools or []),
            xml_tool_calling=xml_tool_calling,
        )

    def lifecycle(self, provider_id: str, *, timeout: Optional[float] = None, session_id: Optional[str] = None) -> RequestLifecycle:
        """A fresh RequestLifecycle for one send to ``provider_id``."""
        return RequestLifecycle(
            self.adapter(provider_id),
            self.transport,
            self.credentials,
            max_retries=self.max_retries,
            timeout=timeout if timeout is not None else self.settings.timeout,
            session_id=session_id,
        )

    # ==========================================================================
    # Image and Message Helpers - Re-exported from utils
    # ==========================================================================

    @staticmethod
    def encode_image_file(image_path: Union[str, Path]) -> Tuple[str, str]:
        return encode_image_file(image_path)

    @staticmethod
    async def encode_image_url(url: str) -> Tuple[str, str]:
        return await encode_image_url(url)

    @staticmethod
    def create_image_content(source: str, *, mime_type: Optional[str] = None) -> ImagePart:
        return create_image_content(source, mime_type=mime_type)

    @staticmethod
    def create_text_content(text: str) -> TextPart:
        return create_text_content(text)

    @staticmethod
    def create_message(role: str, content: Union[str, List[Union[str, Part]]]) -> Message:
        return create_message(role, content)

    @staticmethod
    def create_tool(
        name: str,
        description: str,
        parameters: Dict[str, Any],
        required: Optional[List[str]] = None,
    ) -> Tool:
        return create_tool(name, description, parameters, required)

    @staticmethod
    def create_tool_result(
        tool_call_id: str,
        content: Any,
        *,
        name: Optional[str] = None,
        is_error: bool = False,
    ) -> ToolResult:
        return create_tool_result(tool_call_id, content, name=name, is_error=is_error)

    @staticmethod
    def create_assistant_message_with_tool_calls(content: str, tool_calls: List[ToolCall], **reasoning: Any) -> Message:
        return create_assistant_message_with_tool_calls(content, tool_calls, **reasoning)

    @staticmethod
    def create_tool_result_message(results: List[ToolResult]) -> Message:
        return create_tool_result_message(results)

    # ==========================================================================
    # Unified Chat Methods
    # ==========================================================================

    async def list_models(self, provider_id: str) -> List[str]:
        """
        Model ids available from a provider, using its current key.

        Raises:
            ValueError: If the provider is not configured.
        """
        adapter = self.adapter(provider_id)
        return await adapter.list_models(self.credentials.current_key(provider_id))

    async def chat(
        self,
        provider_id: str,
        model: str,
        context: ConversationContext,
        generation: Optional[GenerationConfig] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Reply:
        """
        Send a non-streaming request.

        Provider errors come back as a Reply with ``is_error`` set; the
        conversation is not modified.

        Args:
            provider_id (str): Configured provider id (e.g. "openai").
            model (str): Model identifier.
            context (ConversationContext): The conversation.
            generation (GenerationConfig, optional): Sampling and feature knobs.
            timeout (float, optional): Wall-clock limit in seconds.

        Returns:
            Reply: The canonical reply.

        Raises:
            ValueError: If the provider is not configured.
            TransportError: On network failures.
            RequestCancelled: If the request timed out.
        """
        return await self.lifecycle(provider_id, timeout=timeout, session_id=context.session_id).send(
            context, generation, model=model
        )

    async def astream(
        self,
        provider_id: str,
        model: str,
        context: ConversationContext,
        generation: Optional[GenerationConfig] = None,
        *,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream a reply as canonical events.

        Yields ``text_delta``, ``thinking_delta``, ``tool_call_delta``,
        ``image``, ``grounding``, ``usage`` and ``error`` events, then exactly
        one ``done`` event whose ``reply`` is the final Reply.

        Raises:
            ValueError: If the provider is not configured.
            TransportError: On network failures.
            RequestCancelled: If the request was cancelled or timed out.
        """
        lifecycle = self.lifecycle(provider_id, timeout=timeout, session_id=context.session_id)
        async for event in lifecycle.stream(context, generation, model=model):
            yield event

    async def chat_multi(
        self,
        provider_id: str,
        model: str,
        context: ConversationContext,
        n: int,
        generation: Optional[GenerationConfig] = None,
        *,
        on_live: Optional[Callable[[StreamEvent], Any]] = None,
    ) -> List[Reply]:
        """
        Run ``n`` independent copies of the request and return ``n`` replies
        in order. Only the first copy's events reach ``on_live``.
        """
        if provider_id not in self.providers:
            raise ValueError(f"Provider '{provider_id}' not configured or not supported.")
        template = RequestTemplate(
            provider=self.providers[provider_id],
            model=model,
            context=context,
            generation=generation or GenerationConfig(),
        )
        return await self.orchestrator.run(template, n, on_live)

    async def chat_with_tools(
        self,
        provider_id: str,
        model: str,
        context: ConversationContext,
        host: ToolHost,
        generation: Optional[GenerationConfig] = None,
        *,
        max_iterations: int = 10,
    ) -> Reply:
        """
        Chat while executing requested tool calls until the model answers
        without calling a tool.

        Each round appends the assistant tool-use turn (with any reasoning
        signatures) and one user turn carrying every tool result to
        ``context``. Calls of one round run concurrently. A host exception
        becomes an ``is_error`` tool result for the model to see.

        Args:
            provider_id (str): Configured provider id.
            model (str): Model identifier.
            context (ConversationContext): Conversation; tools are read from
                ``context.tools`` and the history is extended in place.
            host (ToolHost): Executes the calls.
            generation (GenerationConfig, optional): Sampling and feature knobs.
            max_iterations (int): Safety limit for the loop. Defaults to 10.

        Returns:
            Reply: The final reply (an error reply stops the loop).
        """
        reply: Reply = {"content": "", "has_tool_calls": False, "is_error": False}
        for _ in range(max_iterations):
            reply = await self.chat(provider_id, model, context, generation)
            if reply.get("is_error") or not reply.get("has_tool_calls"):
                return reply

            calls = reply.get("tool_calls", [])
            context.add_message(
                create_assistant_message_with_tool_calls(
                    reply.get("content", ""),
                    calls,
                    thinking=_signed_thinking(reply),
                    thought_signature=reply.get("thought_signature"),
                    encrypted_reasoning=reply.get("encrypted_reasoning"),
                )
            )
            results = await asyncio.gather(*(self._execute_tool_call(host, call) for call in calls))
            context.add_message(create_tool_result_message(list(results)))

        logger.warning("Tool loop stopped after %d iterations", max_iterations)
        return reply

    async def _execute_tool_call(self, host: ToolHost, call: ToolCall) -> ToolResult:
        name = call.get("name", "")
        try:
            result = await host.execute(call)
        except Exception as e:
            logger.warning("Tool '%s' failed: %s", name, e)
            return create_tool_result(
                call.get("id", ""), f"Error executing tool '{name}': {e}", name=name, is_error=True
            )
        result.setdefault("tool_call_id", call.get("id", ""))
        return result


def _signed_thinking(reply: Reply) -> Optional[Part]:
    for part in reply.get("content_parts", []):
        if part.get("type") == "thinking" and part.get("signature"):
            return part
    return None
