import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple, Type

import httpx

from ..config import GenerationConfig, ProviderConfig
from ..context import ConversationContext, iter_parts
from ..errors import ProviderAPIError, classify_error_payload
from ..streaming import BaseStreamParser
from ..transport import WireRequest
from ..types import ImagePart, Message, Part, ProviderFormat, Reply
from ..utils import (
    LARGE_IMAGE_BYTES, base64_decoded_size, image_inline_data, tool_content_text,
)
from ..xml_tools import format_tool_calls_xml, format_tool_results_xml, inject_xml_tools

logger = logging.getLogger(__name__)


class ImageResolver(Protocol):
    """
    Out-of-band upload step for large images.

    Returns a reference the provider accepts in place of inline bytes
    (an OpenAI/Anthropic file id, a Gemini file URI).
    """

    async def upload(self, data: bytes, mime_type: str, fmt: ProviderFormat) -> str:
        ...


@dataclass
class ResolvedImage:
    """How an image will travel: inline base64, remote URL or uploaded reference."""
    mime_type: str
    data: Optional[str] = None
    url: Optional[str] = None
    reference: Optional[str] = None


class BaseProviderAdapter(ABC):
    """
    Abstract base class for provider adapters.

    An adapter knows one wire format: it builds requests from a
    ConversationContext, parses complete responses, and creates stream
    parsers for streamed ones.

    Args:
        config (ProviderConfig): Endpoint, headers and format options.
        image_resolver (ImageResolver, optional): Upload step for images
            above the inline size limit.
        http_client (httpx.AsyncClient, optional): Client used to fetch
            remote images for providers that only take inline data.
    """

    format: ProviderFormat
    stream_parser_class: Type[BaseStreamParser]

    def __init__(
        self,
        config: ProviderConfig,
        *,
        image_resolver: Optional[ImageResolver] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.image_resolver = image_resolver
        self.http_client = http_client

    @property
    def provider_id(self) -> str:
        return self.config.id

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    async def build(
        self,
        context: ConversationContext,
        generation: Optional[GenerationConfig] = None,
        *,
        api_key: str,
        model: str,
        force_image_upload: bool = False,
    ) -> WireRequest:
        """
        Build a transport-ready request.

        Args:
            context (ConversationContext): Conversation to send.
            generation (GenerationConfig, optional): Sampling and feature knobs.
            api_key (str): Credential for this request.
            model (str): Model identifier.
            force_image_upload (bool): Route every inline image through the
                image resolver regardless of size.

        Raises:
            ValueError: If the conversation contains no messages to send.
        """
        generation = generation or GenerationConfig()
        history = [m for m in context.request_messages() if m.get("role") != "system"]
        if not history:
            raise ValueError("Cannot build a request without any user or assistant messages")

        body = await self.build_body(
            context, generation, model=model, force_image_upload=force_image_upload
        )
        url, params = self.endpoint(model, stream=generation.stream, api_key=api_key)
        headers = {"Content-Type": "application/json", **self.auth_headers(api_key)}
        headers.update(self.config.custom_headers)
        return WireRequest(
            url=url,
            body=body,
            headers=headers,
            params=params,
            stream=generation.stream,
            format=self.format,
        )

    @abstractmethod
    async def build_body(
        self,
        context: ConversationContext,
        generation: GenerationConfig,
        *,
        model: str,
        force_image_upload: bool = False,
    ) -> Dict[str, Any]:
        """Provider request body."""

    @abstractmethod
    def endpoint(self, model: str, *, stream: bool, api_key: str) -> Tuple[str, Dict[str, str]]:
        """Request URL and query parameters."""

    @abstractmethod
    def auth_headers(self, api_key: str) -> Dict[str, str]:
        """Authentication (and version) headers."""

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    @abstractmethod
    def parse_response(self, data: Any, context: Optional[ConversationContext] = None) -> Optional[Reply]:
        """
        Parse a complete response body into a Reply.

        Returns:
            Optional[Reply]: An error reply for error envelopes, None when the
            payload has neither content nor an error.
        """

    def stream_parser(
        self,
        context: Optional[ConversationContext] = None,
        *,
        model: Optional[str] = None,
    ) -> BaseStreamParser:
        """A fresh stream parser for one stream of this provider."""
        return self.stream_parser_class(context, provider_id=self.provider_id, model=model)

    def extract_error(self, data: Any, status_code: Optional[int] = None) -> Optional[ProviderAPIError]:
        return classify_error_payload(data, status_code=status_code, provider=self.provider_id)

    @abstractmethod
    async def list_models(self, api_key: str) -> List[str]:
        """
        Get list of available models from the provider.

        Returns:
            List[str]: List of model identifiers.
        """

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def system_text(self, context: ConversationContext) -> Optional[str]:
        """System instructions, with the XML tool grammar in XML mode."""
        system = context.system_text()
        if context.xml_tool_calling and context.tools:
            system = inject_xml_tools(system, context.tools)
        return system

    def history(self, context: ConversationContext) -> List[Message]:
        """
        Messages to translate: system messages removed, tool parts rendered
        as XML text in XML mode.
        """
        messages = [m for m in context.request_messages() if m.get("role") != "system"]
        if not context.xml_tool_calling:
            return messages
        names = context.tool_names_by_id()
        return [xml_flatten(m, names) for m in messages]

    def use_native_tools(self, context: ConversationContext) -> bool:
        return bool(context.tools) and not context.xml_tool_calling

    async def resolve_image(self, part: ImagePart, *, force_upload: bool = False) -> ResolvedImage:
        """
        Decide how an image is sent. Inline images above the size limit (or
        all of them with ``force_upload``) go through the image resolver.
        """
        inline = image_inline_data(part)
        if inline is None:
            return ResolvedImage(mime_type=part.get("mime_type") or "image/jpeg", url=part.get("url"))

        data, mime_type = inline
        if force_upload or base64_decoded_size(data) > LARGE_IMAGE_BYTES:
            if self.image_resolver is not None:
                reference = await self.image_resolver.upload(base64.b64decode(data), mime_type, self.format)
                logger.debug("Uploaded %s image for %s", mime_type, self.provider_id)
                return ResolvedImage(mime_type=mime_type, reference=reference)
            logger.warning(
                "Image of %d bytes exceeds the inline limit and no image resolver is configured; sending inline",
                base64_decoded_size(data),
            )
        return ResolvedImage(mime_type=mime_type, data=data)


def xml_flatten(message: Message, names: Dict[str, str]) -> Message:
    """
    Rewrite tool_use / tool_result parts as ``<tool_use>`` and
    ``<tool_use_result>`` text for providers running in XML mode.
    """
    parts: List[Part] = []
    calls, results = [], []
    for part in iter_parts(message):
        kind = part.get("type")
        if kind == "tool_use":
            calls.append((part.get("name", ""), part.get("arguments", {})))
        elif kind == "tool_result":
            name = part.get("name") or names.get(part.get("tool_use_id", ""), "")
            results.append((name, tool_content_text(part.get("content"))))
        else:
            parts.append(part)
    if calls:
        parts.append({"type": "text", "text": format_tool_calls_xml(calls)})
    if results:
        parts.append({"type": "text", "text": format_tool_results_xml(results)})
    flattened = dict(message)
    flattened["content"] = parts
    return flattened


def pick_thinking(typed: str, data: Any) -> str:
    """
    Choose the reasoning text of a response: the typed content first, then a
    top-level ``reasoning`` string, then ``metadata.reasoning`` (also looked
    up one level deeper, e.g. ``metadata.gemini.reasoning``).
    """
    if typed and typed.strip():
        return typed
    if not isinstance(data, dict):
        return ""
    top = data.get("reasoning")
    if isinstance(top, str) and top.strip():
        return top
    metadata = data.get("metadata")
    if isinstance(metadata, dict):
        nested = metadata.get("reasoning")
        if isinstance(nested, str) and nested.strip():
            return nested
        for value in metadata.values():
            if isinstance(value, dict):
                deeper = value.get("reasoning")
                if isinstance(deeper, str) and deeper.strip():
                    return deeper
    return ""


def int_or_none(value: Any) -> Optional[int]:
    return value if isinstance(value, int) else None
