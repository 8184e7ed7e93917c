import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import anthropic
from anthropic import AsyncAnthropic

from .base import BaseProviderAdapter, int_or_none, pick_thinking, xml_flatten
from ..config import ANTHROPIC_THINKING_BUDGETS, GenerationConfig
from ..context import ConversationContext, iter_parts
from ..replies import append_part, build_reply, error_reply, normalize_usage
from ..streaming import BaseStreamParser
from ..think_tags import parse_think_tags
from ..types import Message, Part, ProviderFormat, Reply, ToolCall, Usage
from ..utils import parse_data_uri, tool_content_image, tool_content_text
from ..xml_tools import extract_xml_tool_calls

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 8192
THINKING_SEPARATOR = "\n\n---\n\n"


def _usage(provider: str, usage: Optional[Dict[str, Any]]) -> Optional[Usage]:
    if not usage:
        return None
    return normalize_usage(
        provider,
        input_tokens=int_or_none(usage.get("input_tokens")),
        output_tokens=int_or_none(usage.get("output_tokens")),
        raw=usage,
    )


class AnthropicStreamParser(BaseStreamParser):
    """
    Messages API stream. Content arrives in indexed blocks (text, thinking,
    tool_use) opened and closed by ``content_block_start`` / ``_stop``.
    Separate thinking blocks are joined with a horizontal rule.
    """

    format = ProviderFormat.ANTHROPIC

    def _reset_state(self) -> None:
        super()._reset_state()
        self._block_types: Dict[int, str] = {}
        self._signatures: Dict[int, str] = {}
        self._new_thinking_block = False
        self._input_usage: Dict[str, Any] = {}

    def handle_payload(self, data: Any) -> None:
        if not isinstance(data, dict):
            return
        kind = data.get("type")
        index = data.get("index", 0)

        if kind == "message_start":
            message = data.get("message") or {}
            self.model = self.model or message.get("model")
            self._input_usage = message.get("usage") or {}
        elif kind == "content_block_start":
            block = data.get("content_block") if isinstance(data.get("content_block"), dict) else {}
            block_type = block.get("type", "")
            self._block_types[index] = block_type
            if block_type == "tool_use" and not self.context.xml_tool_calling:
                self._native_calls.start(index, block.get("id"), block.get("name"))
                self.emit_tool_call_delta(index, call_id=block.get("id"), name=block.get("name"))
            elif block_type == "thinking":
                self._new_thinking_block = True
            elif block_type == "text" and block.get("text"):
                self.emit_text(block["text"])
            elif block_type == "web_search_tool_result":
                self.emit_grounding({"web_search_results": block.get("content")})
        elif kind == "content_block_delta":
            delta = data.get("delta")
            if isinstance(delta, dict):
                self._handle_delta(index, delta)
        elif kind == "content_block_stop":
            if self._block_types.get(index) == "thinking" and self._signatures.get(index):
                self.sign_thinking(self._signatures[index])
        elif kind == "message_delta":
            delta = data.get("delta") if isinstance(data.get("delta"), dict) else {}
            if delta.get("stop_reason"):
                self._finish_reason = delta["stop_reason"]
            if data.get("usage"):
                merged = {**self._input_usage, **data["usage"]}
                self.emit_usage(_usage(self.provider_id, merged))
        elif kind == "message_stop":
            self._finish()

    def _handle_delta(self, index: int, delta: Dict[str, Any]) -> None:
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            self.emit_text(delta.get("text", ""))
        elif delta_type == "thinking_delta":
            separator = THINKING_SEPARATOR if self._new_thinking_block else ""
            self._new_thinking_block = False
            self.emit_thinking(delta.get("thinking", ""), separator=separator)
        elif delta_type == "signature_delta":
            self._signatures[index] = self._signatures.get(index, "") + delta.get("signature", "")
        elif delta_type == "input_json_delta":
            if self._native_calls.has(index):
                self._native_calls.add(index, arguments=delta.get("partial_json", ""))
                self.emit_tool_call_delta(index, arguments=delta.get("partial_json", ""))


class AnthropicAdapter(BaseProviderAdapter):
    """Adapter for the Anthropic Messages API."""

    format = ProviderFormat.ANTHROPIC
    stream_parser_class = AnthropicStreamParser

    def endpoint(self, model: str, *, stream: bool, api_key: str) -> Tuple[str, Dict[str, str]]:
        return self.config.endpoint, {}

    def auth_headers(self, api_key: str) -> Dict[str, str]:
        return {"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION}

    @property
    def base_url(self) -> str:
        url = self.config.endpoint.rstrip("/")
        for suffix in ("/v1/messages", "/messages"):
            if url.endswith(suffix):
                return url[: -len(suffix)]
        return url

    async def build_body(
        self,
        context: ConversationContext,
        generation: GenerationConfig,
        *,
        model: str,
        force_image_upload: bool = False,
    ) -> Dict[str, Any]:
        """
        Build a Messages API body.

        The system prompt is a top-level field, consecutive messages with the
        same role are merged, and ``max_tokens`` is always present.
        """
        signed = context.latest_signed_thinking() if generation.thinking.enabled else None
        names = context.tool_names_by_id()

        messages: List[Dict[str, Any]] = []
        for index, message in enumerate(context.request_messages()):
            if message.get("role") == "system":
                continue
            if context.xml_tool_calling:
                message = xml_flatten(message, names)
            blocks = await self._convert_blocks(message, context, force_image_upload)
            role = "assistant" if message.get("role") == "assistant" else "user"
            if signed is not None and index == signed[0] and role == "assistant":
                thinking = signed[1]
                blocks.insert(0, {
                    "type": "thinking",
                    "thinking": thinking.get("text", ""),
                    "signature": thinking["signature"],
                })
            if not blocks:
                continue
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"].extend(blocks)
            else:
                messages.append({"role": role, "content": blocks})

        body: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": generation.max_tokens or DEFAULT_MAX_TOKENS,
            "stream": generation.stream,
        }
        system = self.system_text(context)
        if system:
            body["system"] = system

        optional_params = {
            "temperature": generation.temperature,
            "top_p": generation.top_p,
            "top_k": generation.top_k,
            "stop_sequences": generation.stop,
        }
        body.update({k: v for k, v in optional_params.items() if v is not None})

        if generation.thinking.enabled:
            budget = generation.thinking.budget_for(ANTHROPIC_THINKING_BUDGETS)
            body["thinking"] = {"type": "enabled", "budget_tokens": budget}
            if body["max_tokens"] <= budget:
                body["max_tokens"] = budget + DEFAULT_MAX_TOKENS
                logger.debug("Raised max_tokens to %d above the thinking budget", body["max_tokens"])

        tools: List[Dict[str, Any]] = []
        if self.use_native_tools(context):
            tools.extend(
                {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "input_schema": tool.get("parameters") or {"type": "object", "properties": {}},
                }
                for tool in context.tools
            )
        if generation.web_search:
            tools.append({"type": "web_search_20250305", "name": "web_search", "max_uses": 5})
        if tools:
            body["tools"] = tools
        return body

    async def _convert_blocks(
        self,
        message: Message,
        context: ConversationContext,
        force_image_upload: bool,
    ) -> List[Dict[str, Any]]:
        blocks: List[Dict[str, Any]] = []
        for part in iter_parts(message):
            kind = part.get("type")
            if kind == "text" and part.get("text"):
                blocks.append({"type": "text", "text": part["text"]})
            elif kind == "image":
                blocks.append(await self._image_block(part, force_image_upload))
            elif kind == "tool_use":
                blocks.append({
                    "type": "tool_use",
                    "id": context.id_map.map_id(part["id"], self.format),
                    "name": part.get("name", ""),
                    "input": part.get("arguments") or {},
                })
            elif kind == "tool_result":
                blocks.append(self._tool_result_block(part, context))
        return blocks

    async def _image_block(self, part: Part, force_upload: bool) -> Dict[str, Any]:
        image = await self.resolve_image(part, force_upload=force_upload)
        if image.reference:
            source = {"type": "file", "file_id": image.reference}
        elif image.url:
            source = {"type": "url", "url": image.url}
        else:
            source = {"type": "base64", "media_type": image.mime_type, "data": image.data}
        return {"type": "image", "source": source}

    def _tool_result_block(self, part: Part, context: ConversationContext) -> Dict[str, Any]:
        text = tool_content_text(part.get("content"))
        image = tool_content_image(part.get("content"))
        if image:
            data, mime_type = parse_data_uri(image)
            content: Any = [
                {"type": "text", "text": text or "(image)"},
                {"type": "image", "source": {"type": "base64", "media_type": mime_type, "data": data}},
            ]
        else:
            content = text
        block = {
            "type": "tool_result",
            "tool_use_id": context.id_map.map_id(part["tool_use_id"], self.format),
            "content": content,
        }
        if part.get("is_error"):
            block["is_error"] = True
        return block

    def parse_response(self, data: Any, context: Optional[ConversationContext] = None) -> Optional[Reply]:
        """Parse a Messages API body: text, thinking (with signatures) and tool_use blocks."""
        if not isinstance(data, dict):
            return None
        context = context if context is not None else ConversationContext()
        error = self.extract_error(data)
        if error is not None:
            return error_reply(error, provider=self.provider_id, model=data.get("model"))

        blocks = data.get("content")
        if not isinstance(blocks, list):
            return None

        parts: List[Part] = []
        text = ""
        thinking_blocks: List[str] = []
        signature: Optional[str] = None
        tool_calls: List[ToolCall] = []
        grounding: Optional[Dict[str, Any]] = None

        for block in blocks:
            if not isinstance(block, dict):
                continue
            kind = block.get("type")
            if kind == "text":
                text += block.get("text", "")
                append_part(parts, "text", block.get("text", ""))
            elif kind == "thinking":
                thinking_blocks.append(block.get("thinking", ""))
                part: Part = {"type": "thinking", "text": block.get("thinking", "")}
                if block.get("signature"):
                    part["signature"] = signature = block["signature"]
                parts.append(part)
            elif kind == "tool_use" and not context.xml_tool_calling:
                if not block.get("name"):
                    continue
                call_id = block.get("id") or context.id_map.generate_id(self.format)
                context.id_map.register(call_id, self.format)
                arguments = block.get("input")
                if isinstance(arguments, str):
                    try:
                        arguments = json.loads(arguments)
                    except json.JSONDecodeError as exc:
                        logger.warning("Dropping tool call %s: invalid arguments (%s)", block["name"], exc)
                        continue
                tool_calls.append({"id": call_id, "name": block["name"], "arguments": arguments or {}})
            elif kind == "web_search_tool_result":
                grounding = {"web_search_results": block.get("content")}

        display, tag_thinking = parse_think_tags(text)
        if display != text:
            parts = [p for p in parts if p.get("type") != "text"]
            append_part(parts, "text", display)
        thinking = THINKING_SEPARATOR.join(filter(None, thinking_blocks)) or tag_thinking
        thinking = pick_thinking(thinking, data)

        if context.xml_tool_calling:
            extracted = extract_xml_tool_calls(display)
            if extracted.display_text != display:
                parts = [p for p in parts if p.get("type") != "text"]
                append_part(parts, "text", extracted.display_text)
            display = extracted.display_text
            tool_calls = extracted.tool_calls
            if extracted.thinking:
                thinking = "\n\n".join(filter(None, [thinking, *extracted.thinking]))

        if not display and not thinking and not tool_calls:
            return None
        return build_reply(
            content=display,
            thinking=thinking,
            parts=parts,
            tool_calls=tool_calls,
            thought_signature=signature,
            grounding_metadata=grounding,
            usage=_usage(self.provider_id, data.get("usage")),
            finish_reason=data.get("stop_reason"),
            provider=self.provider_id,
            model=data.get("model"),
        )

    async def list_models(self, api_key: str) -> List[str]:
        """
        Get list of available models from Anthropic.

        Returns:
            List[str]: List of model ids. Empty when the API call fails.
        """
        client = AsyncAnthropic(api_key=api_key, base_url=self.base_url)
        try:
            models = await client.models.list()
        except anthropic.APIError as exc:
            logger.warning("Listing models for %s failed: %s", self.provider_id, exc)
            return []
        return [m.id for m in models.data]
