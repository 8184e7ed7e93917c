import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import openai
from openai import AsyncOpenAI

from .base import BaseProviderAdapter, int_or_none, pick_thinking
from ..config import GenerationConfig
from ..context import ConversationContext, iter_parts
from ..errors import ProviderAPIError, classify_error_payload
from ..replies import append_part, build_reply, error_reply, normalize_usage
from ..streaming import BaseStreamParser
from ..think_tags import parse_think_tags
from ..types import Message, Part, ProviderFormat, Reply, ToolCall, Usage
from ..utils import parse_data_uri, tool_content_image, tool_content_text
from ..xml_tools import extract_xml_tool_calls

logger = logging.getLogger(__name__)


def _chat_usage(provider: str, usage: Optional[Dict[str, Any]]) -> Optional[Usage]:
    if not usage:
        return None
    details = usage.get("completion_tokens_details") or {}
    return normalize_usage(
        provider,
        input_tokens=int_or_none(usage.get("prompt_tokens")),
        output_tokens=int_or_none(usage.get("completion_tokens")),
        total_tokens=int_or_none(usage.get("total_tokens")),
        reasoning_tokens=int_or_none(details.get("reasoning_tokens")),
        raw=usage,
    )


def _responses_usage(provider: str, usage: Optional[Dict[str, Any]]) -> Optional[Usage]:
    if not usage:
        return None
    details = usage.get("output_tokens_details") or {}
    return normalize_usage(
        provider,
        input_tokens=int_or_none(usage.get("input_tokens")),
        output_tokens=int_or_none(usage.get("output_tokens")),
        total_tokens=int_or_none(usage.get("total_tokens")),
        reasoning_tokens=int_or_none(details.get("reasoning_tokens")),
        raw=usage,
    )


def _image_data_uri(url_or_part: Any) -> Optional[Tuple[str, str]]:
    """(mime type, base64) of an ``image_url`` content item holding a data URI."""
    url = url_or_part.get("url") if isinstance(url_or_part, dict) else url_or_part
    if not isinstance(url, str) or not url.startswith("data:") or "," not in url:
        return None
    data, mime_type = parse_data_uri(url)
    return mime_type, data


def _parse_arguments(raw: Any, name: str) -> Optional[Any]:
    if isinstance(raw, (dict, list)):
        return raw
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Dropping tool call %s: invalid arguments (%s)", name, exc)
        return None


# =============================================================================
# Stream parsers
# =============================================================================

class OpenAIStreamParser(BaseStreamParser):
    """
    Chat Completions stream: ``data: {...}`` chunks with ``choices[0].delta``
    and a ``data: [DONE]`` terminator.
    """

    format = ProviderFormat.OPENAI

    def handle_payload(self, data: Any) -> None:
        if not isinstance(data, dict):
            return
        usage = _chat_usage(self.provider_id, data.get("usage"))
        if usage:
            self.emit_usage(usage)

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return
        choice = choices[0]
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            delta = {}

        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if isinstance(reasoning, str):
            self.emit_thinking(reasoning)

        content = delta.get("content")
        if isinstance(content, str):
            self.emit_text(content)
        elif isinstance(content, list):
            for item in content:
                if not isinstance(item, dict):
                    continue
                if item.get("type") == "text":
                    self.emit_text(item.get("text", ""))
                elif item.get("type") == "image_url":
                    image = _image_data_uri(item.get("image_url"))
                    if image:
                        self.emit_image(*image)

        for tool_call in delta.get("tool_calls") or []:
            if not isinstance(tool_call, dict):
                continue
            index = tool_call.get("index", 0)
            function = tool_call.get("function") or {}
            self._native_calls.add(
                index,
                call_id=tool_call.get("id"),
                name=function.get("name"),
                arguments=function.get("arguments"),
            )
            self.emit_tool_call_delta(
                index,
                call_id=tool_call.get("id"),
                name=function.get("name"),
                arguments=function.get("arguments") or "",
            )

        if choice.get("finish_reason"):
            self._finish_reason = choice["finish_reason"]


class OpenAIResponsesStreamParser(BaseStreamParser):
    """
    Responses API stream: typed ``response.*`` events. Proxies that send
    whole ``output[]`` snapshots per line are understood as well.
    """

    format = ProviderFormat.OPENAI

    def extract_error(self, data: Any) -> Optional[ProviderAPIError]:
        if isinstance(data, dict):
            if data.get("type") == "error":
                return classify_error_payload({"error": data}, provider=self.provider_id)
            if data.get("type") == "response.failed":
                error = (data.get("response") or {}).get("error") or {"message": "Response failed"}
                return classify_error_payload({"error": error}, provider=self.provider_id)
        return super().extract_error(data)

    def handle_payload(self, data: Any) -> None:
        if not isinstance(data, dict):
            return
        kind = data.get("type", "")
        index = data.get("output_index", 0)

        if kind == "response.output_text.delta":
            self.emit_text(data.get("delta", ""))
        elif kind in ("response.reasoning_summary_text.delta", "response.reasoning_text.delta"):
            self.emit_thinking(data.get("delta", ""))
        elif kind == "response.output_item.added":
            item = data.get("item") if isinstance(data.get("item"), dict) else {}
            if item.get("type") == "function_call":
                self._native_calls.start(index, item.get("call_id"), item.get("name"))
                self.emit_tool_call_delta(index, call_id=item.get("call_id"), name=item.get("name"))
        elif kind == "response.function_call_arguments.delta":
            self._native_calls.add(index, arguments=data.get("delta", ""))
            self.emit_tool_call_delta(index, arguments=data.get("delta", ""))
        elif kind == "response.function_call_arguments.done":
            if self._native_calls.has(index) and isinstance(data.get("arguments"), str):
                self._native_calls.set_arguments(index, data["arguments"])
        elif kind == "response.output_item.done":
            item = data.get("item") if isinstance(data.get("item"), dict) else {}
            if item.get("type") == "reasoning" and item.get("encrypted_content"):
                self._encrypted_reasoning = item["encrypted_content"]
        elif kind in ("response.completed", "response.incomplete"):
            response = data.get("response") or {}
            usage = _responses_usage(self.provider_id, response.get("usage"))
            if usage:
                self.emit_usage(usage)
            self._finish_reason = response.get("status")
            self._finish()
        elif isinstance(data.get("output"), list):
            self._handle_snapshot(data)

    def _handle_snapshot(self, data: Dict[str, Any]) -> None:
        had_text = bool(self._text)
        for item in data["output"]:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "reasoning":
                content = item.get("content")
                if isinstance(content, str):
                    self.emit_thinking(content)
                if item.get("encrypted_content"):
                    self._encrypted_reasoning = item["encrypted_content"]
            elif item.get("type") == "message":
                text = item.get("text")
                if not text and isinstance(item.get("content"), list):
                    text = "".join(c.get("text", "") for c in item["content"] if isinstance(c, dict))
                if text:
                    self.emit_text(text)
        if not had_text and not self._text and isinstance(data.get("output_text"), str):
            self.emit_text(data["output_text"])


# =============================================================================
# Adapter
# =============================================================================

class OpenAIAdapter(BaseProviderAdapter):
    """
    Adapter for OpenAI-compatible APIs (OpenAI, DeepSeek, local servers),
    in Chat Completions or Responses mode.
    """

    format = ProviderFormat.OPENAI
    stream_parser_class = OpenAIStreamParser

    @property
    def responses_mode(self) -> bool:
        return self.config.api_mode == "responses"

    @property
    def base_url(self) -> str:
        url = self.config.endpoint.rstrip("/")
        for suffix in ("/chat/completions", "/responses"):
            if url.endswith(suffix):
                return url[: -len(suffix)]
        return url

    def endpoint(self, model: str, *, stream: bool, api_key: str) -> Tuple[str, Dict[str, str]]:
        url = self.config.endpoint
        if self.responses_mode:
            url = url.replace("/chat/completions", "/responses")
        return url, {}

    def auth_headers(self, api_key: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    def stream_parser(
        self,
        context: Optional[ConversationContext] = None,
        *,
        model: Optional[str] = None,
    ) -> BaseStreamParser:
        parser_class = OpenAIResponsesStreamParser if self.responses_mode else OpenAIStreamParser
        return parser_class(context, provider_id=self.provider_id, model=model)

    # ------------------------------------------------------------------
    # Chat Completions body
    # ------------------------------------------------------------------

    async def build_body(
        self,
        context: ConversationContext,
        generation: GenerationConfig,
        *,
        model: str,
        force_image_upload: bool = False,
    ) -> Dict[str, Any]:
        """
        Build a Chat Completions (or Responses) body.

        Handles:
        - System prompt as the first message.
        - Multimodal content (data URIs, URLs, uploaded file ids).
        - Tool calls and results with ids mapped for this provider.
        - Sampling options: unset values are omitted.
        """
        if self.responses_mode:
            return await self._build_responses_body(
                context, generation, model=model, force_image_upload=force_image_upload
            )

        messages: List[Dict[str, Any]] = []
        system = self.system_text(context)
        if system:
            messages.append({"role": "system", "content": system})
        for message in self.history(context):
            messages.extend(await self._convert_message(message, context, force_image_upload))

        body: Dict[str, Any] = {"model": model, "messages": messages, "stream": generation.stream}
        if generation.stream:
            body["stream_options"] = {"include_usage": True}

        optional_params = {
            "temperature": generation.temperature,
            "max_tokens": generation.max_tokens,
            "top_p": generation.top_p,
            "frequency_penalty": generation.frequency_penalty,
            "presence_penalty": generation.presence_penalty,
            "stop": generation.stop,
            "verbosity": generation.verbosity,
        }
        body.update({k: v for k, v in optional_params.items() if v is not None})

        if generation.thinking.enabled:
            body["reasoning_effort"] = generation.thinking.effort

        if self.use_native_tools(context):
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool["name"],
                        "description": tool.get("description", ""),
                        "parameters": tool.get("parameters") or {"type": "object", "properties": {}},
                    },
                }
                for tool in context.tools
            ]
            body["tool_choice"] = "auto"
            body["parallel_tool_calls"] = True
        return body

    async def _convert_message(
        self,
        message: Message,
        context: ConversationContext,
        force_image_upload: bool,
    ) -> List[Dict[str, Any]]:
        converted: List[Dict[str, Any]] = []
        content: List[Dict[str, Any]] = []
        tool_calls: List[Dict[str, Any]] = []
        tool_images: List[Dict[str, Any]] = []

        for part in iter_parts(message):
            kind = part.get("type")
            if kind == "text" and part.get("text"):
                content.append({"type": "text", "text": part["text"]})
            elif kind == "image":
                content.append(await self._image_item(part, force_image_upload))
            elif kind == "tool_use":
                tool_calls.append({
                    "id": context.id_map.map_id(part["id"], self.format),
                    "type": "function",
                    "function": {
                        "name": part.get("name", ""),
                        "arguments": json.dumps(part.get("arguments", {}), ensure_ascii=False),
                    },
                })
            elif kind == "tool_result":
                converted.append({
                    "role": "tool",
                    "tool_call_id": context.id_map.map_id(part["tool_use_id"], self.format),
                    "content": tool_content_text(part.get("content")) or "(empty)",
                })
                image = tool_content_image(part.get("content"))
                if image:
                    tool_images.append({"type": "image_url", "image_url": {"url": image}})

        role = message.get("role", "user")
        if role == "assistant":
            text = "".join(item["text"] for item in content if item["type"] == "text")
            if text or tool_calls:
                entry: Dict[str, Any] = {"role": "assistant", "content": text or None}
                if tool_calls:
                    entry["tool_calls"] = tool_calls
                converted.append(entry)
            return converted

        content = tool_images + content
        if content:
            if all(item["type"] == "text" for item in content):
                converted.append({"role": role, "content": "".join(i["text"] for i in content)})
            else:
                converted.append({"role": role, "content": content})
        return converted

    async def _image_item(self, part: Part, force_upload: bool) -> Dict[str, Any]:
        image = await self.resolve_image(part, force_upload=force_upload)
        if image.reference:
            return {"type": "file", "file": {"file_id": image.reference}}
        url = image.url or f"data:{image.mime_type};base64,{image.data}"
        return {"type": "image_url", "image_url": {"url": url}}

    # ------------------------------------------------------------------
    # Responses body
    # ------------------------------------------------------------------

    async def _build_responses_body(
        self,
        context: ConversationContext,
        generation: GenerationConfig,
        *,
        model: str,
        force_image_upload: bool,
    ) -> Dict[str, Any]:
        items: List[Dict[str, Any]] = []
        system = self.system_text(context)
        if system:
            items.append({"role": "system", "content": system})

        reasoning_at: Optional[int] = None
        encrypted: Optional[str] = None
        for message in self.history(context):
            if message.get("role") == "assistant" and message.get("encrypted_reasoning"):
                reasoning_at, encrypted = len(items), message["encrypted_reasoning"]
            items.extend(await self._convert_responses_message(message, context, force_image_upload))
        if encrypted is not None:
            items.insert(reasoning_at, {"type": "reasoning", "encrypted_content": encrypted, "summary": []})

        body: Dict[str, Any] = {
            "model": model,
            "input": items,
            "stream": generation.stream,
            "include": ["reasoning.encrypted_content"],
        }
        optional_params = {
            "temperature": generation.temperature,
            "max_output_tokens": generation.max_tokens,
            "top_p": generation.top_p,
        }
        body.update({k: v for k, v in optional_params.items() if v is not None})

        if generation.thinking.enabled:
            body["reasoning"] = {"effort": generation.thinking.effort, "summary": "auto"}
        elif generation.thinking.none_mode:
            body["reasoning"] = {"effort": "none"}
        if generation.verbosity:
            body["text"] = {"verbosity": generation.verbosity}

        tools: List[Dict[str, Any]] = []
        if self.use_native_tools(context):
            tools.extend(
                {
                    "type": "function",
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "parameters": tool.get("parameters") or {"type": "object", "properties": {}},
                }
                for tool in context.tools
            )
        if generation.web_search:
            tools.append({"type": "web_search"})
        if generation.code_execution:
            tools.append({"type": "code_interpreter", "container": {"type": "auto"}})
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
            body["parallel_tool_calls"] = True
        return body

    async def _convert_responses_message(
        self,
        message: Message,
        context: ConversationContext,
        force_image_upload: bool,
    ) -> List[Dict[str, Any]]:
        role = message.get("role", "user")
        items: List[Dict[str, Any]] = []
        content: List[Dict[str, Any]] = []
        text_type = "output_text" if role == "assistant" else "input_text"

        for part in iter_parts(message):
            kind = part.get("type")
            if kind == "text" and part.get("text"):
                content.append({"type": text_type, "text": part["text"]})
            elif kind == "image" and role != "assistant":
                image = await self.resolve_image(part, force_upload=force_image_upload)
                if image.reference:
                    content.append({"type": "input_image", "file_id": image.reference})
                else:
                    url = image.url or f"data:{image.mime_type};base64,{image.data}"
                    content.append({"type": "input_image", "image_url": url})
            elif kind == "tool_use":
                items.append({
                    "type": "function_call",
                    "call_id": context.id_map.map_id(part["id"], self.format),
                    "name": part.get("name", ""),
                    "arguments": json.dumps(part.get("arguments", {}), ensure_ascii=False),
                })
            elif kind == "tool_result":
                items.append({
                    "type": "function_call_output",
                    "call_id": context.id_map.map_id(part["tool_use_id"], self.format),
                    "output": tool_content_text(part.get("content")) or "(empty)",
                })
                image = tool_content_image(part.get("content"))
                if image:
                    content.insert(0, {"type": "input_image", "image_url": image})

        if content:
            message_item = {"role": role, "content": content}
            if role == "assistant":
                items.insert(0, message_item)
            else:
                items.append(message_item)
        return items

    # ------------------------------------------------------------------
    # Response parsing
    # ------------------------------------------------------------------

    def parse_response(self, data: Any, context: Optional[ConversationContext] = None) -> Optional[Reply]:
        """
        Parse a Chat Completions or Responses body.

        Native tool calls take precedence; in XML mode the text is scanned for
        tool tags instead.
        """
        if not isinstance(data, dict):
            return None
        context = context if context is not None else ConversationContext()
        error = self.extract_error(data)
        if error is not None:
            return error_reply(error, provider=self.provider_id, model=data.get("model"))
        if isinstance(data.get("output"), list) or data.get("object") == "response":
            return self._parse_responses(data, context)

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return None
        choice = choices[0]
        message = choice.get("message")
        if not isinstance(message, dict):
            message = {}

        parts: List[Part] = []
        content = message.get("content")
        text = ""
        if isinstance(content, str):
            text = content
        elif isinstance(content, list):
            for item in content:
                if not isinstance(item, dict):
                    continue
                if item.get("type") == "text":
                    text += item.get("text", "")
                elif item.get("type") == "image_url":
                    image = _image_data_uri(item.get("image_url"))
                    if image:
                        parts.append({"type": "image", "mime_type": image[0], "data": image[1]})

        text, tag_thinking = parse_think_tags(text)
        typed = message.get("reasoning_content") or message.get("reasoning")
        thinking = pick_thinking(typed if isinstance(typed, str) and typed else tag_thinking, data)

        tool_calls: List[ToolCall] = []
        if message.get("tool_calls") and not context.xml_tool_calling:
            for tool_call in message["tool_calls"]:
                if not isinstance(tool_call, dict):
                    continue
                function = tool_call.get("function") or {}
                name = function.get("name", "")
                arguments = _parse_arguments(function.get("arguments"), name)
                if arguments is None or not name:
                    continue
                call_id = tool_call.get("id") or context.id_map.generate_id(self.format)
                context.id_map.register(call_id, self.format)
                tool_calls.append({"id": call_id, "name": name, "arguments": arguments})
        elif context.xml_tool_calling:
            extracted = extract_xml_tool_calls(text)
            text = extracted.display_text
            tool_calls = extracted.tool_calls
            if extracted.thinking:
                thinking = "\n\n".join(filter(None, [thinking, *extracted.thinking]))

        if not text and not thinking and not tool_calls and not parts:
            return None

        ordered: List[Part] = []
        append_part(ordered, "thinking", thinking)
        append_part(ordered, "text", text)
        return build_reply(
            content=text,
            thinking=thinking,
            parts=ordered + parts,
            tool_calls=tool_calls,
            usage=_chat_usage(self.provider_id, data.get("usage")),
            finish_reason=choice.get("finish_reason"),
            provider=self.provider_id,
            model=data.get("model"),
        )

    def _parse_responses(self, data: Dict[str, Any], context: ConversationContext) -> Optional[Reply]:
        text, typed_thinking = "", ""
        encrypted: Optional[str] = None
        tool_calls: List[ToolCall] = []
        images: List[Part] = []

        for item in data.get("output") or []:
            if not isinstance(item, dict):
                continue
            kind = item.get("type")
            if kind == "reasoning":
                summary = item.get("summary") or []
                content = item.get("content")
                pieces = [s.get("text", "") for s in summary if isinstance(s, dict)]
                if isinstance(content, str):
                    pieces.append(content)
                elif isinstance(content, list):
                    pieces.extend(c.get("text", "") for c in content if isinstance(c, dict))
                typed_thinking += "".join(pieces)
                if item.get("encrypted_content"):
                    encrypted = item["encrypted_content"]
            elif kind == "message":
                if isinstance(item.get("text"), str):
                    text += item["text"]
                for content in item.get("content") or []:
                    if isinstance(content, dict) and content.get("type") in ("output_text", "text", "refusal"):
                        text += content.get("text") or content.get("refusal") or ""
            elif kind == "function_call" and not context.xml_tool_calling:
                name = item.get("name", "")
                arguments = _parse_arguments(item.get("arguments"), name)
                if arguments is None or not name:
                    continue
                call_id = item.get("call_id") or item.get("id") or context.id_map.generate_id(self.format)
                context.id_map.register(call_id, self.format)
                tool_calls.append({"id": call_id, "name": name, "arguments": arguments})
            elif kind == "image_generation_call" and item.get("result"):
                images.append({"type": "image", "mime_type": "image/png", "data": item["result"]})

        if not text and isinstance(data.get("output_text"), str):
            text = data["output_text"]
        text, tag_thinking = parse_think_tags(text)
        thinking = pick_thinking(typed_thinking or tag_thinking, data)

        if context.xml_tool_calling:
            extracted = extract_xml_tool_calls(text)
            text = extracted.display_text
            tool_calls = extracted.tool_calls
            if extracted.thinking:
                thinking = "\n\n".join(filter(None, [thinking, *extracted.thinking]))

        if not text and not thinking and not tool_calls and not images:
            return None

        ordered: List[Part] = []
        append_part(ordered, "thinking", thinking)
        append_part(ordered, "text", text)
        return build_reply(
            content=text,
            thinking=thinking,
            parts=ordered + images,
            tool_calls=tool_calls,
            encrypted_reasoning=encrypted,
            usage=_responses_usage(self.provider_id, data.get("usage")),
            finish_reason=data.get("status"),
            provider=self.provider_id,
            model=data.get("model"),
        )

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    async def list_models(self, api_key: str) -> List[str]:
        """
        Get list of available models from the provider API.

        Returns:
            List[str]: List of model ids. Empty when the API call fails.
        """
        client = AsyncOpenAI(api_key=api_key, base_url=self.base_url)
        try:
            models = await client.models.list()
        except openai.APIError as exc:
            logger.warning("Listing models for %s failed: %s", self.provider_id, exc)
            return []
        return [m.id for m in models.data]
