import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx
from google import genai
from google.genai import errors as genai_errors

from .base import BaseProviderAdapter, int_or_none, pick_thinking
from ..config import GEMINI_THINKING_BUDGETS, GenerationConfig
from ..context import ConversationContext, iter_parts
from ..errors import ErrorKind, ProviderAPIError
from ..id_map import ID_PREFIXES
from ..replies import append_part, build_reply, error_reply, normalize_usage
from ..streaming import BaseStreamParser
from ..think_tags import parse_think_tags
from ..types import Message, Part, ProviderFormat, Reply, ToolCall, Usage
from ..utils import encode_image_url, parse_data_uri, tool_content_image, tool_content_text
from ..xml_tools import extract_xml_tool_calls

logger = logging.getLogger(__name__)

API_VERSION = "v1beta"

# Sent on every request; unset values fall back to these
DEFAULT_GENERATION = {
    "temperature": 1.0,
    "topK": 40,
    "topP": 0.95,
    "maxOutputTokens": 8192,
}

_AI_STUDIO_CATEGORIES = (
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_CIVIC_INTEGRITY",
)
_VERTEX_CATEGORIES = _AI_STUDIO_CATEGORIES + (
    "HARM_CATEGORY_IMAGE_HATE",
    "HARM_CATEGORY_IMAGE_DANGEROUS_CONTENT",
    "HARM_CATEGORY_IMAGE_HARASSMENT",
    "HARM_CATEGORY_IMAGE_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_JAILBREAK",
)

_FOREIGN_PATHS = re.compile(r"(/v1)?/(chat/completions|messages|responses)$")

# Keys of JSON Schema that the functionDeclarations schema rejects
_UNSUPPORTED_SCHEMA_KEYS = frozenset({"$schema", "additionalProperties", "$id", "$ref", "definitions"})


def is_vertex_endpoint(endpoint: str) -> bool:
    return "aiplatform.googleapis.com" in endpoint


def safety_settings(endpoint: str) -> List[Dict[str, str]]:
    """All safety categories switched off, in the dialect of the endpoint."""
    if is_vertex_endpoint(endpoint):
        return [{"category": c, "threshold": "OFF"} for c in _VERTEX_CATEGORIES]
    return [{"category": c, "threshold": "BLOCK_NONE"} for c in _AI_STUDIO_CATEGORIES]


def clean_schema(schema: Any) -> Any:
    """Strip JSON Schema keywords that functionDeclarations do not accept."""
    if isinstance(schema, dict):
        return {k: clean_schema(v) for k, v in schema.items() if k not in _UNSUPPORTED_SCHEMA_KEYS}
    if isinstance(schema, list):
        return [clean_schema(item) for item in schema]
    return schema


def _usage(provider: str, metadata: Optional[Dict[str, Any]]) -> Optional[Usage]:
    if not metadata:
        return None
    return normalize_usage(
        provider,
        input_tokens=int_or_none(metadata.get("promptTokenCount")),
        output_tokens=int_or_none(metadata.get("candidatesTokenCount")),
        total_tokens=int_or_none(metadata.get("totalTokenCount")),
        reasoning_tokens=int_or_none(metadata.get("thoughtsTokenCount")),
        raw=metadata,
    )


def _code_text(part: Dict[str, Any]) -> str:
    """Markdown for executableCode / codeExecutionResult parts."""
    if "executableCode" in part:
        code = part["executableCode"] or {}
        language = str(code.get("language", "")).lower().replace("language_unspecified", "")
        return f"\n```{language}\n{code.get('code', '')}\n```\n"
    result = part.get("codeExecutionResult") or {}
    return f"\n```\n{result.get('output', '')}\n```\n"


def _first_candidate(data: Dict[str, Any]) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    """First candidate and its parts. Malformed shapes give empty results."""
    candidates = data.get("candidates")
    candidate = candidates[0] if isinstance(candidates, list) and candidates else None
    if not isinstance(candidate, dict):
        return {}, []
    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return candidate, []
    return candidate, [p for p in parts if isinstance(p, dict)]


def _blocked(data: Dict[str, Any], provider: str) -> Optional[ProviderAPIError]:
    feedback = data.get("promptFeedback")
    reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
    if not reason:
        return None
    return ProviderAPIError(
        f"Prompt blocked: {reason}",
        kind=ErrorKind.CONTENT_FILTERED,
        error_type=reason,
        provider=provider,
    )


class GeminiStreamParser(BaseStreamParser):
    """
    ``streamGenerateContent`` parser. Each payload is a full
    GenerateContentResponse holding the next slice of candidate parts;
    SSE framing and bare JSON lines are both accepted. The stream ends when
    the connection closes.
    """

    format = ProviderFormat.GEMINI
    accepts_bare_json = True

    def extract_error(self, data: Any) -> Optional[ProviderAPIError]:
        error = super().extract_error(data)
        if error is None and isinstance(data, dict):
            error = _blocked(data, self.provider_id)
        return error

    def handle_payload(self, data: Any) -> None:
        if not isinstance(data, dict):
            return
        candidate, candidate_parts = _first_candidate(data)

        for part in candidate_parts:
            signature = part.get("thoughtSignature")
            if part.get("thought"):
                self.emit_thinking(part.get("text", ""))
                if signature:
                    self.sign_thinking(signature)
            elif "functionCall" in part:
                self._add_function_call(part["functionCall"], signature)
            elif part.get("text"):
                self.emit_text(part["text"])
            elif "inlineData" in part:
                inline = part["inlineData"] if isinstance(part["inlineData"], dict) else {}
                self.emit_image(inline.get("mimeType", "image/png"), inline.get("data", ""))
            elif "executableCode" in part or "codeExecutionResult" in part:
                self.emit_text(_code_text(part))
            if signature:
                self._thought_signature = signature

        # Some proxies send the accumulated reasoning at the top level
        reasoning = pick_thinking("", data)
        if reasoning and len(reasoning) > len(self._thinking):
            self.emit_thinking(reasoning[len(self._thinking):])

        if candidate.get("groundingMetadata"):
            self.emit_grounding(candidate["groundingMetadata"])
        usage = _usage(self.provider_id, data.get("usageMetadata"))
        if usage:
            self.emit_usage(usage)
        if candidate.get("finishReason"):
            self._finish_reason = candidate["finishReason"]

    def _add_function_call(self, call: Dict[str, Any], signature: Optional[str]) -> None:
        if self.context.xml_tool_calling or not isinstance(call, dict) or not call.get("name"):
            return
        tool_call: ToolCall = {
            "id": call.get("id") or self.context.id_map.generate_id(self.format),
            "name": call["name"],
            "arguments": call.get("args") or {},
        }
        if signature:
            tool_call["thought_signature"] = signature
        self.add_tool_call(tool_call)


class GeminiAdapter(BaseProviderAdapter):
    """
    Adapter for the Gemini ``generateContent`` REST API (AI Studio and
    Vertex-style endpoints).
    """

    format = ProviderFormat.GEMINI
    stream_parser_class = GeminiStreamParser

    @property
    def base_url(self) -> str:
        return _FOREIGN_PATHS.sub("", self.config.endpoint.rstrip("/"))

    def endpoint(self, model: str, *, stream: bool, api_key: str) -> Tuple[str, Dict[str, str]]:
        action = "streamGenerateContent" if stream else "generateContent"
        url = f"{self.base_url}/{API_VERSION}/models/{model}:{action}"
        params: Dict[str, str] = {}
        if not self.config.key_in_header:
            params["key"] = api_key
        if stream:
            params["alt"] = "sse"
        return url, params

    def auth_headers(self, api_key: str) -> Dict[str, str]:
        if self.config.key_in_header:
            return {"x-goog-api-key": api_key}
        return {}

    async def build_body(
        self,
        context: ConversationContext,
        generation: GenerationConfig,
        *,
        model: str,
        force_image_upload: bool = False,
    ) -> Dict[str, Any]:
        """
        Build a ``generateContent`` body.

        Handles:
        - Role mapping (assistant -> model) and the systemInstruction field.
        - functionCall / functionResponse parts with ids mapped for Gemini.
        - Thought signatures threaded back onto model parts.
        - Generation defaults, thinking, image output and safety settings.

        Raises:
            ValueError: If no message has anything Gemini can send.
        """
        names = context.tool_names_by_id()
        contents: List[Dict[str, Any]] = []
        for message in self.history(context):
            parts = await self._convert_parts(message, context, names, force_image_upload)
            if parts:
                role = "model" if message.get("role") == "assistant" else "user"
                contents.append({"role": role, "parts": parts})
        if not contents:
            raise ValueError("Every message was empty after conversion; nothing to send to Gemini")
        self._apply_signature(contents, context)

        generation_config = {
            "temperature": generation.temperature,
            "topK": generation.top_k,
            "topP": generation.top_p,
            "maxOutputTokens": generation.max_tokens,
        }
        generation_config = {
            k: v if v is not None else DEFAULT_GENERATION[k] for k, v in generation_config.items()
        }
        if generation.stop:
            generation_config["stopSequences"] = generation.stop
        if generation.image_size:
            generation_config["responseModalities"] = ["TEXT", "IMAGE"]
            generation_config["imageConfig"] = {"imageSize": generation.image_size}
        if generation.thinking.enabled:
            if "gemini-3" in model or "gemini3" in model:
                level = "LOW" if generation.thinking.strength == "low" else "HIGH"
                generation_config["thinkingConfig"] = {"thinkingLevel": level, "includeThoughts": True}
            else:
                generation_config["thinkingConfig"] = {
                    "thinkingBudget": generation.thinking.budget_for(GEMINI_THINKING_BUDGETS),
                    "includeThoughts": True,
                }

        body: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": generation_config,
            "safetySettings": safety_settings(self.config.endpoint),
        }
        system = self.system_text(context)
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        tools: List[Dict[str, Any]] = []
        if generation.code_execution:
            tools.append({"codeExecution": {}})
        if generation.web_search:
            tools.append({"googleSearch": {}})
            tools.append({"urlContext": {}})
        if self.use_native_tools(context):
            tools.append({
                "functionDeclarations": [
                    {
                        "name": tool["name"],
                        "description": tool.get("description", ""),
                        "parameters": clean_schema(
                            tool.get("parameters") or {"type": "object", "properties": {}}
                        ),
                    }
                    for tool in context.tools
                ]
            })
        if tools:
            body["tools"] = tools
        return body

    async def _convert_parts(
        self,
        message: Message,
        context: ConversationContext,
        names: Dict[str, str],
        force_image_upload: bool,
    ) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = []
        for part in iter_parts(message):
            kind = part.get("type")
            if kind == "text" and part.get("text"):
                parts.append({"text": part["text"]})
            elif kind == "image":
                parts.append(await self._image_part(part, force_image_upload))
            elif kind == "tool_use":
                function_call: Dict[str, Any] = {
                    "name": part.get("name", ""),
                    "args": part.get("arguments") or {},
                }
                self._set_call_id(function_call, part["id"], context)
                wire: Dict[str, Any] = {"functionCall": function_call}
                if part.get("thought_signature"):
                    wire["thoughtSignature"] = part["thought_signature"]
                parts.append(wire)
            elif kind == "tool_result":
                parts.append(self._function_response(part, context, names))
        return parts

    def _set_call_id(self, target: Dict[str, Any], call_id: str, context: ConversationContext) -> None:
        # Ids minted locally for Gemini are never sent back
        mapped = context.id_map.map_id(call_id, self.format)
        if not mapped.startswith(ID_PREFIXES[ProviderFormat.GEMINI]):
            target["id"] = mapped

    def _function_response(
        self,
        part: Part,
        context: ConversationContext,
        names: Dict[str, str],
    ) -> Dict[str, Any]:
        content = part.get("content")
        if isinstance(content, str):
            try:
                result: Any = json.loads(content)
            except json.JSONDecodeError:
                result = content
        elif isinstance(content, dict) and "image" in content:
            result = tool_content_text(content)
        else:
            result = content
        name = part.get("name") or names.get(part["tool_use_id"]) or "unknown"
        function_response: Dict[str, Any] = {"name": name, "response": {"result": result}}
        if part.get("is_error"):
            function_response["response"] = {"error": result}
        self._set_call_id(function_response, part["tool_use_id"], context)

        image = tool_content_image(content)
        if image:
            data, mime_type = parse_data_uri(image)
            function_response["parts"] = [{"inlineData": {"mimeType": mime_type, "data": data}}]
        return {"functionResponse": function_response}

    async def _image_part(self, part: Part, force_upload: bool) -> Dict[str, Any]:
        image = await self.resolve_image(part, force_upload=force_upload)
        if image.reference:
            return {"fileData": {"mimeType": image.mime_type, "fileUri": image.reference}}
        if image.url:
            # generateContent only takes inline bytes or uploaded files
            try:
                data, mime_type = await encode_image_url(image.url, client=self.http_client)
            except httpx.HTTPError as exc:
                raise ValueError(f"Could not fetch image {image.url}: {exc}") from exc
            return {"inlineData": {"mimeType": mime_type, "data": data}}
        return {"inlineData": {"mimeType": image.mime_type, "data": image.data}}

    @staticmethod
    def _apply_signature(contents: List[Dict[str, Any]], context: ConversationContext) -> None:
        """Give model parts without a thoughtSignature the newest one in the history."""
        signature = context.latest("thought_signature")
        if signature is None:
            for content in reversed(contents):
                signature = next(
                    (p["thoughtSignature"] for p in content["parts"] if p.get("thoughtSignature")),
                    None,
                )
                if signature:
                    break
        if not signature:
            return
        for content in contents:
            if content["role"] == "model":
                for part in content["parts"]:
                    part.setdefault("thoughtSignature", signature)

    def parse_response(self, data: Any, context: Optional[ConversationContext] = None) -> Optional[Reply]:
        """Parse a ``generateContent`` body."""
        if not isinstance(data, dict):
            return None
        context = context if context is not None else ConversationContext()
        error = self.extract_error(data) or _blocked(data, self.provider_id)
        if error is not None:
            return error_reply(error, provider=self.provider_id, model=data.get("modelVersion"))

        candidate, candidate_parts = _first_candidate(data)
        if not candidate:
            return None

        parts: List[Part] = []
        text, typed_thinking = "", ""
        signature: Optional[str] = None
        tool_calls: List[ToolCall] = []
        for part in candidate_parts:
            if part.get("thoughtSignature"):
                signature = part["thoughtSignature"]
            if part.get("thought"):
                typed_thinking += part.get("text", "")
                append_part(parts, "thinking", part.get("text", ""))
            elif "functionCall" in part and not context.xml_tool_calling:
                call = part["functionCall"] if isinstance(part["functionCall"], dict) else {}
                if not call.get("name"):
                    continue
                call_id = call.get("id") or context.id_map.generate_id(self.format)
                context.id_map.register(call_id, self.format)
                tool_call: ToolCall = {"id": call_id, "name": call["name"], "arguments": call.get("args") or {}}
                if part.get("thoughtSignature"):
                    tool_call["thought_signature"] = part["thoughtSignature"]
                tool_calls.append(tool_call)
            elif part.get("text"):
                text += part["text"]
            elif "inlineData" in part:
                inline = part["inlineData"] if isinstance(part["inlineData"], dict) else {}
                parts.append({"type": "image", "mime_type": inline.get("mimeType", "image/png"),
                              "data": inline.get("data", "")})
            elif "executableCode" in part or "codeExecutionResult" in part:
                text += _code_text(part)

        text, tag_thinking = parse_think_tags(text)
        thinking = pick_thinking(typed_thinking or tag_thinking, data)
        if context.xml_tool_calling:
            extracted = extract_xml_tool_calls(text)
            text = extracted.display_text
            tool_calls = extracted.tool_calls
            if extracted.thinking:
                thinking = "\n\n".join(filter(None, [thinking, *extracted.thinking]))

        if not text and not thinking and not tool_calls and not any(p["type"] == "image" for p in parts):
            return None
        if tag_thinking and not typed_thinking:
            append_part(parts, "thinking", tag_thinking)
        append_part(parts, "text", text)
        return build_reply(
            content=text,
            thinking=thinking,
            parts=parts,
            tool_calls=tool_calls,
            thought_signature=signature,
            grounding_metadata=candidate.get("groundingMetadata"),
            usage=_usage(self.provider_id, data.get("usageMetadata")),
            finish_reason=candidate.get("finishReason"),
            provider=self.provider_id,
            model=data.get("modelVersion"),
        )

    async def list_models(self, api_key: str) -> List[str]:
        """
        Get list of available models from the Gemini API.

        Only models supporting ``generateContent`` are returned.
        """
        client = genai.Client(api_key=api_key)

        def _list() -> List[str]:
            names = []
            for m in client.models.list():
                actions = getattr(m, "supported_actions", None)
                if actions and "generateContent" not in actions:
                    continue
                names.append(m.name.split("/", 1)[-1] if m.name else m.name)
            return names

        try:
            return await asyncio.to_thread(_list)
        except genai_errors.APIError as exc:
            logger.warning("Listing models for %s failed: %s", self.provider_id, exc)
            return []
