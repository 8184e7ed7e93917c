"""
Provider-neutral machinery for incremental stream parsing.

A stream parser receives raw byte chunks, splits them into lines, turns each
complete line into canonical StreamEvents, and keeps the running totals needed
to build the final Reply. Each parser instance belongs to exactly one stream.
"""
import codecs
import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from .context import ConversationContext
from .errors import (
    LLMWireError, ParseError, ProviderAPIError, RequestCancelled,
    classify_error_payload,
)
from .replies import append_part, build_reply, error_kind_of, error_reply
from .think_tags import ThinkTagParser
from .transport import CancelToken
from .types import (
    Part, ProviderFormat, Reply, StreamEvent, ToolCall, Usage,
)
from .xml_tools import XMLToolAccumulator

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_MALFORMED = 3
MAX_RESPONSE_CHARS = 200_000


class StreamState(str, Enum):
    BUFFERING = "buffering"
    DISPATCHING = "dispatching"
    DONE = "done"
    ERRORED = "errored"


class ToolCallAccumulator:
    """
    Collects native tool-call fragments keyed by stream index (OpenAI delta
    index, Anthropic content block index, Responses output index).
    """

    def __init__(self):
        self._slots: Dict[int, Dict[str, str]] = {}

    def __bool__(self) -> bool:
        return bool(self._slots)

    def start(self, index: int, call_id: Optional[str] = None, name: Optional[str] = None) -> None:
        slot = self._slots.setdefault(index, {"id": "", "name": "", "arguments": ""})
        if call_id:
            slot["id"] = call_id
        if name:
            slot["name"] = name

    def add(
        self,
        index: int,
        *,
        call_id: Optional[str] = None,
        name: Optional[str] = None,
        arguments: Optional[str] = None,
    ) -> None:
        """Merge one fragment. Names and arguments arrive in pieces."""
        slot = self._slots.setdefault(index, {"id": "", "name": "", "arguments": ""})
        if call_id:
            slot["id"] = call_id
        if name:
            slot["name"] += name
        if arguments:
            slot["arguments"] += arguments

    def set_arguments(self, index: int, arguments: str) -> None:
        self._slots.setdefault(index, {"id": "", "name": "", "arguments": ""})["arguments"] = arguments

    def has(self, index: int) -> bool:
        return index in self._slots

    def finalize(self) -> List[ToolCall]:
        """
        Completed calls in index order. Calls without a name or with
        unparseable arguments are logged and dropped.
        """
        calls: List[ToolCall] = []
        for index in sorted(self._slots):
            slot = self._slots[index]
            if not slot["name"]:
                logger.warning("Dropping tool call %s without a name", slot["id"] or index)
                continue
            raw = slot["arguments"].strip()
            try:
                arguments = json.loads(raw) if raw else {}
            except json.JSONDecodeError as exc:
                logger.warning("Dropping tool call %s: invalid arguments (%s)", slot["name"], exc)
                continue
            calls.append({"id": slot["id"], "name": slot["name"], "arguments": arguments})
        return calls


class BaseStreamParser(ABC):
    """
    Line-buffering stream parser.

    Subclasses implement :meth:`handle_payload` for one decoded JSON payload
    and may override :meth:`extract_error` and :meth:`finalize_tool_calls`.

    Args:
        context (ConversationContext, optional): Conversation the stream
            belongs to; supplies the id map and the XML tool-calling flag.
        provider_id (str, optional): Recorded on the final reply.
        model (str, optional): Recorded on the final reply.
    """

    format: ProviderFormat
    # Lines without a "data:" prefix are JSON payloads (Gemini)
    accepts_bare_json = False

    def __init__(
        self,
        context: Optional[ConversationContext] = None,
        *,
        provider_id: Optional[str] = None,
        model: Optional[str] = None,
    ):
        self.context = context if context is not None else ConversationContext()
        self.provider_id = provider_id or self.format.value
        self.model = model
        self._reset_state()

    def _reset_state(self) -> None:
        self.state = StreamState.BUFFERING
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._line_buffer = ""
        self._malformed = 0
        self._events: List[StreamEvent] = []
        self._text = ""
        self._thinking = ""
        self._parts: List[Part] = []
        self._tool_calls: List[ToolCall] = []
        self._native_calls = ToolCallAccumulator()
        self._usage: Optional[Usage] = None
        self._grounding: Optional[Dict[str, Any]] = None
        self._finish_reason: Optional[str] = None
        self._thought_signature: Optional[str] = None
        self._encrypted_reasoning: Optional[str] = None
        self._error: Optional[LLMWireError] = None
        self._truncated = False
        self._reply: Optional[Reply] = None
        self._xml = XMLToolAccumulator() if self.context.xml_tool_calling else None
        self._think = ThinkTagParser()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def finished(self) -> bool:
        return self.state in (StreamState.DONE, StreamState.ERRORED)

    @property
    def error(self) -> Optional[LLMWireError]:
        return self._error

    def feed(self, chunk: Union[bytes, str]) -> List[StreamEvent]:
        """
        Consume one chunk and return the events it completed.

        A trailing partial line is kept until the next chunk.
        """
        if self.finished:
            return []
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._line_buffer += text
        *lines, self._line_buffer = self._line_buffer.split("\n")
        for line in lines:
            if self.finished:
                break
            self._dispatch_line(line)
        return self._drain()

    def close(self) -> List[StreamEvent]:
        """End of input: flush the last line and finish if not done yet."""
        if not self.finished:
            self._line_buffer += self._decoder.decode(b"", final=True)
            rest, self._line_buffer = self._line_buffer, ""
            if rest.strip():
                self._dispatch_line(rest)
            if not self.finished:
                self._finish()
        return self._drain()

    def discard(self) -> None:
        """Drop all partial state without finalizing (used on cancellation)."""
        self._reset_state()
        self.state = StreamState.DONE
        self._events.clear()

    def reply(self) -> Optional[Reply]:
        """The final Reply once the stream has finished."""
        return self._reply

    async def parse(
        self,
        chunks: AsyncIterator[bytes],
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Drive the parser from an async byte iterator.

        Raises:
            RequestCancelled: If ``cancel`` fires; partial state is discarded.
        """
        try:
            async for chunk in chunks:
                if cancel is not None and cancel.cancelled:
                    raise RequestCancelled("Request cancelled")
                for event in self.feed(chunk):
                    yield event
                if self.finished:
                    return
            if cancel is not None:
                cancel.raise_if_cancelled()
        except RequestCancelled:
            self.discard()
            raise
        for event in self.close():
            yield event

    # ------------------------------------------------------------------
    # Provider hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def handle_payload(self, data: Any) -> None:
        """Turn one decoded JSON payload into events via the ``emit_*`` helpers."""

    def extract_error(self, data: Any) -> Optional[ProviderAPIError]:
        """Error envelope carried by ``data``, if any."""
        return classify_error_payload(data, provider=self.provider_id)

    def finalize_tool_calls(self) -> None:
        """Move accumulated native tool calls into the reply."""
        for call in self._native_calls.finalize():
            self.add_tool_call(call, emit=False)

    # ------------------------------------------------------------------
    # Line handling
    # ------------------------------------------------------------------

    def _dispatch_line(self, raw_line: str) -> None:
        line = raw_line.strip()
        if not line or line.startswith(":"):
            return
        if line.startswith(("event:", "id:", "retry:")):
            return
        if line.startswith("data:"):
            payload = line[5:].strip()
        elif self.accepts_bare_json:
            payload = line
            if payload in ("[", "]", ","):
                return
        else:
            logger.debug("Ignoring non-data line: %.80s", line)
            return
        if not payload:
            return
        if payload == "[DONE]":
            self._finish()
            return

        self.state = StreamState.DISPATCHING
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            self._malformed += 1
            logger.warning(
                "Skipping malformed stream line (%d in a row): %s", self._malformed, exc
            )
            if self._malformed >= MAX_CONSECUTIVE_MALFORMED:
                self.fail(ParseError(
                    f"Stream corrupted: {self._malformed} consecutive malformed lines"
                ))
            else:
                self.state = StreamState.BUFFERING
            return
        self._malformed = 0

        error = self.extract_error(data)
        if error is not None:
            self.fail(error)
            return

        self.handle_payload(data)
        if not self.finished:
            self.state = StreamState.BUFFERING

    # ------------------------------------------------------------------
    # Emit helpers
    # ------------------------------------------------------------------

    def emit_text(self, text: str) -> None:
        """
        Route generated text through XML tool extraction (when enabled) and
        ``<think>`` splitting, then record it.
        """
        if not text or self._truncated:
            return
        remaining = MAX_RESPONSE_CHARS - len(self._text)
        if len(text) > remaining:
            logger.warning("Response exceeded %d characters; truncating", MAX_RESPONSE_CHARS)
            text = text[:max(remaining, 0)]
            self._truncated = True

        if self._xml is not None:
            self._apply_xml(self._xml.process(text))
        else:
            self._emit_display(text)

        if self._truncated:
            self._finish()

    def _apply_xml(self, result) -> None:
        for kind, value in result.segments:
            if kind == "text":
                self._emit_display(value)
            elif kind == "thinking":
                self.emit_thinking(value)
            elif kind == "tool_call":
                self.add_tool_call(value)
            else:
                self._events.append({
                    "type": "error",
                    "error_kind": error_kind_of(value).value,
                    "message": str(value),
                    "retryable": False,
                    "terminal": False,
                })

    def _emit_display(self, text: str) -> None:
        split = self._think.process(text)
        if split.thinking:
            self.emit_thinking(split.thinking)
        if split.display_text:
            self._text += split.display_text
            append_part(self._parts, "text", split.display_text)
            self._events.append({"type": "text_delta", "text": split.display_text})

    def emit_thinking(self, text: str, *, separator: str = "") -> None:
        if not text:
            return
        if separator and self._thinking:
            self._thinking += separator
        self._thinking += text
        append_part(self._parts, "thinking", text)
        self._events.append({"type": "thinking_delta", "text": text})

    def emit_image(self, mime_type: str, data: str) -> None:
        self._parts.append({"type": "image", "mime_type": mime_type, "data": data})
        self._events.append({"type": "image", "mime_type": mime_type, "data": data})

    def emit_grounding(self, metadata: Dict[str, Any]) -> None:
        self._grounding = metadata
        self._events.append({"type": "grounding", "metadata": metadata})

    def emit_usage(self, usage: Usage) -> None:
        self._usage = usage
        self._events.append({"type": "usage", "usage": usage})

    def emit_tool_call_delta(
        self,
        index: int,
        *,
        call_id: Optional[str] = None,
        name: Optional[str] = None,
        arguments: str = "",
    ) -> None:
        event = {"type": "tool_call_delta", "index": index, "arguments_delta": arguments}
        if call_id:
            event["id"] = call_id
        if name:
            event["name"] = name
        self._events.append(event)

    def add_tool_call(self, call: ToolCall, *, emit: bool = True) -> None:
        """Record a complete tool call and register its id."""
        if call.get("id"):
            self.context.id_map.register(call["id"], self.format)
        index = len(self._tool_calls)
        self._tool_calls.append(call)
        if emit:
            self.emit_tool_call_delta(
                index,
                call_id=call.get("id"),
                name=call.get("name"),
                arguments=json.dumps(call.get("arguments", {}), ensure_ascii=False),
            )

    def sign_thinking(self, signature: str, text: str = "") -> None:
        """Attach ``signature`` to the thinking block that just ended."""
        self._thought_signature = signature
        for part in reversed(self._parts):
            if part.get("type") == "thinking" and "signature" not in part:
                part["signature"] = signature
                return
        self._parts.append({"type": "thinking", "text": text, "signature": signature})

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def fail(self, error: LLMWireError) -> None:
        """Terminal error: emit an ErrorEvent then Done with an error reply."""
        if self.finished:
            return
        logger.warning("Stream from %s failed: %s", self.provider_id, error)
        self._error = error
        self.state = StreamState.ERRORED
        event = {
            "type": "error",
            "error_kind": error_kind_of(error).value,
            "message": str(error),
            "status_code": getattr(error, "status_code", None),
            "retryable": bool(getattr(error, "retryable", False)),
            "terminal": True,
        }
        self._events.append(event)
        self._reply = error_reply(
            error, partial=self._build_reply(), provider=self.provider_id, model=self.model
        )
        self._events.append({"type": "done", "reply": self._reply})

    def _finish(self) -> None:
        if self.finished:
            return
        if self._xml is not None:
            self._apply_xml(self._xml.finish())
        rest = self._think.flush()
        if rest.thinking:
            self.emit_thinking(rest.thinking)
        if rest.display_text:
            self._text += rest.display_text
            append_part(self._parts, "text", rest.display_text)
            self._events.append({"type": "text_delta", "text": rest.display_text})

        self.finalize_tool_calls()
        self.state = StreamState.DONE
        self._reply = self._build_reply()
        self._events.append({"type": "done", "reply": self._reply})

    def _build_reply(self) -> Reply:
        return build_reply(
            content=self._text,
            thinking=self._thinking,
            parts=list(self._parts),
            tool_calls=list(self._tool_calls),
            thought_signature=self._thought_signature,
            encrypted_reasoning=self._encrypted_reasoning,
            grounding_metadata=self._grounding,
            usage=self._usage,
            finish_reason=self._finish_reason,
            provider=self.provider_id,
            model=self.model,
        )

    def _drain(self) -> List[StreamEvent]:
        events, self._events = self._events, []
        return events
