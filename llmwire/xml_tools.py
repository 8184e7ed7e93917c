"""
Text-embedded tool calling.

Used when a provider has no native tool calling (or it is switched off): the
tools are described to the model as an XML grammar in the system prompt, and
tool calls are recovered from tags in the generated text.

Recognized tool-call spellings::

    <tool_use><name>search</name><arguments>{"q": "x"}</arguments></tool_use>
    <tool_call><name>search</name><arguments>{"q": "x"}</arguments></tool_call>
    <invoke name="search"><parameter name="q">x</parameter></invoke>

Reasoning may be wrapped in ``<thinking>...</thinking>``.
"""
import html
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Tuple

from .errors import CapacityError, LLMWireError, ParseError
from .types import Tool, ToolCall

logger = logging.getLogger(__name__)

MAX_BUFFER_CHARS = 50_000
MAX_TOOL_TAG_CHARS = 10_000
MAX_THINKING_TAG_CHARS = 10_000
# Longest partial "<invoke name=..." kept back while waiting for its ">"
MAX_HOLDBACK_CHARS = 256

THINKING_TAG = "thinking"
_SIMPLE_OPEN_TAGS = ("<tool_use>", "<tool_call>", "<thinking>")

_OPEN_RE = re.compile(
    r"<(tool_use|tool_call|thinking)>"
    r"|<invoke\s+name\s*=\s*(?:\"([^\"]*)\"|'([^']*)')\s*>"
)
_NAME_RE = re.compile(r"<name>\s*(.*?)\s*</name>", re.DOTALL)
_ARGUMENTS_RE = re.compile(r"<arguments>\s*(.*?)\s*</arguments>", re.DOTALL)
_PARAMETER_RE = re.compile(
    r"<parameter\s+name\s*=\s*(?:\"([^\"]*)\"|'([^']*)')\s*>(.*?)</parameter>",
    re.DOTALL,
)


@dataclass
class XMLDeltaResult:
    """
    What one delta produced.

    ``segments`` holds the same output as the other fields, in arrival order:
    ``("text", str)``, ``("thinking", str)``, ``("tool_call", ToolCall)`` and
    ``("error", LLMWireError)`` pairs. Adjacent text is merged.
    """
    display_text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    thinking: List[str] = field(default_factory=list)
    errors: List[LLMWireError] = field(default_factory=list)
    segments: List[Tuple[str, Any]] = field(default_factory=list)

    def add_text(self, text: str) -> None:
        if not text:
            return
        self.display_text += text
        if self.segments and self.segments[-1][0] == "text":
            self.segments[-1] = ("text", self.segments[-1][1] + text)
        else:
            self.segments.append(("text", text))

    def add_thinking(self, text: str) -> None:
        self.thinking.append(text)
        self.segments.append(("thinking", text))

    def add_tool_call(self, call: ToolCall) -> None:
        self.tool_calls.append(call)
        self.segments.append(("tool_call", call))

    def add_error(self, error: LLMWireError) -> None:
        self.errors.append(error)
        self.segments.append(("error", error))

    def extend(self, other: "XMLDeltaResult") -> None:
        for kind, value in other.segments:
            if kind == "text":
                self.add_text(value)
            elif kind == "thinking":
                self.add_thinking(value)
            elif kind == "tool_call":
                self.add_tool_call(value)
            else:
                self.add_error(value)


def _holdback_len(text: str) -> int:
    """Length of a trailing fragment that may still become an opening tag."""
    start = text.rfind("<")
    if start == -1:
        return 0
    fragment = text[start:]
    if ">" in fragment:
        return 0
    if any(tag.startswith(fragment) for tag in _SIMPLE_OPEN_TAGS):
        return len(fragment)
    if "<invoke".startswith(fragment):
        return len(fragment)
    if fragment.startswith("<invoke") and fragment[7:8].isspace() and len(fragment) <= MAX_HOLDBACK_CHARS:
        return len(fragment)
    return 0


def _parse_json_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return json.loads(html.unescape(raw))


class XMLToolAccumulator:
    """
    Streaming extractor of XML tool calls and thinking blocks.

    Feed text deltas to :meth:`process`; text outside tags is returned as
    display text, completed tags as tool calls or thinking blocks. Tags may be
    split at any character. A tag whose body outgrows its cap, or that does
    not parse, is dropped on its own; accumulation continues with the text
    that follows it.
    """

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        """Clear all state so the accumulator can be reused for a new stream."""
        self.buffer = ""
        self.display_text = ""
        self.inside_tool_tag = False
        self.inside_thinking_tag = False
        self.current_tool_xml = ""
        self.current_thinking_xml = ""
        self.completed_calls: List[ToolCall] = []
        self.thinking_blocks: List[str] = []
        self.errors: List[LLMWireError] = []
        self._tag: Optional[str] = None
        self._invoke_name: Optional[str] = None
        self._call_index = 0

    @property
    def inside_tag(self) -> bool:
        return self.inside_tool_tag or self.inside_thinking_tag

    def process(self, delta: str) -> XMLDeltaResult:
        """
        Consume one text delta.

        Returns:
            XMLDeltaResult: display text flushed by this delta, tool calls and
            thinking blocks completed by it, and recoverable errors.
        """
        result = XMLDeltaResult()
        self.buffer += delta

        in_flight = len(self.current_tool_xml) + len(self.current_thinking_xml)
        if self.inside_tag and len(self.buffer) + in_flight > MAX_BUFFER_CHARS:
            self._record(result, CapacityError(
                f"XML buffer exceeded {MAX_BUFFER_CHARS} characters; dropped <{self._tag}> tag"
            ))
            closing = f"</{self._tag}>"
            end = self.buffer.find(closing)
            self.buffer = self.buffer[end + len(closing):] if end != -1 else ""
            self._clear_tag()

        while self.buffer:
            if self.inside_tag:
                if not self._consume_tag_body(result):
                    break
            elif not self._scan_for_open_tag(result):
                break

        self.display_text += result.display_text
        return result

    def finish(self) -> XMLDeltaResult:
        """
        End of stream: release held-back text. An unclosed tag is dropped.
        """
        result = XMLDeltaResult()
        if self.inside_tag:
            self._record(result, ParseError(f"Unclosed <{self._tag}> tag at end of stream"))
            self._clear_tag()
            self.buffer = ""
        else:
            result.add_text(self.buffer)
            self.buffer = ""
        self.display_text += result.display_text
        return result

    # ------------------------------------------------------------------

    def _scan_for_open_tag(self, result: XMLDeltaResult) -> bool:
        match = _OPEN_RE.search(self.buffer)
        if match is None:
            keep = _holdback_len(self.buffer)
            cut = len(self.buffer) - keep
            result.add_text(self.buffer[:cut])
            self.buffer = self.buffer[cut:]
            return False

        result.add_text(self.buffer[:match.start()])
        self.buffer = self.buffer[match.end():]
        if match.group(1):
            self._tag = match.group(1)
            self._invoke_name = None
        else:
            self._tag = "invoke"
            self._invoke_name = html.unescape(match.group(2) if match.group(2) is not None else match.group(3))
        if self._tag == THINKING_TAG:
            self.inside_thinking_tag = True
        else:
            self.inside_tool_tag = True
        return True

    def _consume_tag_body(self, result: XMLDeltaResult) -> bool:
        closing = f"</{self._tag}>"
        thinking = self.inside_thinking_tag
        cap = MAX_THINKING_TAG_CHARS if thinking else MAX_TOOL_TAG_CHARS
        body = (self.current_thinking_xml if thinking else self.current_tool_xml) + self.buffer
        self.buffer = ""

        end = body.find(closing)
        if end == -1:
            if len(body) - len(closing) > cap:
                self._record(result, CapacityError(
                    f"<{self._tag}> body exceeded {cap} characters"
                ))
                self._clear_tag()
            elif thinking:
                self.current_thinking_xml = body
            else:
                self.current_tool_xml = body
            return False

        inner, self.buffer = body[:end], body[end + len(closing):]
        if len(inner) > cap:
            self._record(result, CapacityError(f"<{self._tag}> body exceeded {cap} characters"))
        elif thinking:
            text = inner.strip()
            if text:
                self.thinking_blocks.append(text)
                result.add_thinking(text)
        else:
            try:
                call = self._parse_tool(inner)
            except (ParseError, json.JSONDecodeError) as exc:
                self._record(result, exc if isinstance(exc, ParseError) else ParseError(
                    f"Invalid tool arguments in <{self._tag}>: {exc}"
                ))
            else:
                self.completed_calls.append(call)
                result.add_tool_call(call)
        self._clear_tag()
        return True

    def _parse_tool(self, inner: str) -> ToolCall:
        if self._tag == "invoke":
            name = self._invoke_name or ""
            arguments = {}
            for match in _PARAMETER_RE.finditer(inner):
                key = match.group(1) if match.group(1) is not None else match.group(2)
                raw = match.group(3).strip()
                try:
                    arguments[key] = json.loads(raw)
                except json.JSONDecodeError:
                    arguments[key] = html.unescape(raw)
        else:
            name_match = _NAME_RE.search(inner)
            name = html.unescape(name_match.group(1)) if name_match else ""
            args_match = _ARGUMENTS_RE.search(inner)
            raw = args_match.group(1) if args_match else ""
            arguments = _parse_json_value(raw) if raw else {}

        if not name:
            raise ParseError(f"<{self._tag}> without a tool name")

        call: ToolCall = {
            "id": f"xml_tool_{uuid.uuid4().hex[:12]}_{self._call_index}",
            "name": name,
            "arguments": arguments,
        }
        self._call_index += 1
        return call

    def _clear_tag(self) -> None:
        self.inside_tool_tag = False
        self.inside_thinking_tag = False
        self.current_tool_xml = ""
        self.current_thinking_xml = ""
        self._tag = None
        self._invoke_name = None

    def _record(self, result: XMLDeltaResult, error: LLMWireError) -> None:
        logger.warning("XML tool parsing: %s", error)
        result.add_error(error)
        self.errors.append(error)


def extract_xml_tool_calls(text: str) -> XMLDeltaResult:
    """
    Extract tool calls and thinking blocks from complete text.

    Returns:
        XMLDeltaResult: display text (tags removed), tool calls, thinking and
        errors.
    """
    accumulator = XMLToolAccumulator()
    result = accumulator.process(text or "")
    result.extend(accumulator.finish())
    return result


# =============================================================================
# Grammar and history rendering
# =============================================================================

def tools_to_xml(tools: Iterable[Tool]) -> str:
    """
    Describe ``tools`` and the ``<tool_use>`` grammar for a system prompt.
    """
    tools = [t for t in tools if t.get("name")]
    if not tools:
        return ""
    if len(tools) > 20:
        logger.warning("Describing %d tools as XML makes for a very long system prompt", len(tools))

    lines = [
        "In this environment you have access to a set of tools you can use to answer the user's question.",
        "",
        "## Tool Use Formatting",
        "",
        "Tool use is formatted using XML-style tags. Put the tool name in <name> and the "
        "arguments as a JSON object in <arguments>:",
        "",
        "<tool_use>",
        "  <name>{tool_name}</name>",
        "  <arguments>{json_arguments}</arguments>",
        "</tool_use>",
        "",
        "## Available Tools",
        "",
    ]
    for tool in tools:
        schema = json.dumps({"jsonSchema": tool.get("parameters") or {}}, ensure_ascii=False)
        lines += [
            "<tool>",
            f"  <name>{html.escape(tool['name'])}</name>",
            f"  <description>{html.escape(tool.get('description') or 'No description')}</description>",
            f"  <arguments>{html.escape(schema, quote=False)}</arguments>",
            "</tool>",
            "",
        ]
    lines += [
        "## Tool Use Example",
        "",
        "User: What is the current time?",
        "",
        "Assistant: I will use the datetime tool.",
        "<tool_use>",
        "  <name>datetime</name>",
        '  <arguments>{"action": "current"}</arguments>',
        "</tool_use>",
        "",
        "User: " + format_tool_results_xml([("datetime", "2025-12-14 15:30:00")]),
        "",
        "Assistant: It is 15:30.",
        "",
        "You may reason inside <thinking>...</thinking> before calling a tool.",
        "",
        "## Tool Use Rules",
        "",
        "1. Always use actual parameter values, never variable names.",
        "2. Call a tool only when needed; answer directly otherwise.",
        "3. Never repeat the exact same tool call with the same arguments.",
        "4. Mentioning a tool inside <thinking> does not run it. Output the <tool_use> block.",
        "5. Use exactly the format shown above.",
    ]
    return "\n".join(lines)


def inject_xml_tools(system_prompt: Optional[str], tools: Iterable[Tool]) -> Optional[str]:
    """System prompt with the XML tool grammar appended."""
    grammar = tools_to_xml(tools)
    if not grammar:
        return system_prompt
    return f"{system_prompt}\n\n{grammar}" if system_prompt else grammar


def format_tool_calls_xml(calls: Iterable[Tuple[str, Any]]) -> str:
    """Render (name, arguments) pairs as ``<tool_use>`` blocks."""
    blocks = []
    for name, arguments in calls:
        blocks.append(
            "<tool_use>\n"
            f"  <name>{html.escape(name)}</name>\n"
            f"  <arguments>{json.dumps(arguments, ensure_ascii=False)}</arguments>\n"
            "</tool_use>"
        )
    return "\n".join(blocks)


def format_tool_results_xml(results: Iterable[Tuple[str, str]]) -> str:
    """Render (name, result text) pairs as ``<tool_use_result>`` blocks."""
    blocks = []
    for name, content in results:
        blocks.append(
            "<tool_use_result>\n"
            f"  <name>{html.escape(name)}</name>\n"
            f"  <result>{content}</result>\n"
            "</tool_use_result>"
        )
    return "\n".join(blocks)
