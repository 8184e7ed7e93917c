import uuid
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional, Tuple

from .id_map import CrossProviderIdMap
from .types import Message, Part, Tool


@dataclass
class ConversationContext:
    """
    Everything adapters and parsers need to know about one conversation.

    Passed by reference; nothing in llmwire keeps conversation state at module
    level.

    Attributes:
        messages: Canonical history, oldest first.
        system_prompt: Instructions placed where each provider expects them.
        tools: Tool declarations offered to the model.
        id_map: Tool-call id map shared by every turn of the conversation.
        xml_tool_calling: Describe tools as an XML grammar in the system
            prompt and parse tags out of the text, instead of native tools.
        opening_messages: Inserted right after the system prompt.
        prefill_messages: Appended after the history.
        session_id: Correlation id used in logs.
    """
    messages: List[Message] = field(default_factory=list)
    system_prompt: Optional[str] = None
    tools: List[Tool] = field(default_factory=list)
    id_map: CrossProviderIdMap = field(default_factory=CrossProviderIdMap)
    xml_tool_calling: bool = False
    opening_messages: List[Message] = field(default_factory=list)
    prefill_messages: List[Message] = field(default_factory=list)
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def add_message(self, message: Message) -> None:
        self.messages.append(message)

    def request_messages(self) -> List[Message]:
        """History as sent: opening messages, history, prefill."""
        return [*self.opening_messages, *self.messages, *self.prefill_messages]

    def system_text(self) -> Optional[str]:
        """
        The system prompt joined with the text of any ``system`` messages in
        the history.
        """
        chunks = [self.system_prompt] if self.system_prompt else []
        for message in self.request_messages():
            if message.get("role") == "system":
                text = message_text(message)
                if text:
                    chunks.append(text)
        return "\n\n".join(chunks) if chunks else None

    def latest(self, key: str) -> Optional[Any]:
        """
        Most recent value of a message-level field on an assistant turn,
        scanning newest-first.
        """
        for message in reversed(self.request_messages()):
            if message.get("role") == "assistant" and message.get(key):
                return message[key]
        return None

    def latest_signed_thinking(self) -> Optional[Tuple[int, Part]]:
        """
        Index (into ``request_messages()``) and part of the newest signed
        thinking block.
        """
        messages = self.request_messages()
        for index in range(len(messages) - 1, -1, -1):
            message = messages[index]
            if message.get("role") != "assistant":
                continue
            for part in iter_parts(message):
                if part.get("type") == "thinking" and part.get("signature"):
                    return index, part
        return None

    def tool_names_by_id(self) -> dict:
        """Tool name for every tool_use id in the history."""
        names = {}
        for message in self.request_messages():
            for part in iter_parts(message):
                if part.get("type") == "tool_use" and part.get("id"):
                    names[part["id"]] = part.get("name", "")
        return names


def iter_parts(message: Message) -> Iterator[Part]:
    """Parts of a message; string content counts as one text part."""
    content = message.get("content")
    if isinstance(content, str):
        if content:
            yield {"type": "text", "text": content}
        return
    for part in content or []:
        if isinstance(part, str):
            yield {"type": "text", "text": part}
        else:
            yield part


def message_text(message: Message) -> str:
    return "".join(p.get("text", "") for p in iter_parts(message) if p.get("type") == "text")
