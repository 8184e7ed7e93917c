"""
Extraction of ``<think>...</think>`` reasoning embedded in plain text, as
emitted by DeepSeek-style models on OpenAI-compatible endpoints.
"""
import re
from typing import NamedTuple, Tuple

OPEN_TAG = "<think>"
CLOSE_TAG = "</think>"

_THINK_RE = re.compile(r"<think>(.*?)</think>", re.DOTALL)


def partial_suffix_len(text: str, tag: str) -> int:
    """
    Length of the longest suffix of ``text`` that is a proper prefix of
    ``tag``, i.e. how much of ``text`` might be the start of ``tag``.
    """
    for size in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:size]):
            return size
    return 0


class ThinkDelta(NamedTuple):
    display_text: str
    thinking: str


class ThinkTagParser:
    """
    Incremental splitter of display text and ``<think>`` content.

    Tags may be split across deltas; a trailing fragment that could still
    become a tag is held back until the next delta.
    """

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self._buffer = ""
        self._inside = False
        self.thinking_content = ""

    def process(self, delta: str) -> ThinkDelta:
        self._buffer += delta
        display, thinking = [], []

        while True:
            tag = CLOSE_TAG if self._inside else OPEN_TAG
            index = self._buffer.find(tag)
            target = thinking if self._inside else display
            if index != -1:
                target.append(self._buffer[:index])
                self._buffer = self._buffer[index + len(tag):]
                self._inside = not self._inside
                continue
            keep = partial_suffix_len(self._buffer, tag)
            target.append(self._buffer[:len(self._buffer) - keep])
            self._buffer = self._buffer[len(self._buffer) - keep:]
            break

        thinking_text = "".join(thinking)
        self.thinking_content += thinking_text
        return ThinkDelta("".join(display), thinking_text)

    def flush(self) -> ThinkDelta:
        """Release held-back text. An unclosed tag's content counts as thinking."""
        rest, self._buffer = self._buffer, ""
        if self._inside:
            self.thinking_content += rest
            return ThinkDelta("", rest)
        return ThinkDelta(rest, "")


def parse_think_tags(text: str) -> Tuple[str, str]:
    """
    Split complete text into (display text, thinking text).

    An unclosed ``<think>`` at the end is treated as thinking.
    """
    if not text or OPEN_TAG not in text:
        return text or "", ""

    thinking = [m.strip() for m in _THINK_RE.findall(text)]
    display = _THINK_RE.sub("", text)
    dangling = display.find(OPEN_TAG)
    if dangling != -1:
        thinking.append(display[dangling + len(OPEN_TAG):].strip())
        display = display[:dangling]
    return display.strip(), "\n\n".join(t for t in thinking if t)
