import itertools
import logging
import uuid
from typing import Dict, Optional

from .types import ProviderFormat

logger = logging.getLogger(__name__)

ID_PREFIXES: Dict[ProviderFormat, str] = {
    ProviderFormat.OPENAI: "call_",
    ProviderFormat.ANTHROPIC: "toolu_",
    ProviderFormat.GEMINI: "gemini_",
}


def native_format_of(call_id: str) -> Optional[ProviderFormat]:
    """Guess which provider minted an id from its prefix."""
    for fmt, prefix in ID_PREFIXES.items():
        if call_id.startswith(prefix):
            return fmt
    return None


class CrossProviderIdMap:
    """
    Bidirectional tool-call id map for one conversation.

    Every id seen first becomes the *original* of a group. Asking for the id
    of that call under another provider mints (once) an id with that
    provider's prefix; later lookups return the same id. Any id of the group,
    original or mapped, resolves back to the original.

    Entries are never removed or reassigned while the conversation lives, so
    an id can never come to mean a different call.
    """

    def __init__(self):
        self._forward: Dict[tuple, str] = {}
        self._reverse: Dict[str, str] = {}
        self._counter = itertools.count(1)

    def __len__(self) -> int:
        return len(self._reverse)

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._reverse

    def register(self, call_id: str, fmt: Optional[ProviderFormat] = None) -> str:
        """
        Record an id produced by a provider. Returns the original id of the
        group the id belongs to.
        """
        original = self._reverse.get(call_id)
        if original is not None:
            return original
        self._reverse[call_id] = call_id
        fmt = fmt or native_format_of(call_id)
        if fmt is not None:
            self._forward[(call_id, fmt)] = call_id
        return call_id

    def map_id(self, call_id: str, target: ProviderFormat) -> str:
        """
        Id to use for ``call_id`` in a request to ``target``.

        Ids that already carry the target's prefix are kept as they are.
        """
        original = self.register(call_id)
        key = (original, target)
        mapped = self._forward.get(key)
        if mapped is not None:
            return mapped

        if original.startswith(ID_PREFIXES[target]):
            mapped = original
        else:
            mapped = self.generate_id(target)
            self._reverse[mapped] = original
            logger.debug("Mapped tool call id %s -> %s for %s", original, mapped, target.value)
        self._forward[key] = mapped
        return mapped

    def resolve(self, call_id: str) -> Optional[str]:
        """Original id for any id of a group, or None when unknown."""
        return self._reverse.get(call_id)

    def generate_id(self, fmt: ProviderFormat) -> str:
        """Mint a fresh, unused id with ``fmt``'s prefix."""
        while True:
            candidate = f"{ID_PREFIXES[fmt]}{uuid.uuid4().hex[:16]}_{next(self._counter)}"
            if candidate not in self._reverse:
                return candidate

    def clear(self) -> None:
        """Forget every mapping. Only for starting a new conversation."""
        self._forward.clear()
        self._reverse.clear()
