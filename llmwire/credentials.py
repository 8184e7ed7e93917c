"""
API key storage and rotation.

A provider may have several keys. Which one a request uses is decided by the
store's strategy; when a request fails with 401/403/429 the request lifecycle
calls :meth:`CredentialStore.rotate` so the next request uses another key.
"""
import logging
import random
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Literal, Optional, Protocol

from .config import Settings
from .errors import LLMWireError

logger = logging.getLogger(__name__)

KeyStrategy = Literal["fixed", "round_robin", "random", "least_used", "smart"]

# Errors weigh ten requests in the "smart" score
ERROR_WEIGHT = 10


class CredentialStore(Protocol):
    """What the request lifecycle needs from a key store."""

    def current_key(self, provider_id: str) -> str:
        ...

    def rotate(self, provider_id: str) -> bool:
        ...


@dataclass
class ApiKey:
    key: str
    enabled: bool = True
    usage_count: int = 0
    error_count: int = 0
    last_used: Optional[float] = None

    @property
    def score(self) -> int:
        return self.usage_count + self.error_count * ERROR_WEIGHT

    def __repr__(self) -> str:
        return f"ApiKey(...{self.key[-4:]}, usage={self.usage_count}, errors={self.error_count})"


class InMemoryCredentialStore:
    """
    Keys held in memory, selected per request by a strategy.

    Strategies:
        fixed: always the current key; only :meth:`rotate` changes it.
        round_robin: cycle through enabled keys.
        random: any enabled key.
        least_used: the key with the fewest requests.
        smart: the lowest ``usage + errors * 10`` score.

    Args:
        keys (Dict[str, List[str]], optional): API keys per provider id.
        strategy (KeyStrategy): Selection strategy. Defaults to "fixed".
        rng (random.Random, optional): Source of randomness for "random".
    """

    def __init__(
        self,
        keys: Optional[Dict[str, Iterable[str]]] = None,
        strategy: KeyStrategy = "fixed",
        *,
        rng: Optional[random.Random] = None,
    ):
        if strategy not in ("fixed", "round_robin", "random", "least_used", "smart"):
            raise ValueError(f"Unknown key strategy: {strategy!r}")
        self.strategy = strategy
        self._rng = rng or random.Random()
        self._keys: Dict[str, List[ApiKey]] = {}
        self._current: Dict[str, int] = {}
        self._cursor: Dict[str, int] = {}
        for provider_id, provider_keys in (keys or {}).items():
            for key in provider_keys:
                self.add_key(provider_id, key)

    @classmethod
    def from_settings(cls, settings: Settings, strategy: KeyStrategy = "fixed") -> "InMemoryCredentialStore":
        return cls(settings.api_keys, strategy)

    def add_key(self, provider_id: str, key: str) -> None:
        keys = self._keys.setdefault(provider_id, [])
        if any(k.key == key for k in keys):
            return
        keys.append(ApiKey(key))
        self._current.setdefault(provider_id, 0)
        self._cursor.setdefault(provider_id, 0)

    def keys(self, provider_id: str) -> List[ApiKey]:
        return list(self._keys.get(provider_id, []))

    def has_keys(self, provider_id: str) -> bool:
        return any(k.enabled for k in self._keys.get(provider_id, []))

    def set_enabled(self, provider_id: str, key: str, enabled: bool) -> None:
        for api_key in self._keys.get(provider_id, []):
            if api_key.key == key:
                api_key.enabled = enabled
                return
        raise KeyError(f"Unknown key for provider {provider_id}")

    def current_key(self, provider_id: str) -> str:
        """
        Key for the next request, chosen by the strategy. Records usage.

        Raises:
            LLMWireError: If the provider has no enabled key.
        """
        keys = self._keys.get(provider_id, [])
        enabled = [i for i, k in enumerate(keys) if k.enabled]
        if not enabled:
            raise LLMWireError(
                f"No API key configured for provider '{provider_id}'",
                hint="Add a key to the credential store or set it in the environment.",
            )

        if self.strategy == "round_robin":
            cursor = self._cursor[provider_id] % len(enabled)
            index = enabled[cursor]
            self._cursor[provider_id] = (cursor + 1) % len(enabled)
        elif self.strategy == "random":
            index = self._rng.choice(enabled)
        elif self.strategy == "least_used":
            index = min(enabled, key=lambda i: keys[i].usage_count)
        elif self.strategy == "smart":
            index = min(enabled, key=lambda i: keys[i].score)
        else:
            index = self._current[provider_id]
            if index not in enabled:
                index = enabled[0]

        self._current[provider_id] = index
        selected = keys[index]
        selected.usage_count += 1
        selected.last_used = time.time()
        return selected.key

    def rotate(self, provider_id: str) -> bool:
        """
        Mark the current key as failed and move to the next enabled key.

        Returns:
            bool: False when the provider has fewer than two enabled keys.
        """
        keys = self._keys.get(provider_id, [])
        enabled = [i for i, k in enumerate(keys) if k.enabled]
        if len(enabled) < 2:
            logger.debug("Not rotating %s: fewer than two keys", provider_id)
            return False

        current = self._current.get(provider_id, enabled[0])
        keys[current].error_count += 1
        following = [i for i in enabled if i > current] + [i for i in enabled if i < current]
        self._current[provider_id] = following[0]
        self._cursor[provider_id] = enabled.index(following[0])
        logger.warning(
            "Rotated API key for %s (key %d -> %d of %d)",
            provider_id, current + 1, following[0] + 1, len(keys),
        )
        return True
