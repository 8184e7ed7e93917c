import random

import pytest

from llmwire.config import Settings
from llmwire.credentials import InMemoryCredentialStore
from llmwire.errors import LLMWireError


class TestInMemoryCredentialStore:
    def test_fixed_strategy_sticks_to_current_key(self):
        store = InMemoryCredentialStore({"openai": ["k1", "k2"]})
        assert [store.current_key("openai") for _ in range(3)] == ["k1", "k1", "k1"]

    def test_rotate_moves_to_next_key(self):
        store = InMemoryCredentialStore({"openai": ["k1", "k2", "k3"]})
        store.current_key("openai")
        assert store.rotate("openai") is True
        assert store.current_key("openai") == "k2"
        assert store.keys("openai")[0].error_count == 1
        store.rotate("openai")
        store.rotate("openai")
        assert store.current_key("openai") == "k1"

    def test_rotate_needs_two_keys(self):
        store = InMemoryCredentialStore({"openai": ["k1"]})
        assert store.rotate("openai") is False
        assert store.rotate("unknown") is False

    def test_rotate_skips_disabled_keys(self):
        store = InMemoryCredentialStore({"openai": ["k1", "k2", "k3"]})
        store.set_enabled("openai", "k2", False)
        store.rotate("openai")
        assert store.current_key("openai") == "k3"

    def test_round_robin(self):
        store = InMemoryCredentialStore({"gemini": ["a", "b", "c"]}, strategy="round_robin")
        assert [store.current_key("gemini") for _ in range(4)] == ["a", "b", "c", "a"]

    def test_random_uses_rng(self):
        store = InMemoryCredentialStore({"gemini": ["a", "b"]}, strategy="random", rng=random.Random(7))
        assert {store.current_key("gemini") for _ in range(20)} <= {"a", "b"}

    def test_least_used(self):
        store = InMemoryCredentialStore({"x": ["a", "b"]}, strategy="least_used")
        assert [store.current_key("x") for _ in range(4)] == ["a", "b", "a", "b"]

    def test_smart_penalizes_errors(self):
        store = InMemoryCredentialStore({"x": ["a", "b"]}, strategy="smart")
        store.keys("x")[0].error_count = 1
        assert [store.current_key("x") for _ in range(3)] == ["b", "b", "b"]

    def test_no_keys(self):
        store = InMemoryCredentialStore()
        with pytest.raises(LLMWireError) as exc_info:
            store.current_key("openai")
        assert exc_info.value.hint

    def test_duplicate_keys_ignored(self):
        store = InMemoryCredentialStore()
        store.add_key("x", "a")
        store.add_key("x", "a")
        assert len(store.keys("x")) == 1

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            InMemoryCredentialStore(strategy="best")

    def test_from_settings(self, mock_env):
        store = InMemoryCredentialStore.from_settings(Settings.from_env(None))
        assert store.current_key("anthropic") == "sk-test-anthropic"
        assert store.has_keys("gemini")

    def test_repr_masks_key(self):
        store = InMemoryCredentialStore({"x": ["sk-secret-1234"]})
        assert "secret" not in repr(store.keys("x")[0])
