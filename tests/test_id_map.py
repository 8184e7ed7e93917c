from llmwire.id_map import CrossProviderIdMap, native_format_of
from llmwire.types import ProviderFormat


class TestCrossProviderIdMap:
    def test_native_format_from_prefix(self):
        assert native_format_of("call_abc") is ProviderFormat.OPENAI
        assert native_format_of("toolu_abc") is ProviderFormat.ANTHROPIC
        assert native_format_of("gemini_abc") is ProviderFormat.GEMINI
        assert native_format_of("xyz") is None

    def test_same_prefix_is_kept(self):
        id_map = CrossProviderIdMap()
        assert id_map.map_id("call_abc", ProviderFormat.OPENAI) == "call_abc"

    def test_foreign_id_gets_target_prefix(self):
        id_map = CrossProviderIdMap()
        mapped = id_map.map_id("call_abc", ProviderFormat.ANTHROPIC)
        assert mapped.startswith("toolu_")
        assert mapped != "call_abc"

    def test_mapping_is_stable(self):
        id_map = CrossProviderIdMap()
        first = id_map.map_id("call_abc", ProviderFormat.GEMINI)
        second = id_map.map_id("call_abc", ProviderFormat.GEMINI)
        assert first == second

    def test_mapped_id_resolves_to_original(self):
        id_map = CrossProviderIdMap()
        mapped = id_map.map_id("toolu_1", ProviderFormat.OPENAI)
        assert id_map.resolve(mapped) == "toolu_1"
        assert id_map.resolve("toolu_1") == "toolu_1"
        assert id_map.resolve("unknown") is None

    def test_mapping_a_mapped_id_stays_in_group(self):
        id_map = CrossProviderIdMap()
        to_openai = id_map.map_id("toolu_1", ProviderFormat.OPENAI)
        # Mapping the OpenAI alias back to Anthropic returns the original
        assert id_map.map_id(to_openai, ProviderFormat.ANTHROPIC) == "toolu_1"
        assert id_map.map_id(to_openai, ProviderFormat.OPENAI) == to_openai

    def test_distinct_calls_never_collide(self):
        id_map = CrossProviderIdMap()
        a = id_map.map_id("toolu_a", ProviderFormat.OPENAI)
        b = id_map.map_id("toolu_b", ProviderFormat.OPENAI)
        assert a != b
        assert id_map.resolve(a) == "toolu_a"
        assert id_map.resolve(b) == "toolu_b"

    def test_generated_ids_are_unique(self):
        id_map = CrossProviderIdMap()
        ids = {id_map.generate_id(ProviderFormat.GEMINI) for _ in range(100)}
        assert len(ids) == 100
        assert all(i.startswith("gemini_") for i in ids)

    def test_register_returns_original(self):
        id_map = CrossProviderIdMap()
        mapped = id_map.map_id("call_x", ProviderFormat.ANTHROPIC)
        assert id_map.register(mapped) == "call_x"
        assert "call_x" in id_map
        assert len(id_map) == 2
