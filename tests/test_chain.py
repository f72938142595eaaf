"""Tests for fallback chain construction."""

from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st

from llm_orchestrator.gateway.provider_manager import build_chain
from llm_orchestrator.gateway.types import GenerateRequest, ProviderRecord

PROVIDER_IDS = ["openai", "anthropic", "gemini", "deepseek", "together", "ollama", "ghost"]


def _records(enabled: dict[str, bool]) -> dict[str, ProviderRecord]:
    return {pid: ProviderRecord(provider_id=pid, enabled=on) for pid, on in enabled.items()}


class TestBuildChain:
    def test_disabled_global_fallback_is_filtered(self):
        records = _records({"openai": True, "together": False})
        request = GenerateRequest("openai", per_call_fallback=[])
        assert build_chain(request, records, ["openai", "together"]) == ["openai"]

    def test_order_primary_then_per_call_then_global(self):
        records = _records({"openai": True, "anthropic": True, "gemini": True, "ollama": True})
        request = GenerateRequest("openai", per_call_fallback=["gemini"])
        assert build_chain(request, records, ["ollama", "anthropic"]) == ["openai", "gemini", "ollama", "anthropic"]

    def test_first_occurrence_wins(self):
        records = _records({"openai": True, "anthropic": True, "gemini": True})
        request = GenerateRequest("anthropic", per_call_fallback=["openai", "anthropic"])
        assert build_chain(request, records, ["gemini", "openai"]) == ["anthropic", "openai", "gemini"]

    def test_unregistered_primary_is_dropped(self):
        records = _records({"anthropic": True})
        request = GenerateRequest("ghost", per_call_fallback=[])
        assert build_chain(request, records, ["anthropic"]) == ["anthropic"]

    def test_disabled_primary_is_dropped(self):
        records = _records({"openai": False, "anthropic": True})
        request = GenerateRequest("openai", per_call_fallback=[])
        assert build_chain(request, records, ["anthropic"]) == ["anthropic"]

    def test_record_fallbacks_used_when_per_call_unset(self):
        records = {
            "openai": ProviderRecord("openai", fallback_providers=("gemini",)),
            "gemini": ProviderRecord("gemini"),
            "anthropic": ProviderRecord("anthropic"),
        }
        request = GenerateRequest("openai")
        assert build_chain(request, records, ["anthropic"]) == ["openai", "gemini", "anthropic"]

    def test_empty_per_call_overrides_record_fallbacks(self):
        records = {
            "openai": ProviderRecord("openai", fallback_providers=("gemini",)),
            "gemini": ProviderRecord("gemini"),
        }
        request = GenerateRequest("openai", per_call_fallback=[])
        assert build_chain(request, records, []) == ["openai"]

    def test_nothing_enabled_gives_empty_chain(self):
        records = _records({"openai": False})
        assert build_chain(GenerateRequest("openai", per_call_fallback=[]), records, ["openai"]) == []

    @settings(max_examples=50, deadline=None)
    @given(
        enabled=st.dictionaries(st.sampled_from(PROVIDER_IDS[:-1]), st.booleans()),
        primary=st.sampled_from(PROVIDER_IDS),
        per_call=st.lists(st.sampled_from(PROVIDER_IDS), max_size=6),
        global_chain=st.lists(st.sampled_from(PROVIDER_IDS), max_size=6),
    )
    def test_chain_properties(self, enabled, primary, per_call, global_chain):
        records = _records(enabled)
        request = GenerateRequest(primary, per_call_fallback=per_call)
        chain = build_chain(request, records, global_chain)

        # Only registered and enabled providers
        assert all(pid in records and records[pid].enabled for pid in chain)
        # No duplicates
        assert len(chain) == len(set(chain))

        # Same relative order as first occurrences in the combined input
        combined = [primary, *per_call, *global_chain]
        expected = []
        for pid in combined:
            if pid not in expected and pid in records and records[pid].enabled:
                expected.append(pid)
        assert chain == expected

        if primary in records and records[primary].enabled:
            assert chain[0] == primary
