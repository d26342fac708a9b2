"""
Unit tests for the capability registry and agent types.
"""

import pytest

from overwatch.models.agent import AgentType
from overwatch.models.capabilities import AgentTypeSpec, CapabilityRegistry, DEFAULT_CAPABILITIES
from overwatch.utils.errors import ConfigurationError, UnknownAgentTypeError


class TestAgentType:
    """Test AgentType parsing."""

    def test_parse_string(self):
        assert AgentType.parse("dialogue-agent") is AgentType.DIALOGUE
        assert AgentType.parse(AgentType.WEB) is AgentType.WEB

    def test_parse_unknown(self):
        with pytest.raises(UnknownAgentTypeError):
            AgentType.parse("toaster-agent")


class TestCapabilityRegistry:
    """Test CapabilityRegistry construction and lookup."""

    def test_default_covers_every_type(self):
        registry = CapabilityRegistry.default()

        assert set(registry.types()) == set(DEFAULT_CAPABILITIES)
        assert registry[AgentType.DIALOGUE].capabilities == frozenset({"dialogue", "llm"})
        assert registry[AgentType.DIALOGUE].max_concurrent_tasks == 20

    def test_override_replaces_entry(self):
        registry = CapabilityRegistry.from_config({
            "web-agent": {"capabilities": ["web_search"], "max_concurrent_tasks": 4}
        })

        spec = registry.get_spec("web-agent")
        assert spec.capabilities == frozenset({"web_search"})
        assert spec.max_concurrent_tasks == 4

    def test_override_unknown_type_rejected(self):
        with pytest.raises(ConfigurationError):
            CapabilityRegistry.from_config({
                "toaster-agent": {"capabilities": ["toast"], "max_concurrent_tasks": 1}
            })

    def test_invalid_limit_rejected(self):
        with pytest.raises(ConfigurationError):
            CapabilityRegistry([AgentTypeSpec(AgentType.WEB, frozenset({"web_search"}), 0)])

    def test_empty_capabilities_rejected(self):
        with pytest.raises(ConfigurationError):
            CapabilityRegistry([AgentTypeSpec(AgentType.WEB, frozenset(), 3)])

    def test_registry_is_read_only(self):
        registry = CapabilityRegistry.default()

        with pytest.raises(TypeError):
            registry[AgentType.WEB] = AgentTypeSpec(AgentType.WEB, frozenset({"x"}), 1)

    def test_contains_accepts_strings(self):
        registry = CapabilityRegistry.default()

        assert "spotify-agent" in registry
        assert "toaster-agent" not in registry

    def test_types_with_capabilities(self):
        registry = CapabilityRegistry.default()

        types = registry.types_with_capabilities(["music_control"])

        assert set(types) == {AgentType.SPOTIFY, AgentType.MUSIC}

    def test_validate_required_types(self, registry):
        registry.validate(["orchestrator", "self-healing-agent"])

        with pytest.raises(ConfigurationError):
            registry.validate(["toaster-agent"])
