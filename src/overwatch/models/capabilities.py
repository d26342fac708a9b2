"""
Capability registry for Overwatch.

The registry maps every agent type to its capability set and concurrency
limit. It is built once from configuration at startup, validated, and
injected into the components that need it. It cannot be changed afterwards.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional

from .agent import AgentType
from ..utils.errors import ConfigurationError, UnknownAgentTypeError


@dataclass(frozen=True)
class AgentTypeSpec:
    """Capabilities and concurrency limit declared for one agent type."""
    agent_type: AgentType
    capabilities: FrozenSet[str]
    max_concurrent_tasks: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "capabilities": sorted(self.capabilities),
            "max_concurrent_tasks": self.max_concurrent_tasks,
        }


DEFAULT_CAPABILITIES: Dict[AgentType, tuple] = {
    AgentType.ORCHESTRATOR: (("orchestration", "routing"), 50),
    AgentType.SELF_HEALING: (("process_supervision", "health_checking"), 5),
    AgentType.WATCHDOG: (("health_checking", "watchdog"), 5),
    AgentType.SYNTAX_CHECKER: (("syntax_analysis", "error_detection"), 10),
    AgentType.TYPE_ANALYZER: (("type_checking", "type_inference"), 8),
    AgentType.CONVERSATION_PARSER: (("intent_extraction", "entity_recognition"), 5),
    AgentType.WEB_SEARCHER: (("web_search", "content_extraction"), 3),
    AgentType.HEALTH_MONITOR: (("health_checking", "metrics_collection"), 5),
    AgentType.DIALOGUE: (("dialogue", "llm"), 20),
    AgentType.WEB: (("web_search", "content_extraction"), 10),
    AgentType.SPOTIFY: (("music_control",), 5),
    AgentType.MUSIC: (("music_control",), 8),
    AgentType.MEDIA: (("media",), 6),
    AgentType.FINANCE: (("finance",), 6),
    AgentType.ALERT: (("alerts",), 4),
    AgentType.VISION: (("vision",), 6),
    AgentType.SYSTEM_CONTROL: (("system_control",), 3),
}


class CapabilityRegistry(Mapping):
    """Immutable mapping of AgentType to AgentTypeSpec."""

    def __init__(self, specs: Iterable[AgentTypeSpec]):
        entries: Dict[AgentType, AgentTypeSpec] = {}
        for spec in specs:
            if spec.max_concurrent_tasks < 1:
                raise ConfigurationError(
                    f"max_concurrent_tasks for {spec.agent_type.value} must be at least 1"
                )
            if not spec.capabilities:
                raise ConfigurationError(
                    f"Agent type {spec.agent_type.value} declares no capabilities"
                )
            entries[spec.agent_type] = spec
        self._entries = MappingProxyType(entries)

    @classmethod
    def default(cls) -> 'CapabilityRegistry':
        return cls.from_config({})

    @classmethod
    def from_config(cls, overrides: Mapping[str, Any]) -> 'CapabilityRegistry':
        """
        Build the registry from the defaults plus configuration overrides.

        Args:
            overrides: agent type value -> object with ``capabilities`` and
                ``max_concurrent_tasks`` (attributes or mapping keys)

        Raises:
            ConfigurationError: If an override names an unknown agent type
        """
        specs = {
            agent_type: AgentTypeSpec(agent_type, frozenset(caps), limit)
            for agent_type, (caps, limit) in DEFAULT_CAPABILITIES.items()
        }

        for key, entry in overrides.items():
            try:
                agent_type = AgentType.parse(key)
            except UnknownAgentTypeError as e:
                raise ConfigurationError(
                    f"Registry entry for unknown agent type: {key}", cause=e
                ) from e

            if isinstance(entry, Mapping):
                capabilities = entry["capabilities"]
                limit = entry["max_concurrent_tasks"]
            else:
                capabilities = entry.capabilities
                limit = entry.max_concurrent_tasks
            specs[agent_type] = AgentTypeSpec(agent_type, frozenset(capabilities), int(limit))

        return cls(specs.values())

    def __getitem__(self, agent_type: AgentType) -> AgentTypeSpec:
        return self._entries[agent_type]

    def __iter__(self) -> Iterator[AgentType]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, agent_type: object) -> bool:
        try:
            return AgentType.parse(agent_type) in self._entries
        except UnknownAgentTypeError:
            return False

    def get_spec(self, agent_type: Any) -> AgentTypeSpec:
        """Look up a type, raising UnknownAgentTypeError if absent."""
        parsed = AgentType.parse(agent_type)
        spec = self._entries.get(parsed)
        if spec is None:
            raise UnknownAgentTypeError(parsed.value)
        return spec

    def types(self) -> List[AgentType]:
        return list(self._entries)

    def types_with_capabilities(self, capabilities: Iterable[str]) -> List[AgentType]:
        """Agent types whose capability set intersects ``capabilities``."""
        wanted = set(capabilities)
        return [t for t, spec in self._entries.items() if spec.capabilities & wanted]

    def validate(self, required_types: Optional[Iterable[Any]] = None) -> None:
        """Check that every required type is registered."""
        for value in required_types or ():
            try:
                self.get_spec(value)
            except UnknownAgentTypeError as e:
                raise ConfigurationError(
                    f"Required agent type is not registered: {value}", cause=e
                ) from e

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {t.value: spec.to_dict() for t, spec in self._entries.items()}


__all__ = [
    'AgentTypeSpec',
    'CapabilityRegistry',
    'DEFAULT_CAPABILITIES',
]
