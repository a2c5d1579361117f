"""
Agent backends and the registry that hands them out by name.
"""
from typing import Callable, Dict, List, Optional, Tuple

from .base import AgentAdapter, AgentSessionInfo, Capability, EventCallback, SessionState
from .claude_cli import ClaudeCliAdapter
from .opencode import OpenCodeAdapter

LABELS = {
    "claude": "Claude Code",
    "opencode": "OpenCode",
}


class AdapterRegistry:
    """Creates adapters lazily, one instance per backend name."""

    def __init__(self, factories: Dict[str, Callable[[], AgentAdapter]], default: str = "claude"):
        if default not in factories:
            raise ValueError(f"Unknown default adapter: {default}")
        self._factories = factories
        self._instances: Dict[str, AgentAdapter] = {}
        self._callbacks: List[EventCallback] = []
        self.default = default

    @property
    def names(self) -> List[str]:
        return list(self._factories)

    def available(self) -> List[Tuple[str, str]]:
        """(name, label) for every backend, without instantiating any."""
        return [(name, LABELS.get(name, name)) for name in self._factories]

    def add_event_callback(self, callback: EventCallback):
        self._callbacks.append(callback)
        for adapter in self._instances.values():
            adapter.add_event_callback(callback)

    def get(self, name: str) -> AgentAdapter:
        adapter = self._instances.get(name)
        if adapter is None:
            factory = self._factories.get(name)
            if factory is None:
                raise KeyError(f"Unknown adapter: {name}. Available: {', '.join(self._factories)}")
            adapter = factory()
            for callback in self._callbacks:
                adapter.add_event_callback(callback)
            self._instances[name] = adapter
        return adapter

    def created(self) -> List[AgentAdapter]:
        return list(self._instances.values())

    def find_active(self, user_id: int) -> Optional[AgentAdapter]:
        for adapter in self._instances.values():
            if adapter.is_active(user_id):
                return adapter
        return None

    async def shutdown(self):
        for adapter in self._instances.values():
            await adapter.shutdown()


__all__ = [
    "AdapterRegistry",
    "AgentAdapter",
    "AgentSessionInfo",
    "Capability",
    "ClaudeCliAdapter",
    "OpenCodeAdapter",
    "SessionState",
]
