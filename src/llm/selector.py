"""Round-robin provider selection over ACTIVE providers."""

import threading

import structlog

from .health import HealthTracker
from .registry import ProviderDescriptor, ProviderRegistry

logger = structlog.get_logger()


class ProviderSelector:
    """Picks the next ACTIVE provider after the last one returned."""

    def __init__(self, registry: ProviderRegistry, health: HealthTracker):
        self.registry = registry
        self.health = health
        self._last_index = -1
        self._lock = threading.Lock()

    def select(self) -> ProviderDescriptor | None:
        """Return the next ACTIVE provider, or None when all are INACTIVE."""
        count = len(self.registry)
        with self._lock:
            for step in range(1, count + 1):
                index = (self._last_index + step) % count
                descriptor = self.registry[index]
                if self.health.is_active(descriptor.id):
                    self._last_index = index
                    logger.debug("selector.selected", provider=descriptor.id)
                    return descriptor
        return None
