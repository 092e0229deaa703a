"""Discovery notifications for newly announced machines."""

import logging
from typing import Any, Callable, Dict, Optional

from lookout.models.machine import DiscoveredMachine

logger = logging.getLogger(__name__)

DiscoveryCallback = Callable[[DiscoveredMachine], None]


class DiscoveryNotifier:
    """Forwards ``machine:discovered`` events to a single consumer.

    The most recent registration wins. Every event fires the callback,
    including repeats for an id that is already pending; suppressing
    duplicates is left to the consumer.
    """

    def __init__(self):
        self._callback: Optional[DiscoveryCallback] = None

    @property
    def has_callback(self) -> bool:
        return self._callback is not None

    def register(self, callback: DiscoveryCallback):
        """Register the discovery callback, replacing any previous one."""
        if self._callback is not None and self._callback != callback:
            logger.debug("Replacing discovery callback")
        self._callback = callback

    def unregister(self, callback: DiscoveryCallback):
        """Remove the callback if it is still the registered one."""
        if self._callback == callback:
            self._callback = None

    def notify(self, payload: Dict[str, Any]) -> Optional[DiscoveredMachine]:
        """Build a discovery record from an event payload and deliver it."""
        machine_id = payload.get("machineId") if isinstance(payload, dict) else None
        if not machine_id:
            logger.warning(f"Ignoring discovery event without machineId: {payload!r}")
            return None

        discovered = DiscoveredMachine(
            id=machine_id,
            name=payload.get("name"),
            hostname=payload.get("hostname"),
        )
        logger.info(f"Machine discovered: {discovered.id} ({discovered.name or discovered.hostname})")

        if self._callback is None:
            logger.debug("No discovery callback registered")
            return discovered

        try:
            self._callback(discovered)
        except Exception as e:
            logger.error(f"Discovery callback error: {e}", exc_info=True)
        return discovered
