# Presence models
from lookout.models.machine import (
    ConnectionStatus,
    DiscoveredMachine,
    LifecycleStatus,
    Machine,
    parse_snapshot,
    utc_now,
)

__all__ = [
    "ConnectionStatus",
    "DiscoveredMachine",
    "LifecycleStatus",
    "Machine",
    "parse_snapshot",
    "utc_now",
]
