"""Presence reconciler - the canonical machine registry.

The registry is a single ordered mapping of machine id to ``Machine``.
Buckets (active / pending / archived) are views computed on read, so an
id can never live in two buckets at once.

Every inbound snapshot replaces the registry wholesale. Records are
frozen, so an update always installs a new object; listeners registered
with ``subscribe`` are told when anything they could observe changed and
must re-read by id.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from lookout.core.status import estimate_machine
from lookout.models.machine import (
    DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
    LifecycleStatus,
    Machine,
    utc_now,
)

logger = logging.getLogger(__name__)

RegistryListener = Callable[["PresenceReconciler"], None]


@dataclass
class RegistryBuckets:
    """Machines partitioned by lifecycle status, in snapshot order."""
    active: List[Machine] = field(default_factory=list)
    pending: List[Machine] = field(default_factory=list)
    archived: List[Machine] = field(default_factory=list)


class PresenceReconciler:
    """Owns the registry and the current selection."""

    def __init__(
        self,
        show_archived: bool = False,
        clock: Callable[[], datetime] = utc_now,
        default_interval: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
    ):
        self._machines: Dict[str, Machine] = {}
        self._selected: Optional[Machine] = None
        self._show_archived = show_archived
        self._applied_sequence: Optional[int] = None
        self._listeners: List[RegistryListener] = []
        self._clock = clock
        self._default_interval = default_interval

    @property
    def show_archived(self) -> bool:
        return self._show_archived

    @property
    def applied_sequence(self) -> Optional[int]:
        return self._applied_sequence

    def __len__(self):
        return len(self._machines)

    def get(self, machine_id: str) -> Optional[Machine]:
        return self._machines.get(machine_id)

    def machines(self) -> List[Machine]:
        return list(self._machines.values())

    # Snapshots and deltas

    def merge_snapshot(self, machines: Iterable[Machine], sequence: Optional[int] = None) -> bool:
        """Replace the registry with a full snapshot.

        Returns False when the snapshot is older than the one already
        applied and was discarded.
        """
        if (
            sequence is not None
            and self._applied_sequence is not None
            and sequence < self._applied_sequence
        ):
            logger.warning(
                f"Discarding stale snapshot #{sequence} (already applied #{self._applied_sequence})"
            )
            return False

        now = self._clock()
        registry: Dict[str, Machine] = {}
        for machine in machines:
            if machine.id in registry:
                logger.debug(f"Duplicate machine {machine.id} in snapshot, keeping the later entry")
            derived = self._derive(machine, now)
            previous = self._machines.get(machine.id)
            # Unchanged records keep their identity
            registry[machine.id] = previous if previous == derived else derived

        if sequence is not None:
            self._applied_sequence = sequence

        changed = list(registry.items()) != list(self._machines.items())
        self._machines = registry
        selection_changed = self._reselect()

        if changed or selection_changed:
            logger.debug(f"Merged snapshot: {len(registry)} machines")
            self._notify()
        return True

    def apply_online_delta(self, machine_id: str, seen_at: Optional[datetime] = None) -> bool:
        """Mark a known machine online. Returns False for unknown ids."""
        machine = self._machines.get(machine_id)
        if machine is None:
            logger.debug(f"Online delta for unknown machine {machine_id}")
            return False

        update = {"is_online": True, "last_seen": seen_at or self._clock()}
        self._replace(machine.model_copy(update=update))
        return True

    def apply_offline_delta(self, machine_id: str) -> bool:
        """Mark a known machine offline. Returns False for unknown ids."""
        machine = self._machines.get(machine_id)
        if machine is None:
            logger.debug(f"Offline delta for unknown machine {machine_id}")
            return False

        self._replace(machine.model_copy(update={"is_online": False}))
        return True

    def refresh_statuses(self) -> int:
        """Recompute every connection status against the current time.

        Returns the number of machines whose status changed.
        """
        now = self._clock()
        changed = 0
        registry: Dict[str, Machine] = {}
        for machine_id, machine in self._machines.items():
            derived = self._derive(machine, now)
            if derived is not machine:
                changed += 1
            registry[machine_id] = derived

        if changed:
            self._machines = registry
            self._reselect()
            logger.debug(f"Status refresh updated {changed} machines")
            self._notify()
        return changed

    # Filtering and selection

    def set_show_archived(self, show_archived: bool) -> bool:
        """Toggle whether archived machines appear in the active bucket."""
        if show_archived == self._show_archived:
            return False
        self._show_archived = show_archived
        self._reselect()
        self._notify()
        return True

    def select_machine(self, machine_id: Optional[str]) -> bool:
        """Select a visible machine by id. ``None`` clears the selection."""
        if machine_id is None:
            if self._selected is not None:
                self._selected = None
                self._notify()
            return True

        for machine in self._visible():
            if machine.id == machine_id:
                if machine is not self._selected:
                    self._selected = machine
                    logger.info(f"Selected machine {machine.id} ({machine.label})")
                    self._notify()
                return True

        logger.warning(f"Cannot select machine {machine_id}: not in the active set")
        return False

    def get_selected(self) -> Optional[Machine]:
        return self._selected

    def get_buckets(self) -> RegistryBuckets:
        buckets = RegistryBuckets(active=self._visible())
        for machine in self._machines.values():
            if machine.lifecycle_status == LifecycleStatus.PENDING:
                buckets.pending.append(machine)
            elif machine.lifecycle_status == LifecycleStatus.ARCHIVED:
                buckets.archived.append(machine)
        return buckets

    # Change notification

    def subscribe(self, listener: RegistryListener) -> Callable[[], None]:
        """Register a change listener. Returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"Registry listener error: {e}", exc_info=True)

    # Internals

    def _derive(self, machine: Machine, now: datetime) -> Machine:
        status = estimate_machine(machine, now, self._default_interval)
        if machine.connection_status == status:
            return machine
        return machine.model_copy(update={"connection_status": status})

    def _visible(self) -> List[Machine]:
        return [
            machine for machine in self._machines.values()
            if machine.lifecycle_status == LifecycleStatus.ACTIVE
            or (self._show_archived and machine.lifecycle_status == LifecycleStatus.ARCHIVED)
        ]

    def _replace(self, machine: Machine):
        updated = self._derive(machine, self._clock())
        if updated == self._machines.get(updated.id):
            return
        self._machines[updated.id] = updated
        self._reselect()
        self._notify()

    def _reselect(self) -> bool:
        """Re-point or re-derive the selection. Returns True if it changed."""
        active = self._visible()
        current = self._selected

        if current is not None:
            for machine in active:
                if machine.id == current.id:
                    if machine is current or machine == current:
                        return False
                    self._selected = machine
                    return True

        replacement = active[0] if active else None
        if replacement is current:
            return False

        self._selected = replacement
        if replacement is None:
            logger.info("Selection cleared: no active machines")
        else:
            logger.info(f"Auto-selected machine {replacement.id} ({replacement.label})")
        return True
