"""Presence engine - one session's view of which machines exist.

Wires the push channel, the HTTP fallback, the reconciler, the discovery
notifier and the refresh scheduler together. Everything is constructed
per session and released by ``stop()`` (or by leaving ``async with``).

Push events handled:

    connect              -> emit web:subscribe
    machines:list        -> full snapshot merge
    machine:online       -> online delta (re-subscribe if unknown)
    machine:offline      -> offline delta (re-subscribe if unknown)
    machine:discovered   -> discovery callback + re-subscribe
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from lookout.config import Settings, settings as default_settings
from lookout.core.discovery import DiscoveryCallback, DiscoveryNotifier
from lookout.core.reconciler import PresenceReconciler, RegistryBuckets, RegistryListener
from lookout.core.status import describe_status
from lookout.errors import FetchFailure
from lookout.models.machine import Machine, parse_snapshot, utc_now
from lookout.services.machine_api import MachineApiClient
from lookout.services.refresh import RefreshScheduler
from lookout.transport import CONNECT_EVENT, TransportMultiplexer

logger = logging.getLogger(__name__)

EVENT_MACHINES_LIST = "machines:list"
EVENT_MACHINE_ONLINE = "machine:online"
EVENT_MACHINE_OFFLINE = "machine:offline"
EVENT_MACHINE_DISCOVERED = "machine:discovered"

EMIT_SUBSCRIBE = "web:subscribe"
EMIT_WATCH = "web:watch"
EMIT_UNWATCH = "web:unwatch"


def _machine_id(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        return payload.get("machineId")
    if isinstance(payload, str):
        return payload
    return None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.debug(f"Ignoring unparseable timestamp {value!r}")
        return None


class PresenceEngine:
    """Keeps a reconciled machine registry in sync for one session."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[TransportMultiplexer] = None,
        api_client: Optional[MachineApiClient] = None,
        reconciler: Optional[PresenceReconciler] = None,
        discovery: Optional[DiscoveryNotifier] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or default_settings
        self.clock = clock

        self.transport = transport or TransportMultiplexer(
            reconnect_attempts=self.config.reconnect_attempts,
            reconnect_delay_ms=self.config.reconnect_delay_ms,
            reconnect_max_delay_ms=self.config.reconnect_max_delay_ms,
            connect_timeout=self.config.connect_timeout,
        )
        self.api = api_client or MachineApiClient(
            self.config.api_url,
            token_provider=lambda: self.config.auth_token or None,
            timeout=self.config.request_timeout,
        )
        self.reconciler = reconciler or PresenceReconciler(
            show_archived=self.config.show_archived,
            clock=clock,
            default_interval=self.config.heartbeat_interval_seconds,
        )
        self.discovery = discovery or DiscoveryNotifier()
        self.scheduler = RefreshScheduler(self.refresh, interval=self.config.refresh_interval_seconds)

        self._handlers: Dict[str, Callable[[Any], None]] = {
            CONNECT_EVENT: self._on_connect,
            EVENT_MACHINES_LIST: self._on_machines_list,
            EVENT_MACHINE_ONLINE: self._on_machine_online,
            EVENT_MACHINE_OFFLINE: self._on_machine_offline,
            EVENT_MACHINE_DISCOVERED: self._on_machine_discovered,
        }
        self._sequence = 0
        self._fetch_task: Optional[asyncio.Task] = None
        self._started = False

    # Lifecycle

    @property
    def started(self) -> bool:
        return self._started

    async def start(self):
        """Subscribe to the push channel, fetch the initial list, start refreshing."""
        if self._started:
            logger.warning("Presence engine already started")
            return
        self._started = True

        for event, handler in self._handlers.items():
            self.transport.on(event, handler)

        # Initial HTTP snapshot races the push channel; both funnel into the reconciler
        self._start_fetch()
        connected = await self.transport.connect(self.config.socket_url)
        await self.scheduler.start()

        logger.info(
            f"Presence engine started (push channel {'connected' if connected else 'unavailable'})"
        )

    async def stop(self):
        """Release the transport, the timer and any in-flight fetch."""
        if not self._started:
            return
        self._started = False

        await self.scheduler.stop()

        if self._fetch_task and not self._fetch_task.done():
            self._fetch_task.cancel()
            try:
                await self._fetch_task
            except asyncio.CancelledError:
                pass
        self._fetch_task = None

        for event, handler in self._handlers.items():
            self.transport.off(event, handler)
        await self.transport.disconnect()
        await self.api.aclose()
        logger.info("Presence engine stopped")

    async def __aenter__(self) -> "PresenceEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # Refreshing

    def request_snapshot(self) -> bool:
        """Ask for a full list: push channel if connected, HTTP otherwise.

        Returns True if the request went out over the push channel.
        """
        if self.transport.is_connected and self.transport.emit(EMIT_SUBSCRIBE):
            return True
        self._start_fetch()
        return False

    def refresh(self):
        """Scheduler tick: advance time-based statuses and re-request the list."""
        self.reconciler.refresh_statuses()
        self.request_snapshot()

    async def fetch_snapshot(self, sequence: Optional[int] = None) -> bool:
        """Fetch and merge a snapshot over HTTP. Failures are logged, not raised."""
        if sequence is None:
            sequence = self._next_sequence()
        try:
            machines = await self.api.fetch_machines(include_archived=self.reconciler.show_archived)
        except FetchFailure as e:
            logger.warning(f"Machine list fetch failed: {e}")
            return False
        return self.reconciler.merge_snapshot(machines, sequence=sequence)

    async def wait_for_fetch(self):
        """Wait for the in-flight HTTP fetch, if any."""
        task = self._fetch_task
        if task is not None and not task.done():
            await task

    def set_show_archived(self, show_archived: bool):
        """Toggle archived visibility and fetch a list filtered accordingly."""
        if self.reconciler.set_show_archived(show_archived):
            self._start_fetch(replace=True)

    def _start_fetch(self, replace: bool = False) -> asyncio.Task:
        if self._fetch_task and not self._fetch_task.done():
            if not replace:
                logger.debug("HTTP fetch already in flight")
                return self._fetch_task
            self._fetch_task.cancel()
        # Sequence is taken when the request starts, so a push snapshot that
        # arrives while the request is in flight wins over its result
        sequence = self._next_sequence()
        self._fetch_task = asyncio.create_task(self.fetch_snapshot(sequence))
        return self._fetch_task

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    # Push channel handlers

    def _on_connect(self, _payload=None):
        logger.debug("Push channel (re)connected, subscribing")
        self.transport.emit(EMIT_SUBSCRIBE)

    def _on_machines_list(self, payload):
        if not isinstance(payload, list):
            logger.warning(f"Ignoring {EVENT_MACHINES_LIST} with {type(payload).__name__} payload")
            return
        self.reconciler.merge_snapshot(parse_snapshot(payload), sequence=self._next_sequence())

    def _on_machine_online(self, payload):
        machine_id = _machine_id(payload)
        if not machine_id:
            logger.warning(f"Ignoring {EVENT_MACHINE_ONLINE} without machineId")
            return
        seen_at = _parse_timestamp(payload.get("timestamp")) if isinstance(payload, dict) else None
        if not self.reconciler.apply_online_delta(machine_id, seen_at):
            # Unknown machine: we missed its list entry
            self.request_snapshot()

    def _on_machine_offline(self, payload):
        machine_id = _machine_id(payload)
        if not machine_id:
            logger.warning(f"Ignoring {EVENT_MACHINE_OFFLINE} without machineId")
            return
        if not self.reconciler.apply_offline_delta(machine_id):
            self.request_snapshot()

    def _on_machine_discovered(self, payload):
        self.discovery.notify(payload)
        self.request_snapshot()

    # Consumer API

    @property
    def selected(self) -> Optional[Machine]:
        return self.reconciler.get_selected()

    @property
    def buckets(self) -> RegistryBuckets:
        return self.reconciler.get_buckets()

    def select_machine(self, machine_id: Optional[str]) -> bool:
        return self.reconciler.select_machine(machine_id)

    def subscribe(self, listener: RegistryListener) -> Callable[[], None]:
        return self.reconciler.subscribe(listener)

    def on_discovered(self, callback: DiscoveryCallback) -> Callable[[], None]:
        """Register the discovery callback. Returns a callable that removes it."""
        self.discovery.register(callback)
        return lambda: self.discovery.unregister(callback)

    def status_text(self, machine: Machine) -> str:
        return describe_status(machine, self.clock(), self.config.heartbeat_interval_seconds)

    def watch(self, machine_id: str) -> bool:
        """Ask for per-machine detail events."""
        return self.transport.emit(EMIT_WATCH, machine_id)

    def unwatch(self, machine_id: str) -> bool:
        return self.transport.emit(EMIT_UNWATCH, machine_id)

    # Lifecycle actions

    async def adopt(self, machine_id: str, display_name: Optional[str] = None, options: Optional[dict] = None) -> dict:
        result = await self.api.adopt_machine(machine_id, display_name=display_name, options=options)
        self.request_snapshot()
        return result

    async def archive(self, machine_id: str) -> dict:
        result = await self.api.archive_machine(machine_id)
        self.request_snapshot()
        return result

    async def unarchive(self, machine_id: str) -> dict:
        result = await self.api.unarchive_machine(machine_id)
        self.request_snapshot()
        return result

    async def rename(self, machine_id: str, display_name: Optional[str]) -> dict:
        """Set or clear the operator-assigned display name."""
        result = await self.api.update_display_name(machine_id, display_name)
        self.request_snapshot()
        return result
