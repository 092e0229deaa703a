"""Connection status estimation from heartbeat recency.

Status is never taken from the transport as-is. It is recomputed from the
last heartbeat, the machine's heartbeat interval and the current time, so
re-running ``estimate`` on a timer is enough to move a silent machine
from online to unstable to offline.

    ratio = elapsed / interval

    ratio <= 1      online     (within one heartbeat window)
    1 < ratio <= 2  unstable   (missed a window, still within tolerance)
    ratio > 2       offline

A successful network probe (``reachable``) is reported separately: it only
turns an ``offline`` result into ``reachable`` ("the host answers but the
agent is not reporting").
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from lookout.models.machine import (
    DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
    ConnectionStatus,
    Machine,
)

_MILLISECOND = timedelta(milliseconds=1)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def estimate(
    last_seen: Optional[datetime],
    heartbeat_interval_seconds: float,
    online_hint: bool,
    now: datetime,
    reachable: bool = False,
) -> ConnectionStatus:
    """Map heartbeat recency to a connection status."""
    if last_seen is None:
        if online_hint:
            return ConnectionStatus.ONLINE
        return ConnectionStatus.REACHABLE if reachable else ConnectionStatus.OFFLINE

    if not heartbeat_interval_seconds or heartbeat_interval_seconds <= 0:
        heartbeat_interval_seconds = DEFAULT_HEARTBEAT_INTERVAL_SECONDS

    elapsed_ms = (_as_utc(now) - _as_utc(last_seen)) / _MILLISECOND
    ratio = elapsed_ms / (heartbeat_interval_seconds * 1000)

    if ratio <= 1:
        return ConnectionStatus.ONLINE
    if ratio <= 2:
        return ConnectionStatus.UNSTABLE
    return ConnectionStatus.REACHABLE if reachable else ConnectionStatus.OFFLINE


def estimate_machine(
    machine: Machine,
    now: datetime,
    default_interval: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
) -> ConnectionStatus:
    return estimate(
        machine.last_seen,
        machine.heartbeat_interval(default_interval),
        machine.is_online,
        now,
        reachable=machine.ping_reachable,
    )


def describe_status(
    machine: Machine,
    now: datetime,
    default_interval: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
) -> str:
    """Short human readable status line for a machine."""
    status = machine.connection_status
    last_seen = _as_utc(machine.last_seen) if machine.last_seen else None
    now = _as_utc(now)

    if status == ConnectionStatus.ONLINE:
        if last_seen is None:
            return "Connected"
        seconds = int((now - last_seen).total_seconds())
        if seconds < 10:
            return "Connected"
        interval = machine.heartbeat_interval(default_interval)
        next_heartbeat = max(0, int(interval - seconds))
        if next_heartbeat > interval * 0.75:
            return "Active"
        if next_heartbeat > 0:
            return f"Heartbeat in {next_heartbeat}s"
        return "Waiting for heartbeat..."

    if status == ConnectionStatus.REACHABLE:
        ping_time = machine.last_ping_success
        if ping_time is None:
            return "Machine reachable · Service not running"
        elapsed = int((now - ping_time).total_seconds())
        if elapsed < 300:
            minutes = elapsed // 60
            if minutes <= 0:
                return "Machine on · Service stopped"
            return f"Machine on · Service stopped {minutes}m ago"
        return f"Machine on · Service down since {ping_time.strftime('%H:%M')}"

    if status == ConnectionStatus.UNSTABLE:
        if last_seen is not None:
            minutes = int((now - last_seen).total_seconds()) // 60
            if minutes < 10:
                return f"Connection lost {minutes}m ago"
        return "Connection unstable"

    if last_seen is None:
        return "Never connected"

    elapsed = int((now - last_seen).total_seconds())
    if elapsed < 3600:
        return f"Offline for {elapsed // 60}m"
    if elapsed < 86400:
        return f"Offline for {elapsed // 3600}h"
    return f"Offline since {last_seen.strftime('%H:%M')} · {last_seen.strftime('%b')} {last_seen.day}"
