"""Machine presence model."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 30


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionStatus(str, Enum):
    """Derived reachability of a machine."""
    ONLINE = "online"
    UNSTABLE = "unstable"
    OFFLINE = "offline"
    REACHABLE = "reachable"


class LifecycleStatus(str, Enum):
    """Where a machine is in the adopt/archive lifecycle."""
    PENDING = "pending"
    ACTIVE = "active"
    ARCHIVED = "archived"


class Machine(BaseModel):
    """A machine as reported by the server.

    Records are immutable: every update produces a new instance, so holders
    of an old reference never observe a half-applied change.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    name: Optional[str] = None
    hostname: Optional[str] = None
    ip_address: Optional[str] = Field(default=None, alias="ipAddress")
    display_name: Optional[str] = Field(default=None, alias="displayName")
    last_seen: Optional[datetime] = Field(default=None, alias="lastSeen")
    is_online: bool = Field(default=False, alias="isOnline")
    connection_status: ConnectionStatus = Field(
        default=ConnectionStatus.OFFLINE, alias="connectionStatus"
    )
    lifecycle_status: LifecycleStatus = Field(
        default=LifecycleStatus.ACTIVE,
        validation_alias=AliasChoices("lifecycleStatus", "status", "lifecycle_status"),
        serialization_alias="lifecycleStatus",
    )
    ping_status: Optional[str] = Field(default=None, alias="pingStatus")
    settings: Any = None
    metadata: Any = None

    @field_validator("lifecycle_status", mode="before")
    @classmethod
    def _default_lifecycle(cls, value):
        # Older servers leave status empty for adopted machines
        return value or LifecycleStatus.ACTIVE

    @field_validator("is_online", mode="before")
    @classmethod
    def _default_online(cls, value):
        return False if value is None else value

    @field_validator("connection_status", mode="before")
    @classmethod
    def _default_connection(cls, value):
        # Recomputed locally; an unknown server value is only a placeholder
        if isinstance(value, ConnectionStatus):
            return value
        if value is None:
            return ConnectionStatus.OFFLINE
        if not isinstance(value, str):
            raise ValueError(f"connectionStatus must be a string, got {type(value).__name__}")
        if value not in {status.value for status in ConnectionStatus}:
            return ConnectionStatus.OFFLINE
        return value

    @property
    def label(self) -> str:
        """Name to show the operator."""
        return self.display_name or self.name or self.hostname or self.id

    @property
    def ping_reachable(self) -> bool:
        return self.ping_status == "reachable"

    def settings_dict(self) -> dict:
        """Machine settings as a dict; the server may send them JSON encoded."""
        settings = self.settings
        if isinstance(settings, str):
            try:
                settings = json.loads(settings)
            except ValueError:
                return {}
        return settings if isinstance(settings, dict) else {}

    def heartbeat_interval(self, default: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS) -> float:
        """Heartbeat interval in seconds configured in the machine settings."""
        settings = self.settings_dict()

        monitoring = settings.get("monitoring")
        candidates = []
        if isinstance(monitoring, dict):
            candidates.append(monitoring.get("pingIntervalSeconds"))
        candidates.append(settings.get("pingIntervalSeconds"))

        for value in candidates:
            if isinstance(value, bool):
                continue
            if isinstance(value, (int, float)) and value > 0:
                return value
        return default

    @property
    def last_ping_success(self) -> Optional[datetime]:
        """Time of the last successful network probe, if the server recorded one."""
        value = self.settings_dict().get("lastPingSuccess")
        if not isinstance(value, str) or not value:
            return None
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    def __repr__(self):
        return f"<Machine {self.id}: {self.label} ({self.lifecycle_status.value}/{self.connection_status.value})>"


@dataclass(frozen=True)
class DiscoveredMachine:
    """A machine announced by a ``machine:discovered`` event, not yet adopted."""
    id: str
    name: Optional[str] = None
    hostname: Optional[str] = None
    discovered_at: datetime = field(default_factory=utc_now)

    @property
    def lifecycle_status(self) -> LifecycleStatus:
        return LifecycleStatus.PENDING


def parse_snapshot(payload: Any) -> List[Machine]:
    """Parse a machine list payload, skipping malformed entries."""
    if not isinstance(payload, list):
        logger.warning(f"Ignoring machine snapshot of type {type(payload).__name__}")
        return []

    machines = []
    for index, entry in enumerate(payload):
        if isinstance(entry, Machine):
            machines.append(entry)
            continue
        if not isinstance(entry, dict):
            logger.warning(f"Skipping snapshot entry {index}: not an object")
            continue
        try:
            machines.append(Machine.model_validate(entry))
        except ValidationError as e:
            logger.warning(f"Skipping snapshot entry {index} ({entry.get('id')!r}): {e.error_count()} invalid field(s)")
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping snapshot entry {index} ({entry.get('id')!r}): {e}")
    return machines
