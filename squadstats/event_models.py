from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EventKind(str, Enum):
    """Socket event names the pipeline buffers and persists."""
    PLAYER_DAMAGED = "PLAYER_DAMAGED"
    PLAYER_WOUNDED = "PLAYER_WOUNDED"
    PLAYER_DIED = "PLAYER_DIED"
    PLAYER_REVIVED = "PLAYER_REVIVED"
    CHAT_MESSAGE = "CHAT_MESSAGE"
    PLAYER_CONNECTED = "PLAYER_CONNECTED"
    PLAYER_DISCONNECTED = "PLAYER_DISCONNECTED"


class RawEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: EventKind = Field(..., description="Event kind, selects buffer queue and handler")
    server_id: str = Field(..., description="Configured id of the originating server")
    arrival_time: datetime = Field(default_factory=utcnow)
    occurred_at: datetime = Field(default_factory=utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict, description="Wire payload, unmodified")

    @field_validator("arrival_time", "occurred_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def from_wire(
        cls,
        kind: EventKind,
        server_id: str,
        data: Any,
        received_at: datetime | None = None,
    ) -> "RawEvent":
        """Tag a socket payload with its server and receipt time."""
        received_at = received_at or utcnow()
        payload = data if isinstance(data, dict) else {"value": data}
        occurred_at = parse_event_time(payload.get("time")) or received_at
        return cls(
            type=kind,
            server_id=server_id,
            arrival_time=received_at,
            occurred_at=occurred_at,
            payload=payload,
        )


def parse_event_time(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or epoch number (seconds or milliseconds)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e12 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def _maybe_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class PlayerRef(BaseModel):
    """A player slot (attacker, victim, reviver, player) lifted out of a payload."""
    steam_id: str | None = None
    eos_id: str | None = None
    name: str | None = None
    team_id: int | None = None
    squad_id: int | None = None
    is_vehicle: bool = False

    @property
    def identifiable(self) -> bool:
        return bool(self.steam_id or self.eos_id)


# role -> (flat steam key, flat eos key, flat name key)
_FLAT_KEYS = {
    "player": ("steamID", "eosID", "name"),
    "attacker": ("attackerSteamID", "attackerEOSID", "attackerName"),
    "victim": ("victimSteamID", "victimEOSID", "victimName"),
    "reviver": ("reviverSteamID", "reviverEOSID", "reviverName"),
}


def player_slot(payload: Dict[str, Any], role: str) -> PlayerRef | None:
    """
    Extract one player slot from a payload.

    Identifiers may sit on the nested object (``payload["victim"]["steamID"]``)
    or flat on the payload (``payload["victimSteamID"]``); flat keys win.

    Returns:
        PlayerRef, or None when the payload carries nothing for the role
    """
    nested = payload.get(role)
    nested = nested if isinstance(nested, dict) else {}
    steam_key, eos_key, name_key = _FLAT_KEYS[role]

    steam_id = payload.get(steam_key) or nested.get("steamID")
    eos_id = payload.get(eos_key) or nested.get("eosID")
    name = nested.get("name") or payload.get(name_key)
    if not nested and not steam_id and not eos_id and not name:
        return None

    return PlayerRef(
        steam_id=str(steam_id) if steam_id else None,
        eos_id=str(eos_id) if eos_id else None,
        name=name if isinstance(name, str) else None,
        team_id=_maybe_int(nested.get("teamID")),
        squad_id=_maybe_int(nested.get("squadID")),
        is_vehicle=bool(nested.get("isVehicle") or payload.get(f"{role}IsVehicle")),
    )


class FlushResult(BaseModel):
    """Counters returned by a handler for one event, or summed over a flush."""
    successful: int = 0
    failed: int = 0
    created: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    def merge(self, other: "FlushResult") -> "FlushResult":
        self.successful += other.successful
        self.failed += other.failed
        self.created += other.created
        self.skipped += other.skipped
        self.errors.extend(other.errors)
        return self


class DeadLetterEntry(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventKind
    original_payloads: List[RawEvent]
    failure_reason: str
    error_type: str
    stack: str | None = None
    retry_count: int
    last_attempt_time: datetime = Field(default_factory=utcnow)
