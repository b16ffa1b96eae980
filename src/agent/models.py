"""
Records produced and consumed by the capture pipeline.

Queued records are stored as the exact JSON the collector expects
(camelCase keys, epoch-millisecond ``timestamp``), so a batch read from the
queue can be posted without re-encoding.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# Accuracy value that marks a synthesized or otherwise degraded reading
DEGRADED_ACCURACY_METERS = 999.0


class AlertType(str, Enum):
    CONNECTIVITY_LOST = "CONNECTIVITY_LOST"
    GEOFENCE_ENTERED = "GEOFENCE_ENTERED"


class SessionState(str, Enum):
    NO_SESSION = "NO_SESSION"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"


class LocationRecord(BaseModel):
    """One enriched location sample, immutable once created."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    session_id: str = Field(..., min_length=1, alias="sessionId")
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: float = Field(..., ge=0, description="Meters; 999.0 marks a degraded reading")
    speed: float = Field(default=0.0, ge=0, description="Speed in m/s")
    captured_at_millis: int = Field(..., alias="timestamp")

    @property
    def is_degraded(self) -> bool:
        return self.accuracy >= DEGRADED_ACCURACY_METERS

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True)


class AlertRecord(BaseModel):
    """A situational alert waiting to be reported."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    session_id: str = Field(..., min_length=1, alias="sessionId")
    type: AlertType
    message: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    occurred_at_millis: int = Field(..., alias="timestamp")

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class GpsFix(BaseModel):
    """Raw reading as returned by a GPS provider, before enrichment."""
    latitude: float
    longitude: float
    accuracy: float = DEGRADED_ACCURACY_METERS
    speed: Optional[float] = Field(default=None, description="Native speed in m/s, if reported")


class LastKnownLocation(BaseModel):
    """Most recent accepted position, kept outside the queue."""
    latitude: float
    longitude: float
    timestamp: int


class Session(BaseModel):
    """Tracking session owned by the foreground app; read-only here."""
    id: str = Field(..., min_length=1)
    end_at_millis: int

    def state_at(self, now_millis: int) -> SessionState:
        if now_millis >= self.end_at_millis:
            return SessionState.EXPIRED
        return SessionState.ACTIVE


class Heartbeat(BaseModel):
    last_heartbeat_millis: int = 0
    cycle_count: int = 0
    last_successful_send_millis: int = 0
