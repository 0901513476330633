"""Data model owned by the connection monitor. Callers only ever see copies."""

import time
from enum import StrEnum

from pydantic import BaseModel, Field


class InterruptionType(StrEnum):
  DISCONNECT = "disconnect"
  ERROR = "error"
  TIMEOUT = "timeout"
  SILENT_FAILURE = "silent_failure"


class ConnectionState(BaseModel):
  """Liveness snapshot of the monitored connection."""

  is_connected: bool = False
  is_healthy: bool = False
  last_seen: float | None = None
  """Wall-clock time of the last inbound message of any kind."""

  quality: float = Field(default=1.0, ge=0.0, le=1.0)
  """Connection quality score, 1.0 being perfect."""


class ConnectionMetrics(BaseModel):
  """Counters and latency figures accumulated while monitoring."""

  latency: float | None = None
  """Round-trip time of the most recent heartbeat, in seconds."""

  average_latency: float | None = None
  """Exponential moving average of heartbeat round-trip times, in seconds."""

  heartbeats_sent: int = 0
  heartbeats_received: int = 0
  consecutive_timeouts: int = 0
  total_timeouts: int = 0
  total_interruptions: int = 0
  reconnection_count: int = 0
  last_heartbeat: float | None = None
  """Wall-clock time of the most recent matched pong."""


class HeartbeatRecord(BaseModel):
  ping_id: str
  sent_at: float


class InterruptionEvent(BaseModel):
  """One observed loss of service."""

  type: InterruptionType
  reason: str
  error_code: int | None = None
  can_recover: bool = True
  timestamp: float = Field(default_factory=time.time)
  duration: float | None = None
  """Seconds until the connection re-opened. None while still interrupted."""
