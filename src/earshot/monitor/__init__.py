"""Connection health monitoring: heartbeats, silent-failure detection and quality scoring."""

from .models import (
  ConnectionMetrics,
  ConnectionState,
  HeartbeatRecord,
  InterruptionEvent,
  InterruptionType,
)
from .monitor import ConnectionMonitor

__all__ = [
  "ConnectionMetrics",
  "ConnectionMonitor",
  "ConnectionState",
  "HeartbeatRecord",
  "InterruptionEvent",
  "InterruptionType",
]
