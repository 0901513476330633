import time
import uuid
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class TranscriptionSource(StrEnum):
  """Known producers of transcripts."""

  WEBSOCKET_GEMINI = "websocket-gemini"
  WEBSOCKET = "websocket"
  WEBSOCKET_PROXY = "websocket-proxy"
  WEBSOCKET_PARTIAL = "websocket-partial"
  WEBSOCKET_TEXT = "websocket-text"
  WEBSOCKET_TURN_COMPLETE = "websocket-turn-complete"
  STREAMING = "streaming"
  REAL_TIME = "real-time"
  BATCH = "batch"
  BATCH_PROXY = "batch-proxy"
  FILE_UPLOAD = "file-upload"


class SourceClass(StrEnum):
  INTERACTIVE = "interactive"
  """Low-latency socket sources. Always rendered live."""

  STREAMING = "streaming"
  BATCH = "batch"
  UNKNOWN = "unknown"


_SOURCE_CLASSES = {
  TranscriptionSource.WEBSOCKET_GEMINI: SourceClass.INTERACTIVE,
  TranscriptionSource.WEBSOCKET: SourceClass.INTERACTIVE,
  TranscriptionSource.WEBSOCKET_PROXY: SourceClass.INTERACTIVE,
  TranscriptionSource.WEBSOCKET_PARTIAL: SourceClass.INTERACTIVE,
  TranscriptionSource.WEBSOCKET_TEXT: SourceClass.INTERACTIVE,
  TranscriptionSource.WEBSOCKET_TURN_COMPLETE: SourceClass.INTERACTIVE,
  TranscriptionSource.STREAMING: SourceClass.STREAMING,
  TranscriptionSource.REAL_TIME: SourceClass.STREAMING,
  TranscriptionSource.BATCH: SourceClass.BATCH,
  TranscriptionSource.BATCH_PROXY: SourceClass.BATCH,
  TranscriptionSource.FILE_UPLOAD: SourceClass.BATCH,
}


def classify_source(source: str) -> SourceClass:
  """Map a source name to its routing class. Unlisted `websocket-*` names count as interactive."""
  try:
    return _SOURCE_CLASSES[TranscriptionSource(source)]
  except ValueError:
    if source.startswith("websocket"):
      return SourceClass.INTERACTIVE
    return SourceClass.UNKNOWN


class TranscriptionWithSource(BaseModel):
  """A transcript tagged with the producer it came from."""

  id: str = Field(default_factory=lambda: uuid.uuid4().hex)
  text: str
  source: str
  """A `TranscriptionSource` value, or any other name for unrecognized producers."""

  timestamp: float = Field(default_factory=time.time)
  confidence: float | None = None
  is_partial: bool = False
  metadata: dict[str, Any] = Field(default_factory=dict)


class RoutingAction(StrEnum):
  ROUTE_TO_STREAMING = "route-to-streaming"
  ROUTE_TO_STATIC = "route-to-static"
  QUEUE = "queue"
  MERGE = "merge"
  DROP = "drop"


class Priority:
  """Routing priorities. Lower numbers win."""

  INTERACTIVE = 1.0
  UPGRADED_BATCH = 1.5
  STREAMING = 2.0
  BATCH = 3.0
  UNKNOWN = 4.0


class RoutingMetadata(BaseModel):
  is_websocket: bool = False
  is_streaming: bool = False
  is_batch: bool = False
  has_active_stream: bool = False
  queue_position: int | None = None


class RoutingDecision(BaseModel):
  action: RoutingAction
  priority: float
  should_interrupt: bool = False
  reason: str
  metadata: RoutingMetadata = Field(default_factory=RoutingMetadata)


class RoutingRecord(BaseModel):
  """One entry of the routing history."""

  transcript: TranscriptionWithSource
  decision: RoutingDecision
  delivered_to: str | None = None
  """`streaming`, `static`, `queue` or None when the transcript went nowhere."""

  timestamp: float = Field(default_factory=time.time)


class RouterStats(BaseModel):
  queue_length: int
  active_source: str | None
  action_counts: dict[str, int]
  total_decisions: int
  evicted_from_queue: int
  target_failures: int
