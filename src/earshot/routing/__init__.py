"""Routing of transcripts between live streaming and static displays."""

from .models import (
  Priority,
  RouterStats,
  RoutingAction,
  RoutingDecision,
  RoutingMetadata,
  RoutingRecord,
  SourceClass,
  TranscriptionSource,
  TranscriptionWithSource,
  classify_source,
)
from .queue import TranscriptionQueue
from .router import StreamingPredicate, WebSocketTranscriptionRouter
from .targets import StaticTarget, StreamingTarget

__all__ = [
  "Priority",
  "RouterStats",
  "RoutingAction",
  "RoutingDecision",
  "RoutingMetadata",
  "RoutingRecord",
  "SourceClass",
  "StaticTarget",
  "StreamingPredicate",
  "StreamingTarget",
  "TranscriptionQueue",
  "TranscriptionSource",
  "TranscriptionWithSource",
  "WebSocketTranscriptionRouter",
  "classify_source",
]
