"""
Wire protocol for the transcription endpoint: outbound models and inbound shape classification.
"""

from .codec import (
  RawMessage,
  classify_message,
  decode_json_object,
  extract_pong_id,
  serialize_message,
)
from .inbound import DirectText, Empty, ErrorPayload, InboundMessage, NestedParts, Unparseable
from .messages import (
  AudioBlob,
  OutboundMessage,
  PingMessage,
  PongMessage,
  RealtimeInput,
  RealtimeInputMessage,
  SetupMessage,
  SetupOptions,
)

__all__ = [
  "AudioBlob",
  "DirectText",
  "Empty",
  "ErrorPayload",
  "InboundMessage",
  "NestedParts",
  "OutboundMessage",
  "PingMessage",
  "PongMessage",
  "RawMessage",
  "RealtimeInput",
  "RealtimeInputMessage",
  "SetupMessage",
  "SetupOptions",
  "Unparseable",
  "classify_message",
  "decode_json_object",
  "extract_pong_id",
  "serialize_message",
]
