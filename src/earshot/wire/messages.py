"""
Outbound messages sent to the transcription endpoint.

Field names follow the endpoint's camelCase JSON; Python attributes stay snake_case through
pydantic aliases.
"""

from pydantic import BaseModel, ConfigDict, Field


class _OutboundModel(BaseModel):
  model_config = ConfigDict(populate_by_name=True, frozen=True)


class PingMessage(_OutboundModel):
  """Heartbeat probe. The endpoint answers with a `PongMessage` carrying the same id."""

  ping: str


class PongMessage(_OutboundModel):
  """Heartbeat answer."""

  pong: str


class AudioBlob(_OutboundModel):
  data: str
  """Base64 encoded little-endian PCM16 samples."""

  mime_type: str = Field(default="audio/pcm;rate=16000", alias="mimeType")


class RealtimeInput(_OutboundModel):
  audio: AudioBlob


class RealtimeInputMessage(_OutboundModel):
  """One encoded audio batch."""

  realtime_input: RealtimeInput = Field(alias="realtimeInput")


class SetupOptions(_OutboundModel):
  model: str


class SetupMessage(_OutboundModel):
  """First message on a fresh connection, announcing the model to use."""

  setup: SetupOptions


type OutboundMessage = (
  PingMessage | PongMessage | RealtimeInputMessage | SetupMessage
)
