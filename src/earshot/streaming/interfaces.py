"""
Protocol interfaces for the collaborators of the streaming pipeline.

Capture sources and transports are external to the core; they are described here structurally so
that the microphone, the WebSocket client and the test fakes are interchangeable.
"""

from collections.abc import Callable
from typing import Any, Protocol

import numpy as np
from pydantic import ConfigDict, Field
from pydantic.dataclasses import dataclass


@dataclass(frozen=True, config=ConfigDict(arbitrary_types_allowed=True))
class AudioChunk:
  """One block of captured audio. Never mutated once handed to the pipeline."""

  samples: np.ndarray
  """Float samples, either flat or shaped (frames, channels)."""

  captured_at: float
  """Wall-clock capture time of the first sample."""

  sample_rate: int = Field(gt=0)
  channels: int = Field(default=1, ge=1)


@dataclass(frozen=True, config=ConfigDict(arbitrary_types_allowed=True))
class AudioBatch:
  """A buffer-size aligned run of frames assembled from one or more chunks."""

  samples: np.ndarray
  """Float32 frames shaped (frames, channels). Owned by the batch; chunks are copied in."""

  captured_at: float
  """Capture time of the oldest chunk contributing to this batch."""

  sample_rate: int
  channels: int

  @property
  def frame_count(self) -> int:
    return int(self.samples.shape[0])


class EventSource(Protocol):
  def on(self, event: str, handler: Callable[..., Any]) -> Any: ...

  def off(self, event: str, handler: Callable[..., Any] | None = None) -> None: ...


class CaptureSource(EventSource, Protocol):
  """
  Protocol for audio capture sources.

  Emits `audio_chunk` with an `AudioChunk` and `error` with an exception. Capture runs until
  `stop_streaming` is awaited.
  """

  async def start_streaming(self) -> None:
    """
    Begin delivering `audio_chunk` events.

    :raises Exception: If the device cannot be opened.
    """
    ...

  async def stop_streaming(self) -> None:
    """Stop delivering audio. A no-op when not started."""
    ...


class Transport(EventSource, Protocol):
  """
  Protocol for the duplex, message-oriented socket to the transcription endpoint.

  Emits `open` with no arguments, `message` with the raw payload, `close` with a close code and
  reason, and `error` with an exception.
  """

  async def connect(self) -> None:
    """Resolve once the handshake and the first setup step have succeeded."""
    ...

  async def disconnect(self) -> None: ...

  async def send(self, payload: str | bytes) -> None: ...

  def is_connected(self) -> bool: ...
