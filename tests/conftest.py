"""Shared fakes for earshot tests: virtual time, an in-memory transport and a scripted capture."""

import asyncio
import heapq
import json
from collections.abc import Callable
from typing import Any

import numpy as np
import pytest

from earshot.common import EventEmitter
from earshot.errors import TransportError
from earshot.routing import TranscriptionWithSource
from earshot.streaming import AudioChunk
from earshot.wire import PongMessage, serialize_message


class FakeTimer:
  def __init__(self) -> None:
    self.cancelled = False

  def cancel(self) -> None:
    self.cancelled = True


class FakeScheduler:
  """Virtual clock. Timers only fire inside `advance`."""

  def __init__(self, start: float = 1_000.0):
    self.now = start
    self._timers: list[tuple[float, int, FakeTimer, Callable[..., Any], tuple[Any, ...]]] = []
    self._sequence = 0

  def time(self) -> float:
    return self.now

  def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> FakeTimer:
    timer = FakeTimer()
    self._sequence += 1
    due = self.now + max(0.0, delay)
    heapq.heappush(self._timers, (due, self._sequence, timer, callback, args))
    return timer

  def pending(self) -> int:
    return sum(1 for _, _, timer, _, _ in self._timers if not timer.cancelled)

  async def advance(self, seconds: float) -> None:
    """Move time forward, firing due timers in order and letting spawned tasks run."""
    target = self.now + seconds
    while self._timers and self._timers[0][0] <= target:
      due, _, timer, callback, args = heapq.heappop(self._timers)
      if timer.cancelled:
        continue
      self.now = due
      callback(*args)
      await settle()
    self.now = target
    await settle()


async def settle(rounds: int = 5) -> None:
  """Yield to the event loop enough times for chained callbacks to run."""
  for _ in range(rounds):
    await asyncio.sleep(0)


class FakeTransport(EventEmitter):
  """In-memory transport that records what is sent and lets tests inject inbound traffic."""

  def __init__(self, connected: bool = True):
    super().__init__()
    self.connected = connected
    self.sent: list[str | bytes] = []
    self.fail_sends = False
    self.connect_error: Exception | None = None
    self.connect_calls = 0
    self.disconnect_calls = 0

  async def connect(self) -> None:
    self.connect_calls += 1
    if self.connect_error is not None:
      # WebSocketTransport reports a failed handshake as `error` before raising
      self.emit("error", self.connect_error)
      raise self.connect_error
    self.connected = True
    self.emit("open")

  async def disconnect(self) -> None:
    self.disconnect_calls += 1
    if self.connected:
      self.connected = False
      self.emit("close", 1000, "client disconnect")

  async def send(self, payload: str | bytes) -> None:
    if self.fail_sends:
      raise TransportError("send failed")
    self.sent.append(payload)

  def is_connected(self) -> bool:
    return self.connected

  # Test helpers

  def receive(self, data: Any) -> None:
    self.emit("message", data)

  def drop(self, code: int = 1006, reason: str = "") -> None:
    self.connected = False
    self.emit("close", code, reason)

  def fail(self, error: Exception) -> None:
    self.connected = False
    self.emit("error", error)

  def pings(self) -> list[str]:
    ids = []
    for payload in self.sent:
      message = json.loads(payload)
      if "ping" in message:
        ids.append(message["ping"])
    return ids

  def audio_payloads(self) -> list[dict[str, Any]]:
    return [json.loads(p) for p in self.sent if "realtimeInput" in json.loads(p)]

  def pong(self, ping_id: str) -> None:
    self.receive(serialize_message(PongMessage(pong=ping_id)))


class FakeCapture(EventEmitter):
  """Capture source driven by the test instead of a device."""

  def __init__(self, sample_rate: int = 16000, channels: int = 1):
    super().__init__()
    self.sample_rate = sample_rate
    self.channels = channels
    self.running = False
    self.start_error: Exception | None = None
    self.start_calls = 0
    self.stop_calls = 0

  async def start_streaming(self) -> None:
    self.start_calls += 1
    if self.start_error is not None:
      raise self.start_error
    self.running = True

  async def stop_streaming(self) -> None:
    self.stop_calls += 1
    self.running = False

  def push(self, samples: Any, captured_at: float = 0.0) -> AudioChunk:
    chunk = AudioChunk(
      samples=np.asarray(samples, dtype=np.float32),
      captured_at=captured_at,
      sample_rate=self.sample_rate,
      channels=self.channels,
    )
    self.emit("audio_chunk", chunk)
    return chunk

  def fail(self, error: Exception) -> None:
    self.emit("error", error)


class RecordingStreamingTarget:
  def __init__(self) -> None:
    self.calls: list[tuple[str, Any]] = []
    self.source: str | None = None
    self.fail = False

  @property
  def is_streaming_active(self) -> bool:
    return self.source is not None

  @property
  def current_streaming_source(self) -> str | None:
    return self.source

  def start_streaming_transcription(self, transcript: TranscriptionWithSource) -> None:
    if self.fail:
      raise RuntimeError("renderer exploded")
    self.calls.append(("start", transcript.text))
    self.source = transcript.source

  def update_streaming_transcription(self, transcript: TranscriptionWithSource) -> None:
    if self.fail:
      raise RuntimeError("renderer exploded")
    self.calls.append(("update", transcript.text))

  def complete_streaming_transcription(self) -> None:
    self.calls.append(("complete", self.source))
    self.source = None


class RecordingStaticTarget:
  def __init__(self) -> None:
    self.calls: list[tuple[str, Any]] = []
    self.fail = False

  def add_static_transcription(self, transcript: TranscriptionWithSource) -> None:
    if self.fail:
      raise RuntimeError("static display exploded")
    self.calls.append(("add", transcript.text))

  def append_to_last_transcription(self, text: str) -> None:
    self.calls.append(("append", text))

  def update_transcription(self, transcript_id: str, transcript: TranscriptionWithSource) -> None:
    self.calls.append(("update", transcript.text))


@pytest.fixture
def scheduler() -> FakeScheduler:
  return FakeScheduler()


@pytest.fixture
def transport() -> FakeTransport:
  return FakeTransport()


@pytest.fixture
def capture() -> FakeCapture:
  return FakeCapture()


@pytest.fixture
def streaming_target() -> RecordingStreamingTarget:
  return RecordingStreamingTarget()


@pytest.fixture
def static_target() -> RecordingStaticTarget:
  return RecordingStaticTarget()


@pytest.fixture
def transport_factory() -> type[FakeTransport]:
  return FakeTransport


@pytest.fixture
def capture_factory() -> type[FakeCapture]:
  return FakeCapture
