"""Tests for the audio streaming pipeline."""

import asyncio
import base64

import numpy as np
import pytest

from earshot.config import AudioConfig, PipelineConfig, ProcessingConfig, TransportConfig
from earshot.errors import (
  CaptureSourceError,
  InvalidBatchSizeError,
  InvalidBufferSizeError,
  InvalidChannelCountError,
  InvalidSampleRateError,
  MissingCredentialError,
  PipelineDestroyedError,
  TransportError,
)
from earshot.streaming import AudioStreamingPipeline, EncoderPool, Pcm16Encoder


async def settle() -> None:
  for _ in range(10):
    await asyncio.sleep(0)


def make_config(
  sample_rate=16000,
  channels=1,
  buffer_size=4,
  batch_size=3,
  api_key="secret",
  **processing,
) -> PipelineConfig:
  return PipelineConfig(
    audio=AudioConfig(sample_rate=sample_rate, channels=channels),
    processing=ProcessingConfig(
      buffer_size=buffer_size,
      batch_size=batch_size,
      enable_workers=processing.pop("enable_workers", False),
      retry_interval=0.01,
      drain_timeout=1.0,
      **processing,
    ),
    transport=TransportConfig(api_key=api_key),
  )


def decoded_frames(transport) -> list[int]:
  counts = []
  for payload in transport.audio_payloads():
    data = base64.b64decode(payload["realtimeInput"]["audio"]["data"])
    counts.append(len(data) // 2)
  return counts


class Recorder:
  def __init__(self, pipeline, *events):
    self.events = {event: [] for event in events}
    for event in events:
      pipeline.on(event, lambda *args, _event=event: self.events[_event].append(args))

  def __getitem__(self, event):
    return self.events[event]


class TestConstruction:
  """Test that invalid configuration fails before anything is touched."""

  @pytest.mark.parametrize(
    ("overrides", "error"),
    [
      ({"sample_rate": 0}, InvalidSampleRateError),
      ({"sample_rate": -8000}, InvalidSampleRateError),
      ({"channels": 0}, InvalidChannelCountError),
      ({"batch_size": 0}, InvalidBatchSizeError),
      ({"buffer_size": 0}, InvalidBufferSizeError),
      ({"api_key": ""}, MissingCredentialError),
    ],
  )
  def test_invalid_config_raises_typed_error(self, capture, transport, overrides, error):
    transport.connected = False

    with pytest.raises(error):
      AudioStreamingPipeline(make_config(**overrides), capture, transport)

    assert capture.listener_count("audio_chunk") == 0
    assert capture.start_calls == 0
    assert transport.connect_calls == 0

  def test_valid_config_builds_idle_pipeline(self, capture, transport):
    pipeline = AudioStreamingPipeline(make_config(), capture, transport)

    assert pipeline.is_streaming is False
    assert pipeline.get_metrics().is_active is False


class TestLifecycle:
  """Test start, stop and destroy."""

  @pytest.mark.asyncio
  async def test_start_connects_transport_and_capture(self, capture, transport_factory):
    transport = transport_factory(connected=False)
    pipeline = AudioStreamingPipeline(make_config(), capture, transport)
    recorder = Recorder(pipeline, "started")

    await pipeline.start_streaming()
    await pipeline.start_streaming()

    assert transport.connect_calls == 1
    assert capture.start_calls == 1
    assert pipeline.is_streaming is True
    assert len(recorder["started"]) == 1
    await pipeline.destroy()

  @pytest.mark.asyncio
  async def test_connect_failure_raises_transport_error(self, capture, transport_factory):
    transport = transport_factory(connected=False)
    transport.connect_error = OSError("refused")
    pipeline = AudioStreamingPipeline(make_config(), capture, transport)

    with pytest.raises(TransportError, match="refused"):
      await pipeline.start_streaming()

    assert capture.start_calls == 0
    assert pipeline.is_streaming is False

  @pytest.mark.asyncio
  async def test_capture_start_failure(self, capture, transport):
    capture.start_error = OSError("no microphone")
    pipeline = AudioStreamingPipeline(make_config(), capture, transport)
    recorder = Recorder(pipeline, "error")

    with pytest.raises(CaptureSourceError, match="no microphone"):
      await pipeline.start_streaming()

    assert pipeline.is_streaming is False
    assert isinstance(recorder["error"][0][0], CaptureSourceError)
    assert capture.listener_count("audio_chunk") == 0

    capture.start_error = None
    await pipeline.start_streaming()
    assert pipeline.is_streaming is True
    await pipeline.destroy()

  @pytest.mark.asyncio
  async def test_stop_is_idempotent(self, capture, transport):
    pipeline = AudioStreamingPipeline(make_config(), capture, transport)
    recorder = Recorder(pipeline, "stopped")

    await pipeline.stop_streaming()
    await pipeline.start_streaming()
    await pipeline.stop_streaming()
    await pipeline.stop_streaming()

    assert len(recorder["stopped"]) == 1
    assert capture.stop_calls == 1
    assert capture.listener_count("audio_chunk") == 0

  @pytest.mark.asyncio
  async def test_destroy_releases_everything(self, capture, transport):
    pool = EncoderPool(Pcm16Encoder())
    pipeline = AudioStreamingPipeline(make_config(), capture, transport, encoder_pool=pool)
    recorder = Recorder(pipeline, "destroyed")
    await pipeline.start_streaming()

    await pipeline.destroy()
    await pipeline.destroy()

    assert pipeline.is_destroyed is True
    assert capture.running is False
    assert transport.connected is False
    assert pool.closed is True
    assert len(recorder["destroyed"]) == 1

    with pytest.raises(PipelineDestroyedError):
      await pipeline.start_streaming()

  @pytest.mark.asyncio
  async def test_stop_from_event_handler(self, capture, transport):
    """Test that stopping inside a batch_sent handler neither deadlocks nor raises."""
    pipeline = AudioStreamingPipeline(make_config(), capture, transport)
    stops = []

    def on_batch_sent(*_args):
      stops.append(asyncio.ensure_future(pipeline.stop_streaming()))

    pipeline.once("batch_sent", on_batch_sent)
    await pipeline.start_streaming()
    capture.push(np.zeros(4))
    await settle()
    await asyncio.wait_for(asyncio.gather(*stops), timeout=2.0)

    assert pipeline.is_streaming is False
    await pipeline.start_streaming()
    assert pipeline.is_streaming is True
    await pipeline.destroy()


class TestBatching:
  """Test frame buffering and sending."""

  @pytest.mark.asyncio
  async def test_chunks_become_aligned_batches(self, capture, transport):
    pipeline = AudioStreamingPipeline(make_config(), capture, transport, clock=lambda: 100.5)
    recorder = Recorder(pipeline, "batch_sent")
    await pipeline.start_streaming()

    capture.push(np.full(3, 0.1), captured_at=100.0)
    capture.push(np.full(7, 0.1), captured_at=100.1)
    await settle()

    assert decoded_frames(transport) == [4, 4]
    metrics = pipeline.get_metrics()
    assert metrics.chunks_received == 2
    assert metrics.chunks_processed == 2
    assert metrics.bytes_processed == 16
    assert metrics.average_latency == pytest.approx(0.45)
    assert [args[1] for args in recorder["batch_sent"]] == [
      pytest.approx(0.5),
      pytest.approx(0.4),
    ]

    await pipeline.stop_streaming()
    assert decoded_frames(transport) == [4, 4, 2]

  @pytest.mark.asyncio
  async def test_stop_without_flush_discards_partial(self, capture, transport):
    pipeline = AudioStreamingPipeline(make_config(), capture, transport)
    await pipeline.start_streaming()

    capture.push(np.zeros(6))
    await settle()
    await pipeline.stop_streaming(flush=False)

    assert decoded_frames(transport) == [4]

  @pytest.mark.asyncio
  async def test_stereo_frames(self, transport, capture_factory):
    capture = capture_factory(channels=2)
    pipeline = AudioStreamingPipeline(make_config(channels=2), capture, transport)
    await pipeline.start_streaming()

    capture.push(np.zeros((4, 2)))
    await settle()

    assert decoded_frames(transport) == [4]
    await pipeline.destroy()

  @pytest.mark.asyncio
  async def test_mismatched_chunk_is_dropped(self, transport, capture_factory):
    capture = capture_factory(sample_rate=44100)
    pipeline = AudioStreamingPipeline(make_config(), capture, transport)
    await pipeline.start_streaming()

    capture.push(np.zeros(8))
    await settle()

    assert transport.audio_payloads() == []
    assert pipeline.get_metrics().error_count == 1
    await pipeline.destroy()

  @pytest.mark.asyncio
  async def test_partial_frame_chunk_is_dropped(self, transport, capture_factory):
    """Test that interleaved samples not divisible by the channel count are counted and skipped."""
    capture = capture_factory(channels=2)
    pipeline = AudioStreamingPipeline(make_config(channels=2), capture, transport)
    await pipeline.start_streaming()

    capture.push(np.zeros(5))
    await settle()

    metrics = pipeline.get_metrics()
    assert metrics.error_count == 1
    assert metrics.chunks_received == 0

    capture.push(np.zeros(8))
    await settle()

    assert decoded_frames(transport) == [4]
    await pipeline.destroy()

  @pytest.mark.asyncio
  async def test_worker_pool_encoding(self, capture, transport):
    pipeline = AudioStreamingPipeline(make_config(enable_workers=True), capture, transport)
    await pipeline.start_streaming()

    capture.push(np.full(8, 0.25))
    for _ in range(50):
      if len(transport.audio_payloads()) == 2:
        break
      await asyncio.sleep(0.01)

    assert decoded_frames(transport) == [4, 4]
    await pipeline.destroy()


class TestDegradedTransport:
  """Test buffering, backlog eviction and send failures."""

  @pytest.mark.asyncio
  async def test_backlog_held_while_disconnected(self, capture, transport):
    pipeline = AudioStreamingPipeline(make_config(), capture, transport)
    await pipeline.start_streaming()
    transport.connected = False

    capture.push(np.zeros(8))
    await asyncio.sleep(0.05)
    assert transport.audio_payloads() == []
    assert pipeline.get_metrics().pending_batches == 2

    transport.connected = True
    await asyncio.sleep(0.05)
    assert decoded_frames(transport) == [4, 4]
    await pipeline.destroy()

  @pytest.mark.asyncio
  async def test_backlog_evicts_oldest(self, capture, transport):
    pipeline = AudioStreamingPipeline(make_config(batch_size=3), capture, transport)
    await pipeline.start_streaming()
    transport.connected = False

    for n in range(5):
      capture.push(np.full(4, n / 10))
    metrics = pipeline.get_metrics()
    assert metrics.pending_batches == 3
    assert metrics.dropped_batches == 2

    transport.connected = True
    await asyncio.sleep(0.05)
    sent = [payload["realtimeInput"]["audio"]["data"] for payload in transport.audio_payloads()]
    expected = Pcm16Encoder().to_pcm16(np.full(4, 0.2, dtype=np.float32), 16000)
    assert len(sent) == 3
    assert base64.b64decode(sent[0]) == expected
    await pipeline.destroy()

  @pytest.mark.asyncio
  async def test_health_check_gates_sending(self, capture, transport):
    healthy = False
    pipeline = AudioStreamingPipeline(
      make_config(), capture, transport, health_check=lambda: healthy
    )
    await pipeline.start_streaming()

    capture.push(np.zeros(4))
    await asyncio.sleep(0.05)
    assert transport.audio_payloads() == []

    healthy = True
    await asyncio.sleep(0.05)
    assert len(transport.audio_payloads()) == 1
    await pipeline.destroy()

  @pytest.mark.asyncio
  async def test_send_failure_is_reported_and_streaming_continues(self, capture, transport):
    pipeline = AudioStreamingPipeline(make_config(), capture, transport)
    recorder = Recorder(pipeline, "error")
    await pipeline.start_streaming()

    transport.fail_sends = True
    capture.push(np.zeros(4))
    await settle()

    assert isinstance(recorder["error"][0][0], TransportError)
    assert pipeline.get_metrics().error_count == 1
    assert pipeline.is_streaming is True

    transport.fail_sends = False
    capture.push(np.zeros(4))
    await settle()
    assert len(transport.audio_payloads()) == 1
    await pipeline.destroy()

  @pytest.mark.asyncio
  async def test_capture_error_stops_streaming(self, capture, transport):
    pipeline = AudioStreamingPipeline(make_config(), capture, transport)
    recorder = Recorder(pipeline, "error", "stopped")
    await pipeline.start_streaming()

    capture.fail(RuntimeError("device unplugged"))
    await settle()

    assert isinstance(recorder["error"][0][0], CaptureSourceError)
    assert len(recorder["stopped"]) == 1
    assert pipeline.is_streaming is False
    assert capture.stop_calls == 1
    await pipeline.destroy()

  @pytest.mark.asyncio
  async def test_reset_metrics(self, capture, transport):
    pipeline = AudioStreamingPipeline(make_config(), capture, transport)
    await pipeline.start_streaming()
    capture.push(np.zeros(4))
    await settle()

    pipeline.reset_metrics()

    metrics = pipeline.get_metrics()
    assert metrics.chunks_processed == 0
    assert metrics.is_active is True
    await pipeline.destroy()
