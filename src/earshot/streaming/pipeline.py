"""
Audio streaming pipeline: capture source in, encoded batches out through the transport.
"""

import asyncio
import time
from collections import deque
from collections.abc import Callable
from typing import Any

import numpy as np
from pydantic import BaseModel

from earshot.common import Bytes, EventEmitter, Milliseconds, get_logger
from earshot.config import PipelineConfig
from earshot.errors import CaptureSourceError, PipelineDestroyedError, TransportError

from .encoder import EncodedBatch, EncoderPool, Pcm16Encoder
from .interfaces import AudioBatch, AudioChunk, CaptureSource, Transport

logger = get_logger("pipe")


class PipelineMetrics(BaseModel):
  chunks_received: int = 0
  """Capture chunks accepted into the batch buffer."""

  chunks_processed: int = 0
  """Batches encoded and sent successfully."""

  bytes_processed: int = 0
  """PCM16 bytes sent."""

  average_latency: float = 0.0
  """Mean seconds from capture of a batch's first frame to its successful send."""

  error_count: int = 0
  dropped_batches: int = 0
  """Batches evicted from the backlog or discarded on stop."""

  worker_fallbacks: int = 0
  pending_batches: int = 0
  is_active: bool = False


class AudioStreamingPipeline(EventEmitter):
  """
  Batches captured audio into fixed-size frames, encodes it and sends it to the transport.

  Capture chunks are copied into a frame buffer; every `buffer_size` frames become one
  `AudioBatch` appended to a backlog of at most `batch_size` batches (the oldest is dropped when
  full). A single sender task drains the backlog in order. While the transport is disconnected or
  `health_check` returns False the sender keeps the backlog and retries every `retry_interval`.

  A failed send is counted and surfaced as an `error` event; streaming carries on. A capture
  source error is fatal: it is surfaced as an `error` event and streaming stops.

  Events:
      started, stopped, destroyed
      batch_sent(encoded_batch, latency)
      error(exception)

  :param config: Pipeline configuration. Validated before anything is allocated.
  :param capture: Audio capture source.
  :param transport: Connection to the transcription endpoint.
  :param encoder: PCM16 encoder. Built from the configuration when omitted.
  :param encoder_pool: Worker pool for encoding. Built when `enable_workers` is set and omitted.
  :param health_check: Extra gate on sending, typically `ConnectionMonitor.is_responsive`.
  :param clock: Wall-clock source used for latency measurement.
  :raises ConfigurationError: With a specific subclass for each invalid field.
  """

  def __init__(
    self,
    config: PipelineConfig,
    capture: CaptureSource,
    transport: Transport,
    encoder: Pcm16Encoder | None = None,
    encoder_pool: EncoderPool | None = None,
    health_check: Callable[[], bool] | None = None,
    clock: Callable[[], float] = time.time,
  ):
    config.ensure_valid()
    super().__init__()

    self._config = config
    self._capture = capture
    self._transport = transport
    self._health_check = health_check
    self._clock = clock

    processing = config.processing
    self._encoder = encoder or Pcm16Encoder(processing.target_sample_rate)
    if encoder_pool is None and processing.enable_workers:
      encoder_pool = EncoderPool(self._encoder, max_workers=processing.worker_count)
    self._pool = encoder_pool

    self._streaming = False
    self._destroyed = False
    self._metrics = PipelineMetrics()
    self._latency_samples = 0

    self._frames: list[np.ndarray] = []
    self._frame_count = 0
    self._buffer_started_at: float | None = None
    self._backlog: deque[AudioBatch] = deque()
    self._wakeup = asyncio.Event()
    self._sender_task: asyncio.Task[None] | None = None
    self._background_tasks: set[asyncio.Task[Any]] = set()

  @property
  def config(self) -> PipelineConfig:
    return self._config

  @property
  def is_streaming(self) -> bool:
    return self._streaming

  @property
  def is_destroyed(self) -> bool:
    return self._destroyed

  # Lifecycle

  async def start_streaming(self) -> None:
    """
    Connect the transport if needed, then start capture. A no-op when already streaming.

    :raises PipelineDestroyedError: After `destroy()`.
    :raises TransportError: If the transport cannot connect.
    :raises CaptureSourceError: If the capture source cannot start.
    """
    if self._destroyed:
      raise PipelineDestroyedError("Cannot start a destroyed pipeline")
    if self._streaming:
      return

    if not self._transport.is_connected():
      try:
        await self._transport.connect()
      except Exception as e:
        self._metrics.error_count += 1
        raise TransportError(f"Unable to connect transport: {e}") from e

    self._capture.on("audio_chunk", self._on_audio_chunk)
    self._capture.on("error", self._on_capture_error)
    self._streaming = True
    self._metrics.is_active = True
    self._wakeup.clear()
    self._sender_task = asyncio.create_task(self._send_loop(), name="earshot-pipeline-sender")

    try:
      await self._capture.start_streaming()
    except Exception as e:
      logger.exception("Capture source failed to start")
      error = CaptureSourceError(f"Capture source failed to start: {e}")
      self._metrics.error_count += 1
      await self._halt(flush=False)
      self.emit("error", error)
      raise error from e

    audio = self._config.audio
    logger.info(
      "Streaming started",
      sample_rate=audio.sample_rate,
      channels=audio.channels,
      buffer_size=self._config.processing.buffer_size,
      workers=self._pool is not None,
    )
    self.emit("started")

  async def stop_streaming(self, flush: bool | None = None) -> None:
    """
    Stop capture and the sender. A no-op when not streaming.

    :param flush: Send the partial batch and the backlog before stopping. Defaults to
        `flush_on_stop`.
    """
    if not self._streaming:
      return

    if flush is None:
      flush = self._config.processing.flush_on_stop

    await self._halt(flush=flush)
    logger.info("Streaming stopped", **self._metrics_summary())
    self.emit("stopped")

  async def _halt(self, flush: bool) -> None:
    self._streaming = False
    self._metrics.is_active = False
    self._capture.off("audio_chunk", self._on_audio_chunk)
    self._capture.off("error", self._on_capture_error)

    try:
      await self._capture.stop_streaming()
    except Exception:
      logger.exception("Capture source failed to stop cleanly")

    if flush:
      self._flush_partial_batch()
    else:
      self._discard(len(self._backlog))
      self._reset_frame_buffer()

    await self._stop_sender()

    if self._backlog:
      logger.warning("Discarding unsent batches", count=len(self._backlog))
      self._discard(len(self._backlog))
    self._reset_frame_buffer()

  async def _stop_sender(self) -> None:
    task, self._sender_task = self._sender_task, None
    self._wakeup.set()
    if task is None or task is asyncio.current_task():
      return

    _, still_running = await asyncio.wait({task}, timeout=self._config.processing.drain_timeout)
    if still_running:
      task.cancel()
    await asyncio.gather(task, return_exceptions=True)

  async def destroy(self) -> None:
    """Stop streaming and release the capture source, workers and transport. Terminal."""
    if self._destroyed:
      return
    self._destroyed = True

    await self.stop_streaming(flush=False)
    self._capture.off("audio_chunk", self._on_audio_chunk)
    self._capture.off("error", self._on_capture_error)

    for task in self._background_tasks:
      task.cancel()
    if self._background_tasks:
      await asyncio.gather(*self._background_tasks, return_exceptions=True)
    self._background_tasks.clear()

    if self._pool is not None:
      self._pool.close()

    try:
      await self._transport.disconnect()
    except Exception:
      logger.exception("Transport failed to disconnect cleanly")

    logger.info("Pipeline destroyed")
    self.emit("destroyed")
    self.remove_all_listeners()

  # Metrics

  def get_metrics(self) -> PipelineMetrics:
    return self._metrics.model_copy(
      update={
        "pending_batches": len(self._backlog),
        "worker_fallbacks": self._pool.fallbacks if self._pool is not None else 0,
      }
    )

  def reset_metrics(self) -> None:
    self._metrics = PipelineMetrics(is_active=self._streaming)
    self._latency_samples = 0
    if self._pool is not None:
      self._pool.fallbacks = 0

  def _metrics_summary(self) -> dict[str, Any]:
    metrics = self.get_metrics()
    return {
      "batches": metrics.chunks_processed,
      "sent": str(Bytes(metrics.bytes_processed)),
      "latency": str(Milliseconds.from_seconds(metrics.average_latency)),
      "errors": metrics.error_count,
      "dropped": metrics.dropped_batches,
    }

  # Capture events

  def _on_audio_chunk(self, chunk: AudioChunk) -> None:
    if not self._streaming:
      return

    audio = self._config.audio
    if chunk.sample_rate != audio.sample_rate or chunk.channels != audio.channels:
      self._metrics.error_count += 1
      logger.warning(
        "Dropping chunk with unexpected format",
        sample_rate=chunk.sample_rate,
        channels=chunk.channels,
      )
      return

    samples = np.array(chunk.samples, dtype=np.float32, copy=True)
    if samples.size % audio.channels:
      self._metrics.error_count += 1
      logger.warning(
        "Dropping chunk with partial frame",
        samples=samples.size,
        channels=audio.channels,
      )
      return

    frames = samples.reshape(-1, audio.channels)
    if frames.shape[0] == 0:
      return

    if self._frame_count == 0:
      self._buffer_started_at = chunk.captured_at
    self._frames.append(frames)
    self._frame_count += frames.shape[0]
    self._metrics.chunks_received += 1

    buffer_size = self._config.processing.buffer_size
    while self._frame_count >= buffer_size:
      buffered = np.concatenate(self._frames)
      remainder = buffered[buffer_size:]
      self._enqueue(buffered[:buffer_size], self._buffer_started_at or chunk.captured_at)
      self._frames = [remainder] if remainder.shape[0] else []
      self._frame_count = remainder.shape[0]
      self._buffer_started_at = chunk.captured_at if self._frame_count else None

  def _on_capture_error(self, error: BaseException | str) -> None:
    if not self._streaming:
      return

    logger.error("Capture source failed, stopping stream", error=str(error))
    self._metrics.error_count += 1
    self.emit("error", CaptureSourceError(f"Capture source failed: {error}"))
    self._spawn(self.stop_streaming(flush=False))

  # Batching

  def _enqueue(self, frames: np.ndarray, captured_at: float) -> None:
    audio = self._config.audio
    batch = AudioBatch(
      samples=frames,
      captured_at=captured_at,
      sample_rate=audio.sample_rate,
      channels=audio.channels,
    )
    if len(self._backlog) >= self._config.processing.batch_size:
      self._backlog.popleft()
      self._metrics.dropped_batches += 1
      logger.warning("Backlog full, dropped oldest batch", backlog=len(self._backlog))
    self._backlog.append(batch)
    self._wakeup.set()

  def _flush_partial_batch(self) -> None:
    if self._frame_count and self._buffer_started_at is not None:
      self._enqueue(np.concatenate(self._frames), self._buffer_started_at)
    self._reset_frame_buffer()

  def _reset_frame_buffer(self) -> None:
    self._frames = []
    self._frame_count = 0
    self._buffer_started_at = None

  def _discard(self, count: int) -> None:
    for _ in range(count):
      self._backlog.popleft()
    self._metrics.dropped_batches += count

  # Sending

  def _connection_available(self) -> bool:
    if not self._transport.is_connected():
      return False
    if self._health_check is None:
      return True
    try:
      return bool(self._health_check())
    except Exception:
      logger.exception("Health check failed")
      return False

  async def _send_loop(self) -> None:
    """Drain the backlog in order until streaming stops and nothing sendable is left."""
    while True:
      if not self._backlog:
        if not self._streaming:
          return
        self._wakeup.clear()
        await self._wakeup.wait()
        continue

      if not self._connection_available():
        if not self._streaming:
          return
        await asyncio.sleep(self._config.processing.retry_interval)
        continue

      await self._send_batch(self._backlog.popleft())

  async def _encode(self, batch: AudioBatch) -> EncodedBatch:
    if self._pool is not None:
      return await self._pool.encode(batch)
    return self._encoder.encode(batch)

  async def _send_batch(self, batch: AudioBatch) -> None:
    try:
      encoded = await self._encode(batch)
    except Exception as e:
      self._metrics.error_count += 1
      logger.exception("Encoding failed, batch dropped")
      self.emit("error", e)
      return

    try:
      await self._transport.send(encoded.payload)
    except Exception as e:
      self._metrics.error_count += 1
      logger.warning("Send failed, batch dropped", error=str(e))
      self.emit("error", TransportError(f"Send failed: {e}"))
      return

    latency = max(0.0, self._clock() - batch.captured_at)
    self._latency_samples += 1
    metrics = self._metrics
    metrics.chunks_processed += 1
    metrics.bytes_processed += encoded.pcm_bytes
    metrics.average_latency += (latency - metrics.average_latency) / self._latency_samples
    self.emit("batch_sent", encoded, latency)

  def _spawn(self, coro) -> None:
    task = asyncio.create_task(coro)
    self._background_tasks.add(task)
    task.add_done_callback(self._background_tasks.discard)
