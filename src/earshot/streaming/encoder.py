"""
Audio format conversion: float frames in, base64 PCM16 realtime-input messages out.

Conversion is CPU work, so it can run on a thread pool. A pool that fails for any reason falls
back to converting on the calling thread for that batch.
"""

import asyncio
import base64
from concurrent.futures import ThreadPoolExecutor

import numpy as np
from pydantic.dataclasses import dataclass

from earshot.common import get_logger
from earshot.wire import AudioBlob, RealtimeInput, RealtimeInputMessage, serialize_message

from .interfaces import AudioBatch

logger = get_logger("enc")

PCM16_MAX = 32767


@dataclass(frozen=True)
class EncodedBatch:
  payload: str
  """Serialized realtime-input message, ready to send."""

  pcm_bytes: int
  """Size of the PCM16 audio carried by the payload."""

  captured_at: float
  frames: int


class Pcm16Encoder:
  """Downmix to mono, resample linearly to the target rate and quantize to little-endian int16."""

  def __init__(self, target_sample_rate: int = 16000):
    if target_sample_rate <= 0:
      raise ValueError(f"Target sample rate must be positive, got {target_sample_rate}")
    self.target_sample_rate = target_sample_rate
    self.mime_type = f"audio/pcm;rate={target_sample_rate}"

  def to_pcm16(self, samples: np.ndarray, sample_rate: int) -> bytes:
    """
    Convert float frames to PCM16 bytes.

    :param samples: Float frames shaped (frames, channels) or flat mono.
    :param sample_rate: Rate of `samples` in Hz.
    """
    frames = np.asarray(samples, dtype=np.float32)
    mono = frames.mean(axis=1) if frames.ndim == 2 else frames.reshape(-1)

    if sample_rate != self.target_sample_rate and mono.size > 0:
      duration = mono.size / sample_rate
      out_size = max(1, int(round(duration * self.target_sample_rate)))
      source_times = np.arange(mono.size) / sample_rate
      target_times = np.arange(out_size) / self.target_sample_rate
      mono = np.interp(target_times, source_times, mono).astype(np.float32)

    quantized = (np.clip(mono, -1.0, 1.0) * PCM16_MAX).astype("<i2")
    return quantized.tobytes()

  def encode(self, batch: AudioBatch) -> EncodedBatch:
    pcm = self.to_pcm16(batch.samples, batch.sample_rate)
    message = RealtimeInputMessage(
      realtime_input=RealtimeInput(
        audio=AudioBlob(data=base64.b64encode(pcm).decode("ascii"), mime_type=self.mime_type)
      )
    )
    return EncodedBatch(
      payload=serialize_message(message),
      pcm_bytes=len(pcm),
      captured_at=batch.captured_at,
      frames=batch.frame_count,
    )


class EncoderPool:
  """Runs an encoder on worker threads, falling back to inline encoding when a worker fails."""

  def __init__(self, encoder: Pcm16Encoder, max_workers: int = 2):
    self._encoder = encoder
    self._max_workers = max_workers
    self._executor: ThreadPoolExecutor | None = None
    self._closed = False
    self.fallbacks = 0

  @property
  def closed(self) -> bool:
    return self._closed

  def _ensure_executor(self) -> ThreadPoolExecutor:
    if self._executor is None:
      self._executor = ThreadPoolExecutor(
        max_workers=self._max_workers, thread_name_prefix="earshot-encoder"
      )
    return self._executor

  async def encode(self, batch: AudioBatch) -> EncodedBatch:
    if self._closed:
      return self._encoder.encode(batch)

    loop = asyncio.get_running_loop()
    try:
      return await loop.run_in_executor(self._ensure_executor(), self._encoder.encode, batch)
    except Exception as e:
      self.fallbacks += 1
      logger.warning("Worker encoding failed, encoding inline", error=str(e))
      return self._encoder.encode(batch)

  def close(self) -> None:
    if self._closed:
      return
    self._closed = True
    if self._executor is not None:
      self._executor.shutdown(wait=False, cancel_futures=True)
      self._executor = None
