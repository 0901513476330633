"""
Microphone capture through sounddevice.
"""

import asyncio
import time

import numpy as np
import sounddevice as sd

from earshot.common import EventEmitter, get_logger
from earshot.config import AudioConfig
from earshot.errors import CaptureSourceError

from .interfaces import AudioChunk

logger = get_logger("mic")

DTYPE = np.float32


class SoundDeviceCapture(EventEmitter):
  """
  Captures float32 audio from an input device and emits `audio_chunk` events on the event loop.

  The sounddevice callback runs on PortAudio's thread; every block is copied there and handed to
  the loop with `call_soon_threadsafe`, so listeners always run on the loop thread.
  """

  def __init__(self, config: AudioConfig):
    super().__init__()
    self._config = config
    self._stream: sd.InputStream | None = None
    self._loop: asyncio.AbstractEventLoop | None = None
    self._running = False

  @property
  def is_running(self) -> bool:
    return self._running

  async def start_streaming(self) -> None:
    if self._running:
      return

    self._loop = asyncio.get_running_loop()
    blocksize = max(1, int(self._config.sample_rate * self._config.block_duration))
    try:
      self._stream = sd.InputStream(
        device=self._config.device,
        channels=self._config.channels,
        samplerate=self._config.sample_rate,
        dtype=DTYPE,
        latency="low",
        blocksize=blocksize,
        callback=self._audio_callback,
        finished_callback=self._on_stream_finished,
      )
      self._running = True
      self._stream.start()
    except Exception as e:
      self._running = False
      self._stream = None
      raise CaptureSourceError(f"Unable to open input device {self._config.device!r}: {e}") from e

    logger.info(
      "Capture started",
      device=self._config.device or "default",
      sample_rate=self._config.sample_rate,
      channels=self._config.channels,
      blocksize=blocksize,
    )

  async def stop_streaming(self) -> None:
    if not self._running:
      return

    self._running = False
    stream, self._stream = self._stream, None
    if stream is not None:
      stream.stop()
      stream.close()
    logger.info("Capture stopped")

  def _audio_callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
    if status:
      self._call_on_loop(logger.warning, "Audio status", status=str(status))

    if not self._running:
      return

    chunk = AudioChunk(
      samples=indata.copy(),
      captured_at=time.time() - frames / self._config.sample_rate,
      sample_rate=self._config.sample_rate,
      channels=self._config.channels,
    )
    self._call_on_loop(self.emit, "audio_chunk", chunk)

  def _on_stream_finished(self) -> None:
    if self._running:
      self._running = False
      error = CaptureSourceError("Input stream stopped unexpectedly")
      self._call_on_loop(self.emit, "error", error)

  def _call_on_loop(self, callback, *args, **kwargs) -> None:
    loop = self._loop
    if loop is None or loop.is_closed():
      return
    loop.call_soon_threadsafe(lambda: callback(*args, **kwargs))
