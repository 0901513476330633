"""Tests for PCM16 encoding."""

import asyncio
import base64
import json

import numpy as np
import pytest

from earshot.streaming import AudioBatch, EncoderPool, Pcm16Encoder


def batch(samples, sample_rate: int = 16000, channels: int = 1) -> AudioBatch:
  frames = np.asarray(samples, dtype=np.float32).reshape(-1, channels)
  return AudioBatch(samples=frames, captured_at=12.5, sample_rate=sample_rate, channels=channels)


def decode(payload: str) -> np.ndarray:
  audio = json.loads(payload)["realtimeInput"]["audio"]
  return np.frombuffer(base64.b64decode(audio["data"]), dtype="<i2")


class TestPcm16Encoder:
  """Test conversion from float frames to PCM16."""

  def test_quantizes_and_clips(self):
    encoder = Pcm16Encoder()
    pcm = encoder.to_pcm16(np.array([0.0, 0.5, -0.5, 1.0, 2.0, -3.0], dtype=np.float32), 16000)

    values = np.frombuffer(pcm, dtype="<i2")
    assert values.tolist() == [0, 16383, -16383, 32767, 32767, -32767]

  def test_downmixes_stereo(self):
    encoder = Pcm16Encoder()
    frames = np.array([[1.0, 0.0], [0.5, 0.5]], dtype=np.float32)

    values = np.frombuffer(encoder.to_pcm16(frames, 16000), dtype="<i2")
    assert values.tolist() == [16383, 16383]

  def test_resamples_to_target_rate(self):
    encoder = Pcm16Encoder(16000)

    pcm = encoder.to_pcm16(np.zeros(4800, dtype=np.float32), 48000)
    assert len(pcm) == 1600 * 2

  def test_encode_builds_realtime_input(self):
    encoder = Pcm16Encoder()

    encoded = encoder.encode(batch([0.0, 0.25, 0.5, 0.75]))
    payload = json.loads(encoded.payload)

    assert payload["realtimeInput"]["audio"]["mimeType"] == "audio/pcm;rate=16000"
    assert decode(encoded.payload).size == 4
    assert encoded.pcm_bytes == 8
    assert encoded.frames == 4
    assert encoded.captured_at == 12.5

  def test_rejects_invalid_target_rate(self):
    with pytest.raises(ValueError, match="Target sample rate"):
      Pcm16Encoder(0)


class TestEncoderPool:
  """Test worker encoding and its inline fallback."""

  @pytest.mark.asyncio
  async def test_encodes_on_worker(self):
    encoder = Pcm16Encoder()
    pool = EncoderPool(encoder, max_workers=1)
    try:
      encoded = await pool.encode(batch([0.1, 0.2]))
    finally:
      pool.close()

    assert encoded.payload == encoder.encode(batch([0.1, 0.2])).payload
    assert pool.fallbacks == 0

  @pytest.mark.asyncio
  async def test_falls_back_inline_when_worker_fails(self, monkeypatch):
    pool = EncoderPool(Pcm16Encoder(), max_workers=1)
    loop = asyncio.get_running_loop()

    async def broken(*_args):
      raise RuntimeError("worker died")

    monkeypatch.setattr(loop, "run_in_executor", broken)
    try:
      encoded = await pool.encode(batch([0.5]))
    finally:
      pool.close()

    assert decode(encoded.payload).tolist() == [16383]
    assert pool.fallbacks == 1

  @pytest.mark.asyncio
  async def test_closed_pool_encodes_inline(self):
    pool = EncoderPool(Pcm16Encoder())
    pool.close()
    pool.close()

    encoded = await pool.encode(batch([0.0]))
    assert pool.closed is True
    assert encoded.frames == 1
