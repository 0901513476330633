"""
Audio streaming: capture and transport contracts, encoding and the streaming pipeline.

The sounddevice-backed capture lives in `earshot.streaming.capture` and is imported on demand,
since loading it requires the PortAudio library.
"""

from .encoder import EncodedBatch, EncoderPool, Pcm16Encoder
from .interfaces import AudioBatch, AudioChunk, CaptureSource, EventSource, Transport
from .pipeline import AudioStreamingPipeline, PipelineMetrics
from .transport import WebSocketTransport, build_endpoint_url

__all__ = [
  "AudioBatch",
  "AudioChunk",
  "AudioStreamingPipeline",
  "CaptureSource",
  "EncodedBatch",
  "EncoderPool",
  "EventSource",
  "Pcm16Encoder",
  "PipelineMetrics",
  "Transport",
  "WebSocketTransport",
  "build_endpoint_url",
]
