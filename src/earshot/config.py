import os

import yaml
from pydantic import BaseModel, Field, model_validator, validate_call
from pydantic.types import FilePath

from earshot.common import get_logger
from earshot.errors import (
  InvalidBatchSizeError,
  InvalidBufferSizeError,
  InvalidChannelCountError,
  InvalidSampleRateError,
  MissingCredentialError,
)

logger = get_logger("cfg")

DEFAULT_ENDPOINT = (
  "wss://generativelanguage.googleapis.com/ws/"
  "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)


class MonitorConfig(BaseModel):
  """Heartbeat, timeout and quality settings for the connection monitor."""

  heartbeat_interval: float = Field(default=10.0, gt=0.0)
  """Seconds between heartbeat pings."""

  timeout_threshold: float = Field(default=15.0, gt=0.0)
  """Seconds to wait for a pong before counting a heartbeat timeout."""

  silent_failure_threshold: float = Field(default=30.0, gt=0.0)
  """Seconds without any inbound message before declaring a silent failure."""

  quality_check_interval: float = Field(default=5.0, gt=0.0)
  """Seconds between periodic quality re-evaluations."""

  max_consecutive_timeouts: int = Field(default=3, gt=0)
  """Consecutive heartbeat timeouts that escalate to an unrecoverable interruption."""

  latency_threshold: float = Field(default=2.0, gt=0.0)
  """Average latency in seconds above which quality is penalized."""

  max_history_size: int = Field(default=100, gt=0)
  """Number of interruption events retained."""

  max_reconnection_delay: float = Field(default=60.0, gt=0.0)
  """Upper bound for supervisor reconnection delays."""


class AudioConfig(BaseModel):
  """Capture settings. Sample rate and channels are checked by the pipeline constructor."""

  sample_rate: int = 16000
  """Capture sample rate in Hz."""

  channels: int = 1
  """Number of capture channels."""

  device: str | int | None = None
  """sounddevice input device name or index. None uses the system default."""

  block_duration: float = Field(default=0.1, gt=0.0)
  """Seconds of audio delivered per capture callback."""


class ProcessingConfig(BaseModel):
  """Batching, encoding and backlog settings for the streaming pipeline."""

  enable_workers: bool = True
  """Encode batches on a worker pool instead of on the event loop."""

  worker_count: int = Field(default=2, gt=0)
  """Threads in the encoder pool."""

  buffer_size: int = 4096
  """Samples per frame in each aligned batch."""

  batch_size: int = 32
  """Maximum number of encoded-but-unsent batches kept while the connection is unavailable."""

  retry_interval: float = Field(default=0.25, gt=0.0)
  """Seconds the sender waits before re-checking an unavailable connection."""

  flush_on_stop: bool = True
  """Send any partial batch still buffered when streaming stops."""

  drain_timeout: float = Field(default=5.0, gt=0.0)
  """Seconds `stop_streaming` waits for buffered batches to be sent."""

  target_sample_rate: int = Field(default=16000, gt=0)
  """Sample rate of the PCM16 payload sent to the endpoint."""


class TransportConfig(BaseModel):
  """Remote endpoint connection settings."""

  url: str = DEFAULT_ENDPOINT
  """WebSocket URL of the transcription endpoint."""

  api_key: str = ""
  """Credential sent with the connection request."""

  model: str | None = None
  """Model name announced in the setup message. No setup message is sent when unset."""

  open_timeout: float = Field(default=10.0, gt=0.0)
  """Seconds allowed for the WebSocket handshake."""


class PipelineConfig(BaseModel):
  """Everything the audio streaming pipeline needs."""

  audio: AudioConfig = Field(default_factory=AudioConfig)
  processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
  transport: TransportConfig = Field(default_factory=TransportConfig)

  def ensure_valid(self) -> None:
    """Raise a typed configuration error for the first invalid required field."""
    sample_rate = self.audio.sample_rate
    if not isinstance(sample_rate, int) or isinstance(sample_rate, bool) or sample_rate <= 0:
      raise InvalidSampleRateError(sample_rate)

    channels = self.audio.channels
    if not isinstance(channels, int) or isinstance(channels, bool) or channels < 1:
      raise InvalidChannelCountError(channels)

    if not isinstance(self.processing.batch_size, int) or self.processing.batch_size <= 0:
      raise InvalidBatchSizeError(self.processing.batch_size)

    if not isinstance(self.processing.buffer_size, int) or self.processing.buffer_size <= 0:
      raise InvalidBufferSizeError(self.processing.buffer_size)

    if not isinstance(self.transport.api_key, str) or not self.transport.api_key.strip():
      raise MissingCredentialError("api_key")


class RouterConfig(BaseModel):
  """Routing policy settings."""

  enable_websocket_priority: bool = True
  """Interactive-class sources may interrupt lower-priority streams."""

  fallback_to_static: bool = True
  """Send to the static target when the chosen target is missing or a source is unknown."""

  queue_non_websocket_streaming: bool = True
  """Queue streaming-class transcripts behind a higher-priority active stream."""

  max_queue_size: int = Field(default=10, gt=0)
  """Capacity of the deferred transcript queue."""

  max_history_size: int = Field(default=100, gt=0)
  """Number of routing decisions retained for inspection."""

  merge_same_source: bool = True
  """Merge a transcript into the active stream when it comes from the same source."""

  evict_oldest_on_full: bool = False
  """On a full queue, evict the oldest entry instead of diverting to static."""

  routing_debug_mode: bool = False
  """Log every routing decision at INFO instead of DEBUG."""


class ParserConfig(BaseModel):
  """Streaming transcription parser settings."""

  max_history_size: int = Field(default=100, gt=0)
  """Number of parsed results retained."""

  enable_language_detection: bool = True
  """Run the best-effort language detector on every fragment."""


class ReconnectConfig(BaseModel):
  """Backoff policy used by the session supervisor."""

  base_delay: float = Field(default=1.0, gt=0.0)
  multiplier: float = Field(default=2.0, ge=1.0)
  max_delay: float = Field(default=60.0, gt=0.0)
  max_attempts: int = Field(default=10, gt=0)

  @model_validator(mode="after")
  def validate_delays(self) -> "ReconnectConfig":
    """Validate that base_delay does not exceed max_delay."""
    if self.base_delay > self.max_delay:
      raise ValueError(
        f"base_delay ({self.base_delay}s) must not exceed max_delay ({self.max_delay}s)"
      )
    return self

  def delay_for(self, attempt: int) -> float:
    """Backoff delay before reconnection attempt number `attempt` (1-based)."""
    return min(self.max_delay, self.base_delay * self.multiplier ** max(0, attempt - 1))


class EarshotConfig(BaseModel):
  """Top-level earshot configuration."""

  monitor: MonitorConfig = Field(default_factory=MonitorConfig)
  pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
  router: RouterConfig = Field(default_factory=RouterConfig)
  parser: ParserConfig = Field(default_factory=ParserConfig)
  reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)

  def pretty_print(self) -> None:
    """Log every configuration value at INFO, including defaults. The credential is masked."""
    logger.info("=" * 60)
    logger.info("EARSHOT CONFIGURATION")
    logger.info("=" * 60)

    sections: dict[str, BaseModel] = {
      "MONITOR": self.monitor,
      "AUDIO": self.pipeline.audio,
      "PROCESSING": self.pipeline.processing,
      "TRANSPORT": self.pipeline.transport,
      "ROUTER": self.router,
      "PARSER": self.parser,
      "RECONNECT": self.reconnect,
    }
    for title, section in sections.items():
      logger.info(f"{title} SETTINGS:")
      for name, value in section.model_dump().items():
        if name == "api_key":
          value = "<set>" if value else "<missing>"
        logger.info(f"  {name}: {value}")

    logger.info("=" * 60)


@validate_call
def load_config_from_file(config_path: FilePath) -> EarshotConfig:
  """Load and validate earshot configuration from a YAML file."""

  logger.info("Loading earshot configuration", path=str(config_path))

  try:
    with open(config_path, "r", encoding="utf-8") as file:
      config_data = yaml.safe_load(file)
  except yaml.YAMLError as e:
    raise ValueError(f"Invalid YAML in configuration file: {e}") from e
  except OSError as e:
    raise ValueError(f"Error reading configuration file: {e}") from e

  if config_data is None:
    raise ValueError("Configuration file is empty")

  if not isinstance(config_data, dict):
    raise ValueError("Configuration file must contain a YAML dictionary")

  return EarshotConfig.model_validate(config_data)


def get_env_bool(key: str, default: bool) -> bool:
  """Get a bool from an environment variable."""
  return os.getenv(key, str(default)).lower() in ("true", "1", "yes", "on")
