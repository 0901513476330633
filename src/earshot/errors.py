"""Exception taxonomy for earshot."""


class EarshotError(Exception):
  """Base class for every error raised by earshot."""


class ConfigurationError(EarshotError, ValueError):
  """Configuration is invalid. Raised at construction time, never at first use."""


class InvalidSampleRateError(ConfigurationError):
  def __init__(self, sample_rate: object):
    super().__init__(f"Sample rate must be a positive integer in Hz, got {sample_rate!r}")
    self.sample_rate = sample_rate


class InvalidChannelCountError(ConfigurationError):
  def __init__(self, channels: object):
    super().__init__(f"Channel count must be at least 1, got {channels!r}")
    self.channels = channels


class InvalidBatchSizeError(ConfigurationError):
  def __init__(self, batch_size: object):
    super().__init__(f"Batch size must be a positive integer, got {batch_size!r}")
    self.batch_size = batch_size


class InvalidBufferSizeError(ConfigurationError):
  def __init__(self, buffer_size: object):
    super().__init__(f"Buffer size must be a positive number of samples, got {buffer_size!r}")
    self.buffer_size = buffer_size


class MissingCredentialError(ConfigurationError):
  def __init__(self, field: str = "api_key"):
    super().__init__(f"Transport credential '{field}' must be a non-empty string")
    self.field = field


class CaptureSourceError(EarshotError):
  """The audio capture source failed. Fatal to the current streaming session."""


class TransportError(EarshotError):
  """The transport could not connect or send."""


class PipelineDestroyedError(EarshotError):
  """A pipeline was used after `destroy()`."""
