"""
Display collaborators the router delivers to.

Both are implemented outside the core (a renderer, a console, a UI bridge) and are registered on
the router at runtime.
"""

from typing import Protocol

from .models import TranscriptionWithSource


class StreamingTarget(Protocol):
  """Live renderer that shows one transcript at a time as it grows."""

  @property
  def is_streaming_active(self) -> bool: ...

  @property
  def current_streaming_source(self) -> str | None: ...

  def start_streaming_transcription(self, transcript: TranscriptionWithSource) -> None: ...

  def update_streaming_transcription(self, transcript: TranscriptionWithSource) -> None: ...

  def complete_streaming_transcription(self) -> None: ...


class StaticTarget(Protocol):
  """Append-only list of finished transcripts."""

  def add_static_transcription(self, transcript: TranscriptionWithSource) -> None: ...

  def append_to_last_transcription(self, text: str) -> None: ...

  def update_transcription(self, transcript_id: str, transcript: TranscriptionWithSource) -> None:
    ...
