import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class TranscriptionState(StrEnum):
  PARTIAL = "partial"
  FINAL = "final"
  ERROR = "error"


class StreamingTranscriptionResult(BaseModel):
  """Normalized transcription update produced from one inbound message."""

  text: str
  """For PARTIAL and FINAL, the whole utterance so far. For ERROR, the error description."""

  state: TranscriptionState
  language: str | None = None
  confidence: float | None = Field(default=None, ge=0.0, le=1.0)
  is_complete: bool = False
  timestamp: float = Field(default_factory=time.time)
  metadata: dict[str, Any] = Field(default_factory=dict)
  """Parse details such as `chunk_text`, the fragment carried by this particular message."""


class ParserStats(BaseModel):
  messages_parsed: int = 0
  partial_results: int = 0
  final_results: int = 0
  error_results: int = 0
  ignored_messages: int = 0
  language_counts: dict[str, int] = Field(default_factory=dict)
