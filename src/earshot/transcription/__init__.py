"""Normalization of inbound transcription messages into partial and final results."""

from .accumulator import TextAccumulator
from .language import UNKNOWN_LANGUAGE, LanguageTally, detect_language
from .models import ParserStats, StreamingTranscriptionResult, TranscriptionState
from .parser import StreamingTranscriptionParser

__all__ = [
  "LanguageTally",
  "ParserStats",
  "StreamingTranscriptionParser",
  "StreamingTranscriptionResult",
  "TextAccumulator",
  "TranscriptionState",
  "UNKNOWN_LANGUAGE",
  "detect_language",
]
