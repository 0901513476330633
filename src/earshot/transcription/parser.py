"""
Streaming transcription parser.

Turns the endpoint's loosely shaped replies into `StreamingTranscriptionResult`s and stitches
partial fragments into whole utterances.
"""

from collections import deque
from collections.abc import Callable
from typing import Any

from earshot.common import get_logger
from earshot.config import ParserConfig
from earshot.wire import (
  DirectText,
  Empty,
  ErrorPayload,
  NestedParts,
  RawMessage,
  Unparseable,
  classify_message,
)

from .accumulator import TextAccumulator
from .language import UNKNOWN_LANGUAGE, LanguageTally, detect_language
from .models import ParserStats, StreamingTranscriptionResult, TranscriptionState

logger = get_logger("parse")


class StreamingTranscriptionParser:
  """
  Normalizes inbound messages and accumulates partial text into finals.

  One parser instance holds the accumulation of one session. Fragments must arrive in order;
  messages carry no sequence or session id to reorder or separate them.

  `parse_message` returns None when there is nothing to emit (null, blank, control traffic,
  unrecognized shapes). Malformed JSON and explicit `{error}` payloads produce an ERROR result.
  It never raises.
  """

  def __init__(
    self,
    config: ParserConfig | None = None,
    language_detector: Callable[[str], str] = detect_language,
  ):
    self._config = config or ParserConfig()
    self._detect_language = language_detector
    self._accumulator = TextAccumulator()
    self._utterance_languages = LanguageTally()
    self._languages = LanguageTally()
    self._history: deque[StreamingTranscriptionResult] = deque(
      maxlen=self._config.max_history_size
    )
    self._stats = ParserStats()

  def parse_message(self, raw: RawMessage) -> StreamingTranscriptionResult | None:
    """
    Parse one raw message.

    :param raw: Text or bytes from the socket, an already decoded object, or None.
    :returns: A result to emit, or None when the message carries nothing to emit.
    """
    try:
      result = self._parse(raw)
    except Exception as e:
      logger.exception("Unexpected failure while parsing message")
      result = self._error_result(f"Parser failure: {e}", {"exception": type(e).__name__})

    self._stats.messages_parsed += 1
    if result is None:
      self._stats.ignored_messages += 1
    else:
      self._record(result)
    return result

  def _parse(self, raw: RawMessage) -> StreamingTranscriptionResult | None:
    match classify_message(raw):
      case Empty():
        return None
      case Unparseable(reason=reason, raw=excerpt):
        logger.warning("Unparseable message", reason=reason)
        return self._error_result(reason, {"raw": excerpt})
      case ErrorPayload(message=message, code=code):
        logger.warning("Endpoint reported an error", message=message, code=code)
        return self._error_result(message, {"error_code": code})
      case DirectText(text=text, is_final=is_final, confidence=confidence, language=language):
        return self._accumulate(
          text, is_final, confidence=confidence, language_hint=language, shape="direct_text"
        )
      case NestedParts(parts=parts, turn_complete=turn_complete):
        text = parts[0] if len(parts) == 1 else " ".join(parts)
        return self._accumulate(text, turn_complete, shape="nested_parts", part_count=len(parts))
    return None

  def _accumulate(
    self,
    chunk: str,
    is_final: bool,
    confidence: float | None = None,
    language_hint: str | None = None,
    shape: str = "",
    **extra: Any,
  ) -> StreamingTranscriptionResult | None:
    chunk_text = chunk.strip()
    if chunk_text:
      self._accumulator.append(chunk_text)
      language = language_hint or self._detect(chunk_text)
      if language:
        self._utterance_languages.add(language)
        self._languages.add(language)

    if confidence is not None and not 0.0 <= confidence <= 1.0:
      confidence = None

    text = self._accumulator.text
    if not text or (not is_final and not chunk_text):
      return None

    metadata = {
      "chunk_text": chunk_text,
      "fragment_count": self._accumulator.fragment_count,
      "shape": shape,
      **extra,
    }

    if not is_final:
      return StreamingTranscriptionResult(
        text=text,
        state=TranscriptionState.PARTIAL,
        language=self._utterance_languages.dominant(),
        confidence=confidence,
        metadata=metadata,
      )

    return self._finalize(confidence, metadata)

  def _finalize(
    self, confidence: float | None, metadata: dict[str, Any]
  ) -> StreamingTranscriptionResult:
    result = StreamingTranscriptionResult(
      text=self._accumulator.text,
      state=TranscriptionState.FINAL,
      language=self._utterance_languages.dominant(),
      confidence=confidence,
      is_complete=True,
      metadata=metadata,
    )
    self._accumulator.reset()
    self._utterance_languages.clear()
    return result

  def _detect(self, text: str) -> str | None:
    if not self._config.enable_language_detection:
      return None

    try:
      language = self._detect_language(text)
    except Exception:
      logger.warning("Language detection failed", exc_info=True)
      language = UNKNOWN_LANGUAGE

    return language

  def _error_result(self, message: str, metadata: dict[str, Any]) -> StreamingTranscriptionResult:
    return StreamingTranscriptionResult(
      text=message,
      state=TranscriptionState.ERROR,
      is_complete=True,
      metadata=metadata,
    )

  def _record(self, result: StreamingTranscriptionResult) -> None:
    self._history.append(result)
    match result.state:
      case TranscriptionState.PARTIAL:
        self._stats.partial_results += 1
      case TranscriptionState.FINAL:
        self._stats.final_results += 1
      case TranscriptionState.ERROR:
        self._stats.error_results += 1

  def complete(self) -> StreamingTranscriptionResult | None:
    """Force the pending accumulation out as a FINAL result. None if nothing is pending."""
    if self._accumulator.is_empty():
      return None
    metadata = {"forced": True, "fragment_count": self._accumulator.fragment_count}
    result = self._finalize(None, metadata)
    self._record(result)
    return result

  def reset(self) -> None:
    """Drop the pending accumulation, the history and all statistics."""
    self._accumulator.reset()
    self._utterance_languages.clear()
    self._languages.clear()
    self._history.clear()
    self._stats = ParserStats()

  def get_accumulated_text(self) -> str:
    return self._accumulator.text

  def get_history(self) -> list[StreamingTranscriptionResult]:
    return [result.model_copy() for result in self._history]

  def get_dominant_language(self) -> str | None:
    return self._languages.dominant()

  def get_stats(self) -> ParserStats:
    return self._stats.model_copy(update={"language_counts": self._languages.as_dict()})
