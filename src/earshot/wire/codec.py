"""
Message codec for the endpoint wire protocol.

Outbound messages are pydantic models serialized by alias. Inbound traffic is untyped JSON and is
classified into the closed `InboundMessage` union.
"""

import json
from typing import Any

from pydantic import TypeAdapter

from .inbound import DirectText, Empty, ErrorPayload, InboundMessage, NestedParts, Unparseable
from .messages import OutboundMessage

type RawMessage = str | bytes | bytearray | memoryview | dict[str, Any] | None

_ALTERNATIVE_TEXT_FIELDS = ("text", "transcription", "transcript", "message")
_RAW_EXCERPT_LENGTH = 200


def serialize_message(message: OutboundMessage) -> str:
  """
  Serialize an outbound message to a JSON string.

  Args:
      message: Any outbound message instance

  Returns:
      JSON text using the endpoint's field names
  """
  adapter = TypeAdapter(type(message))
  return adapter.dump_json(message, by_alias=True, exclude_none=True).decode("utf-8")


def decode_json_object(raw: RawMessage) -> dict[str, Any] | None:
  """Best-effort decode of raw socket data to a JSON object. Anything else yields None."""
  if isinstance(raw, dict):
    return raw
  if raw is None:
    return None
  try:
    text = raw if isinstance(raw, str) else bytes(raw).decode("utf-8")
    decoded = json.loads(text)
  except (UnicodeDecodeError, ValueError):
    return None
  return decoded if isinstance(decoded, dict) else None


def extract_pong_id(raw: RawMessage) -> str | None:
  """Return the heartbeat id of a pong message, or None for any other message."""
  payload = decode_json_object(raw)
  if payload is None:
    return None
  pong = payload.get("pong")
  return str(pong) if isinstance(pong, str | int) and not isinstance(pong, bool) else None


def classify_message(raw: RawMessage) -> InboundMessage:
  """
  Sniff the shape of one inbound message.

  Args:
      raw: Socket payload as text, bytes, an already decoded object, or None

  Returns:
      Exactly one inbound variant. Never raises.
  """
  match raw:
    case None:
      return Empty()
    case dict():
      return _classify_object(raw)
    case bytes() | bytearray() | memoryview():
      try:
        text = bytes(raw).decode("utf-8")
      except UnicodeDecodeError as e:
        return Unparseable(reason=f"Invalid UTF-8: {e}")
    case str():
      text = raw
    case _:
      return Unparseable(reason=f"Unsupported payload type {type(raw).__name__}")

  if not text.strip():
    return Empty()

  try:
    decoded = json.loads(text)
  except ValueError as e:
    return Unparseable(reason=f"Malformed JSON: {e}", raw=text[:_RAW_EXCERPT_LENGTH])

  if not isinstance(decoded, dict):
    return Empty()

  return _classify_object(decoded)


def _classify_object(payload: dict[str, Any]) -> InboundMessage:
  match payload:
    case {"error": error} if error:
      return _error_payload(error)
    case {"server_content": dict() as content} | {"serverContent": dict() as content}:
      return _nested_parts(payload, content)

  for field in _ALTERNATIVE_TEXT_FIELDS:
    text = payload.get(field)
    if isinstance(text, str):
      return DirectText(
        text=text,
        is_final=_is_true(payload, "isFinal", "is_final", "turn_complete", "turnComplete"),
        confidence=_number(payload.get("confidence")),
        language=payload.get("language") if isinstance(payload.get("language"), str) else None,
      )

  return Empty()


def _error_payload(error: Any) -> ErrorPayload:
  match error:
    case {"message": str() as message, "code": int() as code}:
      return ErrorPayload(message=message, code=code)
    case {"message": str() as message}:
      return ErrorPayload(message=message)
    case str():
      return ErrorPayload(message=error)
    case _:
      return ErrorPayload(message=str(error))


def _nested_parts(payload: dict[str, Any], content: dict[str, Any]) -> InboundMessage:
  turn_complete = _is_true(content, "turn_complete", "turnComplete") or _is_true(
    payload, "turn_complete", "turnComplete"
  )

  model_turn = content.get("model_turn") or content.get("modelTurn")
  parts = model_turn.get("parts") if isinstance(model_turn, dict) else content.get("parts")

  texts: list[str] = []
  if isinstance(parts, list):
    texts = [
      part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str)
    ]

  if not texts:
    transcription = content.get("input_transcription") or content.get("inputTranscription")
    if isinstance(transcription, dict) and isinstance(transcription.get("text"), str):
      texts = [transcription["text"]]

  if not texts and not turn_complete:
    return Empty()

  return NestedParts(parts=texts, turn_complete=turn_complete)


def _is_true(payload: dict[str, Any], *keys: str) -> bool:
  return any(payload.get(key) is True for key in keys)


def _number(value: Any) -> float | None:
  if isinstance(value, bool) or not isinstance(value, int | float):
    return None
  return float(value)
