"""
Closed set of inbound message shapes.

The endpoint replies with several loosely related JSON shapes. `classify_message` sniffs the
shape once at the boundary and returns exactly one of the variants below, so the rest of the
code can `match` on a type instead of probing dictionaries.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class _InboundModel(BaseModel):
  model_config = ConfigDict(frozen=True)


class DirectText(_InboundModel):
  """A flat `{text, isFinal, confidence}` object, or one of its alternative text fields."""

  kind: Literal["direct_text"] = "direct_text"
  text: str
  is_final: bool = False
  confidence: float | None = None
  language: str | None = None


class NestedParts(_InboundModel):
  """A `server_content` object whose model turn carries a list of text parts."""

  kind: Literal["nested_parts"] = "nested_parts"
  parts: list[str] = Field(default_factory=list)
  turn_complete: bool = False


class ErrorPayload(_InboundModel):
  """An explicit `{error}` object from the endpoint."""

  kind: Literal["error"] = "error"
  message: str
  code: int | None = None


class Unparseable(_InboundModel):
  """Input that could not be decoded at all."""

  kind: Literal["unparseable"] = "unparseable"
  reason: str
  raw: str = ""


class Empty(_InboundModel):
  """Nothing to interpret: null, blank, control traffic or an unrecognized shape."""

  kind: Literal["empty"] = "empty"


type InboundMessage = DirectText | NestedParts | ErrorPayload | Unparseable | Empty
