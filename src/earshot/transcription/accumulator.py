import re

_WHITESPACE = re.compile(r"\s+")
_ATTACHING_PUNCTUATION = frozenset(".,!?;:)]}%…»”'")


class TextAccumulator:
  """
  Running text of one utterance.

  Fragments are joined with a single space, except that a fragment starting with punctuation
  attaches directly to the previous one. Runs of whitespace collapse to one space.
  """

  def __init__(self) -> None:
    self._text = ""
    self._fragments = 0

  @property
  def text(self) -> str:
    return self._text

  @property
  def fragment_count(self) -> int:
    return self._fragments

  def is_empty(self) -> bool:
    return not self._text

  def append(self, fragment: str) -> str:
    cleaned = _WHITESPACE.sub(" ", fragment).strip()
    if not cleaned:
      return self._text

    if not self._text:
      self._text = cleaned
    elif cleaned[0] in _ATTACHING_PUNCTUATION:
      self._text += cleaned
    else:
      self._text = f"{self._text} {cleaned}"

    self._fragments += 1
    return self._text

  def reset(self) -> None:
    self._text = ""
    self._fragments = 0
