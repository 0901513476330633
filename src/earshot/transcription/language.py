"""
Script-based language guess.

This only separates the languages the endpoint is used with in practice (English, Russian and
Ukrainian) by looking at the alphabet. It is a side channel for statistics, not a classifier.
"""

from collections import Counter

UNKNOWN_LANGUAGE = "unknown"

_UKRAINIAN_LETTERS = frozenset("іїєґІЇЄҐ")


def _is_cyrillic(char: str) -> bool:
  return "Ѐ" <= char <= "ӿ"


def detect_language(text: str) -> str:
  """Return `uk`, `ru`, `en` or `unknown` for `text`."""
  cyrillic = latin = 0
  ukrainian = False
  for char in text:
    if _is_cyrillic(char):
      cyrillic += 1
      ukrainian = ukrainian or char in _UKRAINIAN_LETTERS
    elif char.isascii() and char.isalpha():
      latin += 1

  if cyrillic and cyrillic >= latin:
    return "uk" if ukrainian else "ru"
  if latin:
    return "en"
  return UNKNOWN_LANGUAGE


class LanguageTally:
  """Frequency map of detected languages."""

  def __init__(self) -> None:
    self._counts: Counter[str] = Counter()

  def add(self, language: str) -> None:
    self._counts[language] += 1

  def dominant(self) -> str | None:
    known = [(lang, n) for lang, n in self._counts.most_common() if lang != UNKNOWN_LANGUAGE]
    if known:
      return known[0][0]
    return UNKNOWN_LANGUAGE if self._counts else None

  def as_dict(self) -> dict[str, int]:
    return dict(self._counts)

  def clear(self) -> None:
    self._counts.clear()
