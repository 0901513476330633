from typing import NamedTuple

from rich.pretty import pretty_repr


class Pretty(NamedTuple):
  value: object

  def __str__(self) -> str:
    return pretty_repr(self.value)


class Unit(NamedTuple):
  value: float


class Seconds(Unit):
  def __str__(self) -> str:
    return f"{self.value:.3}s"


class Milliseconds(Unit):
  @classmethod
  def from_seconds(cls, seconds: float) -> "Milliseconds":
    return cls(seconds * 1000.0)

  def __str__(self) -> str:
    return f"{self.value:.1f}ms"


class Bytes(Unit):
  def __str__(self) -> str:
    size = float(self.value)
    for suffix in ("B", "KiB", "MiB"):
      if size < 1024.0:
        return f"{size:.0f}{suffix}" if suffix == "B" else f"{size:.1f}{suffix}"
      size /= 1024.0
    return f"{size:.1f}GiB"
