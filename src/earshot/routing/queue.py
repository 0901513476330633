from collections import deque

from .models import TranscriptionWithSource


class TranscriptionQueue:
  """
  Bounded FIFO of deferred transcripts.

  Pushing onto a full queue evicts the oldest entry, so the queue never holds more than
  `capacity` items and always keeps the most recent ones.
  """

  def __init__(self, capacity: int):
    if capacity <= 0:
      raise ValueError(f"Queue capacity must be positive, got {capacity}")
    self._items: deque[TranscriptionWithSource] = deque()
    self._capacity = capacity

  @property
  def capacity(self) -> int:
    return self._capacity

  def __len__(self) -> int:
    return len(self._items)

  def is_full(self) -> bool:
    return len(self._items) >= self._capacity

  def push(self, transcript: TranscriptionWithSource) -> TranscriptionWithSource | None:
    """Enqueue `transcript`, returning the entry evicted to make room, if any."""
    evicted = self._items.popleft() if self.is_full() else None
    self._items.append(transcript)
    return evicted

  def pop(self) -> TranscriptionWithSource | None:
    """Remove and return the oldest entry."""
    return self._items.popleft() if self._items else None

  def peek(self) -> TranscriptionWithSource | None:
    return self._items[0] if self._items else None

  def resize(self, capacity: int) -> list[TranscriptionWithSource]:
    """Change the capacity, evicting the oldest entries that no longer fit."""
    if capacity <= 0:
      raise ValueError(f"Queue capacity must be positive, got {capacity}")
    self._capacity = capacity
    evicted = []
    while len(self._items) > capacity:
      evicted.append(self._items.popleft())
    return evicted

  def clear(self) -> None:
    self._items.clear()

  def snapshot(self) -> list[TranscriptionWithSource]:
    return list(self._items)
