"""
Timer scheduling seam.

Components never touch the event loop's clock directly; they go through a `Scheduler` so tests
can drive virtual time.
"""

import asyncio
import time
from collections.abc import Callable
from typing import Any, Protocol


class TimerHandle(Protocol):
  def cancel(self) -> None: ...


class Scheduler(Protocol):
  """Source of wall-clock time and one-shot delayed callbacks."""

  def time(self) -> float:
    """Current wall-clock time in seconds since the epoch."""
    ...

  def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
    """Run `callback(*args)` once after `delay` seconds."""
    ...


class LoopScheduler:
  """Scheduler backed by the running asyncio event loop."""

  def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
    self._loop = loop

  @property
  def loop(self) -> asyncio.AbstractEventLoop:
    if self._loop is None:
      self._loop = asyncio.get_running_loop()
    return self._loop

  def time(self) -> float:
    return time.time()

  def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
    return self.loop.call_later(max(0.0, delay), callback, *args)
