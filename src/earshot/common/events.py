"""
In-process event channel shared by every earshot component.

Handlers run synchronously, in registration order, to completion before `emit` returns. A handler
that raises is logged and skipped; the emitter and the remaining handlers are unaffected.
"""

from collections import defaultdict
from collections.abc import Callable
from typing import Any

from earshot.common.logs import get_logger

type Handler = Callable[..., Any]

logger = get_logger("evt")


class EventEmitter:
  """Minimal synchronous publish/subscribe keyed by event name."""

  def __init__(self) -> None:
    self._handlers: defaultdict[str, list[Handler]] = defaultdict(list)

  def on(self, event: str, handler: Handler) -> Handler:
    """Register `handler` for `event`. Returns the handler so it can be used as a decorator."""
    self._handlers[event].append(handler)
    return handler

  def once(self, event: str, handler: Handler) -> Handler:
    """Register a handler that removes itself after its first call."""

    def wrapper(*args: Any) -> Any:
      self.off(event, wrapper)
      return handler(*args)

    self._handlers[event].append(wrapper)
    return wrapper

  def off(self, event: str, handler: Handler | None = None) -> None:
    """Remove one handler, or every handler for `event` when `handler` is None."""
    if handler is None:
      self._handlers.pop(event, None)
      return

    handlers = self._handlers.get(event)
    if handlers and handler in handlers:
      handlers.remove(handler)

  def remove_all_listeners(self) -> None:
    self._handlers.clear()

  def listener_count(self, event: str) -> int:
    return len(self._handlers.get(event, ()))

  def emit(self, event: str, *args: Any) -> bool:
    """
    Call every handler registered for `event` with `args`.

    :returns: True if at least one handler was registered.
    """
    handlers = self._handlers.get(event)
    if not handlers:
      return False

    # Handlers may register or remove handlers while we iterate
    for handler in list(handlers):
      try:
        handler(*args)
      except Exception:
        logger.exception("Event handler failed", event_name=event, handler=repr(handler))
    return True
