"""
Shared plumbing for earshot: logging, events, timers and log formatting helpers.
"""

from earshot.common.events import EventEmitter, Handler
from earshot.common.format import Bytes, Milliseconds, Pretty, Seconds, Unit
from earshot.common.logs import get_logger, setup_logging, setup_logging_from_env
from earshot.common.timers import LoopScheduler, Scheduler, TimerHandle

__all__ = [
  "Bytes",
  "EventEmitter",
  "Handler",
  "LoopScheduler",
  "Milliseconds",
  "Pretty",
  "Scheduler",
  "Seconds",
  "TimerHandle",
  "Unit",
  "get_logger",
  "setup_logging",
  "setup_logging_from_env",
]
