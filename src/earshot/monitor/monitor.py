"""
Connection health monitor.

Watches a live transport independently of protocol-level errors: heartbeats detect dead peers,
a silence timer detects connections that stay open but stop delivering data, and close/error
events from the transport are turned into interruption events for a supervisor to act on.
"""

import asyncio
import secrets
from collections import deque
from collections.abc import Callable, Coroutine
from typing import Any

from earshot.common import (
  EventEmitter,
  LoopScheduler,
  Milliseconds,
  Scheduler,
  Seconds,
  TimerHandle,
  get_logger,
)
from earshot.config import MonitorConfig
from earshot.streaming.interfaces import Transport
from earshot.wire import PingMessage, extract_pong_id, serialize_message

from .models import (
  ConnectionMetrics,
  ConnectionState,
  HeartbeatRecord,
  InterruptionEvent,
  InterruptionType,
)

logger = get_logger("mon")

LATENCY_SMOOTHING = 0.1
"""Weight of the newest sample in the average latency."""

RECENT_INTERRUPTION_WINDOW = 60.0
"""Interruptions younger than this many seconds lower the quality score."""

HEALTHY_QUALITY = 0.5


class ConnectionMonitor(EventEmitter):
  """
  Detects timeouts, silent failures and abrupt closures on one transport at a time.

  The monitor attaches to the transport's `open`, `message`, `close` and `error` events and runs
  three independent timers: a repeating heartbeat, a silent-failure timer reset by every inbound
  message, and a periodic quality check. Each heartbeat sends `{"ping": id}` and arms a timeout;
  a `{"pong": id}` reply disarms it and records the round-trip latency. Pongs are matched by id,
  so out-of-order replies are fine and unknown ids are ignored.

  Events:
      monitoring_started, monitoring_stopped: lifecycle, each emitted once per start/stop.
      connection_established(state): the monitored transport (re)opened.
      heartbeat_success(ping_id, latency) / heartbeat_timeout(ping_id, consecutive_timeouts)
      interruption(event): a disconnect, error, silent failure or exhausted timeouts.
      recovery_needed(event): emitted on the next scheduler turn after every interruption.
      health_changed(is_healthy, state): only when the healthy flag flips.
      metrics_reset, health_check_forced(state)

  All timer callbacks check that the monitor still has a transport before doing anything, so a
  stopped monitor never touches a torn-down socket.
  """

  def __init__(self, config: MonitorConfig | None = None, scheduler: Scheduler | None = None):
    super().__init__()
    self._config = config or MonitorConfig()
    self._scheduler: Scheduler = scheduler or LoopScheduler()

    self._transport: Transport | None = None
    self._listeners: dict[str, Callable[..., Any]] = {}
    self._monitoring = False

    self._connected = False
    self._healthy = False
    self._last_seen: float | None = None
    self._quality = 1.0
    self._timeouts_exhausted = False

    self._metrics = ConnectionMetrics()
    self._history: deque[InterruptionEvent] = deque(maxlen=self._config.max_history_size)
    self._pending: dict[str, HeartbeatRecord] = {}
    self._ping_sequence = 0

    self._heartbeat_timer: TimerHandle | None = None
    self._silent_timer: TimerHandle | None = None
    self._quality_timer: TimerHandle | None = None
    self._timeout_timers: dict[str, TimerHandle] = {}
    self._recovery_timers: dict[int, TimerHandle] = {}
    self._recovery_sequence = 0
    self._background_tasks: set[asyncio.Task[Any]] = set()

  @property
  def config(self) -> MonitorConfig:
    return self._config

  @property
  def is_monitoring(self) -> bool:
    return self._monitoring

  # Lifecycle

  def start_monitoring(self, transport: Transport) -> None:
    """
    Attach to `transport` and start the heartbeat, silence and quality timers.

    Starting on the transport already being monitored is a no-op. Starting on a different
    transport stops monitoring the previous one first.
    """
    if self._monitoring and self._transport is transport:
      return
    if self._monitoring:
      self.stop_monitoring()

    self._transport = transport
    self._monitoring = True
    self._listeners = {
      "open": self._on_open,
      "message": self._on_message,
      "close": self._on_close,
      "error": self._on_error,
    }
    for event, handler in self._listeners.items():
      transport.on(event, handler)

    self._connected = transport.is_connected()
    if self._connected:
      self._last_seen = self._scheduler.time()
      self._reset_silent_timer()

    self._schedule_heartbeat()
    self._schedule_quality_check()
    self._update_quality()

    logger.info(
      "Monitoring started",
      connected=self._connected,
      heartbeat_interval=self._config.heartbeat_interval,
      timeout_threshold=self._config.timeout_threshold,
    )
    self.emit("monitoring_started")

  def stop_monitoring(self) -> None:
    """Detach from the transport and cancel every timer. Repeated calls are no-ops."""
    if not self._monitoring:
      return

    self._monitoring = False
    transport, self._transport = self._transport, None
    if transport is not None:
      for event, handler in self._listeners.items():
        transport.off(event, handler)
    self._listeners = {}

    self._cancel_timers()
    for task in self._background_tasks:
      task.cancel()
    self._background_tasks.clear()

    logger.info("Monitoring stopped")
    self.emit("monitoring_stopped")

  def _cancel_timers(self) -> None:
    for timer in (self._heartbeat_timer, self._silent_timer, self._quality_timer):
      if timer is not None:
        timer.cancel()
    self._heartbeat_timer = self._silent_timer = self._quality_timer = None

    for timer in self._timeout_timers.values():
      timer.cancel()
    self._timeout_timers.clear()
    self._pending.clear()

    for timer in self._recovery_timers.values():
      timer.cancel()
    self._recovery_timers.clear()

  # Snapshots

  def get_state(self) -> ConnectionState:
    return ConnectionState(
      is_connected=self._connected,
      is_healthy=self._healthy,
      last_seen=self._last_seen,
      quality=self._quality,
    )

  def get_metrics(self) -> ConnectionMetrics:
    return self._metrics.model_copy()

  def get_interruption_history(self) -> list[InterruptionEvent]:
    return [event.model_copy() for event in self._history]

  def get_pending_heartbeats(self) -> list[HeartbeatRecord]:
    return [record.model_copy() for record in self._pending.values()]

  def is_healthy(self) -> bool:
    return self._healthy

  def is_responsive(self) -> bool:
    """Connected and heartbeats not exhausted. Unlike `is_healthy`, ignores quality history."""
    return self._connected and not self._timeouts_exhausted

  def get_quality(self) -> float:
    return self._quality

  # Operations

  def reset_metrics(self) -> None:
    """Clear counters, latency figures and the interruption history."""
    self._metrics = ConnectionMetrics()
    self._history.clear()
    self._timeouts_exhausted = False
    self._update_quality()
    logger.info("Connection metrics reset")
    self.emit("metrics_reset")

  def force_health_check(self) -> None:
    """Send a heartbeat right away instead of waiting for the next interval."""
    if self._transport is None or not self._connected:
      logger.debug("Skipping forced health check, not connected")
      return
    self._send_heartbeat()
    self.emit("health_check_forced", self.get_state())

  def update_config(self, **changes: Any) -> MonitorConfig:
    """
    Apply configuration changes. Timers pick up new intervals immediately when monitoring.

    :raises pydantic.ValidationError: If a changed value is invalid.
    """
    self._config = MonitorConfig.model_validate({**self._config.model_dump(), **changes})
    if self._history.maxlen != self._config.max_history_size:
      self._history = deque(self._history, maxlen=self._config.max_history_size)

    if self._monitoring:
      self._schedule_heartbeat()
      self._schedule_quality_check()
    logger.info("Monitor configuration updated", changes=changes)
    return self._config

  # Transport events

  def _on_open(self) -> None:
    if self._transport is None:
      return

    now = self._scheduler.time()
    reopened = False
    for event in self._history:
      if event.duration is None:
        event.duration = now - event.timestamp
        reopened = True
    if reopened:
      self._metrics.reconnection_count += 1

    self._connected = True
    self._last_seen = now
    self._metrics.consecutive_timeouts = 0
    self._timeouts_exhausted = False
    self._reset_silent_timer()
    self._update_quality()

    logger.info("Connection established", reconnections=self._metrics.reconnection_count)
    self.emit("connection_established", self.get_state())

  def _on_message(self, data: Any) -> None:
    if self._transport is None:
      return

    self._last_seen = self._scheduler.time()
    self._reset_silent_timer()

    pong_id = extract_pong_id(data)
    if pong_id is not None:
      self._handle_pong(pong_id)

  def _on_close(self, code: int | None = None, reason: str = "") -> None:
    if self._transport is None:
      return

    self._mark_disconnected()
    self._record_interruption(
      InterruptionEvent(
        type=InterruptionType.DISCONNECT,
        reason=reason or f"Connection closed with code {code}",
        error_code=code,
        can_recover=True,
        timestamp=self._scheduler.time(),
      )
    )

  def _on_error(self, error: BaseException | str | None = None) -> None:
    if self._transport is None:
      return

    self._mark_disconnected()
    self._record_interruption(
      InterruptionEvent(
        type=InterruptionType.ERROR,
        reason=str(error) if error else "Transport error",
        can_recover=True,
        timestamp=self._scheduler.time(),
      )
    )

  def _mark_disconnected(self) -> None:
    """Pings sent on a dead connection must not count against the next one."""
    self._connected = False
    self._abandon_heartbeats()
    if self._silent_timer is not None:
      self._silent_timer.cancel()
      self._silent_timer = None

  # Heartbeats

  def _schedule_heartbeat(self) -> None:
    if self._heartbeat_timer is not None:
      self._heartbeat_timer.cancel()
    self._heartbeat_timer = self._scheduler.call_later(
      self._config.heartbeat_interval, self._on_heartbeat_tick
    )

  def _on_heartbeat_tick(self) -> None:
    self._heartbeat_timer = None
    if self._transport is None:
      return
    if self._connected:
      self._send_heartbeat()
    self._schedule_heartbeat()

  def _send_heartbeat(self) -> None:
    transport = self._transport
    if transport is None:
      return

    self._ping_sequence += 1
    ping_id = f"hb-{self._ping_sequence}-{secrets.token_hex(3)}"
    self._pending[ping_id] = HeartbeatRecord(ping_id=ping_id, sent_at=self._scheduler.time())
    self._timeout_timers[ping_id] = self._scheduler.call_later(
      self._config.timeout_threshold, self._on_heartbeat_timeout, ping_id
    )
    self._metrics.heartbeats_sent += 1

    try:
      sending = transport.send(serialize_message(PingMessage(ping=ping_id)))
    except Exception as e:
      self._on_ping_failed(ping_id, e)
      return

    if asyncio.iscoroutine(sending):
      self._spawn(sending, lambda e: self._on_ping_failed(ping_id, e))

  def _on_ping_failed(self, ping_id: str, error: BaseException) -> None:
    logger.warning("Heartbeat send failed", ping_id=ping_id, error=str(error))
    timer = self._timeout_timers.pop(ping_id, None)
    if timer is not None:
      timer.cancel()
    self._on_heartbeat_timeout(ping_id)

  def _on_heartbeat_timeout(self, ping_id: str) -> None:
    self._timeout_timers.pop(ping_id, None)
    if self._transport is None or self._pending.pop(ping_id, None) is None:
      return

    self._metrics.consecutive_timeouts += 1
    self._metrics.total_timeouts += 1
    consecutive = self._metrics.consecutive_timeouts
    limit = self._config.max_consecutive_timeouts

    logger.warning("Heartbeat timeout", ping_id=ping_id, consecutive=consecutive, limit=limit)
    self.emit("heartbeat_timeout", ping_id, consecutive)

    if consecutive == limit:
      self._timeouts_exhausted = True
      self._record_interruption(
        InterruptionEvent(
          type=InterruptionType.TIMEOUT,
          reason=f"{consecutive} consecutive heartbeat timeouts",
          can_recover=False,
          timestamp=self._scheduler.time(),
        )
      )
    else:
      self._update_quality()

  def _handle_pong(self, ping_id: str) -> None:
    record = self._pending.pop(ping_id, None)
    if record is None:
      logger.debug("Ignoring pong for unknown heartbeat", ping_id=ping_id)
      return

    timer = self._timeout_timers.pop(ping_id, None)
    if timer is not None:
      timer.cancel()

    now = self._scheduler.time()
    latency = max(0.0, now - record.sent_at)
    metrics = self._metrics
    metrics.latency = latency
    if metrics.average_latency is None:
      metrics.average_latency = latency
    else:
      metrics.average_latency = (
        LATENCY_SMOOTHING * latency + (1 - LATENCY_SMOOTHING) * metrics.average_latency
      )
    metrics.heartbeats_received += 1
    metrics.consecutive_timeouts = 0
    metrics.last_heartbeat = now
    self._timeouts_exhausted = False

    logger.debug("Heartbeat", ping_id=ping_id, latency=str(Milliseconds.from_seconds(latency)))
    self.emit("heartbeat_success", ping_id, latency)
    self._update_quality()

  def _abandon_heartbeats(self) -> None:
    for timer in self._timeout_timers.values():
      timer.cancel()
    self._timeout_timers.clear()
    self._pending.clear()

  # Silent failures

  def _reset_silent_timer(self) -> None:
    if self._silent_timer is not None:
      self._silent_timer.cancel()
    self._silent_timer = self._scheduler.call_later(
      self._config.silent_failure_threshold, self._on_silent_failure
    )

  def _on_silent_failure(self) -> None:
    self._silent_timer = None
    if self._transport is None or not self._connected:
      return

    silence = self._scheduler.time() - (self._last_seen or 0.0)
    logger.warning("Silent connection detected", silence=Seconds(silence))
    self._record_interruption(
      InterruptionEvent(
        type=InterruptionType.SILENT_FAILURE,
        reason=f"No messages received for {silence:.1f}s",
        can_recover=True,
        timestamp=self._scheduler.time(),
      )
    )
    self._reset_silent_timer()

  # Quality

  def _schedule_quality_check(self) -> None:
    if self._quality_timer is not None:
      self._quality_timer.cancel()
    self._quality_timer = self._scheduler.call_later(
      self._config.quality_check_interval, self._on_quality_check
    )

  def _on_quality_check(self) -> None:
    self._quality_timer = None
    if self._transport is None:
      return
    self._update_quality()
    self._schedule_quality_check()

  def _calculate_quality(self) -> float:
    quality = 1.0

    threshold = self._config.latency_threshold
    average = self._metrics.average_latency
    if average is not None and average > threshold:
      quality *= max(0.1, 1.0 - (average - threshold) / (threshold * 4))

    timeouts = self._metrics.consecutive_timeouts
    if timeouts > 0:
      quality *= max(0.1, 1.0 - 0.3 * timeouts)

    cutoff = self._scheduler.time() - RECENT_INTERRUPTION_WINDOW
    recent = sum(1 for event in self._history if event.timestamp > cutoff)
    if recent > 0:
      quality *= max(0.1, 1.0 - 0.2 * recent)

    return min(1.0, max(0.0, quality))

  def _update_quality(self) -> None:
    self._quality = self._calculate_quality()
    self._set_healthy(
      self._connected and not self._timeouts_exhausted and self._quality > HEALTHY_QUALITY
    )

  def _set_healthy(self, healthy: bool) -> None:
    if healthy == self._healthy:
      return
    self._healthy = healthy
    logger.info("Connection health changed", healthy=healthy, quality=self._quality)
    self.emit("health_changed", healthy, self.get_state())

  # Interruptions

  def _record_interruption(self, event: InterruptionEvent) -> None:
    self._history.append(event)
    self._metrics.total_interruptions += 1
    self._update_quality()

    logger.warning(
      "Connection interrupted",
      type=event.type.value,
      reason=event.reason,
      code=event.error_code,
      can_recover=event.can_recover,
    )
    self.emit("interruption", event.model_copy())

    self._recovery_sequence += 1
    token = self._recovery_sequence
    self._recovery_timers[token] = self._scheduler.call_later(
      0, self._emit_recovery_needed, token, event.model_copy()
    )

  def _emit_recovery_needed(self, token: int, event: InterruptionEvent) -> None:
    self._recovery_timers.pop(token, None)
    if self._transport is None:
      return
    self.emit("recovery_needed", event)

  def _spawn(
    self,
    coro: Coroutine[Any, Any, Any],
    on_failure: Callable[[BaseException], None],
  ) -> None:
    task = asyncio.create_task(coro)
    self._background_tasks.add(task)

    def done(finished: asyncio.Task[Any]) -> None:
      self._background_tasks.discard(finished)
      if not finished.cancelled() and finished.exception() is not None:
        on_failure(finished.exception())

    task.add_done_callback(done)
