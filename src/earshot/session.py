"""
TranscriptionSession: the supervisor that owns one monitor, pipeline, parser and router.

Audio flows capture -> pipeline -> transport; replies flow transport -> parser -> router. The
session reacts to the monitor's `recovery_needed` events by reconnecting with exponential backoff
and exposes parsed results as an async iterator.
"""

import asyncio
import uuid
from typing import Any

from earshot.common import EventEmitter, Pretty, Scheduler, Seconds, get_logger
from earshot.config import EarshotConfig
from earshot.errors import CaptureSourceError, TransportError
from earshot.monitor import ConnectionMonitor, InterruptionEvent
from earshot.routing import (
  RoutingAction,
  StaticTarget,
  StreamingPredicate,
  StreamingTarget,
  TranscriptionSource,
  TranscriptionWithSource,
  WebSocketTranscriptionRouter,
)
from earshot.streaming import AudioStreamingPipeline, CaptureSource, Transport
from earshot.transcription import (
  StreamingTranscriptionParser,
  StreamingTranscriptionResult,
  TranscriptionState,
)
from earshot.wire import RawMessage

logger = get_logger("sess")


class TranscriptionSession(EventEmitter):
  """
  Supervises one streaming transcription session.

  Events:
      result(result, decision): a parsed result; `decision` is None for ERROR results.
      health_changed(is_healthy, state): forwarded from the monitor.
      reconnecting(attempt, delay), reconnected(attempt)
      error(exception): capture failures and exhausted reconnection attempts.
      closed

  Usage:
      async with TranscriptionSession(config, capture, transport) as session:
        async for result in session:
          ...
  """

  def __init__(
    self,
    config: EarshotConfig,
    capture: CaptureSource,
    transport: Transport,
    streaming_target: StreamingTarget | None = None,
    static_target: StaticTarget | None = None,
    source: str = TranscriptionSource.WEBSOCKET_GEMINI,
    has_streaming_characteristics: StreamingPredicate | None = None,
    scheduler: Scheduler | None = None,
  ):
    super().__init__()
    self._config = config
    self._transport = transport
    self._source = str(source)

    self.monitor = ConnectionMonitor(config.monitor, scheduler)
    self.pipeline = AudioStreamingPipeline(
      config.pipeline, capture, transport, health_check=self.monitor.is_responsive
    )
    self.parser = StreamingTranscriptionParser(config.parser)
    self.router = WebSocketTranscriptionRouter(config.router, has_streaming_characteristics)
    self.router.set_streaming_target(streaming_target)
    self.router.set_static_target(static_target)

    self._results: asyncio.Queue[StreamingTranscriptionResult | None] = asyncio.Queue()
    self._utterance_id = uuid.uuid4().hex
    self._reconnect_task: asyncio.Task[None] | None = None
    # Set once the reconnect policy is exhausted; only a fresh `open` clears it
    self._reconnect_exhausted = False
    self._started = False
    self._closed = False
    self.reconnections = 0

  @property
  def is_running(self) -> bool:
    return self._started and not self._closed

  async def start(self) -> None:
    """Connect, start capture and begin monitoring. A no-op when already started."""
    if self._started:
      return
    if self._closed:
      raise RuntimeError("Cannot restart a closed session")

    self._transport.on("message", self._on_message)
    self.monitor.on("recovery_needed", self._on_recovery_needed)
    self.monitor.on("connection_established", self._on_connection_established)
    self.monitor.on("health_changed", self._on_health_changed)
    self.pipeline.on("error", self._on_pipeline_error)

    try:
      await self.pipeline.start_streaming()
    except Exception:
      self._transport.off("message", self._on_message)
      raise

    self.monitor.start_monitoring(self._transport)
    self._started = True
    logger.info("Session started", source=self._source)

  async def close(self) -> None:
    """Tear down every owned component. Idempotent."""
    if self._closed:
      return
    self._closed = True

    task, self._reconnect_task = self._reconnect_task, None
    if task is not None and task is not asyncio.current_task():
      task.cancel()
      await asyncio.gather(task, return_exceptions=True)

    self.monitor.stop_monitoring()
    self._transport.off("message", self._on_message)

    pending = self.parser.complete()
    if pending is not None:
      self._publish(pending)

    await self.pipeline.destroy()
    self._results.put_nowait(None)
    logger.info(
      "Session closed",
      reconnections=self.reconnections,
      routing=Pretty(self.router.get_stats().action_counts),
    )
    self.emit("closed")

  async def __aenter__(self) -> "TranscriptionSession":
    await self.start()
    return self

  async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
    await self.close()

  def __aiter__(self) -> "TranscriptionSession":
    return self

  async def __anext__(self) -> StreamingTranscriptionResult:
    result = await self._results.get()
    if result is None:
      # Keep the end marker for any other consumer
      self._results.put_nowait(None)
      raise StopAsyncIteration
    return result

  # Inbound flow

  def _on_message(self, raw: RawMessage) -> None:
    result = self.parser.parse_message(raw)
    if result is not None:
      self._publish(result)

  def _publish(self, result: StreamingTranscriptionResult) -> None:
    decision = None
    if result.state == TranscriptionState.ERROR:
      logger.warning("Endpoint error", message=result.text)
    else:
      transcript = TranscriptionWithSource(
        id=self._utterance_id,
        text=result.text,
        source=self._source,
        confidence=result.confidence,
        is_partial=result.state == TranscriptionState.PARTIAL,
        metadata={"language": result.language, **result.metadata},
      )
      decision = self.router.route_transcription(transcript)
      if result.state == TranscriptionState.FINAL:
        if decision.action in (RoutingAction.ROUTE_TO_STREAMING, RoutingAction.MERGE):
          self.router.complete_stream(self._source)
        self._utterance_id = uuid.uuid4().hex

    self._results.put_nowait(result)
    self.emit("result", result, decision)

  # Supervision

  def _on_health_changed(self, healthy: bool, state: Any) -> None:
    self.emit("health_changed", healthy, state)

  def _on_pipeline_error(self, error: BaseException) -> None:
    if isinstance(error, CaptureSourceError):
      logger.error("Capture failed, session cannot continue", error=str(error))
      self.emit("error", error)

  def _on_connection_established(self, state: Any) -> None:
    self._reconnect_exhausted = False

  def _on_recovery_needed(self, event: InterruptionEvent) -> None:
    # Failed attempts of an exhausted cycle still deliver their deferred recovery events
    if self._closed or self._reconnect_exhausted or self._reconnect_task is not None:
      return
    logger.info("Recovery needed", type=event.type.value, reason=event.reason)
    self._reconnect_task = asyncio.create_task(self._reconnect(), name="earshot-reconnect")

  async def _reconnect(self) -> None:
    policy = self._config.reconnect
    try:
      for attempt in range(1, policy.max_attempts + 1):
        delay = min(policy.delay_for(attempt), self._config.monitor.max_reconnection_delay)
        logger.info("Reconnecting", attempt=attempt, delay=Seconds(delay))
        self.emit("reconnecting", attempt, delay)
        await asyncio.sleep(delay)

        try:
          if self._transport.is_connected():
            await self._transport.disconnect()
          await self._transport.connect()
        except Exception as e:
          logger.warning("Reconnection attempt failed", attempt=attempt, error=str(e))
          continue

        self.reconnections += 1
        pending = self.parser.complete()
        if pending is not None:
          self._publish(pending)
        logger.info("Reconnected", attempt=attempt)
        self.emit("reconnected", attempt)
        return

      error = TransportError(f"Reconnection failed after {policy.max_attempts} attempts")
      logger.error("Giving up on reconnection", attempts=policy.max_attempts)
      self._reconnect_exhausted = True
      self.emit("error", error)
    finally:
      self._reconnect_task = None
