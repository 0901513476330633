"""
Transcription router.

Decides, per transcript, whether it should take over the live renderer, wait behind the stream
currently shown, merge into it, go to the static list, or be dropped.
"""

from collections import Counter, deque
from collections.abc import Callable
from typing import Any

from earshot.common import get_logger
from earshot.config import RouterConfig

from .models import (
  Priority,
  RouterStats,
  RoutingAction,
  RoutingDecision,
  RoutingMetadata,
  RoutingRecord,
  SourceClass,
  TranscriptionWithSource,
  classify_source,
)
from .queue import TranscriptionQueue
from .targets import StaticTarget, StreamingTarget

logger = get_logger("route")

type StreamingPredicate = Callable[[TranscriptionWithSource], bool]


def _never(_transcript: TranscriptionWithSource) -> bool:
  return False


class WebSocketTranscriptionRouter:
  """
  Routes transcripts between a live streaming target and a static target.

  Policy, evaluated in order:
    1. Interactive (socket) sources always go live and may interrupt a stream from another source.
    2. Streaming sources go live unless a higher-priority source is active. Then they are queued,
       or diverted to static when the queue is full. A transcript from the source already being
       streamed is merged into that stream.
    3. Batch sources go to static, unless `has_streaming_characteristics` says otherwise. Then
       they are handled as in 2 at the upgraded-batch priority.
    4. Unknown sources go to static, or are dropped when `fallback_to_static` is off.

  Target failures are logged and degrade to the static target when allowed. `route_transcription`
  never raises because of a target.

  :param config: Routing policy.
  :param has_streaming_characteristics: Predicate deciding whether a batch transcript should be
      treated as streaming. Defaults to never.
  """

  def __init__(
    self,
    config: RouterConfig | None = None,
    has_streaming_characteristics: StreamingPredicate | None = None,
  ):
    self._config = config or RouterConfig()
    self._has_streaming_characteristics = has_streaming_characteristics or _never

    self._streaming_target: StreamingTarget | None = None
    self._static_target: StaticTarget | None = None

    self._queue = TranscriptionQueue(self._config.max_queue_size)
    self._history: deque[RoutingRecord] = deque(maxlen=self._config.max_history_size)
    self._action_counts: Counter[str] = Counter()
    self._evicted = 0
    self._target_failures = 0

    self._active_source: str | None = None
    self._active_priority: float | None = None
    self._last_static_id: str | None = None

  @property
  def config(self) -> RouterConfig:
    return self._config

  @property
  def active_source(self) -> str | None:
    return self._active_source

  def set_streaming_target(self, target: StreamingTarget | None) -> None:
    self._streaming_target = target

  def set_static_target(self, target: StaticTarget | None) -> None:
    self._static_target = target

  # Routing

  def route_transcription(self, transcript: TranscriptionWithSource) -> RoutingDecision:
    """Decide where `transcript` goes, deliver it there and return the decision."""
    decision = self._decide(transcript)
    delivered_to = self._execute(transcript, decision)
    self._remember(transcript, decision, delivered_to)
    return decision

  def _decide(self, transcript: TranscriptionWithSource) -> RoutingDecision:
    source_class = classify_source(transcript.source)
    has_active = self._active_source is not None

    match source_class:
      case SourceClass.INTERACTIVE if self._config.enable_websocket_priority:
        return RoutingDecision(
          action=RoutingAction.ROUTE_TO_STREAMING,
          priority=Priority.INTERACTIVE,
          should_interrupt=True,
          reason="Interactive source routes to streaming with interrupt capability",
          metadata=RoutingMetadata(is_websocket=True, has_active_stream=has_active),
        )
      case SourceClass.INTERACTIVE:
        return self._decide_streaming(
          transcript,
          Priority.INTERACTIVE,
          RoutingMetadata(is_websocket=True, is_streaming=True, has_active_stream=has_active),
        )
      case SourceClass.STREAMING:
        return self._decide_streaming(
          transcript,
          Priority.STREAMING,
          RoutingMetadata(is_streaming=True, has_active_stream=has_active),
        )
      case SourceClass.BATCH if self._upgrades_to_streaming(transcript):
        return self._decide_streaming(
          transcript,
          Priority.UPGRADED_BATCH,
          RoutingMetadata(is_streaming=True, is_batch=True, has_active_stream=has_active),
        )
      case SourceClass.BATCH:
        return RoutingDecision(
          action=RoutingAction.ROUTE_TO_STATIC,
          priority=Priority.BATCH,
          reason="Batch source routes to static display",
          metadata=RoutingMetadata(is_batch=True, has_active_stream=has_active),
        )

    fallback = self._config.fallback_to_static
    return RoutingDecision(
      action=RoutingAction.ROUTE_TO_STATIC if fallback else RoutingAction.DROP,
      priority=Priority.UNKNOWN,
      reason=f"Unknown source '{transcript.source}', using fallback behavior",
      metadata=RoutingMetadata(has_active_stream=has_active),
    )

  def _decide_streaming(
    self, transcript: TranscriptionWithSource, priority: float, metadata: RoutingMetadata
  ) -> RoutingDecision:
    if self._config.merge_same_source and self._active_source == transcript.source:
      return RoutingDecision(
        action=RoutingAction.MERGE,
        priority=priority,
        reason="Same source as the active stream, merging",
        metadata=metadata,
      )

    outranked = self._active_priority is not None and self._active_priority < priority
    if not outranked:
      return RoutingDecision(
        action=RoutingAction.ROUTE_TO_STREAMING,
        priority=priority,
        reason="Streaming source routes to streaming renderer",
        metadata=metadata,
      )

    if not self._config.queue_non_websocket_streaming:
      return RoutingDecision(
        action=RoutingAction.ROUTE_TO_STATIC,
        priority=priority,
        reason="Higher-priority stream active and queueing disabled, routing to static",
        metadata=metadata,
      )

    if self._queue.is_full() and not self._config.evict_oldest_on_full:
      return RoutingDecision(
        action=RoutingAction.ROUTE_TO_STATIC,
        priority=priority,
        reason="Queue full, routing streaming transcript to static display",
        metadata=metadata,
      )

    position = min(len(self._queue), self._queue.capacity - 1)
    return RoutingDecision(
      action=RoutingAction.QUEUE,
      priority=priority,
      reason="Queued behind a higher-priority active stream",
      metadata=metadata.model_copy(update={"queue_position": position}),
    )

  def _upgrades_to_streaming(self, transcript: TranscriptionWithSource) -> bool:
    try:
      return bool(self._has_streaming_characteristics(transcript))
    except Exception:
      logger.exception("Streaming characteristics check failed", source=transcript.source)
      return False

  # Delivery

  def _execute(self, transcript: TranscriptionWithSource, decision: RoutingDecision) -> str | None:
    match decision.action:
      case RoutingAction.ROUTE_TO_STREAMING:
        return self._deliver_streaming(transcript, decision.priority, decision.should_interrupt)
      case RoutingAction.ROUTE_TO_STATIC:
        return self._deliver_static(transcript)
      case RoutingAction.QUEUE:
        evicted = self._queue.push(transcript)
        if evicted is not None:
          self._evicted += 1
          logger.info("Evicted oldest queued transcript", evicted_id=evicted.id)
        return "queue"
      case RoutingAction.MERGE:
        return self._merge(transcript)
      case RoutingAction.DROP:
        logger.info("Dropping transcript", source=transcript.source, text=transcript.text[:50])
    return None

  def _deliver_streaming(
    self,
    transcript: TranscriptionWithSource,
    priority: float,
    interrupt: bool,
    allow_fallback: bool = True,
  ) -> str | None:
    target = self._streaming_target
    if target is None:
      if allow_fallback and self._config.fallback_to_static:
        logger.debug("No streaming target, falling back to static")
        return self._deliver_static(transcript, allow_fallback=False)
      logger.warning("No streaming target, transcript dropped", source=transcript.source)
      return None

    try:
      if self._active_source == transcript.source:
        target.update_streaming_transcription(transcript)
      else:
        if self._active_source is not None:
          # One renderer, one stream: the previous one is closed before another starts
          log = logger.info if interrupt else logger.debug
          log(
            "Interrupting active stream" if interrupt else "Replacing active stream",
            replaced=self._active_source,
            by=transcript.source,
          )
          target.complete_streaming_transcription()
        target.start_streaming_transcription(transcript)
        self._active_source = transcript.source
        self._active_priority = priority
    except Exception:
      self._target_failures += 1
      logger.exception("Streaming target failed", source=transcript.source)
      if allow_fallback and self._config.fallback_to_static:
        return self._deliver_static(transcript, allow_fallback=False)
      return None

    return "streaming"

  def _deliver_static(
    self, transcript: TranscriptionWithSource, allow_fallback: bool = True
  ) -> str | None:
    target = self._static_target
    if target is None:
      if allow_fallback and self._config.fallback_to_static and self._streaming_target:
        logger.debug("No static target, falling back to streaming")
        return self._deliver_streaming(
          transcript, Priority.UNKNOWN, interrupt=False, allow_fallback=False
        )
      logger.warning("No static target, transcript dropped", source=transcript.source)
      return None

    try:
      if transcript.id == self._last_static_id:
        target.update_transcription(transcript.id, transcript)
      else:
        target.add_static_transcription(transcript)
        self._last_static_id = transcript.id
    except Exception:
      self._target_failures += 1
      logger.exception("Static target failed", source=transcript.source)
      return None

    return "static"

  def _merge(self, transcript: TranscriptionWithSource) -> str | None:
    target = self._streaming_target
    if target is None or self._active_source != transcript.source:
      return self._deliver_static(transcript)

    try:
      target.update_streaming_transcription(transcript)
    except Exception:
      self._target_failures += 1
      logger.exception("Merge into active stream failed", source=transcript.source)
      return self._deliver_static(transcript)
    return "streaming"

  def _remember(
    self,
    transcript: TranscriptionWithSource,
    decision: RoutingDecision,
    delivered_to: str | None,
  ) -> None:
    self._history.append(
      RoutingRecord(transcript=transcript, decision=decision, delivered_to=delivered_to)
    )
    self._action_counts[decision.action.value] += 1

    log = logger.info if self._config.routing_debug_mode else logger.debug
    log(
      "Routed transcript",
      source=transcript.source,
      action=decision.action.value,
      priority=decision.priority,
      delivered_to=delivered_to,
      reason=decision.reason,
    )

  # Stream lifecycle

  def on_streaming_complete(self, source: str) -> RoutingDecision | None:
    """
    The streaming target finished rendering `source`. Frees the renderer and starts the oldest
    queued transcript, if any.
    """
    if self._active_source != source:
      logger.debug("Ignoring completion for inactive source", source=source)
      return None

    self._active_source = None
    self._active_priority = None
    return self.process_queue()

  def complete_stream(self, source: str) -> RoutingDecision | None:
    """Tell the streaming target to finish the active stream, then drain the queue."""
    if self._active_source != source:
      return None

    target = self._streaming_target
    if target is not None:
      try:
        target.complete_streaming_transcription()
      except Exception:
        self._target_failures += 1
        logger.exception("Completing the active stream failed", source=source)
    return self.on_streaming_complete(source)

  def process_queue(self) -> RoutingDecision | None:
    """Start the oldest queued transcript as a non-interrupting stream if the renderer is free."""
    if self._streaming_target is None or self._active_source is not None:
      return None

    transcript = self._queue.pop()
    if transcript is None:
      return None

    source_class = classify_source(transcript.source)
    priority = Priority.UPGRADED_BATCH if source_class == SourceClass.BATCH else Priority.STREAMING
    decision = RoutingDecision(
      action=RoutingAction.ROUTE_TO_STREAMING,
      priority=priority,
      reason="Dequeued after the active stream completed",
      metadata=RoutingMetadata(
        is_streaming=True,
        is_batch=source_class == SourceClass.BATCH,
        queue_position=0,
      ),
    )
    delivered_to = self._deliver_streaming(transcript, priority, interrupt=False)
    self._remember(transcript, decision, delivered_to)
    return decision

  # Introspection

  def get_queue(self) -> list[TranscriptionWithSource]:
    return self._queue.snapshot()

  def get_routing_history(self) -> list[RoutingRecord]:
    return [record.model_copy() for record in self._history]

  def get_stats(self) -> RouterStats:
    return RouterStats(
      queue_length=len(self._queue),
      active_source=self._active_source,
      action_counts=dict(self._action_counts),
      total_decisions=sum(self._action_counts.values()),
      evicted_from_queue=self._evicted,
      target_failures=self._target_failures,
    )

  def reset(self) -> None:
    """Forget the queue, the active stream and all history. Targets stay registered."""
    self._queue.clear()
    self._history.clear()
    self._action_counts.clear()
    self._evicted = 0
    self._target_failures = 0
    self._active_source = None
    self._active_priority = None
    self._last_static_id = None
    logger.debug("Router state reset")

  def update_config(self, **changes: Any) -> RouterConfig:
    """
    Apply configuration changes. Shrinking the queue evicts its oldest entries.

    :raises pydantic.ValidationError: If a changed value is invalid.
    """
    self._config = RouterConfig.model_validate({**self._config.model_dump(), **changes})
    self._evicted += len(self._queue.resize(self._config.max_queue_size))
    if self._history.maxlen != self._config.max_history_size:
      self._history = deque(self._history, maxlen=self._config.max_history_size)
    logger.info("Router configuration updated", changes=changes)
    return self._config
