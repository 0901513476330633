"""Tests for the transcription session supervisor."""

import asyncio
import json

import pytest

from earshot.config import (
  AudioConfig,
  EarshotConfig,
  MonitorConfig,
  PipelineConfig,
  ProcessingConfig,
  ReconnectConfig,
  TransportConfig,
)
from earshot.errors import CaptureSourceError, TransportError
from earshot.routing import RoutingAction
from earshot.session import TranscriptionSession
from earshot.transcription import TranscriptionState


def make_config(**reconnect) -> EarshotConfig:
  return EarshotConfig(
    monitor=MonitorConfig(heartbeat_interval=1.0, timeout_threshold=2.0),
    pipeline=PipelineConfig(
      audio=AudioConfig(sample_rate=16000, channels=1),
      processing=ProcessingConfig(buffer_size=4, batch_size=4, enable_workers=False),
      transport=TransportConfig(api_key="secret"),
    ),
    reconnect=ReconnectConfig(base_delay=0.01, max_delay=0.05, **reconnect),
  )


@pytest.fixture
def session(capture, transport, scheduler, streaming_target, static_target):
  return TranscriptionSession(
    make_config(),
    capture,
    transport,
    streaming_target=streaming_target,
    static_target=static_target,
    scheduler=scheduler,
  )


async def collect(session) -> list:
  return [result async for result in session]


class TestLifecycle:
  """Test start and close."""

  @pytest.mark.asyncio
  async def test_context_manager_starts_and_closes(self, session, capture, transport):
    closed = []
    session.on("closed", lambda: closed.append(True))

    async with session:
      assert session.is_running is True
      assert session.pipeline.is_streaming is True
      assert session.monitor.is_monitoring is True
      assert capture.running is True

    assert session.is_running is False
    assert session.monitor.is_monitoring is False
    assert session.pipeline.is_destroyed is True
    assert transport.connected is False
    assert closed == [True]

  @pytest.mark.asyncio
  async def test_close_is_idempotent(self, session):
    closed = []
    session.on("closed", lambda: closed.append(True))
    await session.start()

    await session.close()
    await session.close()

    assert closed == [True]
    with pytest.raises(RuntimeError, match="closed session"):
      await session.start()

  @pytest.mark.asyncio
  async def test_start_failure_leaves_transport_detached(self, session, capture, transport):
    capture.start_error = OSError("no microphone")

    with pytest.raises(CaptureSourceError):
      await session.start()

    assert transport.listener_count("message") == 0
    assert session.monitor.is_monitoring is False


class TestResults:
  """Test the inbound flow from transport to targets and iterator."""

  @pytest.mark.asyncio
  async def test_utterance_rendered_live_then_completed(self, session, transport, streaming_target):
    decisions = []
    session.on("result", lambda result, decision: decisions.append(decision))

    async with session:
      transport.receive(json.dumps({"text": "hello"}))
      transport.receive(json.dumps({"text": "world", "isFinal": True}))

    results = await collect(session)
    assert [(r.state, r.text) for r in results] == [
      (TranscriptionState.PARTIAL, "hello"),
      (TranscriptionState.FINAL, "hello world"),
    ]
    assert [d.action for d in decisions] == [RoutingAction.ROUTE_TO_STREAMING] * 2
    assert streaming_target.calls == [
      ("start", "hello"),
      ("update", "hello world"),
      ("complete", "websocket-gemini"),
    ]
    assert session.router.active_source is None

  @pytest.mark.asyncio
  async def test_each_utterance_gets_its_own_id(self, session, transport):
    async with session:
      transport.receive(json.dumps({"text": "one", "isFinal": True}))
      transport.receive(json.dumps({"text": "two", "isFinal": True}))

    history = session.router.get_routing_history()
    assert history[0].transcript.id != history[1].transcript.id

  @pytest.mark.asyncio
  async def test_error_results_are_not_routed(self, session, transport, streaming_target):
    decisions = []
    session.on("result", lambda result, decision: decisions.append(decision))

    async with session:
      transport.receive("{definitely not json")

    results = await collect(session)
    assert results[0].state == TranscriptionState.ERROR
    assert decisions == [None]
    assert streaming_target.calls == []

  @pytest.mark.asyncio
  async def test_close_flushes_pending_text(self, session, transport):
    async with session:
      transport.receive(json.dumps({"text": "unfinished"}))

    results = await collect(session)
    assert [r.state for r in results] == [TranscriptionState.PARTIAL, TranscriptionState.FINAL]
    assert results[-1].metadata["forced"] is True

  @pytest.mark.asyncio
  async def test_iteration_ends_for_every_consumer(self, session):
    await session.start()
    await session.close()

    assert await collect(session) == []
    assert await collect(session) == []


class TestSupervision:
  """Test reconnection and failure handling."""

  @pytest.mark.asyncio
  async def test_reconnects_after_disconnect(self, session, transport, scheduler):
    reconnected = []
    session.on("reconnected", lambda attempt: reconnected.append(attempt))
    await session.start()
    transport.receive(json.dumps({"text": "half a"}))

    transport.drop(1006, "network down")
    await scheduler.advance(0.0)
    await asyncio.sleep(0.1)

    assert reconnected == [1]
    assert session.reconnections == 1
    assert transport.connected is True
    assert session.monitor.get_metrics().reconnection_count == 1
    assert session.parser.get_accumulated_text() == ""
    await session.close()

    results = await collect(session)
    assert results[-1].state == TranscriptionState.FINAL
    assert results[-1].text == "half a"

  @pytest.mark.asyncio
  async def test_gives_up_after_max_attempts(self, capture, transport, scheduler):
    config = make_config(max_attempts=2)
    session = TranscriptionSession(config, capture, transport, scheduler=scheduler)
    errors = []
    attempts = []
    session.on("error", errors.append)
    session.on("reconnecting", lambda attempt, delay: attempts.append(attempt))
    await session.start()

    transport.connect_error = OSError("still down")
    transport.drop()
    await scheduler.advance(0.0)
    await asyncio.sleep(0.2)

    # Each failed attempt left a deferred recovery event behind
    await scheduler.advance(0.0)
    await asyncio.sleep(0.2)

    assert attempts == [1, 2]
    assert transport.connect_calls == 2
    assert len(errors) == 1
    assert isinstance(errors[0], TransportError)
    await session.close()

  @pytest.mark.asyncio
  async def test_reopen_after_giving_up_rearms_reconnection(self, capture, transport, scheduler):
    config = make_config(max_attempts=1)
    session = TranscriptionSession(config, capture, transport, scheduler=scheduler)
    reconnected = []
    session.on("reconnected", lambda attempt: reconnected.append(attempt))
    await session.start()

    transport.connect_error = OSError("still down")
    transport.drop()
    await scheduler.advance(0.0)
    await asyncio.sleep(0.1)
    await scheduler.advance(0.0)
    assert transport.connect_calls == 1

    transport.connect_error = None
    await transport.connect()
    transport.drop()
    await scheduler.advance(0.0)
    await asyncio.sleep(0.1)

    assert reconnected == [1]
    assert transport.connected is True
    await session.close()

  @pytest.mark.asyncio
  async def test_capture_failure_is_surfaced(self, session, capture):
    errors = []
    session.on("error", errors.append)
    await session.start()

    capture.fail(RuntimeError("unplugged"))
    await asyncio.sleep(0)

    assert isinstance(errors[0], CaptureSourceError)
    await session.close()

  @pytest.mark.asyncio
  async def test_health_changes_are_forwarded(self, session, transport, scheduler):
    changes = []
    session.on("health_changed", lambda healthy, state: changes.append(healthy))
    await session.start()

    transport.drop()

    assert changes == [True, False]
    await session.close()
