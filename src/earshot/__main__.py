#!/usr/bin/env python3
"""
Command-line entry point: stream the microphone to the endpoint and print transcripts.
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

from earshot.common import get_logger, setup_logging_from_env
from earshot.config import EarshotConfig, get_env_bool, load_config_from_file
from earshot.console import ConsoleStaticTarget, ConsoleStreamingTarget
from earshot.errors import EarshotError
from earshot.session import TranscriptionSession
from earshot.streaming import WebSocketTransport

logger = get_logger("cli")

API_KEY_ENV = "EARSHOT_API_KEY"
ROUTING_DEBUG_ENV = "EARSHOT_ROUTING_DEBUG"


def build_config(args: argparse.Namespace) -> EarshotConfig:
  """Load the configuration file, if any, and apply command-line and environment overrides."""
  config = load_config_from_file(args.config) if args.config else EarshotConfig()

  audio = config.pipeline.audio
  transport = config.pipeline.transport
  if args.device is not None:
    audio.device = int(args.device) if args.device.isdigit() else args.device
  if args.url:
    transport.url = args.url
  if args.model:
    transport.model = args.model
  if not transport.api_key:
    transport.api_key = os.getenv(API_KEY_ENV, "")
  if get_env_bool(ROUTING_DEBUG_ENV, False):
    config.router.routing_debug_mode = True

  return config


async def run(config: EarshotConfig) -> None:
  from earshot.streaming.capture import SoundDeviceCapture

  capture = SoundDeviceCapture(config.pipeline.audio)
  transport = WebSocketTransport(config.pipeline.transport)
  session = TranscriptionSession(
    config,
    capture,
    transport,
    streaming_target=ConsoleStreamingTarget(),
    static_target=ConsoleStaticTarget(),
  )

  failed = asyncio.Event()

  def on_error(error: BaseException) -> None:
    logger.error("Session failed", error=str(error))
    failed.set()

  session.on("error", on_error)

  async with session:
    consumer = asyncio.create_task(_drain(session))
    waiter = asyncio.create_task(failed.wait())
    await asyncio.wait({consumer, waiter}, return_when=asyncio.FIRST_COMPLETED)
    for task in (consumer, waiter):
      task.cancel()


async def _drain(session: TranscriptionSession) -> None:
  async for _ in session:
    pass


def main() -> None:
  parser = argparse.ArgumentParser(
    description="Stream microphone audio to a transcription endpoint and print transcripts"
  )
  parser.add_argument("--config", type=Path, help="YAML configuration file")
  parser.add_argument("--device", help="Input device name or index (default: system default)")
  parser.add_argument("--url", help="WebSocket endpoint URL")
  parser.add_argument("--model", help="Model announced in the setup message")
  args = parser.parse_args()

  setup_logging_from_env()

  try:
    config = build_config(args)
    config.pretty_print()
    asyncio.run(run(config))
  except KeyboardInterrupt:
    pass
  except ValueError as e:
    logger.error("Invalid configuration", error=str(e))
    sys.exit(2)
  except EarshotError as e:
    logger.error("Fatal error", error=str(e))
    sys.exit(1)


if __name__ == "__main__":
  main()
