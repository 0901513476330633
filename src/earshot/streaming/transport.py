"""
WebSocket connection to the transcription endpoint.
"""

import asyncio
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from earshot.common import EventEmitter, get_logger
from earshot.config import TransportConfig
from earshot.errors import TransportError
from earshot.wire import SetupMessage, SetupOptions, serialize_message

logger = get_logger("ws")


def build_endpoint_url(url: str, api_key: str) -> str:
  """Add the credential to `url` as the `key` query parameter."""
  parts = urlsplit(url)
  query = [(k, v) for k, v in parse_qsl(parts.query) if k != "key"]
  query.append(("key", api_key))
  return urlunsplit(parts._replace(query=urlencode(query)))


class WebSocketTransport(EventEmitter):
  """
  Manages the WebSocket connection and surfaces it as `open`, `message`, `close` and `error`
  events.

  `connect` resolves once the handshake succeeded and, when a model is configured, the setup
  message has been sent. Inbound frames are emitted as they arrive, text or bytes, unmodified.
  """

  def __init__(self, config: TransportConfig):
    super().__init__()
    self._config = config
    self._ws: ClientConnection | None = None
    self._connected = False
    self._receive_task: asyncio.Task[None] | None = None

  def is_connected(self) -> bool:
    return self._connected and self._ws is not None

  async def connect(self) -> None:
    """
    Establish the connection.

    :raises TransportError: If the handshake or the setup message fails.
    """
    if self.is_connected():
      return

    url = build_endpoint_url(self._config.url, self._config.api_key)
    try:
      self._ws = await connect(url, open_timeout=self._config.open_timeout, max_size=None)
      if self._config.model:
        setup = SetupMessage(setup=SetupOptions(model=self._config.model))
        await self._ws.send(serialize_message(setup))
    except Exception as e:
      logger.error("Connection failed", url=self._config.url, error=str(e))
      if self._ws is not None:
        await self._ws.close()
        self._ws = None
      self.emit("error", e)
      raise TransportError(f"Unable to connect to {self._config.url}: {e}") from e

    self._connected = True
    logger.info("Connected", url=self._config.url, model=self._config.model)
    self._receive_task = asyncio.create_task(self._receive_loop(self._ws), name="earshot-ws-recv")
    self.emit("open")

  async def disconnect(self) -> None:
    """Close the connection. A no-op when not connected."""
    ws, self._ws = self._ws, None
    if ws is None:
      return

    await ws.close()
    task, self._receive_task = self._receive_task, None
    if task is not None and task is not asyncio.current_task():
      await asyncio.gather(task, return_exceptions=True)
    self._connected = False

  async def send(self, payload: str | bytes) -> None:
    """
    Send one message.

    :raises TransportError: If not connected or the connection drops while sending.
    """
    ws = self._ws
    if ws is None or not self._connected:
      raise TransportError("Transport is not connected")

    try:
      await ws.send(payload)
    except ConnectionClosed as e:
      raise TransportError(f"Connection closed while sending: {e}") from e

  async def _receive_loop(self, ws: ClientConnection) -> None:
    try:
      async for message in ws:
        self.emit("message", message)
    except ConnectionClosed:
      # Reported as a close event below
      pass
    except Exception as e:
      logger.exception("Receive loop failed")
      self.emit("error", e)
    finally:
      self._connected = False
      if self._ws is ws:
        self._ws = None
      logger.info("Connection closed", code=ws.close_code, reason=ws.close_reason)
      self.emit("close", ws.close_code, ws.close_reason or "")
