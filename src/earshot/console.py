"""
Terminal display targets used by the command-line client.
"""

from rich.console import Console
from rich.markup import escape

from earshot.routing import TranscriptionWithSource

_CLEAR_LINE = "\r\x1b[2K"


class ConsoleStreamingTarget:
  """Renders the live transcript on a single, continuously rewritten terminal line."""

  def __init__(self, console: Console | None = None):
    self._console = console or Console(highlight=False)
    self._source: str | None = None
    self._text = ""

  @property
  def is_streaming_active(self) -> bool:
    return self._source is not None

  @property
  def current_streaming_source(self) -> str | None:
    return self._source

  @property
  def text(self) -> str:
    return self._text

  def start_streaming_transcription(self, transcript: TranscriptionWithSource) -> None:
    if self._source is not None:
      self.complete_streaming_transcription()
    self._source = transcript.source
    self._render(transcript.text)

  def update_streaming_transcription(self, transcript: TranscriptionWithSource) -> None:
    self._render(transcript.text)

  def complete_streaming_transcription(self) -> None:
    if self._source is None:
      return
    self._console.file.write(_CLEAR_LINE)
    self._console.print(f"[bold]{escape(self._text)}[/bold]")
    self._source = None
    self._text = ""

  def _render(self, text: str) -> None:
    self._text = text
    width = max(10, self._console.width - 2)
    visible = text if len(text) <= width else "…" + text[-(width - 1) :]
    self._console.file.write(f"{_CLEAR_LINE}\x1b[2m{visible}\x1b[0m")
    self._console.file.flush()


class ConsoleStaticTarget:
  """Prints finished transcripts, one per line, tagged with their source."""

  def __init__(self, console: Console | None = None):
    self._console = console or Console(highlight=False)
    self.lines: list[str] = []

  def add_static_transcription(self, transcript: TranscriptionWithSource) -> None:
    self.lines.append(transcript.text)
    self._console.print(f"[cyan]\\[{escape(transcript.source)}][/cyan] {escape(transcript.text)}")

  def append_to_last_transcription(self, text: str) -> None:
    if not self.lines:
      self.lines.append(text)
    else:
      self.lines[-1] = f"{self.lines[-1]} {text}"
    self._console.print(f"[dim]… {escape(text)}[/dim]")

  def update_transcription(self, transcript_id: str, transcript: TranscriptionWithSource) -> None:
    if self.lines:
      self.lines[-1] = transcript.text
    else:
      self.lines.append(transcript.text)
    self._console.print(f"[dim]↻ {escape(transcript.text)}[/dim]")
