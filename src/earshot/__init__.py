"""
earshot: resilient client-side streaming transcription.

Streams microphone audio to a remote transcription endpoint, watches the socket for silent
failures, normalizes the endpoint's replies into partial/final transcripts and routes them to
live or static displays.
"""

__version__ = "0.1.0"
