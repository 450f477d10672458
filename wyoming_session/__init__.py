"""Client for the Wyoming speech-to-text protocol.

Wyoming messages are newline-delimited JSON envelopes, optionally followed
by a binary payload. This package frames that stream incrementally, drives
the transcribe / audio-start / audio-chunk / audio-stop exchange as a state
machine, and wraps both in blocking and asyncio sessions.
"""

from .async_session import AsyncWyomingSession
from .audio import AudioFormat, AudioProcessor, chunk_count, iter_chunks, strip_wav_header
from .errors import (
    FramingError,
    ProtocolViolation,
    ServerError,
    SessionConnectionError,
    SessionTimeoutError,
    WyomingError,
)
from .exchange import Phase, ServerInfo, TranscriptionExchange, extract_transcript
from .framing import Envelope, Frame, FrameParser, encode_frame
from .session import WyomingSession

__version__ = "0.1.0"

__all__ = [
    # Framing
    "Envelope",
    "Frame",
    "FrameParser",
    "encode_frame",
    # Audio
    "AudioFormat",
    "AudioProcessor",
    "chunk_count",
    "iter_chunks",
    "strip_wav_header",
    # Exchange
    "Phase",
    "ServerInfo",
    "TranscriptionExchange",
    "extract_transcript",
    # Sessions
    "WyomingSession",
    "AsyncWyomingSession",
    # Errors
    "WyomingError",
    "FramingError",
    "ProtocolViolation",
    "ServerError",
    "SessionConnectionError",
    "SessionTimeoutError",
]
