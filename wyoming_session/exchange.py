"""Transcription exchange state machine.

A transcription request is a fixed sequence on one connection::

    transcribe -> audio-start -> audio-chunk* -> audio-stop -> (transcript)

:class:`TranscriptionExchange` performs no I/O. Each step checks the current
phase, advances it and hands back the envelope (and payload) the session has
to write. Incoming frames are passed to :meth:`TranscriptionExchange.receive`.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .audio import AudioFormat
from .errors import ProtocolViolation, ServerError
from .framing import Envelope, Frame, decode_data_block

logger = logging.getLogger(__name__)

TRANSCRIBE = "transcribe"
AUDIO_START = "audio-start"
AUDIO_CHUNK = "audio-chunk"
AUDIO_STOP = "audio-stop"
TRANSCRIPT = "transcript"
DESCRIBE = "describe"
INFO = "info"
ERROR = "error"


class Phase(Enum):
    """Exchange phase, named for the step most recently performed."""
    IDLE = "idle"
    TRANSCRIBING = "transcribing"                  # transcribe sent
    AWAITING_AUDIO_START = "awaiting-audio-start"  # audio-start sent
    STREAMING_AUDIO = "streaming-audio"            # at least one chunk sent
    STOPPED = "stopped"                            # audio-stop sent
    AWAITING_RESULT = "awaiting-result"
    COMPLETE = "complete"
    FAILED = "failed"


Outgoing = Tuple[Envelope, bytes]


def extract_transcript(frame: Frame) -> str:
    """Get the text of a transcript frame.

    The text is taken from the ``data_length`` block when the envelope
    declares a non-empty one, otherwise from the inline ``data``.

    Raises:
        FramingError: If the data block is not a JSON object
        ProtocolViolation: If no text is present
    """
    if frame.envelope.data_length:
        data = decode_data_block(frame.data_payload)
    else:
        data = frame.envelope.data

    text = data.get("text")
    if not isinstance(text, str):
        raise ProtocolViolation("Transcript event carries no text")
    return text


def error_from_frame(frame: Frame) -> ServerError:
    """Build a ServerError from an ``error`` frame."""
    data = frame.merged_data()
    return ServerError(str(data.get("text", "unknown error")), data.get("code"))


@dataclass
class ServerInfo:
    """Capabilities reported by an ``info`` event."""

    version: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def asr_programs(self) -> List[Dict[str, Any]]:
        return list(self.data.get("asr") or [])

    @property
    def asr_models(self) -> List[str]:
        names = []
        for program in self.asr_programs:
            for model in program.get("models") or []:
                if model.get("name"):
                    names.append(model["name"])
        return names

    @classmethod
    def from_frame(cls, frame: Frame) -> "ServerInfo":
        if frame.type != INFO:
            raise ProtocolViolation(f"Expected info event, got {frame.type}")

        data = frame.merged_data()
        version = frame.envelope.version or data.get("version")
        return cls(version=version, data=data)


class TranscriptionExchange:
    """State of one transcribe request on a connection."""

    def __init__(self, language: Optional[str] = None, name: Optional[str] = None):
        self.language = language
        self.name = name
        self.phase = Phase.IDLE
        self.audio_format: Optional[AudioFormat] = None
        self.chunks_sent = 0
        self.bytes_sent = 0
        self.text: Optional[str] = None
        self.error: Optional[BaseException] = None

    @property
    def active(self) -> bool:
        return self.phase not in (Phase.IDLE, Phase.COMPLETE, Phase.FAILED)

    @property
    def done(self) -> bool:
        return self.phase in (Phase.COMPLETE, Phase.FAILED)

    def _advance(self, action: str, allowed: Tuple[Phase, ...], new_phase: Phase) -> None:
        if self.phase not in allowed:
            error = ProtocolViolation(f"Cannot {action} while {self.phase.value}")
            self.fail(error)
            raise error
        self.phase = new_phase

    def fail(self, error: BaseException) -> None:
        """Abandon the exchange; it can never reach COMPLETE afterwards."""
        if self.phase == Phase.FAILED:
            return
        logger.debug(f"Transcription failed while {self.phase.value}: {error}")
        self.phase = Phase.FAILED
        self.error = error

    def begin(self) -> Outgoing:
        self._advance("send transcribe", (Phase.IDLE,), Phase.TRANSCRIBING)

        data = {}
        if self.name is not None:
            data["name"] = self.name
        if self.language is not None:
            data["language"] = self.language
        return Envelope(type=TRANSCRIBE, data=data), b""

    def start_audio(self, audio_format: AudioFormat = AudioFormat()) -> Outgoing:
        try:
            audio_format.validate()
        except ValueError as e:
            self.fail(e)
            raise

        self._advance("start audio", (Phase.TRANSCRIBING,), Phase.AWAITING_AUDIO_START)
        self.audio_format = audio_format
        return Envelope(type=AUDIO_START, data=audio_format.to_dict()), b""

    def audio_chunk(self, audio: bytes, audio_format: Optional[AudioFormat] = None) -> Outgoing:
        """Produce one audio-chunk restating the session's audio format."""
        self._advance(
            "send audio chunk",
            (Phase.AWAITING_AUDIO_START, Phase.STREAMING_AUDIO),
            Phase.STREAMING_AUDIO,
        )

        if audio_format is not None and audio_format != self.audio_format:
            error = ProtocolViolation(
                f"Chunk format {audio_format} differs from audio-start format {self.audio_format}"
            )
            self.fail(error)
            raise error

        audio = bytes(audio)
        self.chunks_sent += 1
        self.bytes_sent += len(audio)
        envelope = Envelope(
            type=AUDIO_CHUNK,
            data=self.audio_format.to_dict(),
            payload_length=len(audio),
        )
        return envelope, audio

    def stop_audio(self) -> Outgoing:
        self._advance(
            "stop audio",
            (Phase.AWAITING_AUDIO_START, Phase.STREAMING_AUDIO),
            Phase.STOPPED,
        )
        logger.debug(f"Audio stopped after {self.chunks_sent} chunks ({self.bytes_sent} bytes)")
        return Envelope(type=AUDIO_STOP), b""

    def await_result(self) -> None:
        self._advance("await transcript", (Phase.STOPPED, Phase.AWAITING_RESULT), Phase.AWAITING_RESULT)

    def receive(self, frame: Frame) -> Optional[str]:
        """Handle an incoming frame.

        Returns:
            The transcript text once it arrives, otherwise None

        Raises:
            ServerError: If the server reported an error
            ProtocolViolation: If a transcript arrives before audio-stop
        """
        if frame.type == ERROR:
            error = error_from_frame(frame)
            self.fail(error)
            raise error

        if frame.type != TRANSCRIPT:
            logger.debug(f"Ignoring {frame.type} event while {self.phase.value}")
            return None

        if self.phase not in (Phase.STOPPED, Phase.AWAITING_RESULT):
            error = ProtocolViolation(f"Received transcript while {self.phase.value}")
            self.fail(error)
            raise error

        try:
            text = extract_transcript(frame)
        except Exception as e:
            self.fail(e)
            raise

        self.phase = Phase.COMPLETE
        self.text = text
        return text
