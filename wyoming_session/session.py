"""Blocking Wyoming session over a TCP socket."""

import logging
import socket
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Optional, Tuple
from urllib.parse import urlparse

from wyoming.event import Event

from .audio import DEFAULT_CHUNK_SIZE, AudioFormat, AudioProcessor, chunk_count, iter_chunks, strip_wav_header
from .errors import (
    FramingError,
    ProtocolViolation,
    SessionConnectionError,
    SessionTimeoutError,
    WyomingError,
)
from .exchange import (
    AUDIO_CHUNK,
    AUDIO_START,
    AUDIO_STOP,
    DESCRIBE,
    ERROR,
    INFO,
    TRANSCRIBE,
    Outgoing,
    ServerInfo,
    TranscriptionExchange,
    error_from_frame,
)
from .framing import DEFAULT_MAX_LINE_BYTES, Envelope, Frame, FrameParser, encode_frame

logger = logging.getLogger(__name__)

DEFAULT_PORT = 10300


def parse_uri(uri: str) -> Tuple[str, int]:
    """Split a ``tcp://host:port`` URI.

    Raises:
        ValueError: On another scheme or a missing host/port
    """
    parsed = urlparse(uri)
    if parsed.scheme != "tcp":
        raise ValueError(f"Unsupported URI scheme: {parsed.scheme}")

    try:
        port = parsed.port
    except ValueError as e:
        raise ValueError(f"Invalid URI format: {uri}") from e

    if not parsed.hostname or not port:
        raise ValueError(f"Invalid URI format: {uri}")

    return parsed.hostname, port


def resolve_endpoint(uri: Optional[str], host: Optional[str], port: Optional[int]) -> Tuple[str, int]:
    if uri is not None:
        return parse_uri(uri)
    if not host:
        raise ValueError("Either uri or host is required")
    return host, port or DEFAULT_PORT


def as_event(event) -> Event:
    """Accept a wyoming Event or any Eventable (AudioStart, Transcribe, ...)."""
    if isinstance(event, Event):
        return event
    return event.event()


class WyomingSession:
    """One TCP connection to a Wyoming transcription server.

    The session owns its socket, frame parser and the current transcription
    exchange. It is not meant to be shared by concurrent transcriptions;
    open one session per audio source instead.
    """

    def __init__(
        self,
        uri: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        connect_timeout: float = 5.0,
        read_size: int = 4096,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
    ):
        """Initialize the session.

        Args:
            uri: Wyoming endpoint URI (tcp://host:port)
            host: Server host, used when no URI is given
            port: Server port, used when no URI is given
            connect_timeout: Seconds to wait for the TCP connection
            read_size: Bytes requested per socket read
            max_line_bytes: Longest envelope line accepted
        """
        self.host, self.port = resolve_endpoint(uri, host, port)
        self.uri = f"tcp://{self.host}:{self.port}"
        self.connect_timeout = connect_timeout
        self.read_size = read_size
        self.max_line_bytes = max_line_bytes

        self.socket: Optional[socket.socket] = None
        self.connected = False
        self.exchange: Optional[TranscriptionExchange] = None

        self._parser = FrameParser(max_line_bytes=max_line_bytes)
        self._frames: Deque[Frame] = deque()
        self._write_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "WyomingSession":
        return cls(
            host=settings.host,
            port=settings.port,
            connect_timeout=settings.connect_timeout,
            read_size=settings.read_size,
            max_line_bytes=settings.max_line_bytes,
        )

    def connect(self) -> None:
        """Establish TCP connection to the Wyoming endpoint."""
        if self.connected:
            return

        try:
            self.socket = socket.create_connection((self.host, self.port), timeout=self.connect_timeout)
        except OSError as e:
            self.socket = None
            raise SessionConnectionError(f"Failed to connect to {self.host}:{self.port}: {e}") from e

        self.socket.settimeout(None)
        self._parser = FrameParser(max_line_bytes=self.max_line_bytes)
        self._frames.clear()
        self.exchange = None
        self.connected = True
        logger.info(f"Connected to {self.host}:{self.port}")

    def close(self) -> None:
        """Close TCP connection."""
        if self.socket is not None:
            try:
                self.socket.close()
            except OSError as e:
                logger.debug(f"Error while closing socket: {e}")
            self.socket = None

        if self.connected:
            self.connected = False
            logger.info("Disconnected")

    def _abandon(self, error: BaseException) -> None:
        if self.exchange is not None:
            self.exchange.fail(error)
        self.close()

    def _require_socket(self) -> socket.socket:
        if not self.connected or self.socket is None:
            raise SessionConnectionError("Not connected")
        return self.socket

    def send(self, envelope: Envelope, payload: bytes = b"", data_payload: bytes = b"") -> None:
        """Write one envelope and its trailing bytes.

        The line and its payload go out in a single ``sendall`` under the
        write lock, so no other write can land between them.
        """
        sock = self._require_socket()
        data = encode_frame(envelope, payload=payload, data_payload=data_payload)

        with self._write_lock:
            try:
                sock.sendall(data)
            except OSError as e:
                self._abandon(e)
                raise SessionConnectionError(f"Failed to send {envelope.type}: {e}") from e

        logger.debug(f"Sent {envelope.type} ({len(data)} bytes)")

    def send_event(self, event) -> None:
        """Send a wyoming Event or Eventable.

        Transcription events are routed through the exchange state machine.
        """
        event = as_event(event)
        data = event.data or {}

        if event.type == TRANSCRIBE:
            self.start_transcription(language=data.get("language"), name=data.get("name"))
        elif event.type == AUDIO_START:
            self.start_audio(AudioFormat.from_dict(data))
        elif event.type == AUDIO_CHUNK:
            self.send_audio(event.payload or b"", AudioFormat.from_dict(data))
        elif event.type == AUDIO_STOP:
            self.stop_audio()
        else:
            frame = Frame.from_event(event)
            self.send(frame.envelope, frame.payload)

    def read_frame(self, timeout: Optional[float] = None) -> Frame:
        """Return the next frame from the server.

        Args:
            timeout: Seconds to wait, or None to wait indefinitely

        Raises:
            SessionTimeoutError: If no complete frame arrived in time
            SessionConnectionError: If the connection closed or failed
            FramingError: If the server sent a malformed message
        """
        sock = self._require_socket()
        deadline = None if timeout is None else time.monotonic() + timeout

        try:
            while not self._frames:
                self._receive_into_parser(sock, deadline, timeout)
        finally:
            # Writes must not inherit the read deadline
            if self.socket is sock:
                sock.settimeout(None)

        frame = self._frames.popleft()
        logger.debug(f"Received event: {frame.type}")
        return frame

    def _receive_into_parser(self, sock: socket.socket, deadline: Optional[float], timeout: Optional[float]) -> None:
        if deadline is None:
            sock.settimeout(None)
        else:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise SessionTimeoutError(f"No event received within {timeout}s")
            sock.settimeout(remaining)

        try:
            chunk = sock.recv(self.read_size)
        except socket.timeout as e:
            raise SessionTimeoutError(f"No event received within {timeout}s") from e
        except OSError as e:
            self._abandon(e)
            raise SessionConnectionError(f"Failed to receive event: {e}") from e

        if not chunk:
            if self._parser.at_boundary:
                error = SessionConnectionError("Connection closed by server")
            else:
                error = FramingError(f"Stream ended mid-frame ({self._parser.pending} bytes buffered)")
            self._abandon(error)
            raise error

        try:
            self._frames.extend(self._parser.feed(chunk))
        except FramingError as e:
            self._abandon(e)
            raise

    def read_event(self, timeout: Optional[float] = None) -> Event:
        return self.read_frame(timeout).to_event()

    # Transcription exchange

    def _require_exchange(self) -> TranscriptionExchange:
        if self.exchange is None:
            raise ProtocolViolation("No transcription in progress")
        return self.exchange

    def _step(self, action: Callable[..., Outgoing], *args) -> None:
        exchange = self._require_exchange()
        envelope, payload = action(*args)
        try:
            self.send(envelope, payload)
        except WyomingError as e:
            exchange.fail(e)
            raise

    def start_transcription(self, language: Optional[str] = None, name: Optional[str] = None) -> TranscriptionExchange:
        if self.exchange is not None and self.exchange.active:
            raise ProtocolViolation("A transcription is already in progress on this connection")

        self.exchange = TranscriptionExchange(language=language, name=name)
        self._step(self.exchange.begin)
        logger.info("Sent transcribe event")
        return self.exchange

    def start_audio(self, audio_format: AudioFormat = AudioFormat()) -> None:
        self._step(self._require_exchange().start_audio, audio_format)
        logger.info(f"Sent audio-start event ({audio_format.rate}Hz, {audio_format.width*8}bit, {audio_format.channels}ch)")

    def send_audio(self, audio: bytes, audio_format: Optional[AudioFormat] = None) -> None:
        self._step(self._require_exchange().audio_chunk, audio, audio_format)

    def stop_audio(self) -> None:
        exchange = self._require_exchange()
        self._step(exchange.stop_audio)
        logger.info(f"Sent audio-stop event after {exchange.chunks_sent} chunks")

    def receive_transcript(self, timeout: Optional[float] = None) -> str:
        """Wait for the transcript of the current exchange.

        Raises:
            SessionTimeoutError: If the server did not answer in time
        """
        exchange = self._require_exchange()
        exchange.await_result()
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            try:
                frame = self.read_frame(timeout=remaining)
                text = exchange.receive(frame)
            except (FramingError, ProtocolViolation) as e:
                # The stream can no longer be trusted to be in sync
                self._abandon(e)
                raise
            except WyomingError as e:
                exchange.fail(e)
                raise

            if text is not None:
                logger.info(f"Transcript received ({len(text)} characters)")
                return text

    def transcribe(
        self,
        pcm: bytes,
        audio_format: AudioFormat = AudioFormat(),
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: Optional[float] = 30.0,
        language: Optional[str] = None,
    ) -> str:
        """Run a complete transcription exchange.

        Args:
            pcm: Headerless PCM audio in ``audio_format``
            audio_format: Format declared in audio-start and every chunk
            chunk_size: Bytes of audio per audio-chunk event
            timeout: Seconds to wait for the transcript after audio-stop
            language: Optional language hint sent with transcribe

        Returns:
            Transcribed text
        """
        chunks = chunk_count(len(pcm), chunk_size)
        audio_format.validate()

        self.start_transcription(language=language)
        self.start_audio(audio_format)

        logger.info(f"Streaming {len(pcm)} bytes in {chunks} chunks")
        for chunk in iter_chunks(pcm, chunk_size):
            self.send_audio(chunk)

        self.stop_audio()
        return self.receive_transcript(timeout)

    def transcribe_wav_bytes(self, data: bytes, **kwargs) -> str:
        return self.transcribe(strip_wav_header(data), **kwargs)

    def transcribe_file(self, file_path: Path, audio_format: AudioFormat = AudioFormat(), **kwargs) -> str:
        pcm = AudioProcessor(audio_format).load_pcm(Path(file_path))
        return self.transcribe(pcm, audio_format=audio_format, **kwargs)

    def describe(self, timeout: Optional[float] = 30.0) -> ServerInfo:
        """Ask the server for its version and capabilities."""
        if self.exchange is not None and self.exchange.active:
            raise ProtocolViolation("Cannot describe while a transcription is in progress")

        self.send(Envelope(type=DESCRIBE))
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            frame = self.read_frame(timeout=remaining)
            if frame.type not in (INFO, ERROR):
                logger.debug(f"Ignoring {frame.type} event while waiting for info")
                continue

            try:
                if frame.type == ERROR:
                    raise error_from_frame(frame)
                info = ServerInfo.from_frame(frame)
            except FramingError as e:
                self._abandon(e)
                raise

            logger.info(f"Server info received (version: {info.version})")
            return info

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
