"""Asyncio Wyoming session over stream reader/writer pairs."""

import asyncio
import logging
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Optional

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
from .session import as_event, resolve_endpoint

logger = logging.getLogger(__name__)


class AsyncWyomingSession:
    """Event-loop counterpart of :class:`~wyoming_session.session.WyomingSession`.

    Framing and exchange rules are shared with the blocking session; only
    the transport differs.
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
        self.host, self.port = resolve_endpoint(uri, host, port)
        self.uri = f"tcp://{self.host}:{self.port}"
        self.connect_timeout = connect_timeout
        self.read_size = read_size
        self.max_line_bytes = max_line_bytes

        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.exchange: Optional[TranscriptionExchange] = None

        self._parser = FrameParser(max_line_bytes=max_line_bytes)
        self._frames: Deque[Frame] = deque()
        self._write_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings) -> "AsyncWyomingSession":
        return cls(
            host=settings.host,
            port=settings.port,
            connect_timeout=settings.connect_timeout,
            read_size=settings.read_size,
            max_line_bytes=settings.max_line_bytes,
        )

    @property
    def connected(self) -> bool:
        return self.writer is not None

    async def connect(self) -> None:
        if self.connected:
            return

        logger.info(f"Connecting to {self.host}:{self.port}...")
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.connect_timeout
            )
        except asyncio.TimeoutError as e:
            raise SessionConnectionError(f"Timeout connecting to {self.host}:{self.port}") from e
        except OSError as e:
            raise SessionConnectionError(f"Failed to connect to {self.host}:{self.port}: {e}") from e

        self._parser = FrameParser(max_line_bytes=self.max_line_bytes)
        self._frames.clear()
        self.exchange = None
        logger.info(f"Connected to {self.host}:{self.port}")

    async def close(self) -> None:
        writer, self.writer, self.reader = self.writer, None, None
        if writer is None:
            return

        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error while closing connection: {e}")
        logger.info("Connection closed")

    async def _abandon(self, error: BaseException) -> None:
        if self.exchange is not None:
            self.exchange.fail(error)
        await self.close()

    async def send(self, envelope: Envelope, payload: bytes = b"", data_payload: bytes = b"") -> None:
        """Write one envelope and its trailing bytes as a single buffer."""
        if self.writer is None:
            raise SessionConnectionError("Not connected")

        data = encode_frame(envelope, payload=payload, data_payload=data_payload)
        async with self._write_lock:
            try:
                self.writer.write(data)
                await self.writer.drain()
            except OSError as e:
                await self._abandon(e)
                raise SessionConnectionError(f"Failed to send {envelope.type}: {e}") from e

        logger.debug(f"Sent {envelope.type} ({len(data)} bytes)")

    async def send_event(self, event) -> None:
        event = as_event(event)
        data = event.data or {}

        if event.type == TRANSCRIBE:
            await self.start_transcription(language=data.get("language"), name=data.get("name"))
        elif event.type == AUDIO_START:
            await self.start_audio(AudioFormat.from_dict(data))
        elif event.type == AUDIO_CHUNK:
            await self.send_audio(event.payload or b"", AudioFormat.from_dict(data))
        elif event.type == AUDIO_STOP:
            await self.stop_audio()
        else:
            frame = Frame.from_event(event)
            await self.send(frame.envelope, frame.payload)

    async def _read_frame(self) -> Frame:
        while not self._frames:
            if self.reader is None:
                raise SessionConnectionError("Not connected")

            try:
                chunk = await self.reader.read(self.read_size)
            except OSError as e:
                await self._abandon(e)
                raise SessionConnectionError(f"Failed to receive event: {e}") from e

            if not chunk:
                if self._parser.at_boundary:
                    error = SessionConnectionError("Connection closed by server")
                else:
                    error = FramingError(f"Stream ended mid-frame ({self._parser.pending} bytes buffered)")
                await self._abandon(error)
                raise error

            try:
                self._frames.extend(self._parser.feed(chunk))
            except FramingError as e:
                await self._abandon(e)
                raise

        frame = self._frames.popleft()
        logger.debug(f"Received event: {frame.type}")
        return frame

    async def read_frame(self, timeout: Optional[float] = None) -> Frame:
        """Return the next frame, waiting at most ``timeout`` seconds."""
        if self.reader is None:
            raise SessionConnectionError("Not connected")

        try:
            return await asyncio.wait_for(self._read_frame(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise SessionTimeoutError(f"No event received within {timeout}s") from e

    async def read_event(self, timeout: Optional[float] = None) -> Event:
        frame = await self.read_frame(timeout)
        return frame.to_event()

    # Transcription exchange

    def _require_exchange(self) -> TranscriptionExchange:
        if self.exchange is None:
            raise ProtocolViolation("No transcription in progress")
        return self.exchange

    async def _step(self, action: Callable[..., Outgoing], *args) -> None:
        exchange = self._require_exchange()
        envelope, payload = action(*args)
        try:
            await self.send(envelope, payload)
        except WyomingError as e:
            exchange.fail(e)
            raise

    async def start_transcription(self, language: Optional[str] = None, name: Optional[str] = None) -> TranscriptionExchange:
        if self.exchange is not None and self.exchange.active:
            raise ProtocolViolation("A transcription is already in progress on this connection")

        self.exchange = TranscriptionExchange(language=language, name=name)
        await self._step(self.exchange.begin)
        logger.info("Sent transcribe event")
        return self.exchange

    async def start_audio(self, audio_format: AudioFormat = AudioFormat()) -> None:
        await self._step(self._require_exchange().start_audio, audio_format)
        logger.info("Sent audio-start event")

    async def send_audio(self, audio: bytes, audio_format: Optional[AudioFormat] = None) -> None:
        await self._step(self._require_exchange().audio_chunk, audio, audio_format)

    async def stop_audio(self) -> None:
        exchange = self._require_exchange()
        await self._step(exchange.stop_audio)
        logger.info(f"Sent audio-stop event after {exchange.chunks_sent} chunks")

    async def _await_transcript(self, exchange: TranscriptionExchange) -> str:
        while True:
            frame = await self._read_frame()
            text = exchange.receive(frame)
            if text is not None:
                return text

    async def receive_transcript(self, timeout: Optional[float] = None) -> str:
        exchange = self._require_exchange()
        exchange.await_result()

        try:
            text = await asyncio.wait_for(self._await_transcript(exchange), timeout=timeout)
        except asyncio.TimeoutError as e:
            error = SessionTimeoutError(f"No transcript received within {timeout}s")
            exchange.fail(error)
            raise error from e
        except (FramingError, ProtocolViolation) as e:
            # The stream can no longer be trusted to be in sync
            await self._abandon(e)
            raise
        except WyomingError as e:
            exchange.fail(e)
            raise

        logger.info(f"Transcript received ({len(text)} characters)")
        return text

    async def transcribe(
        self,
        pcm: bytes,
        audio_format: AudioFormat = AudioFormat(),
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: Optional[float] = 30.0,
        language: Optional[str] = None,
    ) -> str:
        """Run a complete transcription exchange and return the text."""
        chunks = chunk_count(len(pcm), chunk_size)
        audio_format.validate()

        await self.start_transcription(language=language)
        await self.start_audio(audio_format)

        logger.info(f"Streaming {len(pcm)} bytes in {chunks} chunks")
        for chunk in iter_chunks(pcm, chunk_size):
            await self.send_audio(chunk)

        await self.stop_audio()
        return await self.receive_transcript(timeout)

    async def transcribe_wav_bytes(self, data: bytes, **kwargs) -> str:
        return await self.transcribe(strip_wav_header(data), **kwargs)

    async def transcribe_file(self, file_path: Path, audio_format: AudioFormat = AudioFormat(), **kwargs) -> str:
        # pydub decoding is blocking
        loop = asyncio.get_running_loop()
        processor = AudioProcessor(audio_format)
        pcm = await loop.run_in_executor(None, processor.load_pcm, Path(file_path))
        return await self.transcribe(pcm, audio_format=audio_format, **kwargs)

    async def _await_info(self) -> ServerInfo:
        while True:
            frame = await self._read_frame()
            if frame.type == INFO:
                return ServerInfo.from_frame(frame)
            if frame.type == ERROR:
                raise error_from_frame(frame)
            logger.debug(f"Ignoring {frame.type} event while waiting for info")

    async def describe(self, timeout: Optional[float] = 30.0) -> ServerInfo:
        if self.exchange is not None and self.exchange.active:
            raise ProtocolViolation("Cannot describe while a transcription is in progress")

        await self.send(Envelope(type=DESCRIBE))
        try:
            info = await asyncio.wait_for(self._await_info(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise SessionTimeoutError(f"No info received within {timeout}s") from e
        except FramingError as e:
            await self._abandon(e)
            raise

        logger.info(f"Server info received (version: {info.version})")
        return info

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
