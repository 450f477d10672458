"""Tests for AsyncWyomingSession against a local Wyoming test server."""

import asyncio
import json
from typing import List, Optional

import pytest
from wyoming.asr import Transcribe
from wyoming.audio import AudioChunk, AudioStart, AudioStop

from wyoming_session.async_session import AsyncWyomingSession
from wyoming_session.errors import (
    FramingError,
    ProtocolViolation,
    SessionConnectionError,
    SessionTimeoutError,
)
from wyoming_session.exchange import Phase
from wyoming_session.framing import Envelope, Frame, FrameParser, encode_frame


class FakeSTTServer:
    """Minimal Wyoming STT server recording what it receives.

    Args:
        transcript: Text to answer with after audio-stop, or None to stay silent
        data_block: Send the transcript in a data_length block instead of inline
        close_on_stop: Drop the connection after audio-stop (after raw_reply, if set)
        raw_reply: Bytes sent instead of a transcript
        info_reply: Bytes sent instead of the info event
    """

    def __init__(
        self,
        transcript: Optional[str] = "hello world",
        data_block: bool = False,
        close_on_stop: bool = False,
        raw_reply: Optional[bytes] = None,
        info_reply: Optional[bytes] = None,
    ):
        self.transcript = transcript
        self.data_block = data_block
        self.close_on_stop = close_on_stop
        self.raw_reply = raw_reply
        self.info_reply = info_reply
        self.received: List[Frame] = []
        self.server: Optional[asyncio.AbstractServer] = None

    @property
    def uri(self) -> str:
        port = self.server.sockets[0].getsockname()[1]
        return f"tcp://127.0.0.1:{port}"

    async def __aenter__(self):
        self.server = await asyncio.start_server(self.handle, "127.0.0.1", 0)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.server.close()
        await self.server.wait_closed()

    async def reply(self, writer: asyncio.StreamWriter) -> bool:
        if self.raw_reply is not None:
            writer.write(self.raw_reply)
            await writer.drain()
            return not self.close_on_stop
        if self.close_on_stop:
            return False
        if self.transcript is None:
            return True
        if self.data_block:
            block = json.dumps({"text": self.transcript}).encode()
            writer.write(encode_frame(Envelope(type="transcript"), data_payload=block))
        else:
            writer.write(encode_frame(Envelope(type="transcript", data={"text": self.transcript})))
        await writer.drain()
        return True

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        parser = FrameParser()
        try:
            while True:
                data = await reader.read(1024)
                if not data:
                    break
                for frame in parser.feed(data):
                    self.received.append(frame)
                    if frame.type == "describe":
                        if self.info_reply is not None:
                            writer.write(self.info_reply)
                        else:
                            info = {"asr": [{"name": "fake", "models": [{"name": "tiny"}]}], "version": "9.9"}
                            writer.write(encode_frame(Envelope(type="info"), data_payload=json.dumps(info).encode()))
                        await writer.drain()
                    elif frame.type == "audio-stop":
                        if not await self.reply(writer):
                            return
        finally:
            writer.close()

    @property
    def types(self) -> List[str]:
        return [f.type for f in self.received]


async def wait_for_frames(server: FakeSTTServer, count: int) -> None:
    for _ in range(100):
        if len(server.received) >= count:
            return
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_transcribe_inline(ten_seconds_pcm):
    """Test a full exchange with an inline transcript."""
    async with FakeSTTServer(transcript="turn on the lights") as server:
        async with AsyncWyomingSession(server.uri) as session:
            text = await session.transcribe(ten_seconds_pcm, chunk_size=4096, timeout=5.0)

        assert text == "turn on the lights"
        assert server.types[:2] == ["transcribe", "audio-start"]
        assert server.types.count("audio-chunk") == 79
        assert server.types[-1] == "audio-stop"
        assert b"".join(f.payload for f in server.received if f.type == "audio-chunk") == ten_seconds_pcm


@pytest.mark.asyncio
async def test_transcribe_data_block():
    """Test a transcript delivered in a data_length block."""
    async with FakeSTTServer(transcript="from the block", data_block=True) as server:
        async with AsyncWyomingSession(server.uri) as session:
            assert await session.transcribe(bytes(5000), timeout=5.0) == "from the block"
            assert session.exchange.phase == Phase.COMPLETE


@pytest.mark.asyncio
async def test_describe():
    """Test the info exchange."""
    async with FakeSTTServer() as server:
        async with AsyncWyomingSession(server.uri) as session:
            info = await session.describe(timeout=5.0)

        assert info.version == "9.9"
        assert info.asr_models == ["tiny"]


@pytest.mark.asyncio
async def test_timeout_waiting_for_transcript():
    """Test that a silent server produces SessionTimeoutError."""
    async with FakeSTTServer(transcript=None) as server:
        async with AsyncWyomingSession(server.uri) as session:
            with pytest.raises(SessionTimeoutError):
                await session.transcribe(bytes(100), timeout=0.2)

            assert session.exchange.phase == Phase.FAILED


@pytest.mark.asyncio
async def test_server_closes_connection():
    """Test that EOF before the transcript is a connection error."""
    async with FakeSTTServer(close_on_stop=True) as server:
        async with AsyncWyomingSession(server.uri) as session:
            with pytest.raises(SessionConnectionError):
                await session.transcribe(bytes(100), timeout=5.0)

            assert not session.connected


@pytest.mark.asyncio
async def test_malformed_reply():
    """Test that a malformed reply is a framing error."""
    async with FakeSTTServer(raw_reply=b"{broken\n") as server:
        async with AsyncWyomingSession(server.uri) as session:
            with pytest.raises(FramingError):
                await session.transcribe(bytes(100), timeout=5.0)

            assert session.exchange.phase == Phase.FAILED


@pytest.mark.asyncio
async def test_eventables_and_out_of_order_chunk():
    """Test wyoming Eventables routed through the state machine."""
    async with FakeSTTServer(transcript="via events") as server:
        async with AsyncWyomingSession(server.uri) as session:
            await session.send_event(Transcribe())

            with pytest.raises(ProtocolViolation):
                await session.send_event(AudioChunk(rate=16000, width=2, channels=1, audio=b"\x00\x00"))

            await session.send_event(Transcribe())
            await session.send_event(AudioStart(rate=16000, width=2, channels=1))
            await session.send_event(AudioChunk(rate=16000, width=2, channels=1, audio=b"\x00\x00"))
            await session.send_event(AudioStop())

            assert await session.receive_transcript(timeout=5.0) == "via events"

        await wait_for_frames(server, 5)
        assert server.types == ["transcribe", "transcribe", "audio-start", "audio-chunk", "audio-stop"]


@pytest.mark.asyncio
async def test_connect_refused():
    """Test connecting to a closed port."""
    async with FakeSTTServer() as server:
        uri = server.uri

    session = AsyncWyomingSession(uri, connect_timeout=1.0)
    with pytest.raises(SessionConnectionError):
        await session.connect()


@pytest.mark.asyncio
async def test_send_not_connected():
    """Test sending without a connection."""
    session = AsyncWyomingSession("tcp://127.0.0.1:10300")

    with pytest.raises(SessionConnectionError, match="Not connected"):
        await session.send(Envelope(type="describe"))


@pytest.mark.asyncio
async def test_transcript_without_text_closes_session():
    """Test that an unusable transcript drops the connection."""
    async with FakeSTTServer(raw_reply=encode_frame(Envelope(type="transcript", data={}))) as server:
        async with AsyncWyomingSession(server.uri) as session:
            with pytest.raises(ProtocolViolation, match="no text"):
                await session.transcribe(bytes(100), timeout=5.0)

            assert session.exchange.phase == Phase.FAILED
            assert not session.connected
            with pytest.raises(SessionConnectionError, match="Not connected"):
                await session.start_transcription()


@pytest.mark.asyncio
async def test_stream_ends_mid_line():
    """Test that EOF inside an envelope line is a framing error."""
    async with FakeSTTServer(raw_reply=b'{"type": "tran', close_on_stop=True) as server:
        async with AsyncWyomingSession(server.uri) as session:
            with pytest.raises(FramingError, match="mid-frame"):
                await session.transcribe(bytes(100), timeout=5.0)

            assert not session.connected


@pytest.mark.asyncio
async def test_stream_ends_mid_payload():
    """Test that EOF inside a declared data block is a framing error."""
    reply = b'{"type":"transcript","data_length":100}\n' + b"x" * 10
    async with FakeSTTServer(raw_reply=reply, close_on_stop=True) as server:
        async with AsyncWyomingSession(server.uri) as session:
            with pytest.raises(FramingError, match="10 bytes buffered"):
                await session.transcribe(bytes(100), timeout=5.0)

            assert session.exchange.phase == Phase.FAILED
            assert not session.connected


@pytest.mark.asyncio
async def test_describe_bad_data_block_closes_session():
    """Test that an info data block that is not an object drops the connection."""
    reply = encode_frame(Envelope(type="info"), data_payload=b"[1, 2]")
    async with FakeSTTServer(info_reply=reply) as server:
        async with AsyncWyomingSession(server.uri) as session:
            with pytest.raises(FramingError, match="JSON object"):
                await session.describe(timeout=5.0)

            assert not session.connected
