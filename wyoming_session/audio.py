"""Audio format handling and PCM chunking for Wyoming transcription."""

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterator

from pydub import AudioSegment

logger = logging.getLogger(__name__)

WAV_HEADER_SIZE = 44
DEFAULT_CHUNK_SIZE = 4096


@dataclass(frozen=True)
class AudioFormat:
    """PCM stream parameters restated in audio-start and every audio-chunk."""

    rate: int = 16000       # Sample rate in Hz
    width: int = 2          # Sample width in bytes (2 = 16-bit)
    channels: int = 1       # Number of audio channels

    @property
    def bytes_per_second(self) -> int:
        return self.rate * self.width * self.channels

    def validate(self) -> None:
        """Raise ValueError unless every field is a positive integer."""
        for name, value in asdict(self).items():
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"Audio {name} must be a positive integer, got {value!r}")

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AudioFormat":
        return cls(
            rate=data.get("rate", 16000),
            width=data.get("width", 2),
            channels=data.get("channels", 1),
        )


def strip_wav_header(data: bytes) -> bytes:
    """Remove the standard 44-byte RIFF/WAVE header if present.

    Args:
        data: WAV file contents or headerless PCM

    Returns:
        Raw PCM bytes
    """
    if len(data) >= WAV_HEADER_SIZE and data[:4] == b"RIFF" and data[8:12] == b"WAVE":
        return data[WAV_HEADER_SIZE:]
    return data


def chunk_count(length: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    """Number of audio-chunk messages needed for ``length`` bytes."""
    if chunk_size <= 0:
        raise ValueError(f"Chunk size must be positive, got {chunk_size}")
    return -(-length // chunk_size)


def iter_chunks(pcm: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
    """Split PCM into consecutive chunks; the last one may be shorter.

    Args:
        pcm: Raw PCM audio
        chunk_size: Bytes per chunk

    Yields:
        PCM slices in stream order
    """
    if chunk_size <= 0:
        raise ValueError(f"Chunk size must be positive, got {chunk_size}")

    for i in range(0, len(pcm), chunk_size):
        yield pcm[i:i + chunk_size]


class AudioProcessor:
    """Loads audio files and converts them to the Wyoming PCM format."""

    def __init__(self, audio_format: AudioFormat = AudioFormat()):
        audio_format.validate()
        self.audio_format = audio_format

    def load_and_convert(self, file_path: Path) -> AudioSegment:
        """Load an audio file and convert it to the target format.

        Args:
            file_path: Path to input audio file

        Returns:
            Converted AudioSegment

        Raises:
            FileNotFoundError: If input file doesn't exist
            ValueError: If the file cannot be decoded
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"Audio file not found: {file_path}")

        try:
            audio = AudioSegment.from_file(str(file_path))
        except Exception as e:
            raise ValueError(f"Failed to load audio file {file_path}: {e}") from e

        logger.info(f"Loaded audio: {audio.frame_rate}Hz, {audio.sample_width*8}bit, {audio.channels}ch")

        converted = audio.set_frame_rate(self.audio_format.rate)
        converted = converted.set_sample_width(self.audio_format.width)
        converted = converted.set_channels(self.audio_format.channels)

        logger.info(f"Converted to: {converted.frame_rate}Hz, {converted.sample_width*8}bit, {converted.channels}ch")
        return converted

    def to_pcm(self, audio: AudioSegment) -> bytes:
        """Return the raw PCM bytes of a converted segment."""
        if not self.validate_format(audio):
            raise ValueError("Audio does not match the target format; convert it first")
        return audio.raw_data

    def load_pcm(self, file_path: Path) -> bytes:
        return self.to_pcm(self.load_and_convert(file_path))

    def validate_format(self, audio: AudioSegment) -> bool:
        return (
            audio.frame_rate == self.audio_format.rate and
            audio.sample_width == self.audio_format.width and
            audio.channels == self.audio_format.channels
        )
