"""
Pytest configuration for the wyoming-session test suite.

This module configures pytest behavior and filters deprecation warnings.
"""

import warnings

import pytest

from wyoming_session.audio import AudioFormat

# Suppress the audioop deprecation warning raised by pydub (not our code to fix)
warnings.filterwarnings(
    "ignore",
    category=DeprecationWarning,
    message=".*'audioop' is deprecated.*",
)


@pytest.fixture
def audio_format() -> AudioFormat:
    """Default Wyoming audio format: 16kHz, 16-bit, mono."""
    return AudioFormat(rate=16000, width=2, channels=1)


@pytest.fixture
def ten_seconds_pcm() -> bytes:
    """Ten seconds of 16kHz mono 16-bit PCM (320000 bytes)."""
    return bytes(range(256)) * 1250
