"""Tests for the wyoming-session command line tool."""

from unittest.mock import patch

import pytest

from wyoming_session.cli import main
from wyoming_session.errors import SessionConnectionError
from wyoming_session.exchange import ServerInfo


@pytest.fixture
def mock_session():
    with patch("wyoming_session.cli.WyomingSession") as session_class:
        session = session_class.return_value
        session.__enter__.return_value = session
        session.class_ = session_class
        yield session


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("WYOMING_HOST", "WYOMING_PORT", "WYOMING_LANGUAGE"):
        monkeypatch.delenv(name, raising=False)


def test_transcribe_raw(mock_session, tmp_path, capsys):
    """Test transcribing a raw PCM file."""
    audio = tmp_path / "clip.pcm"
    audio.write_bytes(b"\x01\x00" * 100)
    mock_session.transcribe.return_value = "hello there"

    code = main(["--uri", "tcp://stt:10300", "transcribe", "--raw", str(audio), "--chunk-size", "64"])

    assert code == 0
    assert "hello there" in capsys.readouterr().out
    mock_session.class_.assert_called_once()
    assert mock_session.class_.call_args.kwargs["uri"] == "tcp://stt:10300"
    mock_session.transcribe.assert_called_once_with(
        b"\x01\x00" * 100, chunk_size=64, timeout=30.0, language=None
    )


def test_transcribe_missing_file(mock_session, tmp_path):
    """Test a missing input file."""
    assert main(["transcribe", str(tmp_path / "missing.wav")]) == 1
    mock_session.transcribe.assert_not_called()


def test_transcribe_failure(mock_session, tmp_path):
    """Test that session errors produce exit status 1."""
    audio = tmp_path / "clip.pcm"
    audio.write_bytes(b"\x00" * 10)
    mock_session.transcribe.side_effect = SessionConnectionError("Connection closed by server")

    assert main(["transcribe", "--raw", str(audio)]) == 1


def test_describe(mock_session, capsys):
    """Test printing server info."""
    mock_session.describe.return_value = ServerInfo(
        version="2.0.1",
        data={"asr": [{"name": "faster-whisper", "models": [{"name": "small-int8"}]}]},
    )

    assert main(["describe", "--timeout", "5"]) == 0

    out = capsys.readouterr().out
    assert "Version: 2.0.1" in out
    assert "faster-whisper" in out
    assert "small-int8" in out
    mock_session.describe.assert_called_once_with(timeout=5.0)


def test_default_uri_from_environment(mock_session, monkeypatch):
    """Test that WYOMING_HOST/WYOMING_PORT set the default URI."""
    monkeypatch.setenv("WYOMING_HOST", "speech.lan")
    monkeypatch.setenv("WYOMING_PORT", "10555")
    mock_session.describe.return_value = ServerInfo()

    assert main(["describe"]) == 0
    assert mock_session.class_.call_args.kwargs["uri"] == "tcp://speech.lan:10555"
