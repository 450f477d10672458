#!/usr/bin/env python3
"""Command-line interface for the Wyoming session client."""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .audio import AudioProcessor, strip_wav_header
from .config import Settings, get_settings
from .errors import WyomingError
from .session import WyomingSession

logger = logging.getLogger(__name__)


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wyoming-session",
        description="Talk to a Wyoming speech-to-text server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  wyoming-session describe
  wyoming-session --uri tcp://192.168.1.50:10300 transcribe hello.wav
  wyoming-session transcribe --raw recording.pcm --chunk-size 8192
        """
    )

    parser.add_argument(
        "--uri", "-u",
        default=settings.uri,
        help=f"Wyoming endpoint URI (default: {settings.uri}, or WYOMING_HOST/WYOMING_PORT)"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose event logging"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    describe = subparsers.add_parser("describe", help="Print server version and models")
    describe.add_argument(
        "--timeout", "-t",
        type=float,
        default=settings.response_timeout,
        help=f"Seconds to wait for the info event (default: {settings.response_timeout})"
    )

    transcribe = subparsers.add_parser("transcribe", help="Transcribe an audio file")
    transcribe.add_argument(
        "file",
        type=Path,
        help="Path to input audio file"
    )
    transcribe.add_argument(
        "--raw",
        action="store_true",
        help="Send the file as 16kHz/16-bit/mono PCM without decoding (a WAV header is stripped)"
    )
    transcribe.add_argument(
        "--chunk-size",
        type=int,
        default=settings.chunk_size,
        help=f"Audio bytes per chunk (default: {settings.chunk_size})"
    )
    transcribe.add_argument(
        "--timeout", "-t",
        type=float,
        default=settings.response_timeout,
        help=f"Seconds to wait for the transcript (default: {settings.response_timeout})"
    )
    transcribe.add_argument(
        "--language", "-l",
        default=settings.language,
        help="Language hint sent with the transcribe event"
    )

    return parser


def run_describe(session: WyomingSession, args: argparse.Namespace) -> None:
    info = session.describe(timeout=args.timeout)
    print(f"Version: {info.version or 'unknown'}")
    for program in info.asr_programs:
        print(f"ASR program: {program.get('name', 'unknown')}")
    for model in info.asr_models:
        print(f"  model: {model}")


def run_transcribe(session: WyomingSession, args: argparse.Namespace) -> None:
    if args.raw:
        pcm = strip_wav_header(args.file.read_bytes())
    else:
        pcm = AudioProcessor().load_pcm(args.file)

    text = session.transcribe(
        pcm,
        chunk_size=args.chunk_size,
        timeout=args.timeout,
        language=args.language,
    )
    print(text)


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    settings = get_settings()
    args = build_parser(settings).parse_args(argv)

    # Configure logging
    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
    else:
        logging.basicConfig(
            level=settings.log_level.upper(),
            format='%(levelname)s: %(message)s'
        )

    if args.command == "transcribe" and not args.file.exists():
        logger.error(f"Input file does not exist: {args.file}")
        return 1

    try:
        session = WyomingSession(
            uri=args.uri,
            connect_timeout=settings.connect_timeout,
            read_size=settings.read_size,
            max_line_bytes=settings.max_line_bytes,
        )
        with session:
            if args.command == "describe":
                run_describe(session, args)
            else:
                run_transcribe(session, args)
    except (WyomingError, OSError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
