"""Transcribe an audio file from the command line.

Usage:
    whisper-engine models/whisper-tiny audio.wav
    whisper-engine models/whisper-small audio.flac --language fr --task translate
    whisper-engine checkpoints/run-7 audio.wav --preset base
    python -m whisper_engine models/whisper-tiny audio.wav --backend numpy -v
"""

import argparse
import logging
import sys

from whisper_engine.config import MAX_DECODE_TOKENS, PRESETS, TASKS
from whisper_engine.core import BACKENDS
from whisper_engine.engine import WhisperEngine
from whisper_engine.errors import WhisperEngineError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Whisper speech-to-text")
    parser.add_argument("model", help="Model directory or checkpoint file")
    parser.add_argument("audio_file", help="Path to audio file")
    parser.add_argument("--language", default=None, help="Language code (default: unset)")
    parser.add_argument("--task", default="transcribe", choices=TASKS)
    parser.add_argument("--backend", default="jax", choices=list(BACKENDS))
    parser.add_argument(
        "--preset",
        default=None,
        choices=list(PRESETS),
        help="Model preset (default: config.json, else sniffed from the model name)",
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=MAX_DECODE_TOKENS,
        help=f"Decoder step budget (default: {MAX_DECODE_TOKENS})",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        engine = WhisperEngine(backend=args.backend)
        engine.load_model(args.model, config=args.preset)
        result = engine.transcribe(
            args.audio_file,
            language=args.language,
            task=args.task,
            max_tokens=args.max_tokens,
        )
    except WhisperEngineError as e:
        print(f"error ({e.kind.value}): {e}", file=sys.stderr)
        return 1

    print(result.text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
