"""CLI for offline transcription of WAV files with a Whisper ONNX export."""

import argparse
import sys
from pathlib import Path

from whisper_loop.audio import load_wav
from whisper_loop.logging_setup import setup_logging
from whisper_loop.models.discovery import model_info
from whisper_loop.pipeline import TranscriptionOptions
from whisper_loop.postprocess import join_fragments
from whisper_loop.service import DEFAULT_SEARCH_DIRS, TranscriptionService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Transcribe a WAV file with a Whisper ONNX model")
    parser.add_argument("audio", type=Path, nargs="?", help="Input WAV file (any rate, mono or multi-channel)")
    parser.add_argument(
        "--model-dir",
        type=Path,
        default=None,
        help="Model directory (encoder_model.onnx, decoder_model_merged.onnx, tokenizer.json, ...)",
    )
    parser.add_argument(
        "--search-dir",
        type=Path,
        action="append",
        default=None,
        help="Directory whose sub-directories are scanned for models (repeatable; default: ./models)",
    )
    parser.add_argument(
        "--list-models",
        action="store_true",
        help="List discovered models and exit",
    )
    parser.add_argument("--language", default="en", help="Language code, e.g. en, de (default: en)")
    parser.add_argument("--translate", action="store_true", help="Translate to English instead of transcribing")
    parser.add_argument("--timestamps", action="store_true", help="Do not suppress timestamp tokens")
    parser.add_argument(
        "--stream",
        action="store_true",
        help="Print fragments as they are decoded",
    )
    parser.add_argument(
        "--output",
        "-o",
        type=Path,
        default=None,
        help="Write the transcript to this file",
    )
    parser.add_argument("--log-level", default="WARNING", help="Console log level (default: WARNING)")
    parser.add_argument("--log-file", type=Path, default=None, help="Also write DEBUG logs to this file")
    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.log_level, args.log_file)

    service = TranscriptionService(args.search_dir or DEFAULT_SEARCH_DIRS)

    if args.list_models:
        if not service.available_models:
            print("No models found in: " + ", ".join(str(d) for d in service.search_dirs))
        for info in service.available_models:
            print(f"{info.name}\t{info.root}")
        return

    if args.audio is None:
        parser.error("audio file is required")
    if not args.audio.exists():
        print(f"Audio file not found: {args.audio}", file=sys.stderr)
        sys.exit(1)

    model = None
    if args.model_dir is not None:
        model = model_info(args.model_dir)
        if model is None:
            print(f"Not a Whisper ONNX model directory: {args.model_dir}", file=sys.stderr)
            sys.exit(1)
    if not service.initialize(model):
        print("No Whisper model could be loaded (see --list-models, --log-level INFO)", file=sys.stderr)
        sys.exit(1)

    audio, sample_rate = load_wav(args.audio)
    options = TranscriptionOptions(
        language=args.language,
        translate=args.translate,
        timestamps=args.timestamps,
    )

    if args.stream:
        fragments = []
        for fragment in service.transcribe_stream(audio, sample_rate, options):
            fragments.append(fragment)
            print(fragment, end="", flush=True)
        print()
        text = join_fragments(fragments)
    else:
        text = service.transcribe(audio, sample_rate, options) or ""
        print(text)

    if args.output is not None:
        args.output.write_text(text + "\n", encoding="utf-8")
        print(f"Saved: {args.output}", file=sys.stderr)


if __name__ == "__main__":
    main()
