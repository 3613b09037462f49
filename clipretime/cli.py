"""Thin CLI entry point — builds a Manifest and calls the engine."""

import argparse
import logging
import sys
from pathlib import Path

from clipretime.engine import process
from clipretime.errors import Cancelled, RetimeError
from clipretime.manifest import AudioConfig, Manifest, VideoConfig, load_manifest


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clipretime",
        description="clipretime: stretch or compress a video to a target duration.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command")

    retime = sub.add_parser("retime", help="Retime a video file")
    retime.add_argument("video", nargs="?", type=Path, help="Input video file")
    retime.add_argument("--manifest", "-m", type=Path, help="Path to a JSON manifest file")
    retime.add_argument("--output", "-o", type=Path, help="Output file path")
    retime.add_argument("--duration", "-d", type=float, help="Desired output duration in seconds")
    retime.add_argument("--frame-rate", "-r", type=float, default=30.0, help="Output frame rate")
    retime.add_argument("--no-smooth", action="store_true", help="Use a uniform audio ramp when stretching")
    retime.add_argument("--chunk-size", type=int, default=1024, help="Audio samples per decode chunk")
    retime.add_argument("--channels", choices=["mono", "stereo"], help="Force the audio channel layout")
    retime.add_argument("--video-codec", type=str, default="libx264", help="ffmpeg video encoder")
    retime.add_argument("--crf", type=int, default=23, help="Video quality (CRF)")
    retime.add_argument("--audio-codec", type=str, default="aac", help="ffmpeg audio encoder for the final file")

    serve = sub.add_parser("serve", help="Launch the web job API")
    serve.add_argument("--port", type=int, default=8321, help="Port to listen on")
    serve.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind to")
    return parser


def manifest_from_args(args: argparse.Namespace) -> Manifest | None:
    if args.manifest:
        return load_manifest(args.manifest)
    if args.video is None or args.duration is None:
        return None
    output = args.output or args.video.with_stem(args.video.stem + "_retimed")
    return Manifest(
        input=args.video,
        output=output,
        duration=args.duration,
        frame_rate=args.frame_rate,
        video=VideoConfig(codec=args.video_codec, crf=args.crf),
        audio=AudioConfig(
            codec=args.audio_codec,
            channel_layout=args.channels,
            chunk_size=args.chunk_size,
            smooth=not args.no_smooth,
        ),
    )


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s:%(name)s:%(message)s",
    )

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.command == "serve":
        from clipretime.web import create_app
        app = create_app()
        print(f"clipretime job API: http://{args.host}:{args.port}")
        app.run(host=args.host, port=args.port, debug=False, threaded=True)
        return

    try:
        m = manifest_from_args(args)
    except (RetimeError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    if m is None:
        print("Error: provide VIDEO with --duration, or --manifest.", file=sys.stderr)
        sys.exit(1)

    last_shown = -1

    def on_progress(value: float, preview) -> None:
        nonlocal last_shown
        percent = int(value * 100)
        if percent != last_shown:
            last_shown = percent
            print(f"\r  [{value:4.0%}] retiming", end="", flush=True)

    try:
        result = process(m, on_progress=on_progress)
    except Cancelled:
        print()
        print("Cancelled.", file=sys.stderr)
        sys.exit(130)
    except RetimeError as e:
        print()
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print()
    print(f"Done! Output: {result.output_path}")
    print(f"  Duration: {result.duration_original:.1f}s -> {result.duration_final:.1f}s "
          f"(x{result.time_scale_factor:.3f})")
    print(f"  Video frames: {result.video_frames_read} read, {result.video_frames_written} written")
    if result.audio_samples_written:
        print(f"  Audio samples per channel: {result.audio_samples_written}")
    if result.skipped_tracks:
        for track, reason in result.skipped_tracks.items():
            print(f"  Skipped {track}: {reason}")
