#!/usr/bin/env python3
"""Generate a synthetic clip for exercising clipretime end to end.

The video is ffmpeg's ``testsrc`` pattern, which burns a running frame
counter into every frame, so duplicated and dropped frames are easy to spot
in the retimed output. The audio is a 440 Hz tone that steps to 880 Hz
halfway through; the step should land halfway through the retimed clip too.

    python scripts/generate_test_video.py [OUTPUT] [--duration 4] [--mono] [--no-audio]
"""

import argparse
import subprocess
from pathlib import Path


def generate_test_video(
    output: Path,
    duration: float = 4.0,
    frame_rate: int = 30,
    channels: int = 2,
    with_audio: bool = True,
) -> None:
    output.parent.mkdir(parents=True, exist_ok=True)
    half = duration / 2

    video_filter = f"testsrc=s=320x240:r={frame_rate}:d={duration}[vout]"
    audio_filter = (
        f"sine=f=440:d={half}[a0];"
        f"sine=f=880:d={half}[a1];"
        f"[a0][a1]concat=n=2:v=0:a=1,"
        f"aformat=channel_layouts={'mono' if channels == 1 else 'stereo'}[aout]"
    )

    filter_complex = video_filter
    maps = ["-map", "[vout]"]
    if with_audio:
        filter_complex += ";" + audio_filter
        maps += ["-map", "[aout]", "-c:a", "aac"]

    cmd = [
        "ffmpeg", "-y",
        "-filter_complex", filter_complex,
        *maps,
        "-c:v", "libx264",
        "-pix_fmt", "yuv420p",
        str(output),
    ]
    subprocess.run(cmd, check=True)
    print(f"Generated: {output}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("output", nargs="?", type=Path, default=Path("tests/fixtures/synthetic.mp4"))
    parser.add_argument("--duration", type=float, default=4.0)
    parser.add_argument("--frame-rate", type=int, default=30)
    parser.add_argument("--mono", action="store_true")
    parser.add_argument("--no-audio", action="store_true")
    args = parser.parse_args()
    generate_test_video(
        args.output,
        duration=args.duration,
        frame_rate=args.frame_rate,
        channels=1 if args.mono else 2,
        with_audio=not args.no_audio,
    )
