"""FFmpeg/ffprobe subprocess helpers: probing, pipe decoders/encoders, muxing."""

import json
import logging
import shutil
import subprocess
import tempfile
from dataclasses import replace
from pathlib import Path

import numpy as np

from clipretime.manifest import CHANNEL_LAYOUTS, Manifest
from clipretime.models import AssetDescriptor, Frame, SampleChunk

logger = logging.getLogger(__name__)

PCM_DTYPES = {"s16": np.dtype("<i2"), "s32": np.dtype("<i4")}


class FFmpegNotFoundError(RuntimeError):
    pass


def check_ffmpeg() -> None:
    """Raise FFmpegNotFoundError if ffmpeg/ffprobe are not on PATH."""
    for cmd in ("ffmpeg", "ffprobe"):
        if shutil.which(cmd) is None:
            raise FFmpegNotFoundError(f"{cmd} not found on PATH")


def _parse_rate(raw: str | None) -> float:
    if not raw:
        return 0.0
    if "/" in raw:
        num, den = raw.split("/")
        return int(num) / int(den) if int(den) else 0.0
    return float(raw)


def _audio_sample_count(stream: dict, duration: float, sample_rate: int) -> int:
    # duration_ts is exact when the stream time base is 1/sample_rate.
    if stream.get("duration_ts") is not None and stream.get("time_base") == f"1/{sample_rate}":
        return int(stream["duration_ts"])
    stream_duration = float(stream.get("duration") or duration)
    return int(round(stream_duration * sample_rate))


def probe(input_path: Path) -> AssetDescriptor:
    """Extract media metadata via ffprobe."""
    cmd = [
        "ffprobe",
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(input_path),
    ]
    result = subprocess.run(cmd, capture_output=True, text=True, check=True)
    data = json.loads(result.stdout)

    video_stream = next(
        (s for s in data["streams"] if s["codec_type"] == "video"), None
    )
    audio_stream = next(
        (s for s in data["streams"] if s["codec_type"] == "audio"), None
    )

    if video_stream is None:
        raise ValueError(f"No video stream found in {input_path}")

    duration = float(data["format"]["duration"])
    # Parse fps from r_frame_rate (e.g. "30/1")
    fps = _parse_rate(video_stream.get("r_frame_rate"))
    frame_count = int(video_stream.get("nb_frames") or round(duration * fps))

    audio = {}
    if audio_stream is not None:
        sample_rate = int(audio_stream["sample_rate"])
        audio = {
            "channel_count": int(audio_stream.get("channels", 0)),
            "sample_rate": sample_rate,
            "sample_count": _audio_sample_count(audio_stream, duration, sample_rate),
            "sample_format": audio_stream.get("sample_fmt", "s16"),
        }
    else:
        logger.warning("No audio stream in %s; only video will be retimed", input_path)

    return AssetDescriptor(
        duration=duration,
        frame_rate=fps,
        width=int(video_stream["width"]),
        height=int(video_stream["height"]),
        frame_count=frame_count,
        has_video=True,
        has_audio=audio_stream is not None,
        **audio,
    )


class FFmpegAudioDecoder:
    """Decode the audio track to interleaved PCM read in fixed-size chunks."""

    def __init__(
        self,
        input_path: Path,
        channel_count: int,
        sample_rate: int,
        chunk_size: int = 1024,
        sample_format: str = "s16",
    ):
        self.input_path = input_path
        self.channel_count = channel_count
        self.sample_rate = sample_rate
        self.chunk_size = chunk_size
        self.sample_format = sample_format
        self._dtype = PCM_DTYPES[sample_format]
        self._process: subprocess.Popen | None = None

    def command(self) -> list[str]:
        return [
            "ffmpeg",
            "-v", "error",
            "-i", str(self.input_path),
            "-vn", "-sn",
            "-acodec", f"pcm_{self.sample_format}le",
            "-ac", str(self.channel_count),
            "-ar", str(self.sample_rate),
            "-f", f"{self.sample_format}le",
            "pipe:1",
        ]

    def start(self) -> bool:
        try:
            self._process = subprocess.Popen(
                self.command(), stdout=subprocess.PIPE, stderr=subprocess.DEVNULL
            )
        except OSError as e:
            logger.error("Could not start audio decoder for %s: %s", self.input_path, e)
            return False
        return True

    def next_chunk(self) -> SampleChunk | None:
        if self._process is None:
            return None
        frame_bytes = self.channel_count * self._dtype.itemsize
        raw = self._process.stdout.read(self.chunk_size * frame_bytes)
        usable = len(raw) - len(raw) % frame_bytes
        if usable <= 0:
            self._close()
            return None
        samples = np.frombuffer(raw[:usable], dtype=self._dtype)
        return SampleChunk(samples=samples, channel_count=self.channel_count)

    def cancel(self) -> None:
        if self._process is not None and self._process.poll() is None:
            self._process.terminate()
        self._close()

    def _close(self) -> None:
        if self._process is None:
            return
        self._process.stdout.close()
        self._process.wait()
        self._process = None


class FFmpegVideoDecoder:
    """Decode the video track to raw RGB frames.

    Raw output carries no timestamps, so frame ``k`` is stamped ``k / frame_rate``.
    """

    def __init__(self, input_path: Path, width: int, height: int, frame_rate: float):
        self.input_path = input_path
        self.width = width
        self.height = height
        self.frame_rate = frame_rate
        self._frame_bytes = width * height * 3
        self._index = 0
        self._process: subprocess.Popen | None = None

    def command(self) -> list[str]:
        return [
            "ffmpeg",
            "-v", "error",
            "-i", str(self.input_path),
            "-an", "-sn",
            "-pix_fmt", "rgb24",
            "-vsync", "0",
            "-f", "rawvideo",
            "pipe:1",
        ]

    def start(self) -> bool:
        if self._frame_bytes <= 0 or self.frame_rate <= 0:
            logger.error("Invalid video geometry for %s", self.input_path)
            return False
        try:
            self._process = subprocess.Popen(
                self.command(), stdout=subprocess.PIPE, stderr=subprocess.DEVNULL
            )
        except OSError as e:
            logger.error("Could not start video decoder for %s: %s", self.input_path, e)
            return False
        return True

    def next_frame(self) -> Frame | None:
        if self._process is None:
            return None
        raw = self._process.stdout.read(self._frame_bytes)
        if len(raw) < self._frame_bytes:
            self._close()
            return None
        image = np.frombuffer(raw, dtype=np.uint8).reshape(self.height, self.width, 3)
        frame = Frame(pts=self._index / self.frame_rate, image=image, index=self._index)
        self._index += 1
        return frame

    def cancel(self) -> None:
        if self._process is not None and self._process.poll() is None:
            self._process.terminate()
        self._close()

    def _close(self) -> None:
        if self._process is None:
            return
        self._process.stdout.close()
        self._process.wait()
        self._process = None


class _PipeEncoder:
    """ffmpeg process fed raw data on stdin, writing ``output_path``."""

    kind = "media"

    def __init__(self, output_path: Path):
        self.output_path = output_path
        self.items_written = 0
        self.returncode: int | None = None
        self._finished = False
        # Nobody reads stderr until finish(), so a pipe could fill and stall the writer.
        self._stderr = tempfile.TemporaryFile()
        cmd = self.command()
        logger.debug("Starting %s encoder: %s", self.kind, " ".join(cmd))
        self._process = subprocess.Popen(
            cmd, stdin=subprocess.PIPE, stdout=subprocess.DEVNULL, stderr=self._stderr
        )

    def command(self) -> list[str]:
        raise NotImplementedError

    def to_bytes(self, item) -> bytes | None:
        raise NotImplementedError

    @property
    def succeeded(self) -> bool:
        return self._finished and self.returncode == 0 and self.items_written > 0

    def is_ready(self) -> bool:
        return not self._finished

    def append(self, item) -> bool:
        if self._finished:
            return False
        data = self.to_bytes(item)
        if data is None:
            return False
        try:
            self._process.stdin.write(data)
        except (BrokenPipeError, OSError) as e:
            logger.error("Failed to write to %s encoder: %s", self.kind, e)
            return False
        self.items_written += 1
        return True

    def finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        try:
            self._process.stdin.close()
        except (BrokenPipeError, OSError):
            logger.debug("%s encoder stdin already closed", self.kind)
        self.returncode = self._process.wait()
        self._stderr.seek(0)
        stderr = self._stderr.read()
        self._stderr.close()
        if self.returncode != 0:
            logger.error(
                "%s encoder exited with %s: %s",
                self.kind, self.returncode, stderr.decode(errors="replace")[-500:],
            )


class FFmpegAudioEncoder(_PipeEncoder):
    kind = "audio"

    def __init__(
        self,
        output_path: Path,
        channel_count: int,
        sample_rate: int,
        sample_format: str = "s16",
    ):
        self.channel_count = channel_count
        self.sample_rate = sample_rate
        self.sample_format = sample_format
        self._dtype = PCM_DTYPES[sample_format]
        super().__init__(output_path)

    def command(self) -> list[str]:
        return [
            "ffmpeg", "-y",
            "-v", "error",
            "-f", f"{self.sample_format}le",
            "-ar", str(self.sample_rate),
            "-ac", str(self.channel_count),
            "-i", "pipe:0",
            "-c:a", f"pcm_{self.sample_format}le",
            str(self.output_path),
        ]

    def to_bytes(self, item: SampleChunk) -> bytes | None:
        return np.asarray(item.samples).astype(self._dtype).tobytes()


class FFmpegVideoEncoder(_PipeEncoder):
    kind = "video"

    def __init__(
        self,
        output_path: Path,
        width: int,
        height: int,
        frame_rate: float,
        codec: str = "libx264",
        pixel_format: str = "yuv420p",
        crf: int = 23,
        preset: str = "medium",
    ):
        self.width = width
        self.height = height
        self.frame_rate = frame_rate
        self.codec = codec
        self.pixel_format = pixel_format
        self.crf = crf
        self.preset = preset
        super().__init__(output_path)

    def command(self) -> list[str]:
        return [
            "ffmpeg", "-y",
            "-v", "error",
            "-f", "rawvideo",
            "-pix_fmt", "rgb24",
            "-s", f"{self.width}x{self.height}",
            "-r", f"{self.frame_rate:.6f}",
            "-i", "pipe:0",
            "-c:v", self.codec,
            "-preset", self.preset,
            "-crf", str(self.crf),
            "-pix_fmt", self.pixel_format,
            str(self.output_path),
        ]

    def to_bytes(self, item: Frame) -> bytes | None:
        image = np.asarray(item.image, dtype=np.uint8)
        if image.shape != (self.height, self.width, 3):
            logger.error(
                "Frame %d has shape %s, expected %s",
                item.index, image.shape, (self.height, self.width, 3),
            )
            return None
        return image.tobytes()


def mux_tracks(
    video_path: Path | None,
    audio_path: Path | None,
    output_path: Path,
    audio_codec: str = "aac",
) -> Path:
    """Combine the retimed tracks into ``output_path`` (video stream copied)."""
    if video_path is None and audio_path is None:
        raise ValueError("mux_tracks called with no tracks")

    cmd = ["ffmpeg", "-y", "-v", "error"]
    maps: list[str] = []
    for i, path in enumerate(p for p in (video_path, audio_path) if p is not None):
        cmd += ["-i", str(path)]
        maps += ["-map", f"{i}:0"]
    cmd += maps
    if video_path is not None:
        cmd += ["-c:v", "copy"]
    if audio_path is not None:
        cmd += ["-c:a", audio_codec]
    cmd.append(str(output_path))

    logger.debug("Muxing: %s", " ".join(cmd))
    subprocess.run(cmd, capture_output=True, check=True)
    return output_path


class FFmpegBackend:
    """Session collaborators backed by ffmpeg processes and a work directory."""

    def __init__(self, manifest: Manifest, work_dir: Path):
        self.manifest = manifest
        self.work_dir = Path(work_dir)
        self.video_path = self.work_dir / "video.mkv"
        self.audio_path = self.work_dir / "audio.wav"

    def decoded_asset(self, asset: AssetDescriptor) -> AssetDescriptor:
        """Describe the audio the decoders will actually deliver."""
        channel_count = asset.channel_count
        layout = self.manifest.audio.channel_layout
        if asset.has_audio and layout is not None:
            channel_count = CHANNEL_LAYOUTS[layout]
        return replace(
            asset,
            channel_count=channel_count,
            sample_format=self.manifest.audio.sample_format,
        )

    def audio_decoder(self, asset: AssetDescriptor) -> FFmpegAudioDecoder:
        return FFmpegAudioDecoder(
            self.manifest.input,
            channel_count=asset.channel_count,
            sample_rate=asset.sample_rate,
            chunk_size=self.manifest.audio.chunk_size,
            sample_format=asset.sample_format,
        )

    def audio_encoder(self, asset: AssetDescriptor) -> FFmpegAudioEncoder:
        return FFmpegAudioEncoder(
            self.audio_path,
            channel_count=asset.channel_count,
            sample_rate=asset.sample_rate,
            sample_format=asset.sample_format,
        )

    def video_decoder(self, asset: AssetDescriptor) -> FFmpegVideoDecoder:
        return FFmpegVideoDecoder(
            self.manifest.input, asset.width, asset.height, asset.frame_rate
        )

    def video_encoder(self, asset: AssetDescriptor, frame_rate: float) -> FFmpegVideoEncoder:
        video = self.manifest.video
        return FFmpegVideoEncoder(
            self.video_path,
            asset.width,
            asset.height,
            frame_rate,
            codec=video.codec,
            pixel_format=video.pixel_format,
            crf=video.crf,
            preset=video.preset,
        )

    def finalize(self, destination: Path, video_written: bool, audio_written: bool) -> Path:
        return mux_tracks(
            self.video_path if video_written else None,
            self.audio_path if audio_written else None,
            destination,
            audio_codec=self.manifest.audio.codec,
        )
