"""JSON manifest schema — the contract between CLI/API and engine."""

import json
from dataclasses import dataclass, field, fields
from pathlib import Path

from clipretime.errors import InvalidConfiguration

SAMPLE_FORMATS = {16: "s16", 32: "s32"}
CHANNEL_LAYOUTS = {"mono": 1, "stereo": 2}


@dataclass
class VideoConfig:
    """Encoder settings for the retimed video track."""

    codec: str = "libx264"
    pixel_format: str = "yuv420p"
    crf: int = 23
    preset: str = "medium"


@dataclass
class AudioConfig:
    """Decode/encode settings for the resampled audio track."""

    codec: str = "aac"
    bit_depth: int = 16
    channel_layout: str | None = None
    chunk_size: int = 1024
    smooth: bool = True

    @property
    def sample_format(self) -> str:
        return SAMPLE_FORMATS[self.bit_depth]


@dataclass
class Manifest:
    """Top-level retiming manifest."""

    input: Path
    output: Path
    duration: float
    frame_rate: float = 30.0
    version: str = "1"
    video: VideoConfig = field(default_factory=VideoConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)


_FIELD_TYPES = {
    "video": {"codec": str, "pixel_format": str, "crf": int, "preset": str},
    "audio": {"codec": str, "bit_depth": int, "chunk_size": int, "smooth": bool},
}


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_types(section: str, record) -> None:
    for name, kind in _FIELD_TYPES[section].items():
        value = getattr(record, name)
        # bool is an int subclass; a flag is never a valid count.
        if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
            raise InvalidConfiguration(
                f"{section}.{name} must be {kind.__name__}, got {type(value).__name__} {value!r}"
            )


def validate_manifest(manifest: Manifest) -> Manifest:
    """Raise InvalidConfiguration for anything a session could not run with."""
    for name in ("duration", "frame_rate"):
        value = getattr(manifest, name)
        if value is not None and not _is_number(value):
            raise InvalidConfiguration(f"{name} must be a number, got {value!r}")
    if manifest.duration is None or manifest.duration <= 0:
        raise InvalidConfiguration(f"duration must be positive, got {manifest.duration}")
    if manifest.frame_rate is None or manifest.frame_rate <= 0:
        raise InvalidConfiguration(f"frame_rate must be positive, got {manifest.frame_rate}")
    _check_types("video", manifest.video)
    _check_types("audio", manifest.audio)
    if manifest.audio.bit_depth not in SAMPLE_FORMATS:
        raise InvalidConfiguration(
            f"audio.bit_depth must be one of {sorted(SAMPLE_FORMATS)}, got {manifest.audio.bit_depth}"
        )
    layout = manifest.audio.channel_layout
    if layout is not None and (not isinstance(layout, str) or layout not in CHANNEL_LAYOUTS):
        raise InvalidConfiguration(
            f"audio.channel_layout must be mono, stereo or null, got {layout!r}"
        )
    if manifest.audio.chunk_size <= 0:
        raise InvalidConfiguration("audio.chunk_size must be positive")
    if manifest.video.crf < 0:
        raise InvalidConfiguration("video.crf must be non-negative")
    return manifest


def _build(cls, data: dict | None, section: str):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise InvalidConfiguration(f"{section} options must be an object, got {data!r}")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise InvalidConfiguration(f"Unknown {section} options: {', '.join(sorted(unknown))}")
    return cls(**data)


def load_manifest(path: str | Path) -> Manifest:
    """Load and validate a manifest from a JSON file."""
    path = Path(path)
    data = json.loads(path.read_text())

    if not isinstance(data, dict):
        raise InvalidConfiguration("Manifest must be a JSON object")
    if "input" not in data or "output" not in data or "duration" not in data:
        raise InvalidConfiguration("Manifest must contain 'input', 'output' and 'duration' fields")

    try:
        manifest = Manifest(
            version=str(data.get("version", "1")),
            input=Path(data["input"]),
            output=Path(data["output"]),
            duration=float(data["duration"]),
            frame_rate=float(data.get("frame_rate", 30.0)),
            video=_build(VideoConfig, data.get("video"), "video"),
            audio=_build(AudioConfig, data.get("audio"), "audio"),
        )
    except InvalidConfiguration:
        raise
    except (TypeError, ValueError) as e:
        raise InvalidConfiguration(f"Malformed manifest {path}: {e}") from e
    return validate_manifest(manifest)
