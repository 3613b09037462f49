"""Shared data types and collaborator contracts used across clipretime."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import numpy as np


@dataclass(frozen=True)
class AssetDescriptor:
    """Immutable metadata captured from the source asset at session start."""

    duration: float
    frame_rate: float
    channel_count: int = 0
    sample_count: int = 0
    sample_rate: int = 0
    sample_format: str = "s16"
    width: int = 0
    height: int = 0
    frame_count: int = 0
    has_video: bool = True
    has_audio: bool = True


@dataclass
class Frame:
    """One decoded video frame on the source clock."""

    pts: float
    image: Any = None
    index: int = 0


@dataclass
class SampleChunk:
    """Interleaved multi-channel audio samples as delivered by a decoder."""

    samples: np.ndarray
    channel_count: int

    @property
    def frames(self) -> int:
        """Samples per channel."""
        if self.channel_count <= 0:
            return 0
        return len(self.samples) // self.channel_count


@dataclass
class RetimeResult:
    output_path: Path | None
    duration_original: float = 0.0
    duration_final: float = 0.0
    time_scale_factor: float = 1.0
    video_frames_read: int = 0
    video_frames_written: int = 0
    audio_samples_written: int = 0
    skipped_tracks: dict[str, str] = field(default_factory=dict)


class AudioDecoder(Protocol):
    def start(self) -> bool: ...

    def next_chunk(self) -> SampleChunk | None: ...

    def cancel(self) -> None: ...


class VideoDecoder(Protocol):
    def start(self) -> bool: ...

    def next_frame(self) -> Frame | None: ...

    def cancel(self) -> None: ...


class Encoder(Protocol):
    """Sink for one output track. A False from append() is terminal."""

    def is_ready(self) -> bool: ...

    def append(self, item: Any) -> bool: ...

    def finish(self) -> None: ...


class MediaBackend(Protocol):
    """Creates the decoders/encoders for one session and muxes the result."""

    def audio_decoder(self, asset: AssetDescriptor) -> AudioDecoder: ...

    def audio_encoder(self, asset: AssetDescriptor) -> Encoder: ...

    def video_decoder(self, asset: AssetDescriptor) -> VideoDecoder: ...

    def video_encoder(self, asset: AssetDescriptor, frame_rate: float) -> Encoder: ...

    def finalize(
        self, destination: Path, video_written: bool, audio_written: bool
    ) -> Path: ...
