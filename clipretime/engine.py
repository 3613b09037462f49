"""Orchestrator: runs one retiming session over independent video and audio pipelines."""

import logging
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable

import numpy as np

from clipretime import ffutil
from clipretime.errors import (
    Cancelled,
    DecodeStartFailure,
    EmptyAudioTrack,
    InvalidConfiguration,
    NoTracksWritten,
    RetimeError,
)
from clipretime.manifest import Manifest, validate_manifest
from clipretime.models import AssetDescriptor, MediaBackend, RetimeResult
from clipretime.progress import ProgressAggregator
from clipretime.scaling.audio import AudioRetimer, AudioState
from clipretime.scaling.control import control_points
from clipretime.scaling.resampler import SlidingWindowResampler
from clipretime.scaling.video import VideoRetimer, VideoState

logger = logging.getLogger(__name__)

SAMPLE_DTYPES = {"s16": np.int16, "s32": np.int32}

ProgressCallback = Callable[[float, Any], None]
CompletionCallback = Callable[[RetimeResult | None, RetimeError | None], None]


class RetimeSession:
    """One retiming request: owns both pipelines, the progress state and cancellation.

    Args:
        asset: Metadata of the source, as the decoders will deliver it.
        desired_duration: Output duration in seconds.
        frame_rate: Output video frame rate.
        destination: Where ``backend.finalize`` writes the result.
        backend: Factory for decoders/encoders plus the final mux.
        on_progress: Optional callback(cumulative_progress, preview_frame).
        on_complete: Optional callback(result, error), invoked exactly once.
        smoothly: Ease the audio control ramp when stretching.
        chunk_size: Audio block size; defaults to the backend's decode chunk.

    Raises:
        InvalidConfiguration: frame rate, desired or source duration not positive.
    """

    def __init__(
        self,
        asset: AssetDescriptor,
        desired_duration: float,
        frame_rate: float,
        destination: Path,
        backend: MediaBackend,
        on_progress: ProgressCallback | None = None,
        on_complete: CompletionCallback | None = None,
        smoothly: bool = True,
        chunk_size: int = 1024,
    ):
        if frame_rate is None or frame_rate <= 0:
            raise InvalidConfiguration(f"frame rate must be positive, got {frame_rate}")
        if desired_duration is None or desired_duration <= 0:
            raise InvalidConfiguration(f"desired duration must be positive, got {desired_duration}")
        if asset.duration <= 0:
            raise InvalidConfiguration(f"source duration must be positive, got {asset.duration}")
        if chunk_size <= 0:
            raise InvalidConfiguration("chunk size must be positive")

        self.asset = asset
        self.desired_duration = desired_duration
        self.frame_rate = frame_rate
        self.destination = Path(destination)
        self.backend = backend
        self.smoothly = smoothly
        self.chunk_size = chunk_size
        self.time_scale_factor = desired_duration / asset.duration
        self.frame_duration = 1.0 / frame_rate

        self.progress = ProgressAggregator(on_change=on_progress)
        self.video: VideoRetimer | None = None
        self.audio: AudioRetimer | None = None
        self.skipped_tracks: dict[str, str] = {}
        self.result: RetimeResult | None = None
        self.error: RetimeError | None = None

        self._on_complete = on_complete
        self._cancel_event = threading.Event()
        self._done = threading.Event()
        self._track_errors: list[RetimeError] = []
        self._lock = threading.Lock()
        self._supervisor: threading.Thread | None = None

    @property
    def audio_length(self) -> int:
        """Output samples per channel."""
        return int(self.asset.sample_count * self.time_scale_factor)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def start(self) -> None:
        """Launch both pipelines; returns immediately."""
        if self._supervisor is not None:
            raise RuntimeError("session already started")
        logger.info(
            "Retiming %.3fs -> %.3fs (factor %.4f) at %.3f fps",
            self.asset.duration, self.desired_duration, self.time_scale_factor, self.frame_rate,
        )
        self.progress.complete("analysis")
        self._supervisor = threading.Thread(target=self._supervise, name="retime-session", daemon=True)
        self._supervisor.start()

    def cancel(self) -> None:
        """Ask both pipelines to stop after their current unit of work."""
        logger.info("Cancellation requested")
        self._cancel_event.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    def run(self) -> RetimeResult:
        """Start, block until completion and return the result or raise the error."""
        self.start()
        self.wait()
        if self.error is not None:
            raise self.error
        return self.result

    # --- Pipelines ---

    def _supervise(self) -> None:
        workers = [
            threading.Thread(target=self._guard, args=("video", self._run_video), name="retime-video"),
            threading.Thread(target=self._guard, args=("audio", self._run_audio), name="retime-audio"),
        ]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()
        self._complete()

    def _guard(self, track: str, target: Callable[[], None]) -> None:
        try:
            target()
        except Exception as e:
            logger.exception("%s pipeline failed", track)
            self._record_error(RetimeError(f"{track} pipeline failed: {e}"))
            self._cancel_event.set()

    def _skip(self, track: str, reason: RetimeError) -> None:
        logger.warning("Skipping %s track: %s", track, reason)
        with self._lock:
            self.skipped_tracks[track] = str(reason)
        self.progress.complete(track)

    def _release(self, track: str, decoder, encoder) -> None:
        """Stop the decoder and close the encoder of a pipeline that raised."""
        logger.debug("Releasing %s decoder and encoder", track)
        decoder.cancel()
        if encoder is not None:
            encoder.finish()

    def _record_error(self, error: RetimeError) -> None:
        with self._lock:
            self._track_errors.append(error)

    def _run_video(self) -> None:
        if not self.asset.has_video:
            self._skip("video", DecodeStartFailure("asset has no video track"))
            return
        decoder = self.backend.video_decoder(self.asset)
        if not decoder.start():
            self._skip("video", DecodeStartFailure("video decoder failed to start"))
            return

        frame_count = max(self.asset.frame_count, 1)

        def on_frame(frames_read: int, frame) -> None:
            self.progress.report("video", frames_read / frame_count, preview=frame.image)

        encoder = None
        try:
            encoder = self.backend.video_encoder(self.asset, self.frame_rate)
            self.video = VideoRetimer(
                decoder,
                encoder,
                self.time_scale_factor,
                self.frame_duration,
                cancel_event=self._cancel_event,
                on_frame=on_frame,
            )
            state = self.video.run()
        except Exception:
            self._release("video", decoder, encoder)
            raise
        if state is VideoState.FAILED:
            self._record_error(self.video.error)
        elif state is VideoState.DONE:
            self.progress.complete("video")

    def _run_audio(self) -> None:
        asset = self.asset
        if not asset.has_audio or asset.channel_count <= 0:
            self._skip("audio", DecodeStartFailure("asset has no audio track"))
            return
        if asset.sample_count < 2:
            self._skip(
                "audio", EmptyAudioTrack(f"need at least 2 source samples, got {asset.sample_count}")
            )
            return
        length = self.audio_length
        if length <= 0:
            self._skip("audio", EmptyAudioTrack(f"output sample length is {length}"))
            return

        decoder = self.backend.audio_decoder(asset)
        if not decoder.start():
            self._skip("audio", DecodeStartFailure("audio decoder failed to start"))
            return

        def on_chunk(samples_received: int) -> None:
            self.progress.report("audio", samples_received / asset.sample_count)

        encoder = None
        try:
            control = control_points(length, asset.sample_count, smoothly=self.smoothly)
            resampler = SlidingWindowResampler(
                control,
                self.chunk_size,
                asset.channel_count,
                dtype=SAMPLE_DTYPES.get(asset.sample_format, np.int16),
            )
            encoder = self.backend.audio_encoder(asset)
            logger.debug(
                "Audio: %d -> %d samples in %d blocks",
                asset.sample_count, length, resampler.pending_blocks,
            )
            self.audio = AudioRetimer(
                decoder, encoder, resampler, cancel_event=self._cancel_event, on_chunk=on_chunk
            )
            state = self.audio.run()
        except Exception:
            self._release("audio", decoder, encoder)
            raise
        if state is AudioState.FAILED:
            self._record_error(self.audio.error)
        elif state is AudioState.DONE:
            self.progress.complete("audio")

    # --- Completion ---

    def _complete(self) -> None:
        result = None
        error = None
        video_written = self.video is not None and self.video.frames_written > 0 \
            and self.video.state is VideoState.DONE
        audio_written = self.audio is not None and self.audio.samples_written > 0 \
            and self.audio.state is AudioState.DONE

        if self._track_errors:
            error = self._track_errors[0]
        elif self._cancel_event.is_set():
            error = Cancelled("retiming was cancelled")
        elif not video_written and not audio_written:
            error = NoTracksWritten("neither video nor audio produced output")
        else:
            try:
                output_path = self.backend.finalize(self.destination, video_written, audio_written)
            except Exception as e:
                logger.exception("Finalizing output failed")
                error = RetimeError(f"finalizing output failed: {e}")
            else:
                result = RetimeResult(
                    output_path=output_path,
                    duration_original=self.asset.duration,
                    duration_final=self.desired_duration,
                    time_scale_factor=self.time_scale_factor,
                    video_frames_read=self.video.frames_read if self.video else 0,
                    video_frames_written=self.video.frames_written if self.video else 0,
                    audio_samples_written=self.audio.samples_written if self.audio else 0,
                    skipped_tracks=dict(self.skipped_tracks),
                )

        self.result = result
        self.error = error
        if error is not None:
            logger.info("Session ended: %s", error)
        else:
            logger.info("Session complete: %s", result.output_path)
        try:
            if self._on_complete:
                self._on_complete(result, error)
        finally:
            self._done.set()


def process(
    manifest: Manifest,
    on_progress: ProgressCallback | None = None,
    on_session: Callable[[RetimeSession], None] | None = None,
) -> RetimeResult:
    """Execute a full retime of ``manifest.input`` into ``manifest.output``.

    Args:
        manifest: Validated retiming manifest.
        on_progress: Optional callback(cumulative_progress, preview_frame).
        on_session: Optional hook receiving the running session (for cancellation).

    Raises:
        RetimeError: whatever the session reported, including Cancelled.
    """
    validate_manifest(manifest)
    ffutil.check_ffmpeg()

    probed = ffutil.probe(manifest.input)

    with tempfile.TemporaryDirectory(prefix="clipretime_") as tmpdir:
        backend = ffutil.FFmpegBackend(manifest, Path(tmpdir))
        session = RetimeSession(
            backend.decoded_asset(probed),
            desired_duration=manifest.duration,
            frame_rate=manifest.frame_rate,
            destination=manifest.output,
            backend=backend,
            on_progress=on_progress,
            smoothly=manifest.audio.smooth,
            chunk_size=manifest.audio.chunk_size,
        )
        if on_session:
            on_session(session)
        session.start()
        try:
            session.wait()
        except KeyboardInterrupt:
            session.cancel()
            session.wait()

    if session.error is not None:
        raise session.error
    return session.result
