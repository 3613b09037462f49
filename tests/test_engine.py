"""Tests for the retiming session and the process() entry point."""

from unittest.mock import patch

import numpy as np
import pytest

from clipretime.engine import RetimeSession, process
from clipretime.errors import (
    Cancelled,
    EncodeAppendFailure,
    InvalidConfiguration,
    NoTracksWritten,
    RetimeError,
)
from clipretime.manifest import AudioConfig, Manifest
from clipretime.models import RetimeResult
from clipretime.scaling.control import control_points
from clipretime.scaling.resampler import resample_interleaved
from clipretime.scaling.video import VideoState

from fakes import FakeBackend, interleaved_ramp, make_asset

SAMPLE_COUNT = 800


def _backend(**kwargs):
    kwargs.setdefault("audio", interleaved_ramp(SAMPLE_COUNT, 2))
    return FakeBackend(frame_count=30, fps=30.0, channel_count=2, chunk_size=64, **kwargs)


def _session(backend, tmp_path, desired=2.0, asset=None, **kwargs):
    asset = asset or make_asset(duration=1.0, sample_count=SAMPLE_COUNT, sample_rate=SAMPLE_COUNT)
    return RetimeSession(
        asset,
        desired_duration=desired,
        frame_rate=30.0,
        destination=tmp_path / "out.mp4",
        backend=backend,
        chunk_size=64,
        **kwargs,
    )


class TestRetimeSession:
    def test_stretch_both_tracks(self, tmp_path):
        backend = _backend()
        session = _session(backend, tmp_path, desired=2.0)
        result = session.run()

        assert isinstance(result, RetimeResult)
        assert result.time_scale_factor == pytest.approx(2.0)
        assert result.duration_original == 1.0
        assert result.duration_final == 2.0
        assert result.video_frames_read == 30
        assert result.video_frames_written == 59
        assert result.audio_samples_written == 2 * SAMPLE_COUNT
        assert result.skipped_tracks == {}
        assert backend.finalized == (tmp_path / "out.mp4", True, True)

    def test_compress_both_tracks(self, tmp_path):
        backend = _backend()
        result = _session(backend, tmp_path, desired=0.5).run()
        assert result.video_frames_written == 15
        assert result.audio_samples_written == SAMPLE_COUNT // 2

    def test_audio_matches_whole_buffer_resample(self, tmp_path):
        backend = _backend()
        _session(backend, tmp_path, desired=1.5).run()
        buffer = interleaved_ramp(SAMPLE_COUNT, 2)
        expected = resample_interleaved(buffer, 2, control_points(1200, SAMPLE_COUNT, smoothly=True))
        assert np.array_equal(backend.audio_enc.samples(), expected)

    def test_smoothly_false_uses_uniform_ramp(self, tmp_path):
        backend = _backend()
        _session(backend, tmp_path, desired=1.5, smoothly=False).run()
        buffer = interleaved_ramp(SAMPLE_COUNT, 2)
        expected = resample_interleaved(buffer, 2, control_points(1200, SAMPLE_COUNT))
        assert np.array_equal(backend.audio_enc.samples(), expected)

    def test_progress_reaches_one_and_never_decreases(self, tmp_path):
        values = []
        backend = _backend()
        session = _session(backend, tmp_path, on_progress=lambda v, preview: values.append(v))
        session.run()
        assert values == sorted(values)
        assert values[-1] == pytest.approx(1.0)
        assert session.progress.value <= 1.0

    def test_completion_called_once_with_result(self, tmp_path):
        calls = []
        backend = _backend()
        session = _session(backend, tmp_path, on_complete=lambda r, e: calls.append((r, e)))
        result = session.run()
        assert calls == [(result, None)]
        assert session.finished

    def test_start_twice_rejected(self, tmp_path):
        session = _session(_backend(), tmp_path)
        session.start()
        with pytest.raises(RuntimeError, match="already started"):
            session.start()
        session.wait()


class TestSessionConfiguration:
    @pytest.mark.parametrize("frame_rate", [0, -30.0, None])
    def test_bad_frame_rate(self, tmp_path, frame_rate):
        with pytest.raises(InvalidConfiguration):
            RetimeSession(make_asset(), 2.0, frame_rate, tmp_path / "o.mp4", _backend())

    @pytest.mark.parametrize("desired", [0, -1.0, None])
    def test_bad_desired_duration(self, tmp_path, desired):
        with pytest.raises(InvalidConfiguration):
            RetimeSession(make_asset(), desired, 30.0, tmp_path / "o.mp4", _backend())

    def test_bad_source_duration(self, tmp_path):
        with pytest.raises(InvalidConfiguration):
            RetimeSession(make_asset(duration=0.0), 2.0, 30.0, tmp_path / "o.mp4", _backend())

    def test_invalid_configuration_is_value_error(self, tmp_path):
        with pytest.raises(ValueError):
            RetimeSession(make_asset(), 2.0, 0, tmp_path / "o.mp4", _backend())

    def test_audio_length_truncates(self, tmp_path):
        session = _session(_backend(), tmp_path, desired=1.0 / 3)
        assert session.audio_length == int(SAMPLE_COUNT / 3)


class TestSkippedTracks:
    def test_audio_decoder_start_failure_skips_audio(self, tmp_path):
        backend = _backend(audio_start_ok=False)
        result = _session(backend, tmp_path).run()
        assert list(result.skipped_tracks) == ["audio"]
        assert result.audio_samples_written == 0
        assert backend.finalized == (tmp_path / "out.mp4", True, False)

    def test_video_decoder_start_failure_skips_video(self, tmp_path):
        backend = _backend(video_start_ok=False)
        result = _session(backend, tmp_path).run()
        assert list(result.skipped_tracks) == ["video"]
        assert result.video_frames_written == 0
        assert backend.finalized == (tmp_path / "out.mp4", False, True)

    def test_single_audio_sample_is_empty_track(self, tmp_path):
        asset = make_asset(sample_count=1)
        backend = _backend()
        result = _session(backend, tmp_path, asset=asset).run()
        assert list(result.skipped_tracks) == ["audio"]
        assert backend.audio_enc.items == []

    def test_zero_output_length_is_empty_track(self, tmp_path):
        # 10 samples * 0.05 truncates to zero output samples.
        asset = make_asset(duration=1.0, sample_count=10)
        result = _session(_backend(), tmp_path, desired=0.05, asset=asset).run()
        assert "audio" in result.skipped_tracks
        assert result.skipped_tracks["audio"] == "output sample length is 0"

    def test_no_audio_stream(self, tmp_path):
        asset = make_asset(has_audio=False, channel_count=0)
        backend = _backend()
        result = _session(backend, tmp_path, asset=asset).run()
        assert list(result.skipped_tracks) == ["audio"]
        assert backend.finalized[2] is False

    def test_skip_reason_reported(self, tmp_path):
        calls = []
        backend = _backend(audio_start_ok=False)
        session = _session(backend, tmp_path, on_complete=lambda r, e: calls.append(r))
        session.run()
        assert calls[0].skipped_tracks == {"audio": "audio decoder failed to start"}

    def test_empty_track_reason_reported(self, tmp_path):
        asset = make_asset(sample_count=1)
        result = _session(_backend(), tmp_path, asset=asset).run()
        assert result.skipped_tracks["audio"] == "need at least 2 source samples, got 1"

    def test_skipped_track_still_completes_progress(self, tmp_path):
        backend = _backend(audio_start_ok=False)
        session = _session(backend, tmp_path)
        session.run()
        assert session.progress.value == pytest.approx(1.0)

    def test_nothing_written(self, tmp_path):
        asset = make_asset(has_audio=False)
        backend = _backend(video_start_ok=False)
        session = _session(backend, tmp_path, asset=asset)
        with pytest.raises(NoTracksWritten):
            session.run()
        assert backend.finalized is None
        assert session.result is None


class TestSessionErrors:
    def test_cancel_reports_cancelled(self, tmp_path):
        calls = []
        backend = _backend()
        session = _session(backend, tmp_path, on_complete=lambda r, e: calls.append((r, e)))
        backend.video_enc.on_append = lambda _frame: session.cancel()

        with pytest.raises(Cancelled):
            session.run()
        assert session.video.state is VideoState.CANCELLED
        assert backend.video_enc.finished
        assert backend.finalized is None
        assert len(calls) == 1
        assert calls[0][0] is None
        assert isinstance(calls[0][1], Cancelled)

    def test_video_encoder_failure(self, tmp_path):
        backend = _backend(video_fail_at=2)
        session = _session(backend, tmp_path)
        with pytest.raises(EncodeAppendFailure):
            session.run()
        assert session.video.state is VideoState.FAILED
        assert backend.finalized is None

    def test_audio_encoder_failure(self, tmp_path):
        backend = _backend(audio_fail_at=0)
        with pytest.raises(EncodeAppendFailure):
            _session(backend, tmp_path).run()

    def test_unexpected_pipeline_exception_is_reported(self, tmp_path):
        backend = _backend()

        def broken(asset):
            raise OSError("disk on fire")

        backend.video_decoder = broken
        session = _session(backend, tmp_path)
        with pytest.raises(RetimeError, match="video pipeline failed"):
            session.run()
        assert session.cancelled

    def test_encoder_construction_failure_releases_decoder(self, tmp_path):
        backend = _backend()

        def broken(asset):
            raise OSError("cannot open audio output")

        backend.audio_encoder = broken
        with pytest.raises(RetimeError, match="audio pipeline failed"):
            _session(backend, tmp_path).run()
        assert backend.audio_dec.cancelled

    def test_video_encoder_construction_failure_releases_decoder(self, tmp_path):
        backend = _backend()

        def broken(asset, frame_rate):
            raise OSError("cannot open video output")

        backend.video_encoder = broken
        with pytest.raises(RetimeError, match="video pipeline failed"):
            _session(backend, tmp_path).run()
        assert backend.video_dec.cancelled

    def test_exception_mid_stream_finishes_encoder(self, tmp_path):
        backend = _backend()

        def explode(_frame):
            raise RuntimeError("frame conversion failed")

        backend.video_enc.on_append = explode
        with pytest.raises(RetimeError, match="frame conversion failed"):
            _session(backend, tmp_path).run()
        assert backend.video_dec.cancelled
        assert backend.video_enc.finished
        assert backend.video_enc.finish_calls == 1

    def test_finalize_failure(self, tmp_path):
        backend = _backend()

        def broken(destination, video_written, audio_written):
            raise OSError("mux failed")

        backend.finalize = broken
        with pytest.raises(RetimeError, match="finalizing output failed"):
            _session(backend, tmp_path).run()


class TestProcess:
    def _manifest(self, tmp_path):
        return Manifest(
            input=tmp_path / "in.mp4",
            output=tmp_path / "out.mp4",
            duration=2.0,
            frame_rate=30.0,
            audio=AudioConfig(chunk_size=64),
        )

    @patch("clipretime.engine.ffutil")
    def test_runs_session_with_ffmpeg_backend(self, mock_ffutil, tmp_path):
        asset = make_asset(sample_count=SAMPLE_COUNT, sample_rate=SAMPLE_COUNT)
        backend = _backend()
        backend.decoded_asset = lambda probed: asset
        mock_ffutil.FFmpegBackend.return_value = backend
        mock_ffutil.probe.return_value = asset
        sessions = []

        result = process(self._manifest(tmp_path), on_session=sessions.append)

        mock_ffutil.check_ffmpeg.assert_called_once()
        mock_ffutil.probe.assert_called_once_with(tmp_path / "in.mp4")
        assert result.output_path == tmp_path / "out.mp4"
        assert result.video_frames_written == 59
        assert len(sessions) == 1

    @patch("clipretime.engine.ffutil")
    def test_raises_session_error(self, mock_ffutil, tmp_path):
        asset = make_asset(has_audio=False)
        backend = _backend(video_start_ok=False)
        backend.decoded_asset = lambda probed: asset
        mock_ffutil.FFmpegBackend.return_value = backend
        mock_ffutil.probe.return_value = asset

        with pytest.raises(NoTracksWritten):
            process(self._manifest(tmp_path))

    @patch("clipretime.engine.ffutil")
    def test_invalid_manifest_rejected_before_probe(self, mock_ffutil, tmp_path):
        manifest = self._manifest(tmp_path)
        manifest.duration = 0
        with pytest.raises(InvalidConfiguration):
            process(manifest)
        mock_ffutil.probe.assert_not_called()

    @patch("clipretime.engine.ffutil")
    def test_cancel_via_session_hook(self, mock_ffutil, tmp_path):
        asset = make_asset(sample_count=SAMPLE_COUNT, sample_rate=SAMPLE_COUNT)
        backend = _backend()
        backend.decoded_asset = lambda probed: asset
        mock_ffutil.FFmpegBackend.return_value = backend
        mock_ffutil.probe.return_value = asset

        with pytest.raises(Cancelled):
            process(self._manifest(tmp_path), on_session=lambda s: s.cancel())
        assert backend.finalized is None
