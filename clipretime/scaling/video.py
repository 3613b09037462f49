"""Video retiming: duplicate or drop decoded frames onto a fixed-rate clock."""

import enum
import logging
import threading
import time
from typing import Callable

from clipretime.errors import EncodeAppendFailure
from clipretime.models import Encoder, Frame, VideoDecoder

logger = logging.getLogger(__name__)

# Slack for comparing the output clock against scaled source timestamps, so
# k * (1/fps) and k / fps compare equal despite float rounding.
TIME_EPSILON = 1e-6

READY_POLL_INTERVAL = 0.005


class VideoState(enum.Enum):
    AWAITING_FIRST_FRAME = "awaiting_first_frame"
    SCALING = "scaling"
    DRAINING = "draining"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset({VideoState.DONE, VideoState.CANCELLED, VideoState.FAILED})


class VideoRetimer:
    """Drive one video track from ``decoder`` to ``encoder``.

    Each source frame's timestamp is multiplied by ``time_scale_factor``. The
    output clock advances one ``frame_duration`` per written frame; a frame is
    written while the clock has not passed its scaled timestamp (so it repeats
    when stretching) and skipped once the clock has (so frames are dropped
    when compressing).
    """

    def __init__(
        self,
        decoder: VideoDecoder,
        encoder: Encoder,
        time_scale_factor: float,
        frame_duration: float,
        cancel_event: threading.Event | None = None,
        on_frame: Callable[[int, Frame], None] | None = None,
    ):
        if time_scale_factor <= 0:
            raise ValueError("time_scale_factor must be positive")
        if frame_duration <= 0:
            raise ValueError("frame_duration must be positive")
        self._decoder = decoder
        self._encoder = encoder
        self._cancel_event = cancel_event
        self._on_frame = on_frame

        self.time_scale_factor = time_scale_factor
        self.frame_duration = frame_duration
        self.state = VideoState.AWAITING_FIRST_FRAME
        self.current: Frame | None = None
        self.scaled_pts: float | None = None
        self.frames_read = 0
        self.frames_written = 0
        self.error: EncodeAppendFailure | None = None

    @property
    def output_time(self) -> float:
        return self.frames_written * self.frame_duration

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def step(self) -> bool:
        """Advance by one unit of work. Returns False once in a terminal state."""
        if self.finished:
            return False

        if self._cancel_event is not None and self._cancel_event.is_set():
            self._cancel()
            return False

        if self.state is VideoState.AWAITING_FIRST_FRAME:
            self._pull()
            if self.current is None:
                self._drain()
                return False
            self.state = VideoState.SCALING
            return True

        if self.current is None:
            self._drain()
            return False

        if self.output_time <= self.scaled_pts + TIME_EPSILON:
            frame = Frame(pts=self.output_time, image=self.current.image, index=self.current.index)
            if not self._encoder.append(frame):
                self._fail(frame)
                return False
            self.frames_written += 1
        else:
            self._pull()
            if self.current is None:
                self._drain()
                return False
        return True

    def run(self) -> VideoState:
        """Step until a terminal state, waiting whenever the encoder is busy."""
        while not self.finished:
            cancelled = self._cancel_event is not None and self._cancel_event.is_set()
            if not cancelled and not self._encoder.is_ready():
                time.sleep(READY_POLL_INTERVAL)
                continue
            self.step()
        logger.info(
            "Video track %s: %d frames read, %d written",
            self.state.value, self.frames_read, self.frames_written,
        )
        return self.state

    def _pull(self) -> None:
        frame = self._decoder.next_frame()
        self.current = frame
        if frame is None:
            self.scaled_pts = None
            return
        self.frames_read += 1
        self.scaled_pts = frame.pts * self.time_scale_factor
        if self._on_frame:
            self._on_frame(self.frames_read, frame)

    def _drain(self) -> None:
        self.state = VideoState.DRAINING
        self._encoder.finish()
        self.state = VideoState.DONE

    def _cancel(self) -> None:
        logger.info("Video track cancelled after %d frames", self.frames_written)
        self._decoder.cancel()
        self._encoder.finish()
        self.current = None
        self.state = VideoState.CANCELLED

    def _fail(self, frame: Frame) -> None:
        logger.error("Video encoder rejected frame at %.3fs", frame.pts)
        self.error = EncodeAppendFailure(
            f"video encoder rejected frame {self.frames_written} at {frame.pts:.3f}s"
        )
        self._decoder.cancel()
        self._encoder.finish()
        self.current = None
        self.state = VideoState.FAILED
