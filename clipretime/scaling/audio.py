"""Audio retiming: feed decoded chunks through the sliding-window resampler."""

import logging
import threading
import time
from typing import Callable

from clipretime.errors import EncodeAppendFailure
from clipretime.models import AudioDecoder, Encoder, SampleChunk
from clipretime.scaling.resampler import SlidingWindowResampler
from clipretime.scaling.video import READY_POLL_INTERVAL, TERMINAL_STATES, VideoState

logger = logging.getLogger(__name__)

# The audio track moves through the same lifecycle as the video track.
AudioState = VideoState


class AudioRetimer:
    """Drive one audio track from ``decoder`` through ``resampler`` to ``encoder``."""

    def __init__(
        self,
        decoder: AudioDecoder,
        encoder: Encoder,
        resampler: SlidingWindowResampler,
        cancel_event: threading.Event | None = None,
        on_chunk: Callable[[int], None] | None = None,
    ):
        self._decoder = decoder
        self._encoder = encoder
        self._cancel_event = cancel_event
        self._on_chunk = on_chunk
        self.resampler = resampler
        self.state = AudioState.SCALING
        self.chunks_read = 0
        self.error: EncodeAppendFailure | None = None

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def samples_written(self) -> int:
        return self.resampler.samples_written

    def step(self) -> bool:
        """Decode one chunk, resample whatever became ready and hand it to the encoder."""
        if self.finished:
            return False

        if self._cancel_event is not None and self._cancel_event.is_set():
            logger.info("Audio track cancelled after %d chunks", self.chunks_read)
            self._decoder.cancel()
            self._encoder.finish()
            self.state = AudioState.CANCELLED
            return False

        chunk = self._decoder.next_chunk()
        if chunk is None:
            self.state = AudioState.DRAINING
            if self._write(self.resampler.flush()):
                self._encoder.finish()
                self.state = AudioState.DONE
            return False

        self.chunks_read += 1
        output = self.resampler.push(chunk)
        if self._on_chunk:
            self._on_chunk(self.resampler.samples_received)
        return self._write(output)

    def run(self) -> AudioState:
        while not self.finished:
            cancelled = self._cancel_event is not None and self._cancel_event.is_set()
            if not cancelled and not self._encoder.is_ready():
                time.sleep(READY_POLL_INTERVAL)
                continue
            self.step()
        logger.info(
            "Audio track %s: %d chunks read, %d samples written",
            self.state.value, self.chunks_read, self.samples_written,
        )
        return self.state

    def _write(self, samples) -> bool:
        if len(samples) == 0:
            return True
        chunk = SampleChunk(samples=samples, channel_count=self.resampler.channel_count)
        if self._encoder.append(chunk):
            return True
        logger.error("Audio encoder rejected %d samples", chunk.frames)
        self.error = EncodeAppendFailure(
            f"audio encoder rejected a chunk of {chunk.frames} samples"
        )
        self._decoder.cancel()
        self._encoder.finish()
        self.state = AudioState.FAILED
        return False
