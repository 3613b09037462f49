"""Linear-interpolation resampling of PCM audio, whole-buffer and streaming.

The streaming :class:`SlidingWindowResampler` walks the control point
sequence block by block while decoded chunks arrive, keeping only the source
samples that later blocks can still reach. Its output is identical to
:func:`resample_interleaved` run over the whole decoded track.
"""

import logging
import math
from collections import deque

import numpy as np

from clipretime.models import SampleChunk
from clipretime.scaling.channels import deinterleave, interleave
from clipretime.scaling.control import block_offsets, split_blocks

logger = logging.getLogger(__name__)


def interpolate(samples: np.ndarray, control: np.ndarray) -> np.ndarray:
    """Evaluate ``samples`` as a piecewise-linear function at each control index.

    ``a[i] + f * (a[i+1] - a[i])`` with ``i = floor(c)`` and ``f = c - i``.
    Zeros are appended when the last control index reaches past
    ``len(samples) - 2`` so ``a[i+1]`` always exists.
    """
    control = np.asarray(control, dtype=np.float64)
    if len(control) == 0:
        return np.zeros(0, dtype=np.float64)

    values = np.asarray(samples, dtype=np.float64)
    last_trunc = math.trunc(control[-1])
    if last_trunc > len(values) - 2:
        values = np.concatenate(
            [values, np.zeros(last_trunc - len(values) + 2, dtype=np.float64)]
        )

    index = np.floor(control).astype(np.int64)
    frac = control - index
    lower = values[index]
    upper = values[index + 1]
    return lower + frac * (upper - lower)


def quantize(values: np.ndarray, dtype=np.int16) -> np.ndarray:
    """Round to the nearest integer (ties to even) and clip to ``dtype``."""
    info = np.iinfo(dtype)
    return np.clip(np.rint(values), info.min, info.max).astype(dtype)


def resample(samples: np.ndarray, control: np.ndarray, dtype=None) -> np.ndarray:
    """Resample one channel in a single pass."""
    samples = np.asarray(samples)
    if dtype is None:
        dtype = samples.dtype if np.issubdtype(samples.dtype, np.integer) else np.int16
    return quantize(interpolate(samples, control), dtype)


def resample_interleaved(
    buffer: np.ndarray, channel_count: int, control: np.ndarray, dtype=None
) -> np.ndarray:
    """Resample an interleaved multi-channel buffer in a single pass.

    Every channel is evaluated at the same control points, so channels stay
    phase aligned.
    """
    channels = deinterleave(buffer, channel_count)
    if not channels:
        return np.zeros(0, dtype=dtype or np.int16)
    return interleave([resample(ch, control, dtype) for ch in channels])


class SlidingWindowResampler:
    """Streaming resampler over a bounded window of decoded audio.

    Args:
        control: Full control point sequence for the track.
        block_size: Output samples per block, normally the decoder's chunk
            length so each block's lookahead is about one chunk.
        channel_count: Number of interleaved channels in pushed chunks.
        dtype: Integer sample type of the output.
    """

    def __init__(
        self,
        control: np.ndarray,
        block_size: int,
        channel_count: int,
        dtype=np.int16,
    ):
        if channel_count <= 0:
            raise ValueError("channel_count must be positive")
        blocks = split_blocks(np.asarray(control, dtype=np.float64), block_size)

        self.channel_count = channel_count
        self.dtype = np.dtype(dtype)
        self.removed = 0
        self.samples_received = 0
        self.samples_written = 0

        self._offsets = deque(block_offsets(block) for block in blocks)
        # Absolute start of every block after the first; the window front must
        # sit on floor(start) before that block is evaluated.
        self._starts = deque(math.floor(block[0]) for block in blocks[1:])
        self._to_remove = 0
        self._window = np.zeros((channel_count, 0), dtype=np.float64)

    @property
    def window_length(self) -> int:
        return self._window.shape[1]

    @property
    def pending_blocks(self) -> int:
        return len(self._offsets)

    @property
    def done(self) -> bool:
        return not self._offsets

    def push(self, chunk: SampleChunk | np.ndarray) -> np.ndarray:
        """Append one decoded chunk and return any newly resampled output."""
        samples = chunk.samples if isinstance(chunk, SampleChunk) else chunk
        channels = deinterleave(samples, self.channel_count)
        if channels:
            incoming = np.vstack(channels).astype(np.float64)
            self._window = np.concatenate([self._window, incoming], axis=1)
            self.samples_received += incoming.shape[1]
        self._trim()
        return self._drain(final=False)

    def flush(self) -> np.ndarray:
        """Resample every remaining block against what is left; call at end of stream."""
        if self._offsets:
            logger.debug(
                "Flushing %d audio blocks at end of stream (window=%d)",
                len(self._offsets), self.window_length,
            )
        return self._drain(final=True)

    def _trim(self) -> None:
        length = self.window_length
        if self._to_remove > length:
            self.removed += length
            self._to_remove -= length
            self._window = self._window[:, length:]
        elif self._to_remove > 0:
            self._window = self._window[:, self._to_remove:]
            self.removed += self._to_remove
            self._to_remove = 0

    def _ready(self, offsets: np.ndarray) -> bool:
        last = offsets[-1]
        needed = math.trunc(last)
        if last - needed > 0:
            needed += 1
        return needed < self.window_length

    def _drain(self, final: bool) -> np.ndarray:
        produced: list[np.ndarray] = []
        while self._offsets:
            offsets = self._offsets[0]
            if not final and not self._ready(offsets):
                break

            scaled = [quantize(interpolate(ch, offsets), self.dtype) for ch in self._window]
            produced.append(interleave(scaled))
            self.samples_written += len(offsets)
            self._offsets.popleft()

            if self._starts:
                self._to_remove = self._starts.popleft() - self.removed
                self._trim()

        if not produced:
            return np.zeros(0, dtype=self.dtype)
        return np.concatenate(produced)
