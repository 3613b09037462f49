"""Split interleaved PCM into per-channel arrays and back."""

import numpy as np


def deinterleave(buffer: np.ndarray, channel_count: int) -> list[np.ndarray]:
    """Split ``buffer`` so channel ``c`` sample ``k`` is ``buffer[c + k*channel_count]``.

    Returns an empty list when ``channel_count`` is not positive or the buffer
    holds less than one sample per channel. A trailing partial frame is dropped.
    """
    buffer = np.asarray(buffer)
    if channel_count <= 0 or buffer.size == 0:
        return []
    frames = buffer.size // channel_count
    if frames == 0:
        return []
    grid = buffer[: frames * channel_count].reshape(frames, channel_count)
    return [np.ascontiguousarray(grid[:, c]) for c in range(channel_count)]


def interleave(channels: list[np.ndarray]) -> np.ndarray:
    """Inverse of :func:`deinterleave`.

    The output holds ``len(channels) * min(len(ch))`` samples; anything past
    the end of the shortest channel is dropped, not padded.
    """
    if not channels:
        return np.zeros(0, dtype=np.int16)
    if len(channels) == 1:
        return np.asarray(channels[0])
    size = min(len(ch) for ch in channels)
    stacked = np.stack([np.asarray(ch)[:size] for ch in channels], axis=1)
    return stacked.reshape(-1)
