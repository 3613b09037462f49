"""Control points: map each output sample onto a real-valued source index."""

import math

import numpy as np


def smoothstep(t: np.ndarray | float) -> np.ndarray:
    """Cubic ease 3t^2 - 2t^3 with t clamped to [0, 1]."""
    t = np.clip(np.asarray(t, dtype=np.float64), 0.0, 1.0)
    return t * t * (3.0 - 2.0 * t)


def control_points(length: int, count: int, smoothly: bool = False) -> np.ndarray:
    """Return ``length`` non-decreasing source indices spanning ``0 .. count-1``.

    When ``smoothly`` is set and the output is longer than the source
    (stretching), each unit step between source indices is eased with
    smoothstep so the playback speed does not jump at sample boundaries.
    Otherwise the ramp is uniform.

    The last element is always exactly ``count - 1``.
    """
    if length <= 0:
        return np.zeros(0, dtype=np.float64)
    if count < 2:
        raise ValueError(f"control_points needs at least 2 source items, got {count}")

    if smoothly and length > count:
        denominator = (length - 1) / (count - 1)
        x = np.arange(length, dtype=np.float64) / denominator
        whole = np.floor(x)
        control = whole + smoothstep(x - whole)
    else:
        control = np.linspace(0.0, float(count - 1), num=length, dtype=np.float64)

    # Ramp arithmetic can land on 6.9999999999999991 instead of 7.
    control[-1] = float(count - 1)
    return control


def split_blocks(control: np.ndarray, size: int) -> list[np.ndarray]:
    """Partition ``control`` into consecutive blocks of ``size`` (last may be short)."""
    if size <= 0:
        raise ValueError("block size must be positive")
    return [control[start:start + size] for start in range(0, len(control), size)]


def block_offsets(block: np.ndarray) -> np.ndarray:
    """Rebase a block so its first index falls inside sample 0 of a window."""
    if len(block) == 0:
        return block
    return block - math.floor(block[0])
