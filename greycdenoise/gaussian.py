"""Gaussian blur approximated by repeated fractional box filters."""

from __future__ import annotations

from typing import NamedTuple

import numpy as np

from .image import FloatImage
from .sync import check_cancel

_F32 = np.float32

# Pairs of (Gaussian radius, box width) where the box filter lines up with a
# reference Gaussian blur; values in between are interpolated.
_ALPHA_SAMPLES = (
    (0.0, 1.0),
    (0.3, 1.1),
    (0.5, 1.2),
    (0.7, 1.3),
    (0.8, 1.4),
    (0.9, 1.5),
    (1.05, 1.7),
    (1.1, 1.8),
    (1.15, 1.9),
    (1.2, 2.0),
    (1.45, 3.0),
    (2.6, 5.0),
    (5.15, 10.0),
    (10.1, 20.0),
    (15.2, 30.0),
    (25.15, 50.0),
)


class _BoxParams(NamedTuple):
    offset: int
    width: int
    sum_width: int
    sum_weight: np.float32
    left_weight: np.float32
    right_weight: np.float32


def _box_params(box_width: float) -> _BoxParams:
    half = _F32(box_width) / _F32(2)
    start = -half + _F32(0.5)
    end = start + half * _F32(2)
    eps = _F32(1e-5)

    # Distance from the right weighted sample to the pixel receiving the result.
    offset = int(np.floor(half + _F32(0.5) + eps))
    # Distance from the right weighted sample to the left weighted sample.
    width = int(np.floor(end) - np.floor(start) + eps)
    if width == 0:
        right = _F32(end - start)
        left = _F32(0)
    else:
        right = _F32(end - np.floor(end))
        left = _F32(np.ceil(start + eps) - start)

    total = _F32(half * _F32(2))
    sum_width = int(np.rint(total - left - right))
    sum_weight = _F32(0) if sum_width == 0 else _F32(_F32(1) / total)
    return _BoxParams(
        offset=offset,
        width=width,
        sum_width=sum_width,
        sum_weight=sum_weight,
        left_weight=_F32(left / total),
        right_weight=_F32(right / total),
    )


def box_blur(img: FloatImage, box_width: float, horizontal: bool) -> None:
    """Blur ``img`` in place with a box ``box_width`` pixels wide.

    The box may have a fractional width; its partially covered end pixels are
    weighted accordingly.  Borders are not handled: a strip at the edges is
    left artifacted, so callers pad the image first.
    """
    if box_width <= 0:
        raise ValueError("box width must be positive")

    p = _box_params(box_width)
    out = np.zeros_like(img.data)

    # Arrange both arrays so the blur runs along axis 0.
    if horizontal:
        lines = img.data.transpose(1, 0, 2)
        out_lines = out.transpose(1, 0, 2)
    else:
        lines = img.data
        out_lines = out

    n = lines.shape[0]
    if n == 0:
        img.data = out
        return

    def clamped(i: int) -> int:
        return min(max(i, 0), n - 1)

    box_sum = np.zeros(lines.shape[1:], dtype=np.float32)
    start = min(n, max(p.width, p.offset))

    # Walk the box up to the first position where it lies entirely in bounds.
    for _ in range(p.sum_width + 1):
        box_sum += lines[0]
    for x in range(start):
        box_sum -= lines[clamped(x - p.width)]
        box_sum += lines[clamped(x)]

    if horizontal:
        head = min(p.offset, n)
        out_lines[:head] = lines[:head]

    for x in range(start, n):
        left = lines[x - p.width]
        right = lines[x]
        box_sum -= left
        out_lines[x - p.offset] = (box_sum * p.sum_weight
                                   + left * p.left_weight
                                   + right * p.right_weight)
        box_sum += right

    img.data = out


def scale_alpha(a: float) -> float:
    """Map a Gaussian blur radius to the equivalent box width.

    Values between the calibration samples are interpolated; values past the
    last sample are extrapolated from the last two.  A width of 1 or less is
    no blurring.
    """
    i = 1
    while i < len(_ALPHA_SAMPLES) and _ALPHA_SAMPLES[i][0] < a:
        i += 1
    if i == len(_ALPHA_SAMPLES):
        i -= 1

    hi_radius, hi_box = _ALPHA_SAMPLES[i]
    lo_radius, lo_box = _ALPHA_SAMPLES[i - 1]
    return hi_box + (a - hi_radius) * (lo_box - hi_box) / (lo_radius - hi_radius)


def gaussian_blur_estimation(img: FloatImage, a: float, stop_event=None) -> None:
    """Approximate a Gaussian blur of radius ``a`` with three box filters per axis.

    The image is padded by repeating its border pixels, and the padding is
    blurred along with it, so edges behave as with a padded Gaussian.  Raises
    :class:`~greycdenoise.sync.Aborted` if ``stop_event`` is set; ``img`` is
    then left unchanged.
    """
    box = scale_alpha(a)

    if img.is_empty():
        check_cancel(stop_event)
        return

    buffer = int(np.ceil(_F32(box))) * 3
    padded = FloatImage.from_array(
        np.pad(img.data, ((buffer, buffer), (buffer, buffer), (0, 0)), mode="edge")
    )

    for horizontal in (True, True, True, False, False, False):
        box_blur(padded, box, horizontal)
        check_cancel(stop_event)

    img.draw_image(padded, -buffer, -buffer)