"""Tensor-driven anisotropic smoothing: the CPU stages of the denoising filter.

The stages are:

1. :func:`prepare_tensors` builds the smoothed structure tensor field ``G``.
2. :func:`diffusion_tensors` turns ``G`` into diffusion tensors ``G2``.
3. For each angle, :func:`init_for_angle` derives per-pixel step vectors ``W``
   from ``G2``, and :func:`blur_along_angle` averages the image along the
   curves they trace, accumulating into ``dest``.
4. :func:`finalize` divides the accumulated result by the number of angles.

The row-wise stages take an optional :class:`~greycdenoise.sync.Slices`, so
several threads can share the rows of one image; ``None`` processes every row.
"""

from __future__ import annotations

import math
from typing import Iterable, Optional, Tuple

import numpy as np

from .deriche import deriche
from .gaussian import gaussian_blur_estimation
from .image import FloatImage, PixelImage
from .sync import check_cancel

_F32 = np.float32


def _rows(slices, height: int) -> Iterable[int]:
    return range(height) if slices is None else iter(slices)


def _tick(stop_event, progress) -> None:
    if progress is not None:
        progress.increment()
    check_cancel(stop_event)


def _mask_data(mask: Optional[PixelImage]) -> Optional[np.ndarray]:
    if mask is None or mask.is_empty():
        return None
    return mask.data


def structure_tensor(img: FloatImage) -> FloatImage:
    """Return the 2D structure tensor field of ``img``, summed over channels.

    The result has four channels (xx, xy, yy, unused); finite differences use
    repeated border pixels.
    """
    if img.is_empty():
        return FloatImage()

    d = img.data
    padded = np.pad(d, ((1, 1), (1, 1), (0, 0)), mode="edge")
    inc = padded[1:-1, 2:]
    ipc = padded[1:-1, :-2]
    icn = padded[2:, 1:-1]
    icp = padded[:-2, 1:-1]

    ixf = inc - d
    ixb = d - ipc
    iyf = icn - d
    iyb = d - icp

    res = FloatImage(img.width, img.height, 4)
    res.data[..., 0] = (_F32(0.5) * (ixf * ixf + ixb * ixb)).sum(axis=2, dtype=np.float32)
    res.data[..., 1] = (_F32(0.25) * (ixf * iyf + ixf * iyb + ixb * iyf + ixb * iyb)).sum(
        axis=2, dtype=np.float32)
    res.data[..., 2] = (_F32(0.5) * (iyf * iyf + iyb * iyb)).sum(axis=2, dtype=np.float32)
    return res


def symmetric_eigen(tensor) -> Tuple[np.ndarray, np.ndarray]:
    """Eigen-decompose symmetric 2x2 matrices given as ``(a, b, c, d)``.

    ``tensor`` may hold one matrix or an array of them along the last axis.
    Returns ``(values, vectors)``: values are ``(larger, smaller)`` and
    vectors ``(x1, y1, x2, y2)``, the unit eigenvectors in the same order.
    """
    t = np.asarray(tensor, dtype=np.float32)
    a, b, c, d = t[..., 0], t[..., 1], t[..., 2], t[..., 3]
    e = a + d
    with np.errstate(invalid="ignore"):
        f = np.sqrt(e * e - _F32(4) * (a * d - b * c))
    l1 = _F32(0.5) * (e - f)
    l2 = _F32(0.5) * (e + f)
    theta1 = np.arctan2(l2 - a, b)
    theta2 = np.arctan2(l1 - a, b)
    values = np.stack([l2, l1], axis=-1).astype(np.float32)
    vectors = np.stack(
        [np.cos(theta1), np.sin(theta1), np.cos(theta2), np.sin(theta2)], axis=-1
    ).astype(np.float32)
    return values, vectors


def prepare_tensors(img: FloatImage, pre_blur: float = 0.0, alpha: float = 0.6,
                    sigma: float = 1.1, geom_factor: float = 1.0, stage: int = 0,
                    stop_event=None) -> Optional[FloatImage]:
    """Compute the smoothed structure tensor field of ``img``.

    ``pre_blur`` applies a Gaussian-like blur to ``img`` itself first.
    ``alpha`` blurs the image before the tensors are taken, ``sigma`` blurs
    the tensors; a positive ``geom_factor`` scales the blurred image, a
    negative one normalizes it to ``[0, -geom_factor]``.

    ``stage`` stops early and leaves an intermediate result in ``img``:
    1 the pre-blurred image, 2 the alpha-blurred image, 3 the scaled image,
    4 the raw tensors (times 0.05), 5 the blurred tensors (divided by
    10000).  Returns the tensor field, or ``None`` if it was not computed.
    """
    if img.is_empty():
        return None

    alpha = max(alpha, 0.0)
    sigma = max(sigma, 0.0)

    if pre_blur > 0:
        gaussian_blur_estimation(img, pre_blur, stop_event)
    if stage == 1:
        return None
    check_cancel(stop_event)

    blurred = img.copy()
    deriche(blurred, alpha)
    if stage == 2:
        img.data = blurred.data.copy()
        return None
    check_cancel(stop_event)

    if geom_factor > 0:
        blurred.scale(geom_factor)
    else:
        blurred.normalize(0, -geom_factor)
    if stage == 3:
        img.data = blurred.data.copy()
        return None
    check_cancel(stop_event)

    tensors = structure_tensor(blurred)
    if stage == 4:
        tensors.scale(0.05)
        img.data = tensors.data.copy()
        return tensors
    check_cancel(stop_event)

    if sigma > 0:
        deriche(tensors, sigma)
    check_cancel(stop_event)

    if stage == 5:
        tensors.scale(1 / 10000.0)
        img.data = tensors.data.copy()
    return tensors


def diffusion_tensors(G: FloatImage, G2: FloatImage, slices=None, sharpness: float = 0.7,
                      anisotropy: float = 0.3, stop_event=None, progress=None) -> None:
    """Write the diffusion tensors derived from ``G`` into ``G2``, row by row.

    ``G`` is only read; each row of ``G2`` is written by whoever claims it.
    """
    sharpness = max(sharpness, 0.0)
    anisotropy = min(max(anisotropy, 0.0), 1.0)
    power1 = _F32(0.5) * _F32(max(sharpness, 1e-5))
    power2 = power1 / (_F32(1e-7) + _F32(1.0) - _F32(anisotropy))
    width = G.width

    for y in _rows(slices, G.height):
        _tick(stop_event, progress)
        row = G.data[y, :, :3]
        values, vectors = symmetric_eigen(row[:, [0, 1, 1, 2]])
        base = _F32(1.0) + values[:, 1] + values[:, 0]
        with np.errstate(invalid="ignore", divide="ignore"):
            n1 = np.power(base, -power1)
            n2 = np.power(base, -power2)
        vx, vy = vectors[:, 0], vectors[:, 1]
        ux, uy = vectors[:, 2], vectors[:, 3]
        out = G2.data[y, :width]
        out[:, 0] = n1 * ux * ux + n2 * vx * vx
        out[:, 1] = n1 * ux * uy + n2 * vx * vy
        out[:, 2] = n1 * uy * uy + n2 * vy * vy


def init_for_angle(G: FloatImage, W: FloatImage, slices=None, theta: float = 0.0,
                   dl: float = 0.8, stop_event=None, progress=None) -> None:
    """Fill ``W`` with step vectors for direction ``theta`` (degrees).

    Channel 0 holds the length ``n`` of the tensor applied to the direction,
    channels 1 and 2 the step of length ``dl`` along it; channel 3 is left
    untouched.
    """
    thetar = _F32(theta * math.pi / 180)
    vx = np.cos(thetar)
    vy = np.sin(thetar)
    step = _F32(dl)
    width = G.width

    for y in _rows(slices, G.height):
        _tick(stop_event, progress)
        a = G.data[y, :, 0]
        b = G.data[y, :, 1]
        c = G.data[y, :, 2]
        u = a * vx + b * vy
        v = b * vx + c * vy
        n = np.sqrt(u * u + v * v) + _F32(1e-5)
        dln = step / n
        out = W.data[y, :width]
        out[:, 0] = n
        out[:, 1] = u * dln
        out[:, 2] = v * dln


def _bilinear(data: np.ndarray, fx: float, fy: float) -> np.ndarray:
    """Bilinearly interpolate all channels at (fx, fy), clamped to the array."""
    w1 = data.shape[1] - 1
    h1 = data.shape[0] - 1
    nfx = 0.0 if fx < 0 else (float(w1) if fx > w1 else fx)
    nfy = 0.0 if fy < 0 else (float(h1) if fy > h1 else fy)
    x = int(nfx)
    y = int(nfy)
    dx = nfx - x
    dy = nfy - y
    nx = x + 1 if dx > 0 else x
    ny = y + 1 if dy > 0 else y
    icc = data[y, x].astype(np.float64)
    inc = data[y, nx].astype(np.float64)
    icn = data[ny, x].astype(np.float64)
    inn = data[ny, nx].astype(np.float64)
    return icc + dx * (inc - icc + dy * (icc + inn - icn - inc)) + dy * (icn - icc)


def _align_neighbours(w: np.ndarray, cx: int, cy: int, dx1: int, dy1: int) -> None:
    """Flip the step vectors around (cx, cy) that point against the centre one."""
    px, nx = max(cx - 1, 0), min(cx + 1, dx1)
    py, ny = max(cy - 1, 0), min(cy + 1, dy1)
    cu = float(w[cy, cx, 1])
    cv = float(w[cy, cx, 2])
    patch = w[py:ny + 1, px:nx + 1, 1:3]
    opposed = patch[..., 0] * cu + patch[..., 1] * cv < 0
    if opposed.any():
        patch[opposed] *= -1


def _advance(l: float, dl: float, n: float, n2: float, alt_amplitude: bool) -> float:
    if not alt_amplitude:
        return l + dl
    if n2 == 0:
        return math.inf
    return l + dl * (n / n2)


def _follow(pixels: np.ndarray, w: np.ndarray, x: int, y: int, n: float, length: float,
            fsigma2: float, dl: float, alt_amplitude: bool, interpolation: int,
            fast_approx: bool) -> Tuple[np.ndarray, float]:
    """Average the image along the curve starting at (x, y); return (sum, weight)."""
    dx1 = pixels.shape[1] - 1
    dy1 = pixels.shape[0] - 1
    total = np.zeros(pixels.shape[2], dtype=np.float64)
    weight = 0.0
    pu = pv = 0.0
    fx, fy = float(x), float(y)
    l = 0.0

    while l < length and 0 <= fx <= dx1 and 0 <= fy <= dy1:
        if fast_approx:
            coef = 1.0
        elif fsigma2 > 0:
            coef = math.exp(-l * l / fsigma2)
        else:
            coef = 0.0

        if interpolation == 0:
            cx = round(fx)
            cy = round(fy)
            total += coef * pixels[cy, cx]
            weight += coef
            u = float(w[cy, cx, 1])
            v = float(w[cy, cx, 2])
            l = _advance(l, dl, n, float(w[cy, cx, 0]), alt_amplitude)
            if pu * u + pv * v < 0:
                u, v = -u, -v
        else:
            cx = int(fx)
            cy = int(fy)
            _align_neighbours(w, cx, cy, dx1, dy1)
            if interpolation == 1:
                step = _bilinear(w, fx, fy)
            else:
                half = 0.5 * _bilinear(w, fx, fy)
                step = _bilinear(w, fx + half[1], fy + half[2])
            u = float(step[1])
            v = float(step[2])
            if pu * u + pv * v < 0:
                u, v = -u, -v
            total += coef * _bilinear(pixels, fx, fy)
            weight += coef
            l = _advance(l, dl, n, float(w[cy, cx, 0]), alt_amplitude)

        fx += u
        fy += v
        pu, pv = u, v

    return total, weight


def blur_along_angle(img: FloatImage, W: FloatImage, mask: Optional[PixelImage],
                     dest: FloatImage, slices=None, alt_amplitude: bool = True,
                     amplitude: float = 60.0, dl: float = 0.8, gauss_prec: float = 2.0,
                     interpolation: int = 0, fast_approx: bool = True,
                     stop_event=None, progress=None) -> None:
    """Add to ``dest`` the average of ``img`` along the curves traced by ``W``.

    ``interpolation`` is 0 for nearest neighbour, 1 for bilinear and any
    other value for second-order Runge-Kutta; the latter two also flip step
    vectors in ``W`` to agree with their neighbours.  With ``alt_amplitude``
    each step counts in proportion to the starting pixel's ``n`` over the
    current one, which stops the walk from running past contours.  Pixels
    where ``mask`` is zero are skipped.
    """
    sqrt2amplitude = math.sqrt(2 * amplitude) if amplitude >= 0 else math.nan
    pixels = img.data
    weights = W.data
    channels = img.channels
    mask_data = _mask_data(mask)

    for y in _rows(slices, img.height):
        _tick(stop_event, progress)
        for x in range(img.width):
            if mask_data is not None and not mask_data[y, x, 0]:
                continue
            n = float(weights[y, x, 0])
            fsigma = n * sqrt2amplitude
            length = gauss_prec * fsigma
            fsigma2 = 2 * fsigma * fsigma
            total, weight = _follow(pixels, weights, x, y, n, length, fsigma2, dl,
                                    alt_amplitude, interpolation, fast_approx)
            if weight > 0:
                dest.data[y, x, :channels] += total / weight
            else:
                dest.data[y, x, :channels] += pixels[y, x]


def finalize(dest: FloatImage, img: FloatImage, n: int, mask: Optional[PixelImage] = None,
             slices=None) -> None:
    """Store ``dest / n`` into ``img``, except where ``mask`` is zero."""
    mask_data = _mask_data(mask)
    width = img.width
    channels = img.channels
    divisor = _F32(n)

    for y in _rows(slices, img.height):
        with np.errstate(divide="ignore", invalid="ignore"):
            values = dest.data[y, :width, :channels] / divisor
        if mask_data is None:
            img.data[y] = values
        else:
            keep = mask_data[y, :width, 0] != 0
            img.data[y, keep] = values[keep]