"""Recursive (Deriche) approximation of a Gaussian blur."""

from __future__ import annotations

from typing import NamedTuple, Optional

import numpy as np

from .image import FloatImage


class DericheCoefficients(NamedTuple):
    """Filter weights for the causal and anti-causal passes."""

    a0: np.float32
    a1: np.float32
    a2: np.float32
    a3: np.float32
    b1: np.float32
    b2: np.float32
    coefp: np.float32
    coefn: np.float32


def deriche_coefficients(sigma: float) -> DericheCoefficients:
    """Compute the recursive filter weights for standard deviation ``sigma``."""
    f32 = np.float32
    nsigma = f32(max(float(sigma), 0.1))
    alpha = f32(1.695) / nsigma
    ema = np.exp(-alpha)
    ema2 = np.exp(f32(-2) * alpha)
    b1 = f32(-2) * ema
    b2 = ema2
    k = (f32(1) - ema) * (f32(1) - ema) / (f32(1) + f32(2) * alpha * ema - ema2)
    a0 = k
    a1 = k * (alpha - f32(1)) * ema
    a2 = k * (alpha + f32(1)) * ema
    a3 = -k * ema2
    denom = f32(1) + b1 + b2
    return DericheCoefficients(
        a0=a0, a1=a1, a2=a2, a3=a3, b1=b1, b2=b2,
        coefp=(a0 + a1) / denom,
        coefn=(a2 + a3) / denom,
    )


def _filter_lines(lines: np.ndarray, c: DericheCoefficients) -> None:
    """Filter in place along axis 0, vectorised over the remaining axes."""
    n = lines.shape[0]
    causal = np.empty_like(lines)

    xp = lines[0].copy()
    yb = c.coefp * xp
    yp = yb
    for m in range(n):
        xc = lines[m].copy()
        yc = c.a0 * xc + c.a1 * xp - c.b1 * yp - c.b2 * yb
        causal[m] = yc
        xp, yb, yp = xc, yp, yc

    xn = lines[n - 1].copy()
    xa = xn
    yn = c.coefn * xn
    ya = yn
    for i in range(n - 1, -1, -1):
        xc = lines[i].copy()
        yc = c.a2 * xn + c.a3 * xa - c.b1 * yn - c.b2 * ya
        xa, xn, ya, yn = xn, xc, yn, yc
        lines[i] = causal[i] + yc


def deriche(img: FloatImage, sigma: float, axis: Optional[str] = None) -> None:
    """Blur ``img`` in place along ``'x'``, ``'y'``, or both when ``axis`` is None.

    Blurs with ``sigma`` below 0.1 leave the image unchanged.
    """
    if axis is None:
        deriche(img, sigma, "x")
        deriche(img, sigma, "y")
        return
    if axis not in ("x", "y"):
        raise ValueError(f"axis must be 'x' or 'y', not {axis!r}")
    if img.is_empty() or sigma < 0.1:
        return

    coefficients = deriche_coefficients(sigma)
    lines = img.data.transpose(1, 0, 2) if axis == "x" else img.data
    _filter_lines(lines, coefficients)