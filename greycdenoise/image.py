"""Interleaved image containers: float working images and 8/16-bit pixel images."""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np

_DTYPES = {1: np.uint8, 2: np.uint16}
_PIXEL_MAX = {1: 0xFF, 2: 0xFFFF}


def _dtype_for(bytes_per_channel: int):
    try:
        return _DTYPES[bytes_per_channel]
    except KeyError:
        raise ValueError(f"invalid bytes per channel: {bytes_per_channel}") from None


def _as_3d(array: np.ndarray) -> np.ndarray:
    if array.ndim == 2:
        return array[:, :, np.newaxis]
    if array.ndim != 3:
        raise ValueError("image arrays must have shape (height, width[, channels])")
    return array


class PixelImage:
    """An 8- or 16-bit interleaved image of shape (height, width, channels).

    Images made by :meth:`from_array` and :meth:`view` share memory with the
    array they wrap, so writes go straight back to it.
    """

    def __init__(self, width: int = 0, height: int = 0, bytes_per_channel: int = 1, channels: int = 1) -> None:
        self.data = np.zeros((height, width, channels), dtype=_dtype_for(bytes_per_channel))

    @classmethod
    def from_array(cls, array) -> "PixelImage":
        arr = _as_3d(np.asarray(array))
        if arr.dtype not in (np.dtype(np.uint8), np.dtype(np.uint16)):
            raise ValueError(f"unsupported pixel type {arr.dtype}; expected uint8 or uint16")
        image = cls()
        image.data = arr
        return image

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def channels(self) -> int:
        return self.data.shape[2]

    @property
    def bytes_per_channel(self) -> int:
        return self.data.dtype.itemsize

    def is_empty(self) -> bool:
        return self.width == 0 or self.height == 0

    def view(self, x: int = 0, y: int = 0, width: Optional[int] = None, height: Optional[int] = None) -> "PixelImage":
        """Return a region of this image sharing its memory, clipped to its bounds."""
        x = min(x, self.width)
        y = min(y, self.height)
        w = self.width - x if width is None else min(width, self.width - x)
        h = self.height - y if height is None else min(height, self.height - y)
        w, h = max(w, 0), max(h, 0)
        return PixelImage.from_array(self.data[y:y + h, x:x + w])

    def convert_to_8bpp(self) -> None:
        """Convert 16-bit data to 8-bit."""
        if self.bytes_per_channel == 1:
            return
        if self.bytes_per_channel != 2:
            raise ValueError("convert_to_8bpp: invalid bytes per channel")
        scaled = self.data.astype(np.uint32) * 10 // 1285
        self.data = (scaled & 0xFF).astype(np.uint8)

    def copy_from(self, source: "PixelImage", source_x: int, source_y: int,
                  dest_x: int, dest_y: int, width: int, height: int) -> None:
        """Copy a rectangle from an image of the same format."""
        if source.bytes_per_channel != self.bytes_per_channel:
            raise ValueError("copy_from: incompatible bytes per channel")
        if source.channels != self.channels:
            raise ValueError("copy_from: incompatible channels")
        w = min(width, source.width - source_x, self.width - dest_x)
        h = min(height, source.height - source_y, self.height - dest_y)
        if w <= 0 or h <= 0:
            return
        self.data[dest_y:dest_y + h, dest_x:dest_x + w] = \
            source.data[source_y:source_y + h, source_x:source_x + w]

    def mask_region(self, top: int, bottom: int, left: int, right: int, mask_outside: bool = True) -> None:
        """Zero everything outside the rectangle (or inside it, if ``mask_outside`` is false)."""
        left = min(max(left, 0), self.width)
        right = min(max(right, 0), self.width)
        top = min(max(top, 0), self.height)
        bottom = min(max(bottom, 0), self.height)
        if mask_outside:
            self.data[:top] = 0
            self.data[top:bottom, :left] = 0
            self.data[top:bottom, right:] = 0
            self.data[bottom:] = 0
        else:
            self.data[top:bottom, left:right] = 0


class FloatImage:
    """A float32 interleaved working image of shape (height, width, channels)."""

    def __init__(self, width: int = 0, height: int = 0, channels: int = 0) -> None:
        self.data = np.zeros((height, width, channels), dtype=np.float32)

    @classmethod
    def from_array(cls, array) -> "FloatImage":
        image = cls()
        image.data = _as_3d(np.array(array, dtype=np.float32))
        return image

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def channels(self) -> int:
        return self.data.shape[2]

    def copy(self) -> "FloatImage":
        return FloatImage.from_array(self.data)

    def is_empty(self) -> bool:
        return self.data.size == 0

    def fill(self, value: float) -> None:
        self.data.fill(value)

    def scale(self, factor: float) -> None:
        self.data *= np.float32(factor)

    def min_max(self) -> Tuple[float, float]:
        """Return ``(minimum, maximum)``; an empty image gives ``(0, 0)``."""
        if self.is_empty():
            return 0.0, 0.0
        return float(self.data.min()), float(self.data.max())

    def normalize(self, a: float, b: float) -> None:
        """Linearly map the value range onto [a, b]; a constant image becomes zero."""
        if self.is_empty():
            return
        m, big_m = self.min_max()
        if m == big_m:
            self.fill(0)
            return
        if m == a and big_m == b:
            return
        self.data[...] = (self.data - np.float32(m)) / np.float32(big_m - m) * np.float32(b - a) + np.float32(a)

    def draw_image(self, sprite: "FloatImage", x0: int, y0: int = 0,
                   width: Optional[int] = None, height: Optional[int] = None) -> None:
        """Copy ``sprite`` into this image at (x0, y0), clipped to both images."""
        if self.is_empty():
            return
        if width is None or width == -1:
            width = sprite.width
        if height is None or height == -1:
            height = sprite.height
        if self.channels != sprite.channels:
            raise ValueError("draw_image requires identical formats")
        if sprite.is_empty() or sprite.data is self.data:
            return
        src_x = src_y = 0
        if y0 < 0:
            src_y = -y0
            height -= src_y
            y0 = 0
        if x0 < 0:
            src_x = -x0
            width -= src_x
            x0 = 0
        lx = min(width, self.width - x0, sprite.width - src_x)
        ly = min(height, self.height - y0, sprite.height - src_y)
        if lx <= 0 or ly <= 0:
            return
        self.data[y0:y0 + ly, x0:x0 + lx] = sprite.data[src_y:src_y + ly, src_x:src_x + lx]

    def linear_pix2d(self, fx: float, fy: float, v: int = 0) -> float:
        """Bilinearly interpolate channel ``v`` at (fx, fy), clamped to the image."""
        w1, h1 = self.width - 1, self.height - 1
        nfx = 0.0 if fx < 0 else (float(w1) if fx > w1 else float(fx))
        nfy = 0.0 if fy < 0 else (float(h1) if fy > h1 else float(fy))
        x, y = int(nfx), int(nfy)
        dx, dy = nfx - x, nfy - y
        nx = x + 1 if dx > 0 else x
        ny = y + 1 if dy > 0 else y
        d = self.data
        icc = float(d[y, x, v])
        inc = float(d[y, nx, v])
        icn = float(d[ny, x, v])
        inn = float(d[ny, nx, v])
        return icc + dx * (inc - icc + dy * (icc + inn - icn - inc)) + dy * (icn - icc)

    def copy_from(self, source: PixelImage, source_x: int, source_y: int,
                  dest_x: int, dest_y: int, width: int, height: int) -> None:
        """Copy a rectangle of integer pixels in, converting to float."""
        if source.bytes_per_channel not in _PIXEL_MAX:
            raise ValueError("copy_from: invalid bytes per channel")
        planes = min(self.channels, source.channels)
        w = min(width, self.width - dest_x, source.width - source_x)
        h = min(height, self.height - dest_y, source.height - source_y)
        if w <= 0 or h <= 0 or planes <= 0:
            return
        self.data[dest_y:dest_y + h, dest_x:dest_x + w, :planes] = \
            source.data[source_y:source_y + h, source_x:source_x + w, :planes]

    def copy_to(self, dest: PixelImage, source_x: int, source_y: int,
                dest_x: int, dest_y: int, width: int, height: int) -> None:
        """Round a rectangle to integers and write it into ``dest``."""
        max_value = _PIXEL_MAX.get(dest.bytes_per_channel)
        if max_value is None:
            raise ValueError("copy_to: invalid bytes per channel")
        planes = min(self.channels, dest.channels)
        w = min(width, self.width - source_x, dest.width - dest_x)
        h = min(height, self.height - source_y, dest.height - dest_y)
        if w <= 0 or h <= 0 or planes <= 0:
            return
        block = np.rint(self.data[source_y:source_y + h, source_x:source_x + w, :planes].astype(np.float64))
        values = np.minimum(block, max_value).astype(np.int64) & max_value
        dest.data[dest_y:dest_y + h, dest_x:dest_x + w, :planes] = values.astype(dest.data.dtype)