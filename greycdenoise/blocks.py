"""Split an image into overlapping blocks so it can be processed piece by piece.

Blocks overlap to avoid seams at their edges.  The input of every block must
be the original image data, not the output of blocks processed earlier, so
the overlapping strips of each block are backed up before processing starts
and restored whenever the block is fetched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

from .image import FloatImage, PixelImage

MAX_PIXELS_PER_BLOCK = 5_000_000
TEXTURE_LIMIT = 4096


@dataclass(frozen=True)
class Rect:
    """A rectangle: top row, left column, width and height."""

    t: int
    l: int
    width: int
    height: int

    @property
    def bottom(self) -> int:
        return self.t + self.height

    @property
    def right(self) -> int:
        return self.l + self.width


class Blocks:
    """The set of blocks an image is processed in.

    Each block is a rectangle of the source image including its overlap; its
    region is the part, relative to the block, that is written back.
    """

    def __init__(self, limit_to_4096: bool = False) -> None:
        self.limit_to_4096 = limit_to_4096
        self._overlap = 0
        self._blocks: List[Rect] = []
        self._regions: List[Rect] = []
        self._source = PixelImage()
        self._horizontal = PixelImage()
        self._vertical = PixelImage()

    @property
    def blocks(self) -> Tuple[Rect, ...]:
        """Block rectangles in source coordinates, overlap included."""
        return tuple(self._blocks)

    @property
    def regions(self) -> Tuple[Rect, ...]:
        """The written-back region of each block, relative to the block."""
        return tuple(self._regions)

    @property
    def overlap_pixels(self) -> int:
        return self._overlap

    def load_from_source_image(self, source: PixelImage, overlap_pixels: int,
                               max_pixels_per_block: Optional[int] = None) -> None:
        """Divide ``source`` into blocks; the image is shared, not copied."""
        if max_pixels_per_block is None or max_pixels_per_block == -1:
            max_pixels_per_block = MAX_PIXELS_PER_BLOCK

        self._source = source
        self._overlap = overlap_pixels
        self._blocks = []
        self._regions = []

        width, height = source.width, source.height
        if width == 0 or height == 0:
            return

        slice_width = width
        if self.limit_to_4096:
            slice_width = min(TEXTURE_LIMIT - overlap_pixels * 2, slice_width)
        if slice_width <= 0:
            raise ValueError("overlap is too large for the block size limit")
        slice_height = max_pixels_per_block // slice_width
        if slice_height <= 0:
            raise ValueError("max_pixels_per_block is smaller than one row of a block")

        for top in range(0, height, slice_height):
            bottom = min(top + slice_height, height)
            top_buffer = min(overlap_pixels, top)
            bottom_buffer = min(overlap_pixels, height - bottom)
            for left in range(0, width, slice_width):
                right = min(left + slice_width, width)
                left_buffer = min(overlap_pixels, left)
                right_buffer = min(overlap_pixels, width - right)

                self._blocks.append(Rect(
                    t=top - top_buffer,
                    l=left - left_buffer,
                    width=(right - left) + left_buffer + right_buffer,
                    height=(bottom - top) + top_buffer + bottom_buffer,
                ))
                self._regions.append(Rect(
                    t=top_buffer, l=left_buffer,
                    width=right - left, height=bottom - top,
                ))

    def delete_masked_blocks(self, mask: PixelImage) -> None:
        """Drop blocks whose region is entirely zero in ``mask``."""
        if mask.is_empty():
            return
        kept = []
        for block, region in zip(self._blocks, self._regions):
            y0 = block.t + region.t
            x0 = block.l + region.l
            area = mask.data[y0:y0 + region.height, x0:x0 + region.width, 0]
            if area.any():
                kept.append((block, region))
        self._blocks = [b for b, _ in kept]
        self._regions = [r for _, r in kept]

    def save_overlaps(self) -> None:
        """Back up the overlapping strips of every block from the source."""
        source = self._source
        ov = self._overlap
        count = len(self._blocks)
        bpc = source.bytes_per_channel
        channels = source.channels

        self._horizontal = PixelImage(self.max_block_width(), count * ov * 2, bpc, channels)
        self._vertical = PixelImage(count * ov * 2, self.max_block_height(), bpc, channels)

        for index, (r, br) in enumerate(zip(self._blocks, self._regions)):
            top_store = index * 2 * ov
            bottom_store = (index * 2 + 1) * ov
            self._horizontal.copy_from(source, r.l, r.t, 0, top_store, r.width, ov)
            self._horizontal.copy_from(source, r.l, r.t + br.t + br.height,
                                       0, bottom_store, r.width, ov)
            self._vertical.copy_from(source, r.l, r.t, top_store, 0, ov, r.height)
            self._vertical.copy_from(source, r.l + br.l + br.width, r.t,
                                     bottom_store, 0, ov, r.height)

    def get_block(self, index: int, channels: int) -> FloatImage:
        """Return block ``index`` as a float image with the original overlaps."""
        r = self._blocks[index]
        br = self._regions[index]
        ov = self._overlap
        work = FloatImage(r.width, r.height, channels)

        work.copy_from(self._source, r.l, r.t, 0, 0, r.width, r.height)

        top_store = index * 2 * ov
        bottom_store = (index * 2 + 1) * ov
        work.copy_from(self._horizontal, 0, top_store, 0, 0, r.width, ov)
        work.copy_from(self._horizontal, 0, bottom_store, 0, br.t + br.height, r.width, ov)
        work.copy_from(self._vertical, top_store, 0, 0, 0, ov, r.height)
        work.copy_from(self._vertical, bottom_store, 0, br.l + br.width, 0, ov, r.height)
        return work

    def get_block_mask(self, source_mask: PixelImage, index: int) -> PixelImage:
        """Return the part of ``source_mask`` covering block ``index``."""
        r = self._blocks[index]
        return source_mask.view(r.l, r.t, r.width, r.height)

    def store_block(self, work_image: FloatImage, index: int) -> None:
        """Write the region of a processed block back into the source image."""
        r = self._blocks[index]
        br = self._regions[index]
        work_image.copy_to(self._source, br.l, br.t, r.l + br.l, r.t + br.t,
                           br.width, br.height)

    def total_rows(self) -> int:
        return sum(b.height for b in self._blocks)

    def total_cols(self) -> int:
        return sum(b.width for b in self._blocks)

    def total_blocks(self) -> int:
        return len(self._blocks)

    def max_block_width(self) -> int:
        return max((b.width for b in self._blocks), default=0)

    def max_block_height(self) -> int:
        return max((b.height for b in self._blocks), default=0)