"""Run the denoising filter over an image on a pool of worker threads.

The image is split into overlapping blocks.  For each block, every worker
thread takes part in each stage of the filter, claiming rows through a shared
:class:`~greycdenoise.sync.Slices`, and a barrier keeps the threads in step
between stages.  Thread 0 also does the serial work: fetching and storing
blocks and computing the structure tensors.
"""

from __future__ import annotations

import math
import os
import threading
from typing import Callable, Iterator, List, Optional

import numpy as np

from .blocks import Blocks
from .greyc import (
    blur_along_angle,
    diffusion_tensors,
    finalize,
    init_for_angle,
    prepare_tensors,
)
from .image import FloatImage, PixelImage
from .settings import AlgorithmOptions, AlgorithmSettings
from .sync import Aborted, ProgressCounter, Slices, check_cancel

_MAX_OVERLAP = 100


def _angles(da: float) -> Iterator[float]:
    """Yield the directions, in degrees, that the blur is run along."""
    theta = (360 % int(da)) / 2.0
    while theta < 360:
        yield theta
        theta += da


def _as_pixel_image(image) -> PixelImage:
    if isinstance(image, PixelImage):
        return image
    return PixelImage.from_array(image)


class Algorithm:
    """Denoise an 8- or 16-bit image in place on background threads.

    Call :meth:`set_target` (and optionally :meth:`set_mask`), then
    :meth:`run`.  The result is written back into the target image.
    ``on_finished`` is called, from a worker thread, once processing ends,
    whether it succeeded, failed or was aborted.
    """

    def __init__(self, settings: Optional[AlgorithmSettings] = None,
                 options: Optional[AlgorithmOptions] = None,
                 on_finished: Optional[Callable[[], None]] = None) -> None:
        self.settings = settings if settings is not None else AlgorithmSettings()
        self.options = options if options is not None else AlgorithmOptions()
        self._on_finished = on_finished

        self._source = PixelImage()
        self._mask = PixelImage()

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._barrier: Optional[threading.Barrier] = None
        self._threads: List[threading.Thread] = []
        self._running = 0
        self._thread_count = 0
        self._finished = False
        self._error: Optional[str] = None
        self._progress = ProgressCounter()

        self._blocks = Blocks(limit_to_4096=False)
        self._slices = Slices()

        # Buffers shared by all worker threads while a block is processed.
        self._work: Optional[FloatImage] = None
        self._work_mask = PixelImage()
        self._g: Optional[FloatImage] = None
        self._g2: Optional[FloatImage] = None
        self._dest: Optional[FloatImage] = None

    # Configuration

    def set_target(self, image) -> None:
        """Set the image to denoise; it is shared, and overwritten with the result."""
        self._source = _as_pixel_image(image)

    def set_mask(self, mask) -> None:
        """Limit processing to pixels where ``mask`` is non-zero."""
        self._mask = _as_pixel_image(mask)

    @property
    def processed_channels(self) -> int:
        """Number of channels in the float working images."""
        return max(4, self._source.channels)

    # Control

    def run(self) -> None:
        """Start processing on background threads and return immediately."""
        if self.running():
            raise RuntimeError("Algorithm.run: already running")

        self._finish()

        s = self.settings
        if s.dl < 0 or s.da < 0 or s.gauss_prec < 0:
            raise ValueError("dl>0, da>0, gauss_prec>0")
        if int(s.da) == 0:
            raise ValueError("da must be at least 1")

        if not self._mask.is_empty() and (
                self._mask.width != self._source.width
                or self._mask.height != self._source.height):
            raise ValueError("Given mask and image have different dimensions")

        count = self.options.nb_threads
        if count <= 0:
            count = max(1, count + (os.cpu_count() or 1))

        self._stop.clear()
        self._progress.reset()
        self._error = None
        self._thread_count = count
        self._barrier = threading.Barrier(count)
        with self._lock:
            self._running = count

        self._threads = [
            threading.Thread(target=self._thread_main, args=(number,),
                             name=f"Processing thread {number}", daemon=True)
            for number in range(count)
        ]
        for thread in self._threads:
            thread.start()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker threads; return True if they have all exited."""
        deadline = None if timeout is None else threading.TIMEOUT_MAX and timeout
        for thread in list(self._threads):
            thread.join(deadline)
        return not any(thread.is_alive() for thread in self._threads)

    def running(self) -> bool:
        """True while any worker thread is still processing."""
        with self._lock:
            return self._running > 0

    def finished(self) -> bool:
        """True once processing has ended, until :meth:`run` or :meth:`abort`."""
        return self._finished

    def take_error(self) -> Optional[str]:
        """Return and clear the error that stopped processing, if any."""
        with self._lock:
            error, self._error = self._error, None
        return error

    def progress(self) -> float:
        """Fraction of the work done, from 0 to 1."""
        if self._finished:
            return 1.0
        s = self.settings
        if s.da <= 0:
            return 1.0
        factor = 2 * (360 / s.da) + 1
        max_counter = self._blocks.total_rows() * factor * s.iterations
        if max_counter == 0:
            return 1.0
        return min(self._progress.value() * 99.9 / max_counter, 99.9) / 100.0

    def abort(self) -> None:
        """Stop processing, wait for the threads and reset the state."""
        with self._lock:
            if self._running == 0:
                return
        self._stop.set()
        if self._barrier is not None:
            self._barrier.abort()
        self._finish()

    def close(self) -> None:
        """Abort any processing and release the threads."""
        self.abort()
        self._finish()

    def __enter__(self) -> "Algorithm":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Internals

    def _finish(self) -> None:
        for thread in self._threads:
            thread.join()
        self._threads = []
        self._progress.reset()
        self._stop.clear()
        self._finished = False
        self._barrier = None
        self._work = None
        self._work_mask = PixelImage()
        self._g = None
        self._g2 = None
        self._dest = None

    def _sync(self) -> None:
        """Wait until every worker reaches this point; raise if aborted."""
        check_cancel(self._stop)
        try:
            self._barrier.wait()
        except threading.BrokenBarrierError:
            raise Aborted() from None
        check_cancel(self._stop)

    def _thread_main(self, number: int) -> None:
        try:
            self._run_denoise(number)
        except Aborted:
            pass
        except Exception as exc:  # reported through take_error
            with self._lock:
                if self._error is None:
                    self._error = str(exc) or type(exc).__name__
            self._stop.set()
            if self._barrier is not None:
                self._barrier.abort()
        finally:
            with self._lock:
                self._running -= 1
                last = self._running == 0
            if last:
                self._finished = True
                if self._on_finished is not None:
                    self._on_finished()

    def _run_denoise(self, number: int) -> None:
        s = self.settings
        channels = self.processed_channels

        self._sync()
        if number == 0:
            # A guess at how far the blur reaches past each block.
            fsigma = 2 * math.sqrt(max(2 * s.amplitude, 0.0))
            overlap = min(int(s.gauss_prec * fsigma), _MAX_OVERLAP)
            self._blocks.load_from_source_image(self._source, overlap)
            self._blocks.delete_masked_blocks(self._mask)
            self._dest = FloatImage(self._blocks.max_block_width(),
                                    self._blocks.max_block_height(), channels)
        self._sync()

        for iteration in range(s.iterations):
            if number == 0:
                self._blocks.save_overlaps()
            for index in range(self._blocks.total_blocks()):
                if number == 0:
                    self._work = self._blocks.get_block(index, channels)
                    if self._mask.is_empty():
                        self._work_mask = PixelImage()
                    else:
                        self._work_mask = self._blocks.get_block_mask(self._mask, index)
                self._sync()
                self._denoise(number, iteration)
                self._sync()
                if number == 0:
                    self._blocks.store_block(self._work, index)

    def _denoise(self, number: int, iteration: int) -> None:
        s = self.settings
        stop = self._stop
        progress = self._progress
        slices = self._slices

        if number == 0:
            work = self._work
            slices.init(work.height)
            self._dest.fill(0)
            # A mask with nothing masked out is dropped so later stages skip it.
            if not self._work_mask.is_empty() and bool(np.all(self._work_mask.data)):
                self._work_mask = PixelImage()
            self._g = prepare_tensors(
                work,
                s.pre_blur if iteration == 0 else 0.0,
                s.alpha, s.sigma, s.gfact * s.input_scale,
                s.partial_stage_output, stop,
            )
        self._sync()

        if s.partial_stage_output != 0:
            return

        work = self._work
        self._sync()
        if number == 0:
            self._g2 = FloatImage(work.width, work.height, 4)
            slices.reset()
        self._sync()

        diffusion_tensors(self._g, self._g2, slices, s.sharpness, s.anisotropy, stop, progress)
        self._sync()

        # The structure tensors are no longer needed; their slot holds the step vectors.
        if number == 0:
            self._g = FloatImage(work.width, work.height, 4)
        self._sync()

        count = 0
        for theta in _angles(s.da):
            count += 1
            self._sync()
            if number == 0:
                slices.reset()
            self._sync()
            init_for_angle(self._g2, self._g, slices, theta, s.dl, stop, progress)

            self._sync()
            if number == 0:
                slices.reset()
            self._sync()
            blur_along_angle(work, self._g, self._work_mask, self._dest, slices,
                             s.alt_amplitude, s.amplitude, s.dl, s.gauss_prec,
                             s.interpolation, s.fast_approx, stop, progress)

        self._sync()
        self._sync()
        if number == 0:
            slices.reset()
        self._sync()
        finalize(self._dest, work, count, self._work_mask, slices)
        self._sync()