# greycdenoise

Edge-preserving image denoising by anisotropic diffusion. The image is split
into overlapping blocks. For each block a smoothed structure tensor field is
computed, and every pixel is averaged along curves that follow the image's
contours at several angles. Edges stay sharp and flat regions are smoothed.

## Installation

```
pip install .
```

The only runtime dependency is numpy.

## Usage

Images are held as `greycdenoise.image.PixelImage`. This is an 8- or 16-bit
integer image with interleaved channels and shape `(height, width, channels)`.
`PixelImage.from_array` wraps a `uint8` or `uint16` numpy array without
copying it. `Algorithm` works on worker threads and writes the result back
into that array.

```python
import numpy as np
from greycdenoise.algorithm import Algorithm
from greycdenoise.image import PixelImage
from greycdenoise.settings import AlgorithmOptions, AlgorithmSettings

pixels = np.random.default_rng(0).integers(0, 256, (64, 64, 3), dtype=np.uint8)
image = PixelImage.from_array(pixels)

settings = AlgorithmSettings(amplitude=40.0, iterations=1)
options = AlgorithmOptions(nb_threads=2)

with Algorithm(settings, options) as algo:
    algo.set_target(image)
    algo.run()
    algo.wait()
    error = algo.take_error()
    if error:
        raise RuntimeError(error)
# pixels now holds the denoised image
```

The `Algorithm` interface:

- `run()` starts the worker threads and returns at once. It raises
  `RuntimeError` if a run is already in progress. It raises `ValueError` if
  `dl`, `da` or `gauss_prec` is negative, if `da` is below 1, or if the mask
  and the image differ in size.
- `wait(timeout=None)` joins the workers. It returns `True` once they have
  all exited.
- `running()` tells whether any worker is still active.
- `finished()` becomes true when a run ends.
- `progress()` returns the fraction done, between 0 and 1.
- `abort()` stops the workers and resets the state.
- `close()`, or leaving the `with` block, also does this.
- `take_error()` returns the message of an exception raised in a worker, or
  `None`, and clears it.
- `on_finished` is an optional callable given to the constructor. A worker
  thread calls it once processing ends, whether the run succeeded, failed or
  was aborted.

`set_mask` takes a `PixelImage` or an array the same size as the image.
Processing is then limited to pixels where the mask's first channel is
non-zero. Blocks that are completely masked out are skipped.

### Settings

`greycdenoise.settings.AlgorithmSettings` is a dataclass holding everything
that affects the output:

- `amplitude`, `sharpness`, `anisotropy`, `alpha`, `sigma` and `gfact`;
  `input_scale` multiplies `gfact`.
- `dl` and `da`, the step length and the angle step in degrees.
- `gauss_prec`.
- `interpolation`: 0 nearest, 1 bilinear, any other value Runge-Kutta.
- `iterations`, `fast_approx`, `alt_amplitude` and `pre_blur`.
- `partial_stage_output`, which stops after an intermediate stage.

`as_string()` lists the numeric values that differ from the defaults as
flags, followed by `-fast` and `-alt` when those are on. The defaults with
`amplitude=40` give `-dt 40 -fast -alt`.

`AlgorithmOptions` holds what does not affect the output:

- `nb_threads`: `0` means one thread per processor, a positive value means
  that many threads, and a negative value means that many fewer than the
  processor count, with at least one.
- `display_mode`, a `DisplayMode` value (`SINGLE`, `INSIDE` or
  `SIDE_BY_SIDE`). It is carried as configuration only.

### Building blocks

The lower-level pieces can be used on their own:

- `greycdenoise.image.FloatImage` is a float32 working image. It supports
  fill, scale, min/max, normalisation, `draw_image`, bilinear sampling
  (`linear_pix2d`), and copying to and from `PixelImage`. `copy_to` rounds
  and clamps the values.
- `greycdenoise.image.PixelImage` supports sub-views, 16-to-8-bit
  conversion, rectangle copies and `mask_region`.
- `greycdenoise.deriche`:
  - `deriche(img, sigma, axis=None)` applies a recursive Gaussian blur in
    place, along `'x'`, `'y'`, or both.
  - `deriche_coefficients` returns its filter weights.
- `greycdenoise.gaussian`:
  - `gaussian_blur_estimation(img, a)` approximates a Gaussian blur with
    three box passes per axis over an edge-padded copy of the image.
  - `box_blur` applies a single fractional-width box pass.
  - `scale_alpha` maps a blur radius to a box width.
- `greycdenoise.greyc` provides the individual filter stages:
  - `structure_tensor` and `symmetric_eigen`.
  - `prepare_tensors`, which returns the smoothed tensor field.
  - `diffusion_tensors`.
  - `init_for_angle`.
  - `blur_along_angle`.
  - `finalize`.
- `greycdenoise.blocks.Blocks` splits an image into overlapping blocks. It
  backs up their overlaps, hands each block out as a `FloatImage`, and writes
  the processed regions back.
- `greycdenoise.sync` holds the cancellation and coordination helpers:
  - `Aborted` and `check_cancel`, which work with a `threading.Event`.
  - `ProgressCounter`, a thread-safe counter.
  - `Slices`, which hands each image row to exactly one thread.

## What it does not do

- The package is a library only: it has no command-line program.
- It does not read or write image files; load pixels into a numpy array
  yourself.
- All processing runs on the CPU in the calling process.
- There is no GPU path and no separate worker process.

## Running the tests

```
pip install .[test]
pytest
```