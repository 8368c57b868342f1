import threading

import numpy as np
import pytest

from greycdenoise.deriche import deriche
from greycdenoise.greyc import (
    blur_along_angle,
    diffusion_tensors,
    finalize,
    init_for_angle,
    prepare_tensors,
    structure_tensor,
    symmetric_eigen,
)
from greycdenoise.image import FloatImage, PixelImage
from greycdenoise.sync import Aborted, ProgressCounter, Slices


def _random_image(width=6, height=5, channels=3, seed=0):
    rng = np.random.default_rng(seed)
    return FloatImage.from_array(rng.uniform(0, 255, (height, width, channels)))


def _stopped():
    event = threading.Event()
    event.set()
    return event


def _tensors(img):
    G = prepare_tensors(img.copy(), 0.0, 0.6, 1.1, 1.0, 0, None)
    G2 = FloatImage(img.width, img.height, 4)
    diffusion_tensors(G, G2, None, 0.7, 0.3)
    return G, G2


def _weights(img, theta=30.0, dl=0.8):
    _, G2 = _tensors(img)
    W = FloatImage(img.width, img.height, 4)
    init_for_angle(G2, W, None, theta, dl)
    return W


# structure_tensor

def test_structure_tensor_of_constant_image_is_zero():
    img = FloatImage.from_array(np.full((5, 6, 3), 42.0))
    res = structure_tensor(img)
    assert res.data.shape == (5, 6, 4)
    assert np.all(res.data == 0)


def test_structure_tensor_of_empty_image_is_empty():
    assert structure_tensor(FloatImage()).is_empty()


def test_structure_tensor_horizontal_ramp():
    ramp = np.tile(np.arange(6, dtype=np.float32), (5, 1))
    res = structure_tensor(FloatImage.from_array(ramp))
    assert np.allclose(res.data[:, 1:-1, 0], 1.0)
    assert np.allclose(res.data[:, 0, 0], 0.5)
    assert np.all(res.data[..., 1] == 0)
    assert np.all(res.data[..., 2] == 0)


def test_structure_tensor_transpose_swaps_xx_and_yy():
    img = _random_image()
    transposed = FloatImage.from_array(img.data.transpose(1, 0, 2))
    res = structure_tensor(img)
    res_t = structure_tensor(transposed)
    assert np.allclose(res_t.data[..., 0], res.data[..., 2].T, rtol=1e-5)
    assert np.allclose(res_t.data[..., 2], res.data[..., 0].T, rtol=1e-5)
    assert np.allclose(res_t.data[..., 1], res.data[..., 1].T, rtol=1e-5, atol=1e-3)


def test_structure_tensor_sums_over_channels():
    single = _random_image(channels=1)
    double = FloatImage.from_array(np.concatenate([single.data, single.data], axis=2))
    one = structure_tensor(single)
    two = structure_tensor(double)
    assert np.allclose(two.data, 2 * one.data, rtol=1e-5)


# symmetric_eigen

@pytest.mark.parametrize("seed", [1, 2, 3])
def test_symmetric_eigen_satisfies_eigen_equation(seed):
    rng = np.random.default_rng(seed)
    a, b, c = rng.uniform(-5, 5, 3)
    values, vectors = symmetric_eigen([a, b, b, c])
    matrix = np.array([[a, b], [b, c]])
    for k in range(2):
        vec = vectors[2 * k:2 * k + 2].astype(np.float64)
        assert np.linalg.norm(vec) == pytest.approx(1.0, abs=1e-5)
        assert np.allclose(matrix @ vec, values[k] * vec, atol=1e-3)
    assert values[0] >= values[1]
    assert values[0] + values[1] == pytest.approx(a + c, abs=1e-4)


def test_symmetric_eigen_batch_matches_single_calls():
    rng = np.random.default_rng(7)
    abc = rng.uniform(0, 3, (4, 3))
    batch = np.stack([abc[:, 0], abc[:, 1], abc[:, 1], abc[:, 2]], axis=-1)
    values, vectors = symmetric_eigen(batch)
    assert values.shape == (4, 2)
    assert vectors.shape == (4, 4)
    for i in range(4):
        v, w = symmetric_eigen(batch[i])
        assert np.allclose(values[i], v)
        assert np.allclose(vectors[i], w)


def test_symmetric_eigen_zero_tensor_uses_zero_angles():
    values, vectors = symmetric_eigen([0, 0, 0, 0])
    assert np.all(values == 0)
    assert np.allclose(vectors, [1, 0, 1, 0])


# prepare_tensors

def test_prepare_tensors_empty_image_returns_none():
    assert prepare_tensors(FloatImage(), 0.0, 0.6, 1.1, 1.0, 0, None) is None


def test_prepare_tensors_stage_one_without_preblur_leaves_image():
    img = _random_image()
    before = img.data.copy()
    assert prepare_tensors(img, 0.0, 0.6, 1.1, 1.0, 1, None) is None
    assert np.array_equal(img.data, before)


def test_prepare_tensors_stage_one_ignores_stop_request():
    img = _random_image()
    assert prepare_tensors(img, 0.0, 0.6, 1.1, 1.0, 1, _stopped()) is None


def test_prepare_tensors_stage_two_returns_alpha_blur():
    img = _random_image()
    expected = img.copy()
    deriche(expected, 0.6)
    assert prepare_tensors(img, 0.0, 0.6, 1.1, 1.0, 2, None) is None
    assert np.allclose(img.data, expected.data)


def test_prepare_tensors_stage_three_normalizes_for_negative_factor():
    img = _random_image()
    prepare_tensors(img, 0.0, 0.6, 1.1, -5.0, 3, None)
    assert img.data.min() == pytest.approx(0.0, abs=1e-4)
    assert img.data.max() == pytest.approx(5.0, abs=1e-4)


def test_prepare_tensors_full_matches_composition():
    img = _random_image()
    blurred = img.copy()
    deriche(blurred, 0.6)
    blurred.scale(2.0)
    expected = structure_tensor(blurred)
    deriche(expected, 1.1)

    work = img.copy()
    G = prepare_tensors(work, 0.0, 0.6, 1.1, 2.0, 0, None)
    assert G.data.shape == (img.height, img.width, 4)
    assert np.allclose(G.data, expected.data, rtol=1e-5, atol=1e-3)
    assert np.all(G.data[..., 3] == 0)
    assert np.array_equal(work.data, img.data)


def test_prepare_tensors_stage_four_puts_tensors_in_image():
    img = _random_image()
    G = prepare_tensors(img, 0.0, 0.6, 1.1, 1.0, 4, None)
    assert img.channels == 4
    assert np.array_equal(img.data, G.data)


def test_prepare_tensors_raises_when_stopped():
    with pytest.raises(Aborted):
        prepare_tensors(_random_image(), 0.0, 0.6, 1.1, 1.0, 0, _stopped())


# diffusion_tensors

def test_diffusion_tensors_are_positive_definite():
    G = prepare_tensors(_random_image(), 0.0, 0.6, 1.1, 1.0, 0, None)
    assert G.data.shape == (5, 6, 4)
    G2 = FloatImage(G.width, G.height, 4)
    diffusion_tensors(G, G2, None, 0.7, 0.3)
    assert np.all(G2.data[..., 0] > 0)
    assert np.all(G2.data[..., 2] > 0)
    determinant = G2.data[..., 0] * G2.data[..., 2] - G2.data[..., 1] ** 2
    assert np.all(determinant >= -1e-6)


def test_diffusion_tensors_isotropic_without_anisotropy():
    G = prepare_tensors(_random_image(), 0.0, 0.6, 1.1, 1.0, 0, None)
    G2 = FloatImage(G.width, G.height, 4)
    diffusion_tensors(G, G2, None, 0.7, 0.0)
    assert np.allclose(G2.data[..., 1], 0, atol=1e-5)
    assert np.allclose(G2.data[..., 0], G2.data[..., 2], rtol=1e-4)


def test_diffusion_tensors_counts_rows_and_uses_slices():
    G = prepare_tensors(_random_image(), 0.0, 0.6, 1.1, 1.0, 0, None)
    G2 = FloatImage(G.width, G.height, 4)
    progress = ProgressCounter()
    slices = Slices(G.height)
    diffusion_tensors(G, G2, slices, 0.7, 0.3, None, progress)
    assert progress.value() == G.height
    assert np.all(G2.data[..., 0] > 0)

    G2.fill(-1)
    diffusion_tensors(G, G2, slices, 0.7, 0.3, None, progress)
    assert np.all(G2.data == -1)
    assert progress.value() == G.height


def test_diffusion_tensors_raises_when_stopped():
    G = FloatImage(3, 3, 4)
    with pytest.raises(Aborted):
        diffusion_tensors(G, FloatImage(3, 3, 4), None, 0.7, 0.3, _stopped())


# init_for_angle

def test_init_for_angle_steps_have_length_dl():
    _, G2 = _tensors(_random_image())
    W = FloatImage(G2.width, G2.height, 4)
    W.fill(7)
    init_for_angle(G2, W, None, 45.0, 0.8)
    step = np.hypot(W.data[..., 1], W.data[..., 2])
    assert np.allclose(step, 0.8, rtol=1e-3)
    assert np.all(W.data[..., 0] > 0)
    assert np.all(W.data[..., 3] == 7)


@pytest.mark.parametrize("theta, axis", [(0.0, 1), (90.0, 2)])
def test_init_for_angle_identity_tensor_follows_direction(theta, axis):
    G = FloatImage(4, 3, 4)
    G.data[..., 0] = 1
    G.data[..., 2] = 1
    W = FloatImage(4, 3, 4)
    init_for_angle(G, W, None, theta, 0.5)
    other = 3 - axis
    assert np.allclose(W.data[..., axis], 0.5, rtol=1e-4)
    assert np.allclose(W.data[..., other], 0, atol=1e-6)
    assert np.allclose(W.data[..., 0], 1, rtol=1e-4)


def test_init_for_angle_raises_when_stopped():
    G = FloatImage(3, 3, 4)
    with pytest.raises(Aborted):
        init_for_angle(G, FloatImage(3, 3, 4), None, 0.0, 0.8, _stopped())


# blur_along_angle

@pytest.mark.parametrize("interpolation", [0, 1, 2])
@pytest.mark.parametrize("fast_approx", [True, False])
def test_blur_keeps_constant_image_constant(interpolation, fast_approx):
    img = FloatImage.from_array(np.full((5, 6, 3), 100.0))
    W = _weights(_random_image(), theta=30.0)
    dest = FloatImage(6, 5, 3)
    blur_along_angle(img, W, None, dest, None, True, 10.0, 0.8, 2.0,
                     interpolation, fast_approx)
    assert np.allclose(dest.data, 100.0, rtol=1e-4)


@pytest.mark.parametrize("interpolation", [0, 1, 2])
def test_blur_result_stays_within_image_range(interpolation):
    img = _random_image(seed=3)
    W = _weights(img, theta=60.0)
    dest = FloatImage(img.width, img.height, img.channels)
    blur_along_angle(img, W, None, dest, None, False, 10.0, 0.8, 2.0,
                     interpolation, True)
    assert dest.data.min() >= img.data.min() - 1e-3
    assert dest.data.max() <= img.data.max() + 1e-3


def test_blur_with_zero_amplitude_copies_image():
    img = _random_image()
    W = _weights(img)
    dest = FloatImage(img.width, img.height, img.channels)
    blur_along_angle(img, W, None, dest, None, True, 0.0, 0.8, 2.0, 0, True)
    assert np.array_equal(dest.data, img.data)


def test_blur_accumulates_into_larger_dest():
    img = _random_image()
    W = _weights(img)
    dest = FloatImage(img.width + 2, img.height + 1, img.channels + 1)
    dest.fill(1)
    blur_along_angle(img, W, None, dest, None, True, 0.0, 0.8, 2.0, 0, True)
    assert np.allclose(dest.data[:img.height, :img.width, :img.channels], img.data + 1)
    assert np.all(dest.data[:, :, img.channels] == 1)
    assert np.all(dest.data[img.height:] == 1)


def test_blur_skips_masked_pixels():
    img = _random_image()
    W = _weights(img)
    mask_array = np.zeros((img.height, img.width), dtype=np.uint8)
    mask_array[2, 3] = 255
    mask = PixelImage.from_array(mask_array)
    dest = FloatImage(img.width, img.height, img.channels)
    blur_along_angle(img, W, mask, dest, None, True, 10.0, 0.8, 2.0, 0, True)
    touched = np.any(dest.data != 0, axis=2)
    assert touched[2, 3]
    assert touched.sum() == 1


def test_blur_counts_progress_per_row():
    img = _random_image()
    W = _weights(img)
    dest = FloatImage(img.width, img.height, img.channels)
    progress = ProgressCounter()
    blur_along_angle(img, W, None, dest, Slices(img.height), True, 5.0, 0.8, 2.0,
                     0, True, None, progress)
    assert progress.value() == img.height


def test_blur_raises_when_stopped():
    img = _random_image()
    W = _weights(img)
    dest = FloatImage(img.width, img.height, img.channels)
    with pytest.raises(Aborted):
        blur_along_angle(img, W, None, dest, None, True, 5.0, 0.8, 2.0, 0, True,
                         _stopped())


# finalize

def test_finalize_divides_by_count():
    img = _random_image()
    dest = FloatImage.from_array(img.data * 4)
    out = FloatImage(img.width, img.height, img.channels)
    finalize(dest, out, 4)
    assert np.allclose(out.data, img.data, rtol=1e-6)


def test_finalize_respects_mask():
    img = _random_image()
    dest = FloatImage.from_array(img.data * 4)
    out = FloatImage(img.width, img.height, img.channels)
    out.fill(-1)
    mask_array = np.full((img.height, img.width), 255, dtype=np.uint8)
    mask_array[1] = 0
    finalize(dest, out, 4, PixelImage.from_array(mask_array))
    assert np.all(out.data[1] == -1)
    assert np.allclose(out.data[0], img.data[0], rtol=1e-6)


def test_full_cpu_pass_preserves_constant_image():
    img = FloatImage.from_array(np.full((5, 6, 4), 80.0))
    G, G2 = _tensors(img)
    dest = FloatImage(img.width, img.height, img.channels)
    W = FloatImage(img.width, img.height, 4)
    angles = list(np.arange(0.0, 360.0, 90.0))
    for theta in angles:
        init_for_angle(G2, W, Slices(img.height), theta, 0.8)
        blur_along_angle(img, W, None, dest, Slices(img.height), True, 20.0, 0.8,
                         2.0, 1, True)
    finalize(dest, img, len(angles), None, Slices(img.height))
    assert np.allclose(img.data, 80.0, rtol=1e-4)