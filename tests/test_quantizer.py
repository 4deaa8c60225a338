import numpy as np
import pytest

from stencil_lib import (
    ColorQuantizer,
    EmptyBufferError,
    FidelityTier,
    TierParams,
    InvalidSettingsError,
    make_source_buffer,
    quantize,
)


def _gradient_photo(h: int = 24, w: int = 32) -> np.ndarray:
    """Smooth color ramps with a noisy texture, opaque."""
    rng = np.random.default_rng(42)
    ys, xs = np.mgrid[0:h, 0:w]
    pixels = np.empty((h, w, 4), dtype=np.uint8)
    pixels[..., 0] = (xs * 255 // (w - 1)).astype(np.uint8)
    pixels[..., 1] = (ys * 255 // (h - 1)).astype(np.uint8)
    pixels[..., 2] = rng.integers(0, 256, size=(h, w), dtype=np.uint8)
    pixels[..., 3] = 255
    return make_source_buffer(pixels)


def _checkerboard(size: int = 8) -> np.ndarray:
    ys, xs = np.mgrid[0:size, 0:size]
    white = (xs + ys) % 2 == 1
    pixels = np.zeros((size, size, 4), dtype=np.uint8)
    pixels[white, :3] = 255
    pixels[..., 3] = 255
    return make_source_buffer(pixels)


def _distinct_colors(pixels: np.ndarray) -> set:
    return {tuple(c) for c in pixels[..., :3].reshape(-1, 3).tolist()}


@pytest.mark.parametrize("tier", list(FidelityTier))
@pytest.mark.parametrize("levels", [2, 5, 10, 20])
def test_palette_is_bounded_by_levels(levels, tier) -> None:
    out = quantize(_gradient_photo(), levels, tier=tier)
    assert 1 <= len(_distinct_colors(out)) <= levels


@pytest.mark.parametrize("tier", list(FidelityTier))
def test_grayscale_output_is_gray_bands(tier) -> None:
    out = quantize(_gradient_photo(), 6, grayscale=True, tier=tier)
    assert np.array_equal(out[..., 0], out[..., 1])
    assert np.array_equal(out[..., 1], out[..., 2])
    assert len(_distinct_colors(out)) <= 6


@pytest.mark.parametrize("tier", list(FidelityTier))
@pytest.mark.parametrize("grayscale", [False, True])
def test_quantize_is_deterministic(tier, grayscale) -> None:
    src = _gradient_photo()
    first = quantize(src, 7, grayscale, tier)
    second = quantize(src.copy(), 7, grayscale, tier)
    assert first.tobytes() == second.tobytes()


@pytest.mark.parametrize("tier", list(FidelityTier))
def test_checkerboard_recovers_black_and_white(tier) -> None:
    src = _checkerboard()
    quantizer = ColorQuantizer(2, tier=tier)
    out = quantizer.quantize(src)
    assert np.array_equal(out, src)
    assert set(quantizer.colors) == {(0, 0, 0), (255, 255, 255)}

    centroids = quantizer.fit(src)
    assert centroids.shape == (2, 3)
    assert np.array_equal(centroids, [[0, 0, 0], [255, 255, 255]])


def test_checkerboard_recovers_black_and_white_in_grayscale() -> None:
    src = _checkerboard()
    out = quantize(src, 2, grayscale=True)
    assert np.array_equal(out, src)


def test_single_color_collapses_to_that_color() -> None:
    src = make_source_buffer(np.full((4, 4, 4), 255, dtype=np.uint8))
    quantizer = ColorQuantizer(10)
    out = quantizer.quantize(src)
    assert np.array_equal(out, src)
    assert quantizer.colors == ((255, 255, 255),)


@pytest.mark.parametrize("tier", list(FidelityTier))
def test_dimensions_and_alpha_are_preserved(tier) -> None:
    pixels = np.array(_gradient_photo(9, 13))
    pixels[..., 3] = np.arange(9 * 13, dtype=np.uint8).reshape(9, 13)
    src = make_source_buffer(pixels)
    out = quantize(src, 4, tier=tier)
    assert out.shape == src.shape
    assert np.array_equal(out[..., 3], src[..., 3])


def test_low_tier_assigns_every_pixel() -> None:
    # Stride sampling only skips pixels while fitting; the output still
    # maps each pixel to its nearest centroid, so a lone bright pixel that
    # the sample never saw ends up in the bright cluster.
    pixels = np.zeros((8, 8, 4), dtype=np.uint8)
    pixels[..., 3] = 255
    pixels[:, 4:, :3] = 200
    pixels[0, 1, :3] = 220
    src = make_source_buffer(pixels)
    out = quantize(src, 2, tier=FidelityTier.LOW)
    assert out[0, 1, :3].tolist() == [200, 200, 200]
    assert np.all(out[:, :4, :3][np.arange(8) != 0] == 0)


def test_low_tier_uses_fewer_iterations() -> None:
    params = {
        FidelityTier.LOW: TierParams(sample_stride=2, max_iterations=1),
        FidelityTier.HIGH: TierParams(sample_stride=1, max_iterations=30),
    }
    low = ColorQuantizer(8, tier=FidelityTier.LOW, tier_params=params)
    low.quantize(_gradient_photo())
    assert low.iterations == 1

    high = ColorQuantizer(8, tier=FidelityTier.HIGH, tier_params=params)
    high.quantize(_gradient_photo())
    assert 1 <= high.iterations <= 30


def test_chunked_assignment_matches_single_pass() -> None:
    src = _gradient_photo()
    chunked = ColorQuantizer(6, chunk_size=37).quantize(src)
    whole = ColorQuantizer(6, chunk_size=1 << 20).quantize(src)
    assert chunked.tobytes() == whole.tobytes()


def test_empty_clusters_keep_their_centroid() -> None:
    samples = np.array([[0.0], [0.0], [10.0]])
    centroids = np.array([[0.0], [5.0], [10.0]])
    labels = np.array([0, 0, 2])
    updated = ColorQuantizer.update_centroids(samples, labels, centroids)
    assert updated.tolist() == [[0.0], [5.0], [10.0]]


def test_ties_go_to_lowest_centroid_index() -> None:
    quantizer = ColorQuantizer(2)
    labels = quantizer.assign(np.array([[5.0, 5.0, 5.0]]), np.array([[0.0, 0.0, 0.0], [10.0, 10.0, 10.0]]))
    assert labels.tolist() == [0]


def test_source_is_not_modified() -> None:
    src = _gradient_photo()
    before = src.copy()
    quantize(src, 3)
    assert np.array_equal(src, before)


def test_empty_buffer_is_rejected() -> None:
    with pytest.raises(EmptyBufferError):
        quantize(np.zeros((0, 0, 4), dtype=np.uint8), 4)


def test_invalid_tier_params() -> None:
    with pytest.raises(InvalidSettingsError):
        TierParams(sample_stride=0)
    with pytest.raises(InvalidSettingsError):
        TierParams(max_iterations=0)
