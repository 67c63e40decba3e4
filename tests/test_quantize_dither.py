import numpy as np
import pytest

from pixelart.dither import (
    floyd_steinberg_dither,
    generate_bayer_matrix,
    normalize_bayer_matrix,
    normalize_dithering_ratio,
    ordered_dither,
    sharpen,
)
from pixelart.errors import ProcessingError
from pixelart.quantize import (
    build_palette,
    generate_exact_palette,
    generate_palette,
    hex_to_rgb,
    kmeans_palette,
    map_to_palette,
    octree_palette,
    palette_to_hex,
    quantize_image,
)


def _colors(img):
    return {tuple(c) for c in img.reshape(-1, 3).tolist()}


def test_solid_red_palette(solid_red):
    palette = generate_palette(solid_red, 16)
    assert palette.tolist() == [[255, 0, 0]]
    assert palette_to_hex(palette) == ["#ff0000"]


def test_palette_is_capped_and_ordered_by_frequency(gradient):
    palette = generate_palette(gradient, 16)
    assert 1 <= len(palette) <= 16
    assert np.all((palette % 32 == 0) | (palette == 255))


def test_palette_ties_keep_first_seen_order():
    img = np.array([[[0, 0, 0], [255, 255, 255]]], dtype=np.uint8)
    assert palette_to_hex(generate_palette(img, 4)) == ["#000000", "#ffffff"]
    img = np.array([[[0, 0, 0], [255, 255, 255], [255, 255, 255]]], dtype=np.uint8)
    assert palette_to_hex(generate_palette(img, 4)) == ["#ffffff", "#000000"]


def test_palette_requires_positive_size(solid_red):
    with pytest.raises(ProcessingError):
        generate_palette(solid_red, 0)


def test_map_to_palette_uses_nearest_colour():
    img = np.array([[[10, 10, 10], [240, 250, 245]]], dtype=np.uint8)
    palette = np.array([[0, 0, 0], [255, 255, 255]], dtype=np.uint8)
    out = map_to_palette(img, palette)
    assert out.tolist() == [[[0, 0, 0], [255, 255, 255]]]


def test_quantize_image_returns_palette_colours(gradient):
    mapped, palette = quantize_image(gradient, 8)
    assert _colors(mapped) <= {tuple(c) for c in palette.tolist()}


def test_exact_palette_orders_by_count():
    img = np.array([[[1, 2, 3], [9, 9, 9], [9, 9, 9], [1, 2, 3], [4, 5, 6], [9, 9, 9]]], dtype=np.uint8)
    assert generate_exact_palette(img).tolist() == [[9, 9, 9], [1, 2, 3], [4, 5, 6]]


def test_octree_solid_and_capped(solid_red, gradient):
    assert octree_palette(solid_red, 16).tolist() == [[255, 0, 0]]
    for size in (1, 4, 16, 64):
        palette = octree_palette(gradient, size)
        assert 1 <= len(palette) <= size
        assert len({tuple(c) for c in palette.tolist()}) == len(palette)


def test_octree_merges_close_colours():
    img = np.array([[[0, 0, 0], [2, 2, 2], [255, 255, 255], [253, 253, 253]]], dtype=np.uint8)
    # 階層7では4つの葉のまま、階層6で2つにまとまる
    assert octree_palette(img, 2).tolist() == [[1, 1, 1], [254, 254, 254]]


def test_kmeans_returns_exact_colours_when_few():
    img = np.zeros((4, 4, 3), dtype=np.uint8)
    img[:, 2:] = [200, 40, 10]
    img[0, 0] = [0, 0, 255]
    palette = kmeans_palette(img, 8)
    assert palette.tolist() == [[200, 40, 10], [0, 0, 0], [0, 0, 255]]


def test_kmeans_is_capped_and_deterministic(gradient):
    first = kmeans_palette(gradient, 6)
    assert 1 <= len(first) <= 6
    assert np.array_equal(first, kmeans_palette(gradient, 6))
    mapped, palette = quantize_image(gradient, 6, method="kmeans")
    assert np.array_equal(palette, first)
    assert _colors(mapped) <= {tuple(c) for c in palette.tolist()}


def test_build_palette_dispatch(solid_red):
    assert build_palette(solid_red, 4, "frequency").tolist() == [[255, 0, 0]]
    assert build_palette(solid_red, 4, "kmeans").tolist() == [[255, 0, 0]]
    with pytest.raises(ProcessingError):
        build_palette(solid_red, 4, "median_cut")
    with pytest.raises(ProcessingError):
        octree_palette(solid_red, 0)


def test_hex_to_rgb():
    assert hex_to_rgb("#ff8000") == (255, 128, 0)
    assert hex_to_rgb("00ff00") == (0, 255, 0)
    with pytest.raises(ValueError):
        hex_to_rgb("#fff")


def test_bayer_matrix_is_permutation():
    assert generate_bayer_matrix(2).tolist() == [[0, 2], [3, 1]]
    for size in (2, 4, 8, 16):
        m = generate_bayer_matrix(size)
        assert sorted(m.ravel().tolist()) == list(range(size * size))
    norm = normalize_bayer_matrix(generate_bayer_matrix(8))
    assert norm.min() == 0.0 and norm.max() == 1.0


def test_bayer_matrix_rejects_non_power_of_two():
    with pytest.raises(ValueError):
        generate_bayer_matrix(6)


@pytest.mark.parametrize(
    "raw, expected",
    [(0, 0.1), (-3, 0.1), (10, 5.0), (1.25, 1.3), (1.24, 1.2), ("2", 2.0), (1.0, 1.0)],
)
def test_dithering_ratio_normalisation(raw, expected):
    assert normalize_dithering_ratio(raw) == expected


def test_dithering_ratio_rejects_garbage():
    with pytest.raises(ValueError):
        normalize_dithering_ratio("abc")
    with pytest.raises(ValueError):
        normalize_dithering_ratio(float("nan"))


def test_ordered_dither_outputs_palette_colours(gradient):
    palette = generate_palette(gradient, 16)
    out = ordered_dither(gradient, palette)
    assert out.shape == gradient.shape
    assert _colors(out) <= {tuple(c) for c in palette.tolist()}


def test_ordered_dither_bands_match_whole_image(gradient):
    palette = generate_palette(gradient, 16)
    whole = ordered_dither(gradient, palette, ratio=1.5)
    bands = [
        ordered_dither(gradient[y0 : y0 + 150], palette, ratio=1.5, row_offset=y0)
        for y0 in range(0, gradient.shape[0], 150)
    ]
    assert np.array_equal(np.concatenate(bands, axis=0), whole)


def test_ordered_dither_scratch_buffer_gives_same_result(gradient):
    palette = generate_palette(gradient, 8)
    scratch = np.empty(gradient.shape, dtype=np.float64)
    assert np.array_equal(ordered_dither(gradient, palette, scratch=scratch), ordered_dither(gradient, palette))


def test_floyd_steinberg_mixes_two_colours():
    img = np.full((4, 4, 3), 128, dtype=np.uint8)
    palette = np.array([[0, 0, 0], [255, 255, 255]], dtype=np.uint8)
    out = floyd_steinberg_dither(img, palette)
    assert _colors(out) == {(0, 0, 0), (255, 255, 255)}


def test_floyd_steinberg_diffuses_by_hand():
    grey = np.array([[100, 84], [120, 106]], dtype=np.uint8)
    img = np.repeat(grey[:, :, None], 3, axis=2)
    palette = np.array([[0, 0, 0], [255, 255, 255]], dtype=np.uint8)
    out = floyd_steinberg_dither(img, palette)
    # 右上 84+100*7/16=127.75 で白、左下 151.25-127.25*3/16=127.390625 で黒、
    # 右下は右下方向の1/16まで足して 128.2 になり白
    assert out[..., 0].tolist() == [[0, 255], [0, 255]]
    assert np.all(out[..., 0] == out[..., 1])


def test_floyd_steinberg_clamps_before_search():
    img = np.repeat(np.array([[255, 255, 70]], dtype=np.uint8)[:, :, None], 3, axis=2)
    palette = np.array([[0, 0, 0], [200, 200, 200]], dtype=np.uint8)
    # 中央は 279.06 を 255 に切ってから誤差 55 を渡すので右端は 94.06 で黒。
    # 切らずに 79.06 を渡すと 104.59 で 200 側になる
    out = floyd_steinberg_dither(img, palette)
    assert out[..., 0].tolist() == [[200, 200, 0]]


def test_dither_requires_palette(gradient):
    empty = np.zeros((0, 3), dtype=np.uint8)
    with pytest.raises(ProcessingError):
        ordered_dither(gradient, empty)
    with pytest.raises(ProcessingError):
        floyd_steinberg_dither(gradient[:2, :2], empty)


def test_sharpen_keeps_flat_images_and_borders():
    flat = np.full((5, 5, 3), 90, dtype=np.uint8)
    assert np.array_equal(sharpen(flat), flat)
    tiny = np.arange(12, dtype=np.uint8).reshape(2, 2, 3)
    assert np.array_equal(sharpen(tiny), tiny)

    img = np.zeros((3, 3, 3), dtype=np.uint8)
    img[1, 1] = 100
    out = sharpen(img)
    assert out[1, 1].tolist() == [200, 200, 200]
    assert out[0, 0].tolist() == [0, 0, 0]
