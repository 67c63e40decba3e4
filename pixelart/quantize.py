"""パレット生成（頻度・八分木・k-means）と、パレットへの最短距離マッピング。"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, Sequence, Tuple

import cv2
import numpy as np

from .errors import ProcessingError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 2048  # 距離行列のメモリ肥大化を防ぐチャンクサイズ
QUANT_STEP = 32
DEFAULT_MAX_COLORS = 16
KMEANS_SAMPLE_LIMIT = 100_000  # k-meansに渡す画素数の上限

EQUAL_WEIGHTS: Tuple[float, float, float] = (1.0, 1.0, 1.0)
PERCEPTUAL_WEIGHTS: Tuple[float, float, float] = (0.299, 0.587, 0.114)


def _chunk_ranges(length: int, chunk_size: int) -> Iterable[Tuple[int, int]]:
    """0-length区間を返さないチャンク分割のイテレータ。"""
    for start in range(0, length, chunk_size):
        end = min(length, start + chunk_size)
        yield start, end


def generate_palette(pixels: np.ndarray, max_colors: int = DEFAULT_MAX_COLORS) -> np.ndarray:
    """各チャンネルを32刻みに丸めて頻度を数え、上位max_colors色を返す。

    同数の色は画像内で先に現れた順を保つ。戻り値は (K, 3) の uint8。
    """
    if max_colors < 1:
        raise ProcessingError("パレットの色数は1以上にしてください。")
    flat = pixels.reshape(-1, 3).astype(np.int32)
    if flat.size == 0:
        return np.zeros((0, 3), dtype=np.uint8)

    # 四捨五入で最寄りの32の倍数へ。256は255へ丸める
    coarse = np.minimum(((flat + QUANT_STEP // 2) // QUANT_STEP) * QUANT_STEP, 255)
    colors, first_idx, counts = np.unique(coarse, axis=0, return_index=True, return_counts=True)
    order = np.lexsort((first_idx, -counts))
    palette = colors[order[:max_colors]].astype(np.uint8)
    logger.debug("パレット生成: %d色中%d色を採用", len(colors), len(palette))
    return palette


PaletteFn = Callable[[np.ndarray, int], np.ndarray]


def _pack(flat: np.ndarray) -> np.ndarray:
    return (flat[:, 0].astype(np.int64) << 16) | (flat[:, 1].astype(np.int64) << 8) | flat[:, 2].astype(np.int64)


def _rank_buckets(keys: np.ndarray, flat: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """キーごとの平均色と画素数を、画素数の多い順（同数は出現順）で返す。"""
    _, first_idx, inverse, counts = np.unique(keys, return_index=True, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)
    sums = np.zeros((len(counts), 3), dtype=np.float64)
    np.add.at(sums, inverse, flat)
    means = np.clip(np.floor(sums / counts[:, None] + 0.5), 0, 255).astype(np.uint8)
    order = np.lexsort((first_idx, -counts))
    return means[order], counts[order]


def generate_exact_palette(pixels: np.ndarray) -> np.ndarray:
    """画像に含まれる色そのものを、多い順（同数は出現順）に並べる。"""
    flat = pixels.reshape(-1, 3).astype(np.int64)
    palette, _ = _rank_buckets(_pack(flat), flat)
    return palette


def octree_palette(pixels: np.ndarray, max_colors: int = DEFAULT_MAX_COLORS) -> np.ndarray:
    """八分木減色。最深階層から葉を親へ畳み、葉の数が上限以下になった階層の平均色を使う。

    階層1まで畳んでも上限を超える場合（max_colors < 8）は、画素数の多い葉から採用する。
    """
    if max_colors < 1:
        raise ProcessingError("パレットの色数は1以上にしてください。")
    flat = pixels.reshape(-1, 3).astype(np.int64)
    if flat.size == 0:
        return np.zeros((0, 3), dtype=np.uint8)

    for level in range(8, 0, -1):
        shift = 8 - level
        # 各チャンネルの上位levelビットを連結した値がその階層のノード番号
        keys = ((flat[:, 0] >> shift) << (2 * level)) | ((flat[:, 1] >> shift) << level) | (flat[:, 2] >> shift)
        means, _ = _rank_buckets(keys, flat)
        if len(means) <= max_colors:
            break
    # ノードは互いに重ならない立方体なので、平均色も重複しない
    palette = means[:max_colors]
    logger.debug("八分木減色: 階層%dで%d色", level, len(palette))
    return palette


def kmeans_palette(pixels: np.ndarray, max_colors: int = DEFAULT_MAX_COLORS, seed: int = 0) -> np.ndarray:
    """cv2.kmeans でクラスタ中心をパレットにする。大きな画像は間引いてから学習する。

    クラスタの大きい順に並べる。seed を固定しているので同じ入力なら同じ結果になる。
    """
    if max_colors < 1:
        raise ProcessingError("パレットの色数は1以上にしてください。")
    flat = pixels.reshape(-1, 3)
    if flat.size == 0:
        return np.zeros((0, 3), dtype=np.uint8)
    if len(np.unique(_pack(flat))) <= max_colors:
        return generate_exact_palette(pixels)

    if len(flat) > KMEANS_SAMPLE_LIMIT:
        rng = np.random.default_rng(seed)
        flat = flat[rng.choice(len(flat), KMEANS_SAMPLE_LIMIT, replace=False)]
    data = flat.astype(np.float32)
    criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 20, 1.0)
    cv2.setRNGSeed(seed)
    _compactness, labels, centers = cv2.kmeans(
        data, max_colors, None, criteria, attempts=3, flags=cv2.KMEANS_PP_CENTERS
    )
    counts = np.bincount(labels.flatten(), minlength=len(centers))
    centers = np.clip(np.floor(centers + 0.5), 0, 255).astype(np.uint8)
    order = np.argsort(-counts, kind="stable")
    ordered = centers[order][counts[order] > 0]
    # 丸めで同じ色になった中心は先に来たものだけ残す
    _, keep = np.unique(_pack(ordered), return_index=True)
    palette = ordered[np.sort(keep)]
    logger.debug("k-means減色: %d色 (学習画素 %d)", len(palette), len(data))
    return palette


PALETTE_METHODS: Dict[str, PaletteFn] = {
    "frequency": generate_palette,
    "octree": octree_palette,
    "kmeans": kmeans_palette,
}


def build_palette(pixels: np.ndarray, max_colors: int = DEFAULT_MAX_COLORS, method: str = "frequency") -> np.ndarray:
    """減色方式名でパレット生成関数を選んで実行する。"""
    fn = PALETTE_METHODS.get(method)
    if fn is None:
        raise ProcessingError(f"未対応の減色方式です: {method}")
    return fn(pixels, max_colors)


def nearest_palette_indices(
    colors: np.ndarray,
    palette: np.ndarray,
    weights: Sequence[float] = EQUAL_WEIGHTS,
) -> np.ndarray:
    """各色について重み付きユークリッド距離が最小のパレット番号を返す。"""
    if len(palette) == 0:
        raise ProcessingError("パレットが空です。")
    colors = np.asarray(colors, dtype=np.float64).reshape(-1, 3)
    pal = np.asarray(palette, dtype=np.float64).reshape(-1, 3)
    w = np.asarray(weights, dtype=np.float64)
    mapping = np.zeros(len(colors), dtype=np.int64)
    for idx0, idx1 in _chunk_ranges(len(colors), CHUNK_SIZE):
        diff = colors[idx0:idx1, None, :] - pal[None, :, :]
        distances = np.sum(diff * diff * w[None, None, :], axis=2)
        mapping[idx0:idx1] = np.argmin(distances, axis=1)
    return mapping


def map_to_palette(
    pixels: np.ndarray,
    palette: np.ndarray,
    weights: Sequence[float] = EQUAL_WEIGHTS,
) -> np.ndarray:
    """減色せず、各画素を最短距離のパレット色へ写像する。"""
    flat = pixels.reshape(-1, 3)
    colors, inv = np.unique(flat, axis=0, return_inverse=True)
    mapping = nearest_palette_indices(colors, palette, weights)
    pal = np.asarray(palette, dtype=np.uint8).reshape(-1, 3)
    return pal[mapping][inv.reshape(-1)].reshape(pixels.shape)


def quantize_image(
    pixels: np.ndarray,
    max_colors: int = DEFAULT_MAX_COLORS,
    weights: Sequence[float] = PERCEPTUAL_WEIGHTS,
    method: str = "frequency",
) -> Tuple[np.ndarray, np.ndarray]:
    """パレットを生成し、画像をそのパレットへ写像した結果と組で返す。"""
    palette = build_palette(pixels, max_colors, method)
    if len(palette) == 0:
        return pixels.copy(), palette
    return map_to_palette(pixels, palette, weights), palette


def palette_to_hex(palette: np.ndarray) -> list[str]:
    """(K, 3) のパレットを '#rrggbb' 形式の文字列リストにする。"""
    return ["#{:02x}{:02x}{:02x}".format(int(r), int(g), int(b)) for r, g, b in np.asarray(palette).reshape(-1, 3)]


def hex_to_rgb(code: str) -> Tuple[int, int, int]:
    """'#rrggbb' または 'rrggbb' をRGBタプルへ変換する。"""
    value = code.strip().lstrip("#")
    if len(value) != 6:
        raise ValueError(f"色コードの形式が不正です: {code}")
    return int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)
