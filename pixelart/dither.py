"""ディザリング処理: ベイヤー行列による組織的ディザ、Floyd–Steinberg誤差拡散、後段シャープ化。"""

from __future__ import annotations

import logging
import math
from typing import Dict, Sequence

import cv2
import numpy as np
from numba import njit

from .errors import ProcessingError
from .quantize import EQUAL_WEIGHTS, PERCEPTUAL_WEIGHTS, map_to_palette

logger = logging.getLogger(__name__)

MIN_DITHERING_RATIO = 0.1
MAX_DITHERING_RATIO = 5.0
DEFAULT_DITHER_SCALE = 64.0

SHARPEN_KERNEL = np.array(
    [
        [0.0, -0.25, 0.0],
        [-0.25, 2.0, -0.25],
        [0.0, -0.25, 0.0],
    ],
    dtype=np.float32,
)

def generate_bayer_matrix(size: int) -> np.ndarray:
    """再帰的に4分割してベイヤー行列（0..size²-1 の整数）を作る。"""
    if size < 1 or size & (size - 1):
        raise ValueError(f"ベイヤー行列のサイズは2のべき乗にしてください: {size}")
    if size == 1:
        return np.zeros((1, 1), dtype=np.int64)
    prev = generate_bayer_matrix(size // 2)
    half = prev.shape[0]
    matrix = np.empty((size, size), dtype=np.int64)
    base = prev * 4
    matrix[:half, :half] = base
    matrix[:half, half:] = base + 2
    matrix[half:, :half] = base + 3
    matrix[half:, half:] = base + 1
    return matrix


def normalize_bayer_matrix(matrix: np.ndarray) -> np.ndarray:
    """(size²-1) で割って 0-1 の閾値行列にする。"""
    size = matrix.shape[0]
    max_value = size * size - 1
    if max_value == 0:
        return np.zeros_like(matrix, dtype=np.float64)
    return matrix.astype(np.float64) / max_value


# よく使うサイズは読み込み時に作っておく
BAYER_4 = normalize_bayer_matrix(generate_bayer_matrix(4))
BAYER_8 = normalize_bayer_matrix(generate_bayer_matrix(8))
_BAYER_CACHE: Dict[int, np.ndarray] = {4: BAYER_4, 8: BAYER_8}


def bayer_threshold_map(size: int) -> np.ndarray:
    """正規化済みのベイヤー行列を返す（4と8は事前計算済み）。"""
    matrix = _BAYER_CACHE.get(size)
    if matrix is None:
        matrix = normalize_bayer_matrix(generate_bayer_matrix(size))
        _BAYER_CACHE[size] = matrix
    return matrix


def normalize_dithering_ratio(value: float) -> float:
    """ディザ強度を [0.1, 5.0] に収め、0.1刻みへ丸める。"""
    try:
        v = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"ディザ強度が数値ではありません: {value!r}") from exc
    if math.isnan(v):
        raise ValueError("ディザ強度がNaNです。")
    v = min(max(v, MIN_DITHERING_RATIO), MAX_DITHERING_RATIO)
    return round(math.floor(v * 10 + 0.5) / 10, 1)


def ordered_dither(
    pixels: np.ndarray,
    palette: np.ndarray,
    ratio: float = 1.0,
    matrix_size: int = 8,
    scale: float = DEFAULT_DITHER_SCALE,
    row_offset: int = 0,
    col_offset: int = 0,
    scratch: np.ndarray | None = None,
) -> np.ndarray:
    """ベイヤー閾値で各画素を揺らしてからパレットの最近色へ置き換える。

    row_offset/col_offset は分割処理時に元画像上の位置を閾値に反映するためのもの。
    scratch に同形状の float64 配列を渡すと作業領域として再利用する。
    """
    if len(palette) == 0:
        raise ProcessingError("パレットが空のためディザリングできません。")
    h, w = pixels.shape[:2]
    matrix = bayer_threshold_map(matrix_size)
    n = matrix.shape[0]

    ys = (np.arange(h) + row_offset) % n
    xs = (np.arange(w) + col_offset) % n
    delta = (matrix[ys[:, None], xs[None, :]] - 0.5) * (scale * ratio)

    if scratch is not None and scratch.shape == pixels.shape and scratch.dtype == np.float64:
        adjusted = scratch
        np.add(pixels, delta[:, :, None], out=adjusted, casting="unsafe")
    else:
        adjusted = pixels.astype(np.float64) + delta[:, :, None]
    np.floor(adjusted + 0.5, out=adjusted)
    np.clip(adjusted, 0, 255, out=adjusted)
    return map_to_palette(adjusted.astype(np.uint8), palette, PERCEPTUAL_WEIGHTS)


@njit(nogil=True)
def _error_diffusion(work, pal, weights, labels):
    """誤差拡散の本体。work をその場で書き換え、各画素のパレット番号を labels へ入れる。"""
    h, w = work.shape[0], work.shape[1]
    for y in range(h):
        for x in range(w):
            r = min(255.0, max(0.0, work[y, x, 0]))
            g = min(255.0, max(0.0, work[y, x, 1]))
            b = min(255.0, max(0.0, work[y, x, 2]))

            best = 0
            best_d = np.inf
            for k in range(pal.shape[0]):
                dr = r - pal[k, 0]
                dg = g - pal[k, 1]
                db = b - pal[k, 2]
                d = weights[0] * dr * dr + weights[1] * dg * dg + weights[2] * db * db
                if d < best_d:
                    best_d = d
                    best = k
            labels[y, x] = best

            er = r - pal[best, 0]
            eg = g - pal[best, 1]
            eb = b - pal[best, 2]
            # 右 7/16、左下 3/16、下 5/16、右下 1/16
            if x + 1 < w:
                work[y, x + 1, 0] += er * (7.0 / 16.0)
                work[y, x + 1, 1] += eg * (7.0 / 16.0)
                work[y, x + 1, 2] += eb * (7.0 / 16.0)
            if y + 1 < h:
                if x > 0:
                    work[y + 1, x - 1, 0] += er * (3.0 / 16.0)
                    work[y + 1, x - 1, 1] += eg * (3.0 / 16.0)
                    work[y + 1, x - 1, 2] += eb * (3.0 / 16.0)
                work[y + 1, x, 0] += er * (5.0 / 16.0)
                work[y + 1, x, 1] += eg * (5.0 / 16.0)
                work[y + 1, x, 2] += eb * (5.0 / 16.0)
                if x + 1 < w:
                    work[y + 1, x + 1, 0] += er * (1.0 / 16.0)
                    work[y + 1, x + 1, 1] += eg * (1.0 / 16.0)
                    work[y + 1, x + 1, 2] += eb * (1.0 / 16.0)
    return labels


def floyd_steinberg_dither(
    pixels: np.ndarray,
    palette: np.ndarray,
    weights: Sequence[float] = EQUAL_WEIGHTS,
) -> np.ndarray:
    """誤差拡散ディザ。ラスター順に処理し、量子化誤差を未処理の近傍へ配る。

    画素ごとのループは numba でコンパイルする。nogil なのでワーカースレッド同士で並行に動く。
    """
    if len(palette) == 0:
        raise ProcessingError("パレットが空のためディザリングできません。")
    h, w = pixels.shape[:2]
    pal_u8 = np.asarray(palette, dtype=np.uint8).reshape(-1, 3)
    work = pixels.astype(np.float64)
    labels = np.empty((h, w), dtype=np.int64)
    _error_diffusion(work, pal_u8.astype(np.float64), np.asarray(weights, dtype=np.float64), labels)
    return pal_u8[labels]


def sharpen(pixels: np.ndarray) -> np.ndarray:
    """3×3カーネルで内部画素をシャープ化する。外周は入力のまま残す。"""
    out = pixels.copy()
    h, w = pixels.shape[:2]
    if h < 3 or w < 3:
        return out
    filtered = cv2.filter2D(pixels.astype(np.float32), -1, SHARPEN_KERNEL, borderType=cv2.BORDER_REPLICATE)
    interior = np.clip(np.floor(filtered[1:-1, 1:-1] + 0.5), 0, 255).astype(np.uint8)
    out[1:-1, 1:-1] = interior
    return out
