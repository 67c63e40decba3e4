"""リサイズエンジン: 最近傍・バイリニア・バイキュービック・ドット絵向け縮小。

すべて H×W×3 の uint8 配列を受け取り、新しい配列を返す純粋関数。
"""

from __future__ import annotations

import logging
from typing import Callable, Dict

import numpy as np

from .edges import apply_pixel_art_filter
from .errors import ProcessingError

logger = logging.getLogger(__name__)

ResizeFn = Callable[[np.ndarray, int, int], np.ndarray]


def _to_uint8(values: np.ndarray) -> np.ndarray:
    """四捨五入（0.5は切り上げ）して0-255へ丸める。"""
    return np.clip(np.floor(values + 0.5), 0, 255).astype(np.uint8)


def _check(pixels: np.ndarray, new_w: int, new_h: int) -> tuple[int, int]:
    if pixels.ndim != 3 or pixels.shape[2] != 3:
        raise ProcessingError(f"RGB画像 (H, W, 3) が必要です: shape={pixels.shape}")
    h, w = pixels.shape[:2]
    if w <= 0 or h <= 0 or new_w <= 0 or new_h <= 0:
        raise ProcessingError("幅・高さは1以上にしてください。")
    return w, h


def nearest_neighbor_resize(pixels: np.ndarray, new_w: int, new_h: int) -> np.ndarray:
    """最近傍補間。出力(x, y)は入力(⌊x·W₀/W₁⌋, ⌊y·H₀/H₁⌋)を参照する。"""
    w, h = _check(pixels, new_w, new_h)
    logger.debug("最近傍補間: %dx%d -> %dx%d", w, h, new_w, new_h)
    # 整数演算で床関数を取り、同サイズなら恒等写像になるようにする
    xs = np.minimum((np.arange(new_w, dtype=np.int64) * w) // new_w, w - 1)
    ys = np.minimum((np.arange(new_h, dtype=np.int64) * h) // new_h, h - 1)
    return pixels[ys[:, None], xs[None, :]].copy()


def bilinear_resize(pixels: np.ndarray, new_w: int, new_h: int) -> np.ndarray:
    """バイリニア補間。比率は (W₀−1)/W₁ で、整数座標では元画素そのものになる。"""
    w, h = _check(pixels, new_w, new_h)
    logger.debug("バイリニア補間: %dx%d -> %dx%d", w, h, new_w, new_h)
    src = pixels.astype(np.float64)

    src_x = np.arange(new_w, dtype=np.float64) * ((w - 1) / new_w)
    src_y = np.arange(new_h, dtype=np.float64) * ((h - 1) / new_h)
    x1 = np.floor(src_x).astype(np.int64)
    y1 = np.floor(src_y).astype(np.int64)
    x2 = np.minimum(x1 + 1, w - 1)
    y2 = np.minimum(y1 + 1, h - 1)
    wx = (src_x - x1)[None, :, None]
    wy = (src_y - y1)[:, None, None]

    top_left = src[y1[:, None], x1[None, :]]
    top_right = src[y1[:, None], x2[None, :]]
    bottom_left = src[y2[:, None], x1[None, :]]
    bottom_right = src[y2[:, None], x2[None, :]]

    top = top_left * (1 - wx) + top_right * wx
    bottom = bottom_left * (1 - wx) + bottom_right * wx
    return _to_uint8(top * (1 - wy) + bottom * wy)


def _cubic_weight(t: np.ndarray, a: float = -0.5) -> np.ndarray:
    """Catmull-Rom系の三次カーネル。"""
    abs_t = np.abs(t)
    near = (a + 2) * abs_t ** 3 - (a + 3) * abs_t ** 2 + 1
    far = a * abs_t ** 3 - 5 * a * abs_t ** 2 + 8 * a * abs_t - 4 * a
    return np.where(abs_t <= 1, near, np.where(abs_t < 2, far, 0.0))


def bicubic_resize(pixels: np.ndarray, new_w: int, new_h: int) -> np.ndarray:
    """バイキュービック補間。4×4近傍を使い、範囲外は端の画素で代用する。"""
    w, h = _check(pixels, new_w, new_h)
    logger.debug("バイキュービック補間: %dx%d -> %dx%d", w, h, new_w, new_h)
    src = pixels.astype(np.float64)

    src_x = np.arange(new_w, dtype=np.float64) * (w / new_w)
    src_y = np.arange(new_h, dtype=np.float64) * (h / new_h)
    x1 = np.floor(src_x).astype(np.int64)
    y1 = np.floor(src_y).astype(np.int64)
    dx = src_x - x1
    dy = src_y - y1

    out = np.zeros((new_h, new_w, 3), dtype=np.float64)
    for j in range(-1, 3):
        yy = np.clip(y1 + j, 0, h - 1)
        wy = _cubic_weight(j - dy)[:, None, None]
        for i in range(-1, 3):
            xx = np.clip(x1 + i, 0, w - 1)
            wx = _cubic_weight(i - dx)[None, :, None]
            out += src[yy[:, None], xx[None, :]] * (wx * wy)
    return _to_uint8(out)


def pixel_art_resize(pixels: np.ndarray, new_w: int, new_h: int) -> np.ndarray:
    """最近傍で縮小したあと、輪郭の画素だけコントラストを持ち上げる。"""
    base = nearest_neighbor_resize(pixels, new_w, new_h)
    return apply_pixel_art_filter(base)


RESIZE_METHODS: Dict[str, ResizeFn] = {
    "nearest_neighbor": nearest_neighbor_resize,
    "bilinear": bilinear_resize,
    "bicubic": bicubic_resize,
    "pixel_art": pixel_art_resize,
}


def resize(pixels: np.ndarray, new_w: int, new_h: int, method: str = "nearest_neighbor") -> np.ndarray:
    """補間方式名でリサイズ関数を選んで実行する。"""
    fn = RESIZE_METHODS.get(method.lower())
    if fn is None:
        raise ProcessingError(f"未対応の補間方式です: {method}")
    return fn(pixels, new_w, new_h)
