"""ドット絵の輪郭を保つためのエッジ強調フィルタ。"""

from __future__ import annotations

import numpy as np

EDGE_THRESHOLD = 30  # 上下左右いずれかとの最大チャンネル差がこれを超えたら輪郭扱い
CONTRAST_GAIN = 0.1


def _edge_mask(image_rgb: np.ndarray, threshold: int = EDGE_THRESHOLD) -> np.ndarray:
    """内部画素のうち、4近傍との最大チャンネル差が閾値を超える位置をTrueにする。"""
    h, w = image_rgb.shape[:2]
    mask = np.zeros((h, w), dtype=bool)
    if h < 3 or w < 3:
        return mask

    img = image_rgb.astype(np.int16)
    center = img[1:-1, 1:-1]
    max_diff = np.zeros((h - 2, w - 2), dtype=np.int16)
    for neighbor in (img[:-2, 1:-1], img[2:, 1:-1], img[1:-1, :-2], img[1:-1, 2:]):
        diff = np.abs(center - neighbor).max(axis=2)
        np.maximum(max_diff, diff, out=max_diff)
    mask[1:-1, 1:-1] = max_diff > threshold
    return mask


def apply_pixel_art_filter(
    image_rgb: np.ndarray,
    threshold: int = EDGE_THRESHOLD,
    gain: float = CONTRAST_GAIN,
) -> np.ndarray:
    """輪郭画素だけ v + (v - 128) * gain でコントラストを上げた画像を返す。

    外周1画素は判定対象外でそのまま残す。
    """
    mask = _edge_mask(image_rgb, threshold)
    out = image_rgb.copy()
    if not mask.any():
        return out
    values = image_rgb[mask].astype(np.float64)
    enhanced = values + (values - 128.0) * gain
    out[mask] = np.clip(np.floor(enhanced + 0.5), 0, 255).astype(np.uint8)
    return out
