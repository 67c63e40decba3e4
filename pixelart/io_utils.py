"""I/O系ユーティリティ: 画像のデコード/エンコードと出力サイズ計算を集約。"""

from __future__ import annotations

import io
import math
from typing import Tuple

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import ProcessingError

Size = Tuple[int, int]

_FORMAT_EXT = {
    "png": ".png",
    "jpeg": ".jpg",
    "jpg": ".jpg",
    "bmp": ".bmp",
    "webp": ".webp",
    "tiff": ".tiff",
}

MIME_TYPES = {
    "png": "image/png",
    "jpeg": "image/jpeg",
    "bmp": "image/bmp",
    "webp": "image/webp",
    "tiff": "image/tiff",
    "gif": "image/gif",
}


def sniff_format(data: bytes) -> str:
    """ヘッダーから画像形式を推定する（'png', 'jpeg' など小文字）。"""
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format or ""
    except (UnidentifiedImageError, OSError) as exc:
        raise ProcessingError("画像ファイルを解析できません。ファイルが壊れていないか確認してください。") from exc
    return fmt.lower()


def decode_image(data: bytes) -> Tuple[np.ndarray, int, int, str]:
    """バイト列をRGB配列へデコードし、(pixels, width, height, format) を返す。"""
    if not data:
        raise ProcessingError("画像データが空です。")
    fmt = sniff_format(data)
    buf = np.frombuffer(data, dtype=np.uint8)
    image_bgr = cv2.imdecode(buf, cv2.IMREAD_COLOR)
    if image_bgr is None:
        # OpenCVが読めない形式（GIFなど）はPillow経由で読む
        with Image.open(io.BytesIO(data)) as img:
            rgb = np.asarray(img.convert("RGB"), dtype=np.uint8).copy()
    else:
        rgb = cv2.cvtColor(image_bgr, cv2.COLOR_BGR2RGB)
    h, w = rgb.shape[:2]
    return rgb, w, h, fmt


def encode_image(pixels: np.ndarray, fmt: str = "png") -> bytes:
    """RGB配列を指定形式でエンコードしたバイト列を返す。"""
    ext = _FORMAT_EXT.get(fmt.lower())
    if ext is None:
        raise ProcessingError(f"未対応の出力形式です: {fmt}")
    bgr = cv2.cvtColor(np.ascontiguousarray(pixels, dtype=np.uint8), cv2.COLOR_RGB2BGR)
    ok, encoded = cv2.imencode(ext, bgr)
    if not ok:
        raise ProcessingError("画像をエンコードできませんでした。")
    return encoded.tobytes()


def mime_type_for(fmt: str) -> str:
    return MIME_TYPES.get(fmt.lower(), "application/octet-stream")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_target_size(width: int, height: int, resize_factor: float) -> Size:
    """縮小率(%)から出力サイズを算出する。丸めの結果が0にならないよう最低1ピクセル。"""
    if width <= 0 or height <= 0:
        raise ProcessingError("幅・高さは1以上にしてください。")
    scale = float(resize_factor) / 100.0
    new_w = max(1, _round_half_up(width * scale))
    new_h = max(1, _round_half_up(height * scale))
    return new_w, new_h
