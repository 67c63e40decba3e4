"""ワーカーへ渡すタスクの型定義と、ワーカー側での処理振り分け。"""

from __future__ import annotations

import itertools
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import numpy as np

from .. import dither, quantize, resize

PRIORITY_RANK = {"high": 0, "normal": 1, "low": 2}


@dataclass(frozen=True)
class ResizeTask:
    pixels: np.ndarray
    width: int
    height: int
    method: str = "nearest_neighbor"


@dataclass(frozen=True)
class QuantizeTask:
    """パレット生成。map_pixels=True なら画像の写像結果も返す。"""

    pixels: np.ndarray
    max_colors: int = quantize.DEFAULT_MAX_COLORS
    map_pixels: bool = False
    method: str = "frequency"


@dataclass(frozen=True)
class DitherTask:
    """ordered は行オフセット付きで部分画像にも適用できる。floyd_steinberg は全体のみ。"""

    pixels: np.ndarray
    palette: np.ndarray
    method: str = "ordered"
    ratio: float = 1.0
    matrix_size: int = 8
    scale: float = dither.DEFAULT_DITHER_SCALE
    row_offset: int = 0


@dataclass(frozen=True)
class PixelArtTask:
    """最近傍縮小＋輪郭強調。"""

    pixels: np.ndarray
    width: int
    height: int


TaskPayload = Union[ResizeTask, QuantizeTask, DitherTask, PixelArtTask]

_TASK_TYPES = {
    ResizeTask: "resize",
    QuantizeTask: "quantize",
    DitherTask: "dither",
    PixelArtTask: "pixelArt",
}

_ids = itertools.count(1)


def _new_task_id(kind: str) -> str:
    return f"{kind}_{int(time.time() * 1000)}_{next(_ids)}_{uuid.uuid4().hex[:6]}"


def task_type(payload: TaskPayload) -> str:
    try:
        return _TASK_TYPES[type(payload)]
    except KeyError:
        raise TypeError(f"未知のタスク種別です: {type(payload).__name__}") from None


@dataclass
class WorkerTask:
    """プールへ投入する1単位の仕事。timeout=None はプールの既定値を使う。"""

    payload: Any
    priority: str = "normal"
    timeout: Optional[float] = None
    id: str = ""

    def __post_init__(self) -> None:
        if self.priority not in PRIORITY_RANK:
            raise ValueError(f"優先度が不正です: {self.priority!r}")
        if not self.id:
            self.id = _new_task_id(self.type)

    @property
    def type(self) -> str:
        return task_type(self.payload)


def run_task(payload: TaskPayload) -> Any:
    """ワーカースレッド側の入口。ペイロードの型で処理を振り分ける。"""
    if isinstance(payload, ResizeTask):
        return resize.resize(payload.pixels, payload.width, payload.height, payload.method)
    if isinstance(payload, PixelArtTask):
        return resize.pixel_art_resize(payload.pixels, payload.width, payload.height)
    if isinstance(payload, QuantizeTask):
        if payload.map_pixels:
            return quantize.quantize_image(payload.pixels, payload.max_colors, method=payload.method)
        return quantize.build_palette(payload.pixels, payload.max_colors, payload.method)
    if isinstance(payload, DitherTask):
        if payload.method == "ordered":
            return dither.ordered_dither(
                payload.pixels,
                payload.palette,
                ratio=payload.ratio,
                matrix_size=payload.matrix_size,
                scale=payload.scale,
                row_offset=payload.row_offset,
            )
        if payload.method == "floyd_steinberg":
            return dither.floyd_steinberg_dither(payload.pixels, payload.palette)
        raise ValueError(f"未知のディザ方式です: {payload.method}")
    raise TypeError(f"未知のタスク種別です: {type(payload).__name__}")


def describe(payload: TaskPayload) -> Dict[str, Any]:
    """ログ用の要約（画素配列そのものは含めない）。"""
    info: Dict[str, Any] = {"type": task_type(payload)}
    pixels = getattr(payload, "pixels", None)
    if isinstance(pixels, np.ndarray):
        info["size"] = f"{pixels.shape[1]}x{pixels.shape[0]}"
    return info
