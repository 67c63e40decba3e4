"""変換パラメータ・ジョブ・アップロード画像・変換結果のデータモデル定義。"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

import numpy as np

from .dither import normalize_dithering_ratio
from .errors import ValidationError

# ジョブ状態
QUEUED = "queued"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED})

INTERPOLATIONS = ("nearest_neighbor", "bilinear", "bicubic", "pixel_art")
COLOR_MODES = ("none", "ordered_dithering_bayer", "floyd_steinberg")
QUALITIES = ("fast", "balanced", "high_quality")
PALETTE_METHODS = ("frequency", "octree", "kmeans")

_INTERPOLATION_ALIASES = {
    "nearest": "nearest_neighbor",
    "nearest-neighbor": "nearest_neighbor",
    "linear": "bilinear",
    "cubic": "bicubic",
    "pixelart": "pixel_art",
    "pixel-art": "pixel_art",
}
_COLOR_MODE_ALIASES = {
    "no_dithering": "none",
    "ordered": "ordered_dithering_bayer",
    "ordered-dither-bayer": "ordered_dithering_bayer",
    "bayer": "ordered_dithering_bayer",
    "floyd-steinberg": "floyd_steinberg",
    "error_diffusion": "floyd_steinberg",
}
_QUALITY_ALIASES = {"high-quality": "high_quality", "high": "high_quality"}
_PALETTE_METHOD_ALIASES = {"k-means": "kmeans", "k_means": "kmeans", "popularity": "frequency"}

# 品質ごとのパレット上限色数
QUALITY_MAX_COLORS = {"fast": 8, "balanced": 16, "high_quality": 32}
MAX_PALETTE_COLORS = 256


def _pick(value: str, allowed: tuple[str, ...], aliases: Dict[str, str], label: str) -> str:
    key = str(value).strip().lower()
    key = aliases.get(key, key)
    if key not in allowed:
        raise ValidationError(f"{label}の値が不正です: {value!r} (候補: {', '.join(allowed)})")
    return key


@dataclass(frozen=True)
class ConversionParams:
    """ドット絵変換のパラメータ一式。生成時に名前の正規化と範囲チェックを行う。"""

    resize_factor: float = 50.0
    interpolation: str = "nearest_neighbor"
    color_mode: str = "none"
    dithering_ratio: float = 1.0
    quality: str = "balanced"
    max_colors: Optional[int] = None
    palette_method: str = "frequency"

    def __post_init__(self) -> None:
        try:
            factor = float(self.resize_factor)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"縮小率が数値ではありません: {self.resize_factor!r}") from exc
        if not 1.0 <= factor <= 200.0:
            raise ValidationError(f"縮小率は1〜200%の範囲で指定してください: {factor}")
        try:
            ratio = normalize_dithering_ratio(self.dithering_ratio)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if self.max_colors is not None and not 1 <= int(self.max_colors) <= MAX_PALETTE_COLORS:
            raise ValidationError(f"色数は1〜{MAX_PALETTE_COLORS}の範囲で指定してください: {self.max_colors}")

        # frozenなので object.__setattr__ で正規化後の値を書き戻す
        object.__setattr__(self, "resize_factor", factor)
        object.__setattr__(self, "dithering_ratio", ratio)
        object.__setattr__(
            self, "interpolation", _pick(self.interpolation, INTERPOLATIONS, _INTERPOLATION_ALIASES, "補間方式")
        )
        object.__setattr__(self, "color_mode", _pick(self.color_mode, COLOR_MODES, _COLOR_MODE_ALIASES, "カラーモード"))
        object.__setattr__(self, "quality", _pick(self.quality, QUALITIES, _QUALITY_ALIASES, "品質"))
        object.__setattr__(
            self, "palette_method", _pick(self.palette_method, PALETTE_METHODS, _PALETTE_METHOD_ALIASES, "減色方式")
        )
        if self.max_colors is not None:
            object.__setattr__(self, "max_colors", int(self.max_colors))

    @property
    def palette_size(self) -> int:
        """明示指定がなければ品質プリセットの色数。"""
        return self.max_colors if self.max_colors is not None else QUALITY_MAX_COLORS[self.quality]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resize_factor": self.resize_factor,
            "interpolation": self.interpolation,
            "color_mode": self.color_mode,
            "dithering_ratio": self.dithering_ratio,
            "quality": self.quality,
            "max_colors": self.palette_size,
            "palette_method": self.palette_method,
        }


@dataclass
class UploadedImage:
    """メモリ上に保持するアップロード画像。"""

    image_id: str
    pixels: np.ndarray
    width: int
    height: int
    file_size: int
    mime_type: str
    uploaded_at: float
    file_name: str = ""


@dataclass(frozen=True)
class ConversionResult:
    """変換結果。palette は '#rrggbb' 文字列のリスト、時間はミリ秒。"""

    pixels: np.ndarray
    palette: List[str]
    width: int
    height: int
    processing_time: float
    colored_pixels: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """画素配列を除いた結果情報。"""
        return {
            "palette": list(self.palette),
            "canvas": {"width": self.width, "height": self.height, "colored_pixels": self.colored_pixels},
            "processing_time": self.processing_time,
            "metadata": dict(self.metadata),
        }


@dataclass
class Job:
    """変換ジョブ1件の状態。"""

    task_id: str
    image_id: str
    params: ConversionParams
    created_at: float
    status: str = QUEUED
    progress: int = 0
    current_step: str = "待機中"
    result: Optional[ConversionResult] = None
    error: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    estimated_time: Optional[float] = None
    actual_time: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> "Job":
        """外部へ渡すためのコピー（結果オブジェクトは不変なので共有する）。"""
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "task_id": self.task_id,
            "status": self.status,
            "progress": self.progress,
            "current_step": self.current_step,
            "estimated_time": self.estimated_time,
        }
        if self.result is not None:
            data["result"] = self.result.to_dict()
        if self.error is not None:
            data["error"] = self.error
        return data
