"""分割処理・ワーカープール利用の判断と、メモリ/処理時間の簡易モニタ。"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field, replace
from typing import Callable, Deque, Dict, List, Tuple

import numpy as np

from .config import MB, OptimizerConfig

logger = logging.getLogger(__name__)

BYTES_PER_PIXEL = 3
LARGE_IMAGE_PIXELS = 1024 * 1024
HUGE_IMAGE_PIXELS = 4 * 1024 * 1024


@dataclass(frozen=True)
class ProcessingSettings:
    """品質プリセットから決まる処理方針。"""

    enable_chunking: bool
    chunk_rows: int
    enable_parallel: bool
    max_memory_mb: int
    max_colors: int
    quality: str = "balanced"


@dataclass(frozen=True)
class ExecutionPlan:
    """1枚の画像をどう処理するか（インライン/分割/プール）。"""

    settings: ProcessingSettings
    use_pool: bool
    chunk_rows: int
    optimizations: Tuple[str, ...] = ()

    @property
    def chunked(self) -> bool:
        return self.settings.enable_chunking


def recommend_chunk_rows(width: int, height: int, max_buffer_bytes: int = 50 * MB) -> int:
    """画像の総バイト数に応じて1チャンクあたりの行数を返す。"""
    total = width * height * BYTES_PER_PIXEL
    if total <= max_buffer_bytes / 4:
        return max(1, min(1024, height))
    if total <= max_buffer_bytes / 2:
        return max(1, min(512, height))
    return max(1, min(256, height))


def quality_settings(width: int, height: int, quality: str = "balanced") -> ProcessingSettings:
    """品質名ごとの既定設定。品質が上がるほどメモリとチャンクを大きく取る。"""
    pixels = width * height
    is_large = pixels > LARGE_IMAGE_PIXELS
    is_huge = pixels > HUGE_IMAGE_PIXELS
    if quality == "fast":
        settings = ProcessingSettings(is_huge, 256, False, 50, 8, quality)
    elif quality == "high_quality":
        settings = ProcessingSettings(is_large, 1024, is_huge, 200, 32, quality)
    else:
        settings = ProcessingSettings(is_large, 512, is_huge, 100, 16, "balanced")
    logger.debug("%dx%d (%d px) に %s 設定を適用: %s", width, height, pixels, quality, settings)
    return settings


def adjust_for_memory(
    settings: ProcessingSettings,
    used_mb: float,
    pressure_ratio: float = 0.8,
    min_chunk_rows: int = 128,
) -> ProcessingSettings:
    """メモリ使用量が予算の8割を超えていたら、チャンクを半分にし並列を止める。"""
    if used_mb <= settings.max_memory_mb * pressure_ratio:
        return settings
    logger.warning(
        "メモリ使用量が高いため設定を縮退します: %.1fMB / 予算 %dMB", used_mb, settings.max_memory_mb
    )
    return replace(
        settings,
        chunk_rows=max(min_chunk_rows, settings.chunk_rows // 2),
        enable_chunking=True,
        enable_parallel=False,
    )


def _read_statm_rss() -> int | None:
    try:
        with open("/proc/self/statm", "r", encoding="ascii") as fh:
            parts = fh.read().split()
    except OSError:
        return None
    if len(parts) < 2:
        return None
    return int(parts[1]) * os.sysconf("SC_PAGE_SIZE")


def _read_peak_rss() -> int:
    import resource  # Unix専用

    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linuxはキロバイト、macOSはバイト
    return peak if os.uname().sysname == "Darwin" else peak * 1024


def current_rss_bytes() -> int:
    """現在の常駐メモリ量。/proc が読めない環境ではピーク値で代用する。"""
    rss = _read_statm_rss()
    if rss is not None:
        return rss
    return _read_peak_rss()


class MemoryMonitor:
    """メモリ使用量の取得。

    relative=True のときは生成時点の値を基準にし、それ以降の増加分だけを使用量とみなす
    （ライブラリ読み込み分で常に予算超過と判定されないように）。
    reader を差し替えるとテストで任意の値を返せる。
    """

    def __init__(self, reader: Callable[[], int] | None = None, relative: bool = True) -> None:
        self._reader = reader or current_rss_bytes
        self._baseline = int(self._reader()) if relative else 0

    def used_bytes(self) -> int:
        return max(0, int(self._reader()) - self._baseline)

    def used_mb(self) -> float:
        return self.used_bytes() / MB


class PerformanceMonitor:
    """処理時間のチェックポイントをログへ出す。"""

    def __init__(self, label: str = "") -> None:
        self.label = label
        self._start = time.perf_counter()
        self.checkpoints: List[Tuple[str, float]] = []

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000.0

    def checkpoint(self, name: str) -> float:
        elapsed = self.elapsed_ms()
        self.checkpoints.append((name, elapsed))
        logger.debug("[%s] %s: %.2fms", self.label, name, elapsed)
        return elapsed

    def finish(self) -> float:
        elapsed = self.elapsed_ms()
        logger.info("[%s] 処理完了: %.2fms", self.label, elapsed)
        return elapsed


class BufferPool:
    """形状・dtypeごとに作業用配列を使い回す。保持数は max_per_key で頭打ち。"""

    def __init__(self, max_per_key: int = 4) -> None:
        self.max_per_key = max_per_key
        self._free: Dict[Tuple[Tuple[int, ...], str], Deque[np.ndarray]] = defaultdict(deque)
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def acquire(self, shape: Tuple[int, ...], dtype: np.dtype | type = np.float64) -> np.ndarray:
        key = (tuple(shape), np.dtype(dtype).str)
        with self._lock:
            free = self._free.get(key)
            if free:
                self.hits += 1
                return free.pop()
            self.misses += 1
        return np.empty(shape, dtype=dtype)

    def release(self, buffer: np.ndarray) -> None:
        key = (tuple(buffer.shape), buffer.dtype.str)
        with self._lock:
            free = self._free[key]
            if len(free) < self.max_per_key:
                free.append(buffer)

    def clear(self) -> None:
        with self._lock:
            self._free.clear()

    @property
    def retained(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._free.values())


@dataclass
class PerformanceOptimizer:
    """画像サイズとメモリ状況から ExecutionPlan を決める。"""

    config: OptimizerConfig = field(default_factory=OptimizerConfig)
    memory: MemoryMonitor = field(default_factory=MemoryMonitor)

    @property
    def use_worker_pool(self) -> bool:
        return self.config.use_worker_pool

    def recommend_chunk_rows(self, width: int, height: int) -> int:
        return recommend_chunk_rows(width, height, self.config.max_buffer_bytes)

    def should_use_chunking(self, buffer_bytes: int) -> bool:
        return buffer_bytes > self.config.max_buffer_bytes

    def should_use_worker_pool(self, width: int, height: int, buffer_bytes: int | None = None) -> bool:
        """2MPを超える画像、または20MBを超えるバッファはプールへ回す。"""
        if not self.config.use_worker_pool:
            return False
        if buffer_bytes is None:
            buffer_bytes = width * height * BYTES_PER_PIXEL
        return width * height > self.config.pool_pixel_threshold or buffer_bytes > self.config.pool_buffer_threshold

    def plan(self, width: int, height: int, quality: str = "balanced", buffer_bytes: int | None = None) -> ExecutionPlan:
        if buffer_bytes is None:
            buffer_bytes = width * height * BYTES_PER_PIXEL
        settings = quality_settings(width, height, quality)
        settings = adjust_for_memory(
            settings,
            self.memory.used_mb(),
            self.config.memory_pressure_ratio,
            self.config.min_chunk_rows,
        )
        optimizations: List[str] = []
        if self.should_use_chunking(buffer_bytes) and not settings.enable_chunking:
            settings = replace(settings, enable_chunking=True)
        chunk_rows = min(settings.chunk_rows, self.recommend_chunk_rows(width, height))
        chunk_rows = max(1, min(chunk_rows, height))
        if settings.enable_chunking:
            optimizations.append(f"chunking({chunk_rows} rows)")
        use_pool = self.should_use_worker_pool(width, height, buffer_bytes)
        if use_pool:
            optimizations.append("worker_pool")
        if settings.enable_parallel:
            optimizations.append("parallel")
        return ExecutionPlan(settings=settings, use_pool=use_pool, chunk_rows=chunk_rows, optimizations=tuple(optimizations))
