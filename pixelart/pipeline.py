"""変換パイプライン（リサイズ → パレット生成 → ディザリング → 仕上げ）。"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, List, Sequence

import numpy as np

from .config import PipelineConfig
from .dither import ordered_dither, sharpen
from .errors import PixelArtError, ProcessingError
from .io_utils import compute_target_size
from .models import ConversionParams, ConversionResult
from .optimizer import BufferPool, ExecutionPlan, PerformanceMonitor, PerformanceOptimizer
from .quantize import palette_to_hex
from .workers.pool import WorkerPool
from .workers.tasks import DitherTask, PixelArtTask, QuantizeTask, ResizeTask, TaskPayload, WorkerTask, run_task

logger = logging.getLogger(__name__)

ProgressCb = Callable[[float, str], None]


def _report(progress_callback: ProgressCb | None, value: float, step: str) -> None:
    if progress_callback:
        progress_callback(value, step)


def _row_bands(height: int, rows: int) -> List[tuple[int, int]]:
    rows = max(1, rows)
    return [(start, min(height, start + rows)) for start in range(0, height, rows)]


class _StageRunner:
    """各工程をその場で実行するか、ワーカープールへ回すかを切り替える。"""

    def __init__(self, pool: WorkerPool | None, plan: ExecutionPlan, priority: str = "normal") -> None:
        self.pool = pool if plan.use_pool else None
        self.parallel = plan.settings.enable_parallel
        self.priority = priority

    @property
    def pooled(self) -> bool:
        return self.pool is not None

    def run(self, payload: TaskPayload) -> Any:
        if self.pool is None:
            return run_task(payload)
        return self.pool.execute_task(WorkerTask(payload, priority=self.priority)).result()

    def run_many(self, payloads: Sequence[TaskPayload], on_done: Callable[[int], None] | None = None) -> List[Any]:
        """並列許可時はまとめて投入し、そうでなければ1件ずつ順に実行する。"""
        results: List[Any] = []
        if self.pool is not None and self.parallel:
            futures = [self.pool.execute_task(WorkerTask(p, priority=self.priority)) for p in payloads]
            for idx, future in enumerate(futures):
                results.append(future.result())
                if on_done:
                    on_done(idx)
            return results
        for idx, payload in enumerate(payloads):
            results.append(self.run(payload))
            if on_done:
                on_done(idx)
        return results


def _ordered_inline(
    resized: np.ndarray,
    palette: np.ndarray,
    params: ConversionParams,
    config: PipelineConfig,
    bands: List[tuple[int, int]],
    buffers: BufferPool,
    progress_callback: ProgressCb | None,
) -> np.ndarray:
    """行ごとに区切ってその場でディザリングする。作業用配列は使い回す。"""
    output = np.empty_like(resized)
    total = len(bands)
    for idx, (y0, y1) in enumerate(bands):
        band = resized[y0:y1]
        scratch = buffers.acquire(band.shape, np.float64)
        try:
            output[y0:y1] = ordered_dither(
                band,
                palette,
                ratio=params.dithering_ratio,
                matrix_size=config.bayer_size,
                scale=config.dither_scale,
                row_offset=y0,
                scratch=scratch,
            )
        finally:
            buffers.release(scratch)
        _report(progress_callback, 0.55 + 0.3 * (idx + 1) / total, "ディザリング中")
    return output


def convert_pixels(
    pixels: np.ndarray,
    params: ConversionParams,
    progress_callback: ProgressCb | None = None,
    pool: WorkerPool | None = None,
    optimizer: PerformanceOptimizer | None = None,
    buffers: BufferPool | None = None,
    config: PipelineConfig | None = None,
) -> ConversionResult:
    """RGB画像をドット絵へ変換する。プールが渡され、かつ推奨される場合は工程をプールで実行する。"""
    config = config or PipelineConfig()
    optimizer = optimizer or PerformanceOptimizer()
    buffers = buffers or BufferPool()
    monitor = PerformanceMonitor("pipeline")

    try:
        if pixels.ndim != 3 or pixels.shape[2] != 3:
            raise ProcessingError(f"RGB画像 (H, W, 3) が必要です: shape={pixels.shape}")
        src_h, src_w = pixels.shape[:2]
        _report(progress_callback, 0.1, "画像サイズを解析")

        target_w, target_h = compute_target_size(src_w, src_h, params.resize_factor)
        if max(target_w, target_h) > config.max_output_dimension:
            raise ProcessingError(
                f"出力サイズが大きすぎます: {target_w}x{target_h}（上限 {config.max_output_dimension}px）。縮小率を下げてください。"
            )
        plan = optimizer.plan(target_w, target_h, params.quality, buffer_bytes=pixels.nbytes)
        runner = _StageRunner(pool, plan)
        logger.debug(
            "変換開始: %dx%d -> %dx%d interp=%s mode=%s plan=%s",
            src_w,
            src_h,
            target_w,
            target_h,
            params.interpolation,
            params.color_mode,
            plan.optimizations,
        )
        _report(progress_callback, 0.2, "処理パラメータを決定")

        if params.interpolation == "pixel_art":
            resize_payload: TaskPayload = PixelArtTask(pixels, target_w, target_h)
        else:
            resize_payload = ResizeTask(pixels, target_w, target_h, params.interpolation)
        resized = runner.run(resize_payload)
        monitor.checkpoint("resize")
        _report(progress_callback, 0.4, "リサイズ完了")

        if params.color_mode == "none":
            # ディザなしでも出力はパレット色だけで構成する
            mapped, palette = runner.run(
                QuantizeTask(resized, params.palette_size, map_pixels=True, method=params.palette_method)
            )
        else:
            palette = runner.run(QuantizeTask(resized, params.palette_size, method=params.palette_method))
        monitor.checkpoint("palette")
        _report(progress_callback, 0.55, "パレット生成完了")

        if params.color_mode == "ordered_dithering_bayer":
            rows = plan.chunk_rows if plan.chunked else target_h
            bands = _row_bands(target_h, rows)
            if runner.pooled:
                payloads = [
                    DitherTask(
                        resized[y0:y1],
                        palette,
                        method="ordered",
                        ratio=params.dithering_ratio,
                        matrix_size=config.bayer_size,
                        scale=config.dither_scale,
                        row_offset=y0,
                    )
                    for y0, y1 in bands
                ]
                parts = runner.run_many(
                    payloads,
                    on_done=lambda i: _report(progress_callback, 0.55 + 0.3 * (i + 1) / len(bands), "ディザリング中"),
                )
                output = np.concatenate(parts, axis=0) if len(parts) > 1 else parts[0]
            else:
                output = _ordered_inline(resized, palette, params, config, bands, buffers, progress_callback)
            monitor.checkpoint("dither")
            if config.post_sharpen:
                output = sharpen(output)
                monitor.checkpoint("sharpen")
        elif params.color_mode == "floyd_steinberg":
            output = runner.run(DitherTask(resized, palette, method="floyd_steinberg"))
            monitor.checkpoint("dither")
        else:
            output = mapped
        _report(progress_callback, 0.95, "結果を生成")

        elapsed = monitor.finish()
        result = ConversionResult(
            pixels=output,
            palette=palette_to_hex(palette),
            width=target_w,
            height=target_h,
            processing_time=elapsed,
            colored_pixels=target_w * target_h,
            metadata={
                "original_size": int(pixels.nbytes),
                "processed_size": int(output.nbytes),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "optimizations": list(plan.optimizations),
                "source_size": {"width": src_w, "height": src_h},
                "palette_method": params.palette_method,
            },
        )
    except PixelArtError:
        raise
    except Exception as exc:
        raise ProcessingError(f"変換に失敗しました: {exc}") from exc

    _report(progress_callback, 1.0, "変換完了")
    return result
