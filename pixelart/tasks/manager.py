"""変換ジョブの受付・逐次実行・進捗管理・期限切れデータの掃除。

TaskManager は画像ストア、ジョブストア、待ち行列、ワーカープール、イベントチャネルを
ひとまとめに持つ。ジョブは FIFO で1件ずつ処理する（大きな画像を同時に複数
展開しないため）。スケジューラは tick_interval ごと、または新規ジョブ投入時に起きる。
"""

from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, Mapping, Optional, Tuple

import numpy as np

from ..config import Settings
from ..errors import ValidationError
from ..io_utils import compute_target_size, decode_image, mime_type_for
from ..models import COMPLETED, FAILED, PROCESSING, QUEUED, ConversionParams, ConversionResult, Job, UploadedImage
from ..optimizer import BufferPool, PerformanceOptimizer
from ..pipeline import convert_pixels
from ..workers.pool import WorkerPool
from . import events
from .events import JobEvents, Listener

logger = logging.getLogger(__name__)

Pipeline = Callable[..., ConversionResult]
Clock = Callable[[], float]

UNKNOWN_IMAGE_ESTIMATE = 10.0  # 画像が見つからないときの目安（秒）


def estimate_processing_time(width: int, height: int, params: ConversionParams) -> float:
    """出力画素数から処理時間（秒）の目安を返す。ordered ディザは1.5倍。"""
    target_w, target_h = compute_target_size(width, height, params.resize_factor)
    pixels = target_w * target_h
    if pixels > 500_000:
        estimate = 15.0
    elif pixels > 100_000:
        estimate = 8.0
    elif pixels > 10_000:
        estimate = 3.0
    else:
        estimate = 1.0
    if params.color_mode == "ordered_dithering_bayer":
        estimate *= 1.5
    return estimate


def _new_id(prefix: str, now: float) -> str:
    return f"{prefix}_{int(now * 1000)}_{uuid.uuid4().hex[:9]}"


class TaskManager:
    def __init__(
        self,
        settings: Settings | None = None,
        pool: WorkerPool | None = None,
        optimizer: PerformanceOptimizer | None = None,
        pipeline: Pipeline = convert_pixels,
        clock: Clock = time.time,
        autostart: bool = True,
    ) -> None:
        self.settings = settings or Settings()
        self.optimizer = optimizer or PerformanceOptimizer(self.settings.optimizer)
        self._owns_pool = pool is None and self.optimizer.use_worker_pool
        self.pool = pool if pool is not None else (WorkerPool(self.settings.pool) if self._owns_pool else None)
        self.buffers = BufferPool()
        self.events = JobEvents()
        self._pipeline = pipeline
        self._clock = clock

        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._images: Dict[str, UploadedImage] = {}
        self._jobs: Dict[str, Job] = {}
        self._queue: Deque[str] = deque()
        self._processing: Optional[str] = None

        self._wake = threading.Event()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._closed = False
        if autostart:
            self.start()

    # --- ライフサイクル ---
    def start(self) -> None:
        if self._threads or self._closed:
            return
        self._threads = [
            threading.Thread(target=self._scheduler_loop, name="pixelart-scheduler", daemon=True),
            threading.Thread(target=self._cleanup_loop, name="pixelart-cleanup", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            "タスクマネージャを開始: tick=%.1fs cleanup=%.0fs",
            self.settings.scheduler.tick_interval,
            self.settings.scheduler.cleanup_interval,
        )

    def close(self, timeout: float = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        self._wake.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        if self._owns_pool and self.pool is not None:
            self.pool.shutdown()
        self.buffers.clear()
        logger.info("タスクマネージャを終了しました")

    def __enter__(self) -> "TaskManager":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # --- 画像ストア ---
    def store_uploaded_image(self, data: bytes, file_name: str = "", mime_type: str | None = None) -> str:
        """エンコード済みの画像データをデコードして保存し、image_id を返す。"""
        pixels, _, _, fmt = decode_image(data)
        return self.store_pixels(
            pixels,
            file_name=file_name,
            mime_type=mime_type or mime_type_for(fmt),
            file_size=len(data),
        )

    def store_pixels(
        self,
        pixels: np.ndarray,
        file_name: str = "",
        mime_type: str = "image/png",
        file_size: int | None = None,
    ) -> str:
        if pixels.ndim != 3 or pixels.shape[2] != 3 or pixels.shape[0] < 1 or pixels.shape[1] < 1:
            raise ValidationError(f"RGB画像 (H, W, 3) が必要です: shape={pixels.shape}")
        pixels = np.ascontiguousarray(pixels, dtype=np.uint8)
        now = self._clock()
        image = UploadedImage(
            image_id=_new_id("img", now),
            pixels=pixels,
            width=int(pixels.shape[1]),
            height=int(pixels.shape[0]),
            file_size=int(file_size if file_size is not None else pixels.nbytes),
            mime_type=mime_type,
            uploaded_at=now,
            file_name=file_name,
        )
        with self._lock:
            self._images[image.image_id] = image
        logger.info("画像を保存: %s %dx%d (%s)", image.image_id, image.width, image.height, file_name or mime_type)
        return image.image_id

    def get_uploaded_image(self, image_id: str) -> Optional[UploadedImage]:
        with self._lock:
            return self._images.get(image_id)

    # --- ジョブ ---
    def create_task(self, image_id: str, params: ConversionParams | Mapping[str, Any]) -> str:
        if not isinstance(params, ConversionParams):
            params = ConversionParams(**dict(params))
        now = self._clock()
        with self._lock:
            if self._closed:
                raise RuntimeError("タスクマネージャは既に終了しています。")
            image = self._images.get(image_id)
            if image is None:
                estimate = UNKNOWN_IMAGE_ESTIMATE
            else:
                estimate = estimate_processing_time(image.width, image.height, params)
            job = Job(task_id=_new_id("task", now), image_id=image_id, params=params, created_at=now, estimated_time=estimate)
            self._jobs[job.task_id] = job
            self._queue.append(job.task_id)
            snapshot = job.snapshot()
            queued = len(self._queue)
        logger.info("ジョブを登録: %s image=%s 待ち=%d 目安=%.1fs", job.task_id, image_id, queued, estimate)
        self.events.publish(events.CREATED, snapshot)
        self._wake.set()
        return job.task_id

    def get_task(self, task_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(task_id)
            return job.snapshot() if job else None

    def wait_for(self, task_id: str, timeout: float | None = None) -> Optional[Job]:
        """ジョブが完了/失敗するまで待つ。時間切れなら現在の状態を返す。"""
        with self._changed:
            self._changed.wait_for(
                lambda: task_id not in self._jobs or self._jobs[task_id].is_terminal,
                timeout=timeout,
            )
            job = self._jobs.get(task_id)
            return job.snapshot() if job else None

    def subscribe(self, task_id: str | None, listener: Listener) -> Callable[[], None]:
        return self.events.subscribe(task_id, listener)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            counts = {QUEUED: 0, PROCESSING: 0, COMPLETED: 0, FAILED: 0}
            for job in self._jobs.values():
                counts[job.status] = counts.get(job.status, 0) + 1
            stats: Dict[str, Any] = {
                "tasks": counts,
                "total_tasks": len(self._jobs),
                "queue_length": len(self._queue),
                "processing": self._processing,
                "images": len(self._images),
            }
        if self.pool is not None:
            stats["pool"] = self.pool.get_status()
        return stats

    # --- スケジューラ ---
    def tick(self) -> bool:
        """処理中のジョブがなければ次の1件を実行する。実行したら True。"""
        with self._lock:
            if self._processing is not None or not self._queue:
                return False
            task_id = self._queue.popleft()
            job = self._jobs.get(task_id)
            if job is None:
                return True
            job.status = PROCESSING
            job.started_at = self._clock()
            job.current_step = "処理開始"
            self._processing = task_id
            snapshot = job.snapshot()
        logger.info("ジョブを開始: %s", task_id)
        self.events.publish(events.UPDATED, snapshot)
        try:
            self._run_job(snapshot)
        finally:
            with self._changed:
                self._processing = None
                self._changed.notify_all()
        return True

    def _run_job(self, job: Job) -> None:
        image = self.get_uploaded_image(job.image_id)
        if image is None:
            self._fail(job.task_id, f"画像が見つかりません: {job.image_id}")
            return

        def on_progress(value: float, step: str) -> None:
            self._update_progress(job.task_id, value, step)

        try:
            result = self._pipeline(
                image.pixels,
                job.params,
                progress_callback=on_progress,
                pool=self.pool,
                optimizer=self.optimizer,
                buffers=self.buffers,
                config=self.settings.pipeline,
            )
        except Exception as exc:
            logger.exception("ジョブが失敗: %s", job.task_id)
            self._fail(job.task_id, str(exc) or type(exc).__name__)
            return
        self._complete(job.task_id, result)

    def _update_progress(self, task_id: str, value: float, step: str) -> None:
        percent = min(99, int(math.floor(float(value) * 100 + 0.5)))
        with self._lock:
            job = self._jobs.get(task_id)
            if job is None or job.status != PROCESSING:
                return
            job.progress = max(job.progress, percent)
            job.current_step = step
            snapshot = job.snapshot()
        self.events.publish(events.UPDATED, snapshot)

    def _complete(self, task_id: str, result: ConversionResult) -> None:
        with self._changed:
            job = self._jobs.get(task_id)
            if job is None:
                return
            job.status = COMPLETED
            job.progress = 100
            job.current_step = "完了"
            job.result = result
            job.completed_at = self._clock()
            job.actual_time = job.completed_at - (job.started_at or job.completed_at)
            snapshot = job.snapshot()
            self._changed.notify_all()
        logger.info("ジョブ完了: %s (%.2fs, %d色)", task_id, snapshot.actual_time or 0.0, len(result.palette))
        self.events.publish(events.COMPLETED, snapshot)

    def _fail(self, task_id: str, message: str) -> None:
        with self._changed:
            job = self._jobs.get(task_id)
            if job is None:
                return
            job.status = FAILED
            job.error = message
            job.current_step = "エラー"
            job.completed_at = self._clock()
            if job.started_at is not None:
                job.actual_time = job.completed_at - job.started_at
            snapshot = job.snapshot()
            self._changed.notify_all()
        logger.warning("ジョブ失敗: %s: %s", task_id, message)
        self.events.publish(events.FAILED, snapshot)

    def _scheduler_loop(self) -> None:
        interval = self.settings.scheduler.tick_interval
        while not self._stop.is_set():
            try:
                while not self._stop.is_set() and self.tick():
                    pass
            except Exception:
                logger.exception("スケジューラでエラーが発生しました")
            self._wake.wait(interval)
            self._wake.clear()

    # --- 掃除 ---
    def cleanup(self) -> Tuple[int, int]:
        """期限切れの終了済みジョブと古い画像を削除し、(ジョブ数, 画像数) を返す。"""
        now = self._clock()
        task_ttl = self.settings.scheduler.task_ttl
        image_ttl = self.settings.scheduler.image_ttl
        with self._lock:
            stale_jobs = [
                task_id
                for task_id, job in self._jobs.items()
                if job.is_terminal and now - job.created_at > task_ttl
            ]
            for task_id in stale_jobs:
                del self._jobs[task_id]
            stale_images = [image_id for image_id, image in self._images.items() if now - image.uploaded_at > image_ttl]
            for image_id in stale_images:
                del self._images[image_id]
        for task_id in stale_jobs:
            self.events.discard(task_id)
        if stale_jobs or stale_images:
            logger.info("期限切れデータを削除: ジョブ %d件 画像 %d件", len(stale_jobs), len(stale_images))
        return len(stale_jobs), len(stale_images)

    def _cleanup_loop(self) -> None:
        while not self._stop.wait(self.settings.scheduler.cleanup_interval):
            try:
                self.cleanup()
            except Exception:
                logger.exception("クリーンアップでエラーが発生しました")
