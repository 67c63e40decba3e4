"""画像処理のサブ工程をスレッドで実行するワーカープール。"""

from __future__ import annotations

from .pool import WorkerPool
from .tasks import (
    DitherTask,
    PixelArtTask,
    QuantizeTask,
    ResizeTask,
    TaskPayload,
    WorkerTask,
    run_task,
)

__all__ = [
    "WorkerPool",
    "WorkerTask",
    "TaskPayload",
    "ResizeTask",
    "QuantizeTask",
    "DitherTask",
    "PixelArtTask",
    "run_task",
]
