"""変換ジョブの管理（待ち行列・進捗・イベント配信）。"""

from __future__ import annotations

from .events import JobEvents
from .manager import TaskManager, estimate_processing_time

__all__ = [
    "JobEvents",
    "TaskManager",
    "estimate_processing_time",
]
