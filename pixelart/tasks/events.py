"""ジョブ状態の変化を購読者へ配信する小さなチャネル。"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from ..models import Job

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
COMPLETED = "completed"
FAILED = "failed"

Listener = Callable[[str, Job], None]


class JobEvents:
    """task_id ごとの購読者リスト。task_id=None の購読者は全ジョブのイベントを受け取る。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: Dict[Optional[str], List[Listener]] = defaultdict(list)

    def subscribe(self, task_id: Optional[str], listener: Listener) -> Callable[[], None]:
        """購読を登録し、解除用の関数を返す。"""
        with self._lock:
            self._listeners[task_id].append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(task_id)
                if listeners and listener in listeners:
                    listeners.remove(listener)
                    if not listeners:
                        del self._listeners[task_id]

        return unsubscribe

    def publish(self, event: str, job: Job) -> None:
        with self._lock:
            targets = list(self._listeners.get(job.task_id, ())) + list(self._listeners.get(None, ()))
        for listener in targets:
            try:
                listener(event, job)
            except Exception:
                # 購読者の例外は記録だけして配信を続ける
                logger.exception("イベント購読者でエラー: %s (%s)", event, job.task_id)

    def discard(self, task_id: str) -> None:
        with self._lock:
            self._listeners.pop(task_id, None)

    def listener_count(self, task_id: Optional[str] = None) -> int:
        with self._lock:
            return len(self._listeners.get(task_id, ()))
