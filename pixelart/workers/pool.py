"""ワーカースレッドプール。

各ワーカーは専用の受信キューを持つスレッドで、結果はプール側のハンドラへ送り返す。
プールの内部状態（ワーカーの busy/task_id、カウンタ、待ち行列）はハンドラ内で
ロックを取ったときだけ書き換える。呼び出し側は execute_task / get_status のみを使う。
"""

from __future__ import annotations

import heapq
import itertools
import logging
import queue
import threading
import time
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import PoolConfig
from ..errors import PoolClosedError, WorkerFaultError, WorkerTimeoutError
from .tasks import PRIORITY_RANK, WorkerTask, describe, run_task

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]
Clock = Callable[[], float]


@dataclass
class _Pending:
    task: WorkerTask
    future: Future
    timeout: float
    timer: Optional[threading.Timer] = None


class _Worker:
    """1本のワーカースレッドとその状態。"""

    def __init__(self, worker_id: str, handler: Handler, post: Callable[..., None], clock: Clock) -> None:
        self.id = worker_id
        self.inbox: "queue.Queue[Optional[Tuple[str, Any]]]" = queue.Queue()
        self.busy = False
        self.task_id: Optional[str] = None
        self.pending: Optional[_Pending] = None
        self.tasks_completed = 0
        self.errors = 0
        self.last_used = clock()
        self._handler = handler
        self._post = post
        self.thread = threading.Thread(target=self._run, name=f"pixelart-{worker_id}", daemon=True)
        self.thread.start()

    def _run(self) -> None:
        while True:
            message = self.inbox.get()
            if message is None:
                break
            task_id, payload = message
            try:
                result = self._handler(payload)
            except Exception as exc:
                self._post(self.id, task_id, None, exc)
            else:
                self._post(self.id, task_id, result, None)
            # タイムアウト済みの結果をスレッド側に残さない
            message = payload = result = None

    def assign(self, pending: _Pending, now: float) -> None:
        self.busy = True
        self.task_id = pending.task.id
        self.pending = pending
        self.last_used = now

    def release(self, now: float) -> Optional[_Pending]:
        pending = self.pending
        self.busy = False
        self.task_id = None
        self.pending = None
        self.last_used = now
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    def stop(self) -> None:
        self.inbox.put(None)


class WorkerPool:
    """優先度付き待ち行列を持つ、上限付きのワーカースレッドプール。"""

    def __init__(
        self,
        config: PoolConfig | None = None,
        handler: Handler = run_task,
        clock: Clock = time.monotonic,
        **overrides: Any,
    ) -> None:
        config = config or PoolConfig()
        if overrides:
            config = replace(config, **overrides)
        self.config = config
        self.max_workers = config.resolved_max_workers()
        self.min_workers = config.resolved_min_workers()
        self.task_timeout = float(config.task_timeout)
        self.idle_timeout = float(config.idle_timeout)
        self.max_worker_errors = int(config.max_worker_errors)

        self._handler = handler
        self._clock = clock
        self._lock = threading.RLock()
        self._workers: Dict[str, _Worker] = {}
        self._queue: List[Tuple[int, int, _Pending]] = []
        self._seq = itertools.count()
        self._closed = False
        self._stop_sweep = threading.Event()

        logger.info(
            "ワーカープールを初期化: max=%d min=%d timeout=%.1fs",
            self.max_workers,
            self.min_workers,
            self.task_timeout,
        )
        with self._lock:
            while len(self._workers) < self.min_workers:
                self._create_worker()

        self._sweeper = threading.Thread(target=self._sweep_loop, name="pixelart-pool-sweeper", daemon=True)
        self._sweeper.start()

    # --- 公開API ---
    def execute_task(self, task: WorkerTask) -> Future:
        """タスクを待ち行列へ入れ、結果を受け取る Future を返す。"""
        future: Future = Future()
        timeout = float(task.timeout) if task.timeout else self.task_timeout
        with self._lock:
            if self._closed:
                future.set_exception(PoolClosedError("ワーカープールは既に閉じられています。"))
                return future
            pending = _Pending(task=task, future=future, timeout=timeout)
            heapq.heappush(self._queue, (PRIORITY_RANK[task.priority], next(self._seq), pending))
            logger.debug(
                "タスク受付: %s %s priority=%s queue=%d",
                task.id,
                describe(task.payload),
                task.priority,
                len(self._queue),
            )
            self._process_queue()
        return future

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            stats = [
                {
                    "id": w.id,
                    "busy": w.busy,
                    "task_id": w.task_id,
                    "tasks_completed": w.tasks_completed,
                    "errors": w.errors,
                    "idle_seconds": 0.0 if w.busy else max(0.0, now - w.last_used),
                }
                for w in self._workers.values()
            ]
            return {
                "total_workers": len(self._workers),
                "busy_workers": sum(1 for w in self._workers.values() if w.busy),
                "queued_tasks": len(self._queue),
                "worker_stats": stats,
            }

    @property
    def closed(self) -> bool:
        return self._closed

    def evict_idle_workers(self) -> int:
        """idle_timeout を超えて遊んでいるワーカーを min_workers まで減らす。"""
        evicted = 0
        with self._lock:
            now = self._clock()
            for worker in list(self._workers.values()):
                if len(self._workers) <= self.min_workers:
                    break
                if not worker.busy and now - worker.last_used > self.idle_timeout:
                    logger.debug("空きワーカーを回収: %s", worker.id)
                    self._terminate_worker(worker)
                    evicted += 1
        return evicted

    def shutdown(self, wait: bool = False, timeout: float = 2.0) -> None:
        """全ワーカーを終了し、未完了のタスクを PoolClosedError で打ち切る。"""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._stop_sweep.set()
            logger.info("ワーカープールを終了します")
            workers = list(self._workers.values())
            for worker in workers:
                pending = worker.release(self._clock())
                if pending is not None:
                    self._reject(pending, PoolClosedError("ワーカープールが終了したため処理を中断しました。"))
                self._terminate_worker(worker)
            while self._queue:
                _, _, pending = heapq.heappop(self._queue)
                self._reject(pending, PoolClosedError("ワーカープールが終了しました。"))
        if wait:
            for worker in workers:
                worker.thread.join(timeout=timeout)
            self._sweeper.join(timeout=timeout)

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()

    # --- 内部ハンドラ（すべてロック下で状態を書き換える） ---
    def _create_worker(self) -> _Worker:
        worker_id = f"worker_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        worker = _Worker(worker_id, self._handler, self._on_worker_message, self._clock)
        self._workers[worker_id] = worker
        logger.info("ワーカーを作成: %s (合計 %d)", worker_id, len(self._workers))
        return worker

    def _find_idle_worker(self) -> Optional[_Worker]:
        for worker in self._workers.values():
            if not worker.busy:
                return worker
        return None

    def _process_queue(self) -> None:
        while self._queue and not self._closed:
            worker = self._find_idle_worker()
            if worker is None:
                if len(self._workers) >= self.max_workers:
                    return
                worker = self._create_worker()
            _, _, pending = heapq.heappop(self._queue)
            if not pending.future.set_running_or_notify_cancel():
                # 呼び出し側が投入後にキャンセルした
                continue
            self._assign(worker, pending)

    def _assign(self, worker: _Worker, pending: _Pending) -> None:
        task = pending.task
        worker.assign(pending, self._clock())
        timer = threading.Timer(pending.timeout, self._on_timeout, args=(worker.id, task.id))
        timer.daemon = True
        pending.timer = timer
        logger.debug("タスクを割り当て: %s -> %s (%s)", task.id, worker.id, task.type)
        timer.start()
        worker.inbox.put((task.id, task.payload))

    def _on_worker_message(self, worker_id: str, task_id: str, result: Any, error: Optional[BaseException]) -> None:
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None or worker.task_id != task_id or worker.pending is None:
                logger.debug("破棄済みタスクの結果を無視: %s (%s)", task_id, worker_id)
                return
            pending = worker.release(self._clock())
            if error is None:
                worker.tasks_completed += 1
                logger.debug("タスク完了: %s (%s)", task_id, worker_id)
                self._resolve(pending, result)
            else:
                worker.errors += 1
                logger.debug("タスク失敗: %s (%s): %s", task_id, worker_id, error)
                if worker.errors > self.max_worker_errors:
                    fault = WorkerFaultError(worker_id, worker.errors)
                    fault.__cause__ = error
                    self._reject(pending, fault)
                    self._terminate_worker(worker, reason="errors")
                else:
                    self._reject(pending, error)
            self._process_queue()

    def _on_timeout(self, worker_id: str, task_id: str) -> None:
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None or worker.task_id != task_id or worker.pending is None:
                return
            pending = worker.release(self._clock())
            worker.errors += 1
            logger.warning("タスクがタイムアウト: %s (%s, %.1fs)", task_id, worker_id, pending.timeout)
            self._reject(pending, WorkerTimeoutError(task_id, pending.timeout))
            if worker.errors > self.max_worker_errors:
                self._terminate_worker(worker, reason="errors")
            self._process_queue()

    def _terminate_worker(self, worker: _Worker, reason: str = "") -> None:
        if self._workers.pop(worker.id, None) is None:
            return
        if reason == "errors":
            logger.warning("エラーが多すぎるためワーカーを終了: %s (errors=%d)", worker.id, worker.errors)
        else:
            logger.info("ワーカーを終了: %s", worker.id)
        worker.stop()

    def _sweep_loop(self) -> None:
        interval = max(self.idle_timeout / 2.0, 0.01)
        while not self._stop_sweep.wait(interval):
            self.evict_idle_workers()

    @staticmethod
    def _resolve(pending: _Pending, result: Any) -> None:
        if not pending.future.done():
            pending.future.set_result(result)

    @staticmethod
    def _reject(pending: _Pending, error: BaseException) -> None:
        if pending.timer is not None:
            pending.timer.cancel()
        if not pending.future.done():
            pending.future.set_exception(error)
