"""変換パイプラインとワーカープールが送出する例外の一覧。"""

from __future__ import annotations


class PixelArtError(Exception):
    """このパッケージが送出する例外の基底クラス。"""


class ValidationError(PixelArtError, ValueError):
    """パラメータや設定値が不正なときに送出する。"""


class ProcessingError(PixelArtError):
    """デコード・リサイズ・ディザリング中の失敗。"""


class WorkerTimeoutError(PixelArtError, TimeoutError):
    """ワーカーへ渡したタスクが制限時間内に応答しなかった。"""

    def __init__(self, task_id: str, timeout: float) -> None:
        super().__init__(f"タスクがタイムアウトしました: {task_id} ({timeout:.1f}s)")
        self.task_id = task_id
        self.timeout = timeout


class WorkerFaultError(PixelArtError):
    """エラーが閾値を超えたためワーカーを終了させた。"""

    def __init__(self, worker_id: str, errors: int) -> None:
        super().__init__(f"ワーカー {worker_id} のエラーが多すぎるため終了しました (errors={errors})")
        self.worker_id = worker_id
        self.errors = errors


class PoolClosedError(PixelArtError):
    """シャットダウン済みのプールにタスクが残っていた、または投入された。"""
