"""設定値の既定値と、JSONファイル・環境変数による上書き。"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

from .errors import ValidationError

MB = 1024 * 1024
ENV_PREFIX = "PIXELART_"


def _default_max_workers() -> int:
    return max(2, (os.cpu_count() or 1) - 1)


@dataclass(frozen=True)
class PoolConfig:
    """ワーカープールの上限・タイムアウト類。Noneは自動決定。"""

    max_workers: int | None = None
    min_workers: int | None = None
    task_timeout: float = 30.0
    idle_timeout: float = 60.0
    max_worker_errors: int = 5

    def resolved_max_workers(self) -> int:
        return self.max_workers if self.max_workers else _default_max_workers()

    def resolved_min_workers(self) -> int:
        if self.min_workers is not None:
            return max(0, min(self.min_workers, self.resolved_max_workers()))
        return max(1, self.resolved_max_workers() // 2)


@dataclass(frozen=True)
class SchedulerConfig:
    """ジョブスケジューラとクリーンアップの周期・保持期間（秒）。"""

    tick_interval: float = 1.0
    cleanup_interval: float = 300.0
    task_ttl: float = 24 * 60 * 60.0
    image_ttl: float = 60 * 60.0


@dataclass(frozen=True)
class OptimizerConfig:
    """分割処理とプール利用を判断する閾値。"""

    max_buffer_bytes: int = 50 * MB
    pool_pixel_threshold: int = 2 * 1024 * 1024
    pool_buffer_threshold: int = 20 * MB
    memory_pressure_ratio: float = 0.8
    min_chunk_rows: int = 128
    use_worker_pool: bool = True


@dataclass(frozen=True)
class PipelineConfig:
    """パイプラインの定数。ディザの振幅はベイヤー閾値に掛ける値。"""

    dither_scale: float = 64.0
    bayer_size: int = 8
    max_output_dimension: int = 2048
    post_sharpen: bool = True


@dataclass(frozen=True)
class Settings:
    pool: PoolConfig = field(default_factory=PoolConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)


# 環境変数名 -> (セクション, フィールド)
_ENV_KEYS: dict[str, tuple[str, str]] = {
    "MAX_WORKERS": ("pool", "max_workers"),
    "MIN_WORKERS": ("pool", "min_workers"),
    "TASK_TIMEOUT": ("pool", "task_timeout"),
    "IDLE_TIMEOUT": ("pool", "idle_timeout"),
    "MAX_WORKER_ERRORS": ("pool", "max_worker_errors"),
    "TICK_INTERVAL": ("scheduler", "tick_interval"),
    "CLEANUP_INTERVAL": ("scheduler", "cleanup_interval"),
    "TASK_TTL": ("scheduler", "task_ttl"),
    "IMAGE_TTL": ("scheduler", "image_ttl"),
    "USE_WORKER_POOL": ("optimizer", "use_worker_pool"),
    "DITHER_SCALE": ("pipeline", "dither_scale"),
    "MAX_OUTPUT_DIMENSION": ("pipeline", "max_output_dimension"),
}


def _coerce(section: Any, name: str, raw: Any) -> Any:
    """既定値の型に合わせて値を変換する。"""
    default = getattr(section, name)
    try:
        if isinstance(default, bool):
            if isinstance(raw, str):
                return raw.strip().lower() in {"1", "true", "yes", "on"}
            return bool(raw)
        if isinstance(default, int) or name in {"max_workers", "min_workers"}:
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"設定値 {name}={raw!r} を解釈できません。") from exc
    return raw


def _apply(section: Any, overrides: Mapping[str, Any]) -> Any:
    known = {f.name for f in fields(section)}
    values = {k: _coerce(section, k, v) for k, v in overrides.items() if k in known}
    return replace(section, **values) if values else section


def load_settings(path: str | Path | None = None, env: Mapping[str, str] | None = None) -> Settings:
    """既定値 → JSON設定ファイル → 環境変数 の順に上書きした設定を返す。"""
    env = os.environ if env is None else env
    settings = Settings()
    sections: dict[str, dict[str, Any]] = {}

    if path is not None:
        p = Path(path)
        if p.exists():
            try:
                data = json.loads(p.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise ValidationError(f"設定ファイルを読み込めません: {p}") from exc
            for name in ("pool", "scheduler", "optimizer", "pipeline"):
                if isinstance(data.get(name), dict):
                    sections.setdefault(name, {}).update(data[name])

    for key, (name, attr) in _ENV_KEYS.items():
        raw = env.get(ENV_PREFIX + key)
        if raw not in (None, ""):
            sections.setdefault(name, {})[attr] = raw
    raw_mb = env.get(ENV_PREFIX + "MAX_BUFFER_MB")
    if raw_mb not in (None, ""):
        try:
            sections.setdefault("optimizer", {})["max_buffer_bytes"] = int(float(raw_mb) * MB)
        except ValueError as exc:
            raise ValidationError(f"PIXELART_MAX_BUFFER_MB={raw_mb!r} を解釈できません。") from exc

    return Settings(
        pool=_apply(settings.pool, sections.get("pool", {})),
        scheduler=_apply(settings.scheduler, sections.get("scheduler", {})),
        optimizer=_apply(settings.optimizer, sections.get("optimizer", {})),
        pipeline=_apply(settings.pipeline, sections.get("pipeline", {})),
    )
