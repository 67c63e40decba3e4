import numpy as np
import pytest

from pixelart.config import MB, OptimizerConfig
from pixelart.optimizer import (
    BufferPool,
    MemoryMonitor,
    PerformanceMonitor,
    PerformanceOptimizer,
    adjust_for_memory,
    quality_settings,
    recommend_chunk_rows,
)


def _optimizer(used_bytes=0, **config):
    return PerformanceOptimizer(OptimizerConfig(**config), MemoryMonitor(reader=lambda: used_bytes, relative=False))


@pytest.mark.parametrize(
    "size, expected",
    [((100, 100), 100), ((2000, 2000), 1024), ((2500, 2500), 512), ((3000, 3000), 256)],
)
def test_recommend_chunk_rows(size, expected):
    assert recommend_chunk_rows(*size) == expected


def test_should_use_worker_pool_thresholds():
    opt = _optimizer()
    assert not opt.should_use_worker_pool(1000, 1000)
    assert opt.should_use_worker_pool(2000, 2000)
    assert opt.should_use_worker_pool(100, 100, buffer_bytes=21 * MB)
    assert not _optimizer(use_worker_pool=False).should_use_worker_pool(4000, 4000)


def test_should_use_chunking():
    opt = _optimizer()
    assert not opt.should_use_chunking(50 * MB)
    assert opt.should_use_chunking(50 * MB + 1)


def test_quality_settings_presets():
    fast = quality_settings(100, 100, "fast")
    assert (fast.enable_chunking, fast.chunk_rows, fast.enable_parallel, fast.max_memory_mb, fast.max_colors) == (
        False,
        256,
        False,
        50,
        8,
    )
    balanced = quality_settings(5000, 1000, "balanced")
    assert balanced.enable_chunking and balanced.enable_parallel
    assert balanced.max_colors == 16
    high = quality_settings(1500, 1000, "high_quality")
    assert high.enable_chunking and not high.enable_parallel
    assert (high.chunk_rows, high.max_memory_mb, high.max_colors) == (1024, 200, 32)


def test_adjust_for_memory_degrades_under_pressure():
    settings = quality_settings(5000, 1000, "balanced")
    assert adjust_for_memory(settings, used_mb=50) is settings
    degraded = adjust_for_memory(settings, used_mb=90)
    assert degraded.chunk_rows == 256
    assert degraded.enable_chunking
    assert not degraded.enable_parallel
    floor = adjust_for_memory(quality_settings(10, 10, "fast"), used_mb=45)
    assert floor.chunk_rows == 128


def test_plan_small_image_runs_inline():
    plan = _optimizer().plan(200, 200, "balanced")
    assert not plan.use_pool
    assert not plan.chunked
    assert plan.chunk_rows == 200
    assert plan.optimizations == ()


def test_plan_large_image_uses_pool_and_chunks():
    plan = _optimizer().plan(3000, 3000, "balanced")
    assert plan.use_pool
    assert plan.chunked
    assert plan.settings.enable_parallel
    assert plan.chunk_rows == 256
    assert "worker_pool" in plan.optimizations


def test_plan_reacts_to_memory_pressure():
    plan = _optimizer(used_bytes=95 * MB).plan(3000, 3000, "balanced")
    assert plan.chunked
    assert not plan.settings.enable_parallel
    assert "parallel" not in plan.optimizations


def test_memory_monitor_is_relative_to_baseline():
    readings = iter([100 * MB, 130 * MB, 90 * MB])
    monitor = MemoryMonitor(reader=lambda: next(readings))
    assert monitor.used_mb() == pytest.approx(30.0)
    assert monitor.used_bytes() == 0


def test_memory_monitor_reads_process_memory():
    assert MemoryMonitor(relative=False).used_bytes() > 0


def test_buffer_pool_reuses_arrays():
    pool = BufferPool(max_per_key=1)
    first = pool.acquire((4, 4, 3), np.float64)
    pool.release(first)
    assert pool.acquire((4, 4, 3), np.float64) is first
    assert (pool.hits, pool.misses) == (1, 1)
    other = pool.acquire((4, 4, 3), np.float32)
    assert other.dtype == np.float32
    pool.release(first)
    pool.release(np.empty((4, 4, 3)))
    pool.release(other)
    assert pool.retained == 2
    pool.clear()
    assert pool.retained == 0


def test_performance_monitor_checkpoints():
    monitor = PerformanceMonitor("test")
    first = monitor.checkpoint("a")
    second = monitor.checkpoint("b")
    assert second >= first >= 0
    assert [name for name, _ in monitor.checkpoints] == ["a", "b"]
    assert monitor.finish() >= second
