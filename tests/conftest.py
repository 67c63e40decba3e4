from __future__ import annotations

import time
from typing import Callable

import numpy as np
import pytest

from pixelart.config import OptimizerConfig, SchedulerConfig, Settings
from pixelart.optimizer import MemoryMonitor, PerformanceOptimizer
from pixelart.tasks import TaskManager


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def solid_red() -> np.ndarray:
    img = np.zeros((100, 100, 3), dtype=np.uint8)
    img[..., 0] = 255
    return img


def make_gradient(width: int, height: int) -> np.ndarray:
    xs = np.linspace(0, 255, width, dtype=np.float64)
    ys = np.linspace(0, 255, height, dtype=np.float64)
    img = np.zeros((height, width, 3), dtype=np.uint8)
    img[..., 0] = np.round(xs)[None, :]
    img[..., 1] = np.round(ys)[:, None]
    img[..., 2] = np.round((xs[None, :] + ys[:, None]) / 2)
    return img


@pytest.fixture
def gradient() -> np.ndarray:
    return make_gradient(400, 400)


@pytest.fixture
def quiet_optimizer() -> PerformanceOptimizer:
    """メモリ使用量0・プール無効のオプティマイザ。"""
    return PerformanceOptimizer(OptimizerConfig(use_worker_pool=False), MemoryMonitor(reader=lambda: 0, relative=False))


@pytest.fixture
def manager_factory(quiet_optimizer):
    created: list[TaskManager] = []

    def factory(**kwargs) -> TaskManager:
        kwargs.setdefault("settings", Settings(scheduler=SchedulerConfig(tick_interval=0.05)))
        kwargs.setdefault("optimizer", quiet_optimizer)
        kwargs.setdefault("autostart", False)
        manager = TaskManager(**kwargs)
        created.append(manager)
        return manager

    yield factory
    for manager in created:
        manager.close(timeout=1.0)
