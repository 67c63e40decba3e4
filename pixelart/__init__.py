"""Pixel art conversion: resize, palette extraction, dithering and job management."""

from __future__ import annotations

from .config import Settings, load_settings
from .errors import (
    PixelArtError,
    PoolClosedError,
    ProcessingError,
    ValidationError,
    WorkerFaultError,
    WorkerTimeoutError,
)
from .models import ConversionParams, ConversionResult, Job
from .pipeline import ProgressCb, convert_pixels
from .tasks import TaskManager
from .workers import WorkerPool, WorkerTask

__version__ = "0.1.0"

__all__ = [
    "ConversionParams",
    "ConversionResult",
    "Job",
    "PixelArtError",
    "PoolClosedError",
    "ProcessingError",
    "ProgressCb",
    "Settings",
    "TaskManager",
    "ValidationError",
    "WorkerFaultError",
    "WorkerPool",
    "WorkerTask",
    "WorkerTimeoutError",
    "convert_pixels",
    "load_settings",
]
