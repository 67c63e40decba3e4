import threading

import numpy as np
import pytest

from pixelart.config import SchedulerConfig, Settings
from pixelart.errors import ProcessingError, ValidationError
from pixelart.io_utils import encode_image
from pixelart.models import COMPLETED, FAILED, PROCESSING, QUEUED, ConversionParams, ConversionResult
from pixelart.tasks import TaskManager, estimate_processing_time

from .conftest import wait_until


def _fake_result(pixels):
    return ConversionResult(pixels=pixels, palette=["#000000"], width=pixels.shape[1], height=pixels.shape[0], processing_time=1.0)


def test_solid_red_end_to_end(manager_factory, solid_red):
    manager = manager_factory(autostart=True)
    image_id = manager.store_pixels(solid_red)
    task_id = manager.create_task(image_id, {"resize_factor": 50, "color_mode": "none"})
    job = manager.wait_for(task_id, timeout=10)
    assert job.status == COMPLETED
    assert job.progress == 100
    assert job.result.palette == ["#ff0000"]
    assert (job.result.width, job.result.height) == (50, 50)
    assert job.actual_time is not None and job.actual_time >= 0


def test_store_uploaded_image_decodes_bytes(manager_factory, gradient):
    manager = manager_factory()
    image_id = manager.store_uploaded_image(encode_image(gradient), file_name="g.png")
    image = manager.get_uploaded_image(image_id)
    assert (image.width, image.height, image.mime_type, image.file_name) == (400, 400, "image/png", "g.png")
    assert np.array_equal(image.pixels, gradient)
    assert manager.get_uploaded_image("img_missing") is None


def test_store_pixels_rejects_non_rgb(manager_factory):
    with pytest.raises(ValidationError):
        manager_factory().store_pixels(np.zeros((4, 4), dtype=np.uint8))


def test_jobs_run_in_fifo_order(manager_factory, solid_red):
    seen = []

    def pipeline(pixels, params, progress_callback=None, **kwargs):
        seen.append(params.resize_factor)
        return _fake_result(pixels)

    manager = manager_factory(pipeline=pipeline)
    image_id = manager.store_pixels(solid_red)
    first = manager.create_task(image_id, ConversionParams(resize_factor=10))
    second = manager.create_task(image_id, ConversionParams(resize_factor=20))
    assert manager.get_task(first).status == QUEUED

    assert manager.tick()
    assert manager.get_task(first).status == COMPLETED
    assert manager.get_task(second).status == QUEUED
    assert manager.tick()
    assert not manager.tick()
    assert seen == [10.0, 20.0]


def test_only_one_job_processes_at_a_time(manager_factory, solid_red):
    gate = threading.Event()

    def pipeline(pixels, params, progress_callback=None, **kwargs):
        gate.wait(5)
        return _fake_result(pixels)

    manager = manager_factory(pipeline=pipeline, autostart=True)
    image_id = manager.store_pixels(solid_red)
    first = manager.create_task(image_id, ConversionParams())
    second = manager.create_task(image_id, ConversionParams())
    assert wait_until(lambda: manager.get_task(first).status == PROCESSING)
    assert manager.get_task(second).status == QUEUED
    assert manager.get_stats()["processing"] == first
    gate.set()
    assert manager.wait_for(second, timeout=5).status == COMPLETED
    assert manager.get_task(first).status == COMPLETED


def test_progress_is_monotonic_and_capped(manager_factory, solid_red):
    def pipeline(pixels, params, progress_callback=None, **kwargs):
        for value in (0.2, 0.6, 0.3, 0.999, 1.0):
            progress_callback(value, "step")
        return _fake_result(pixels)

    manager = manager_factory(pipeline=pipeline)
    task_id = manager.create_task(manager.store_pixels(solid_red), ConversionParams())
    events = []
    manager.subscribe(task_id, lambda event, job: events.append((event, job.progress)))
    manager.tick()

    progress = [p for _, p in events]
    assert progress == sorted(progress)
    assert max(p for e, p in events if e == "updated") == 99
    assert events[-1] == ("completed", 100)


def test_failed_job_keeps_progress(manager_factory, solid_red):
    def pipeline(pixels, params, progress_callback=None, **kwargs):
        progress_callback(0.4, "resize")
        raise ProcessingError("boom")

    manager = manager_factory(pipeline=pipeline)
    task_id = manager.create_task(manager.store_pixels(solid_red), ConversionParams())
    manager.tick()
    job = manager.get_task(task_id)
    assert job.status == FAILED
    assert job.error == "boom"
    assert job.progress == 40
    assert job.result is None


def test_missing_image_fails_job(manager_factory):
    manager = manager_factory()
    task_id = manager.create_task("img_gone", ConversionParams())
    assert manager.get_task(task_id).estimated_time == 10.0
    manager.tick()
    job = manager.get_task(task_id)
    assert job.status == FAILED
    assert "img_gone" in job.error


def test_unknown_task_returns_none(manager_factory):
    manager = manager_factory()
    assert manager.get_task("task_nope") is None
    assert manager.wait_for("task_nope", timeout=0.1) is None


def test_wait_for_times_out_with_current_state(manager_factory, solid_red):
    manager = manager_factory()
    task_id = manager.create_task(manager.store_pixels(solid_red), ConversionParams())
    job = manager.wait_for(task_id, timeout=0.05)
    assert job.status == QUEUED


@pytest.mark.parametrize(
    "size, params, expected",
    [
        ((100, 100), ConversionParams(), 1.0),
        ((400, 400), ConversionParams(), 3.0),
        ((1000, 1000), ConversionParams(), 8.0),
        ((2000, 2000), ConversionParams(), 15.0),
        ((100, 100), ConversionParams(color_mode="ordered_dithering_bayer"), 1.5),
    ],
)
def test_estimate_processing_time(size, params, expected):
    assert estimate_processing_time(*size, params) == expected


def test_cleanup_expires_images_and_finished_jobs(manager_factory, solid_red):
    now = [1_000_000.0]
    manager = manager_factory(clock=lambda: now[0], pipeline=lambda pixels, params, **kw: _fake_result(pixels))
    image_id = manager.store_pixels(solid_red)
    done = manager.create_task(image_id, ConversionParams())
    manager.tick()
    waiting = manager.create_task(image_id, ConversionParams())

    now[0] += 2 * 60 * 60
    assert manager.cleanup() == (0, 1)
    assert manager.get_uploaded_image(image_id) is None

    now[0] += 24 * 60 * 60
    assert manager.cleanup() == (1, 0)
    assert manager.get_task(done) is None
    # 未完了のジョブは残す
    assert manager.get_task(waiting).status == QUEUED


def test_stats_and_events(manager_factory, solid_red):
    manager = manager_factory(pipeline=lambda pixels, params, **kw: _fake_result(pixels))
    received = []
    unsubscribe = manager.subscribe(None, lambda event, job: received.append(event))
    task_id = manager.create_task(manager.store_pixels(solid_red), ConversionParams())
    manager.tick()
    assert received[0] == "created"
    assert received[-1] == "completed"
    stats = manager.get_stats()
    assert stats["tasks"][COMPLETED] == 1
    assert stats["total_tasks"] == 1
    assert stats["images"] == 1
    assert stats["queue_length"] == 0
    unsubscribe()
    assert manager.events.listener_count(None) == 0
    manager.create_task(manager.store_pixels(solid_red), ConversionParams())
    assert received[-1] == "completed"
    assert manager.get_task(task_id).status == COMPLETED


def test_owned_pool_is_shut_down_on_close(solid_red):
    settings = Settings(scheduler=SchedulerConfig(tick_interval=0.05))
    with TaskManager(settings) as manager:
        assert manager.pool is not None
        task_id = manager.create_task(manager.store_pixels(solid_red), ConversionParams(resize_factor=20))
        assert manager.wait_for(task_id, timeout=10).status == COMPLETED
    assert manager.pool.closed
    with pytest.raises(RuntimeError):
        manager.create_task("img", ConversionParams())
