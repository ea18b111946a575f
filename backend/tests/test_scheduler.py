from __future__ import annotations

import sys
import threading
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from radar_overlay.services import scheduler as scheduler_module
from radar_overlay.services.builder.rasterize import RenderError
from radar_overlay.services.scheduler import RadarScheduler, SchedulerConfigError


class _FakePipeline:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.refreshes = 0
        self.refreshed = threading.Event()

    def refresh(self) -> dict:
        self.refreshes += 1
        self.refreshed.set()
        if self.error is not None:
            raise self.error
        return {"imageUrl": "/images/radar_1.png"}


def test_status_before_start() -> None:
    scheduler = RadarScheduler(_FakePipeline())
    assert scheduler.status() == {"running": False, "nextRun": None, "lastRun": None, "lastError": None}


def test_trigger_update_records_success() -> None:
    pipeline = _FakePipeline()
    scheduler = RadarScheduler(pipeline)

    assert scheduler.trigger_update() is True

    status = scheduler.status()
    assert pipeline.refreshes == 1
    assert status["lastRun"] is not None and status["lastRun"].endswith("Z")
    assert status["lastError"] is None


def test_trigger_update_failure_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    scheduler = RadarScheduler(_FakePipeline(error=RenderError("disk full")))

    with caplog.at_level("ERROR"):
        assert scheduler.trigger_update() is False

    assert scheduler.status()["lastError"] == "disk full"
    assert "Scheduled radar update failed" in caplog.text


def test_failure_then_success_clears_last_error() -> None:
    pipeline = _FakePipeline(error=RuntimeError("boom"))
    scheduler = RadarScheduler(pipeline)
    scheduler.trigger_update()
    pipeline.error = None
    scheduler.trigger_update()
    assert scheduler.status()["lastError"] is None


def test_start_runs_first_tick_after_initial_delay_and_stops() -> None:
    pipeline = _FakePipeline()
    scheduler = RadarScheduler(pipeline, interval=60.0, initial_delay=0.0)

    scheduler.start()
    try:
        assert pipeline.refreshed.wait(timeout=5.0)
        assert scheduler.running is True
        assert scheduler.status()["running"] is True
    finally:
        scheduler.stop()

    assert scheduler.running is False
    assert scheduler.status()["nextRun"] is None
    assert pipeline.refreshes == 1


def test_start_is_idempotent() -> None:
    scheduler = RadarScheduler(_FakePipeline(), interval=60.0, initial_delay=30.0)
    scheduler.start()
    first_thread = scheduler._thread
    scheduler.start()
    try:
        assert scheduler._thread is first_thread
        assert scheduler.status()["nextRun"] is not None
    finally:
        scheduler.stop()


def test_non_positive_interval_rejected() -> None:
    with pytest.raises(SchedulerConfigError):
        RadarScheduler(_FakePipeline(), interval=0)


def test_main_rejects_short_interval(monkeypatch: pytest.MonkeyPatch) -> None:
    def fail_build(settings):
        raise AssertionError("pipeline must not be built")

    monkeypatch.setattr(scheduler_module, "build_pipeline", fail_build)
    assert scheduler_module.main(["--interval", "5"]) == 1


def test_main_once_refreshes_and_closes(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    seen: dict[str, object] = {}

    class _Acquirer:
        closed = False

        def close(self) -> None:
            _Acquirer.closed = True

    class _Pipeline(_FakePipeline):
        acquirer = _Acquirer()
        closed = False

        def close(self) -> None:
            _Pipeline.closed = True

    def fake_build(settings):
        seen["settings"] = settings
        return _Pipeline()

    monkeypatch.setattr(scheduler_module, "build_pipeline", fake_build)

    code = scheduler_module.main(["--once", "--interval", "30", "--images-dir", str(tmp_path)])

    assert code == 0
    assert seen["settings"].scheduler_interval == 30.0
    assert seen["settings"].images_dir == tmp_path.resolve()
    assert _Pipeline.closed is True
    assert _Acquirer.closed is True


def test_main_loop_runs_cache_sweeper(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[str] = []

    class _Cache:
        def start_sweeper(self) -> None:
            events.append("sweeper-start")

        def stop_sweeper(self) -> None:
            events.append("sweeper-stop")

    class _Acquirer:
        def close(self) -> None:
            events.append("acquirer-close")

    class _Pipeline(_FakePipeline):
        cache = _Cache()
        acquirer = _Acquirer()

        def close(self) -> None:
            events.append("pipeline-close")

    class _OneShotScheduler:
        running = False

        def __init__(self, pipeline, *, interval, initial_delay) -> None:
            events.append(f"scheduler-init:{interval:g}")

        def start(self) -> None:
            events.append("scheduler-start")

        def stop(self) -> None:
            events.append("scheduler-stop")

    monkeypatch.setattr(scheduler_module, "build_pipeline", lambda settings: _Pipeline())
    monkeypatch.setattr(scheduler_module, "RadarScheduler", _OneShotScheduler)

    assert scheduler_module.main(["--interval", "60"]) == 0
    assert events == [
        "scheduler-init:60",
        "sweeper-start",
        "scheduler-start",
        "scheduler-stop",
        "sweeper-stop",
        "pipeline-close",
        "acquirer-close",
    ]
