import time
import unittest

from stageview.adapters.video_backend import SimulatedCameraBackend
from stageview.capture.scheduler import CaptureScheduler
from stageview.core.bus import Bus
from stageview.core.errors import DeviceBusy, DeviceNotFound, DisplayUpdateError, TimerFault
from stageview.vision.display import DISABLED, DisplayRegistry, HeadlessSurface
from stageview.vision.preview import LivePreview


class _DummyLogger:
    def __init__(self) -> None:
        self.events = []

    def emit(self, level, module, event, payload=None):  # noqa: ANN001
        self.events.append((level, module, event, payload or {}))

    def names(self):
        return [event for _, _, event, _ in self.events]


class _ManualTrigger:
    def __init__(self, period_s, callback, on_fault=None, logger=None):  # noqa: ANN001
        self.period_s = period_s
        self.callback = callback
        self.on_fault = on_fault
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self, wait=False, timeout=1.0) -> None:  # noqa: ANN001
        self.cancelled = True

    def fire(self) -> None:
        self.callback()


class _TriggerFactory:
    def __init__(self) -> None:
        self.triggers = []

    def __call__(self, period_s, callback, on_fault=None, logger=None):  # noqa: ANN001
        trigger = _ManualTrigger(period_s, callback, on_fault=on_fault, logger=logger)
        self.triggers.append(trigger)
        return trigger

    @property
    def current(self) -> _ManualTrigger:
        return self.triggers[-1]


class _CountingRegistry(DisplayRegistry):
    def __init__(self, *args, **kwargs) -> None:  # noqa: ANN002, ANN003
        super().__init__(*args, **kwargs)
        self.destroyed = []

    def destroy(self, camera_id: str) -> bool:
        removed = super().destroy(camera_id)
        if removed:
            self.destroyed.append(camera_id)
        return removed


class _BrokenDisplay(_CountingRegistry):
    def update(self, camera_id, frame):  # noqa: ANN001
        raise DisplayUpdateError(camera_id, "surface gone")


def _captured(backend: SimulatedCameraBackend):
    return [camera_id for kind, camera_id in backend.events if kind == "capture"]


class CaptureSchedulerTests(unittest.TestCase):
    def _build(self, cameras, threshold=5, display_cls=_CountingRegistry, **kwargs):  # noqa: ANN001, ANN003
        self.logger = _DummyLogger()
        self.backend = SimulatedCameraBackend(list(cameras), logger=self.logger, width=64, height=48)
        self.display = display_cls(HeadlessSurface, logger=self.logger, tile_size=(160, 120))
        self.triggers = _TriggerFactory()
        self.bus = Bus(max_queue_depth=64)
        self.scheduler = CaptureScheduler(
            self.backend,
            self.display,
            self.logger,
            bus=self.bus,
            quarantine_threshold=threshold,
            trigger_factory=self.triggers,
            **kwargs,
        )
        self.display.set_close_handler(self.scheduler.remove_camera)
        return self.scheduler

    def test_start_materializes_displays_and_arms_trigger(self) -> None:
        scheduler = self._build(["A", "B", "C"])
        scheduler.start(["A", "B", "A", "C"], 1.5)
        self.assertTrue(scheduler.running)
        self.assertEqual(scheduler.status()["working_set"], ["A", "B", "C"])
        self.assertEqual(self.display.camera_ids(), ["A", "B", "C"])
        self.assertTrue(self.triggers.current.started)
        self.assertEqual(self.triggers.current.period_s, 1.5)
        # Nothing is captured until the trigger fires.
        self.assertEqual(_captured(self.backend), [])

    def test_start_rejects_empty_selection_and_bad_interval(self) -> None:
        scheduler = self._build(["A"])
        with self.assertRaises(ValueError):
            scheduler.start([], 1.0)
        with self.assertRaises(ValueError):
            scheduler.start(["A"], 0)
        self.assertFalse(scheduler.running)

    def test_round_robin_visits_each_camera_once_then_wraps(self) -> None:
        scheduler = self._build(["A", "B", "C", "D"])
        scheduler.start(["A", "B", "C", "D"], 1.0)
        for _ in range(5):
            self.triggers.current.fire()
        self.assertEqual(_captured(self.backend), ["A", "B", "C", "D", "A"])
        self.assertEqual(scheduler.status()["next_camera"], "B")
        self.assertEqual(self.backend.held_cameras(), [])
        self.assertEqual(self.display.states(), {"A": "live", "B": "live", "C": "live", "D": "live"})

    def test_every_open_is_paired_with_close_on_failure(self) -> None:
        scheduler = self._build(["A", "B"])
        self.backend.fail_next("A", 2)
        scheduler.start(["A", "B"], 1.0)
        for _ in range(4):
            scheduler.tick()
        opens = [cid for kind, cid in self.backend.events if kind == "open"]
        closes = [cid for kind, cid in self.backend.events if kind == "close"]
        self.assertEqual(opens, closes)
        self.assertEqual(self.backend.held_cameras(), [])
        self.assertEqual(self.display.states()["A"], "error")

    def test_quarantine_scenario_every_third_tick_fails(self) -> None:
        scheduler = self._build(["A", "B", "C"])
        self.backend.fail_next("A", 5)
        scheduler.start(["A", "B", "C"], 1.0)
        for _ in range(13):
            self.triggers.current.fire()
        status = scheduler.status()
        self.assertEqual(status["working_set"], ["B", "C"])
        self.assertEqual(status["cameras"]["A"], "quarantined")
        self.assertIn(status["cursor"], range(len(status["working_set"])))
        self.assertEqual(self.display.states()["A"], DISABLED)
        self.assertNotIn("A", self.display.destroyed)
        self.assertIn("camera_quarantined", self.logger.names())

        for _ in range(4):
            self.triggers.current.fire()
        self.assertEqual(_captured(self.backend)[13:], ["B", "C", "B", "C"])
        self.assertEqual(scheduler.status_text(), "2/3 active (Next: B)")

    def test_success_resets_failure_streak(self) -> None:
        scheduler = self._build(["A"])
        self.backend.fail_next("A", 4)
        scheduler.start(["A"], 1.0)
        for _ in range(4):
            scheduler.tick()
        self.assertEqual(scheduler.health.failures("A"), 4)
        scheduler.tick()
        self.assertEqual(scheduler.health.failures("A"), 0)
        self.backend.fail_next("A", 4)
        for _ in range(4):
            scheduler.tick()
        self.assertEqual(scheduler.status()["working_set"], ["A"])

    def test_single_failing_camera_stops_session(self) -> None:
        scheduler = self._build(["A"])
        self.backend.fail_next("A", 10)
        scheduler.start(["A"], 1.0)
        first = self.triggers.current
        for _ in range(5):
            first.fire()
        self.assertFalse(scheduler.running)
        self.assertTrue(first.cancelled)
        self.assertEqual(scheduler.status()["working_set"], [])
        self.assertEqual(self.display.destroyed, ["A"])
        self.assertEqual(scheduler.status_text(), "No camera active")

        first.fire()
        self.assertEqual(len(_captured(self.backend)), 5)

    def test_missing_device_counts_toward_quarantine(self) -> None:
        scheduler = self._build(["A", "B"], threshold=2)
        self.backend.set_missing("A")
        scheduler.start(["A", "B"], 1.0)
        for _ in range(4):
            scheduler.tick()
        self.assertEqual(scheduler.status()["working_set"], ["B"])
        failures = [p for _, _, event, p in self.logger.events if event == "capture_failed"]
        self.assertTrue(all(p["reason"] == DeviceNotFound.reason for p in failures))

    def test_stop_from_any_state_destroys_each_surface_once(self) -> None:
        scheduler = self._build(["A", "B", "C"])
        scheduler.stop()
        self.assertEqual(self.display.destroyed, [])

        scheduler.start(["A", "B", "C"], 1.0)
        scheduler.tick()
        scheduler.stop()
        scheduler.stop()
        self.assertEqual(sorted(self.display.destroyed), ["A", "B", "C"])
        self.assertEqual(self.display.camera_ids(), [])
        self.assertEqual(scheduler.status()["working_set"], [])
        self.assertEqual(scheduler.status()["cameras"], {})
        self.assertEqual(scheduler.status()["total"], 0)
        self.assertEqual(self.backend.held_cameras(), [])
        self.assertFalse(scheduler.running)

    def test_stop_destroys_quarantined_surface(self) -> None:
        scheduler = self._build(["A", "B"], threshold=1)
        self.backend.fail_next("A", 1)
        scheduler.start(["A", "B"], 1.0)
        scheduler.tick()
        self.assertEqual(self.display.states()["A"], DISABLED)
        scheduler.stop()
        self.assertEqual(sorted(self.display.destroyed), ["A", "B"])

    def test_restart_replaces_running_session(self) -> None:
        scheduler = self._build(["A", "B", "C"])
        scheduler.start(["A", "B"], 1.0)
        first = self.triggers.current
        scheduler.start(["C"], 2.0)
        self.assertTrue(first.cancelled)
        self.assertEqual(scheduler.status()["working_set"], ["C"])
        self.assertEqual(self.display.camera_ids(), ["C"])
        first.fire()
        self.assertEqual(_captured(self.backend), [])

    def test_set_interval_restarts_trigger_without_extra_tick(self) -> None:
        scheduler = self._build(["A", "B", "C"])
        scheduler.start(["A", "B", "C"], 1.0)
        old = self.triggers.current
        old.fire()
        self.assertTrue(scheduler.set_interval(0.5))
        new = self.triggers.current
        self.assertIsNot(old, new)
        self.assertTrue(old.cancelled)
        self.assertTrue(new.started)
        self.assertEqual(new.period_s, 0.5)
        self.assertEqual(_captured(self.backend), ["A"])

        # A late fire from the cancelled trigger must not tick.
        old.fire()
        self.assertEqual(_captured(self.backend), ["A"])
        new.fire()
        self.assertEqual(_captured(self.backend), ["A", "B"])

    def test_set_interval_when_stopped_is_ignored(self) -> None:
        scheduler = self._build(["A"])
        self.assertFalse(scheduler.set_interval(2.0))
        self.assertEqual(self.triggers.triggers, [])
        with self.assertRaises(ValueError):
            scheduler.set_interval(-1)

    def test_user_close_keeps_cursor_target(self) -> None:
        scheduler = self._build(["A", "B", "C"])
        scheduler.start(["A", "B", "C"], 1.0)
        scheduler.tick()
        scheduler.tick()
        self.assertEqual(scheduler.status()["next_camera"], "C")

        self.display.record("B").surface.request_close()
        self.assertEqual(self.display.pump(), ["B"])
        status = scheduler.status()
        self.assertEqual(status["working_set"], ["A", "C"])
        self.assertEqual(status["next_camera"], "C")
        self.assertEqual(status["cameras"]["B"], "closed")

        scheduler.tick()
        self.assertEqual(_captured(self.backend), ["A", "B", "C"])
        self.assertEqual(scheduler.status()["next_camera"], "A")

    def test_removing_due_camera_moves_to_next(self) -> None:
        scheduler = self._build(["A", "B", "C"])
        scheduler.start(["A", "B", "C"], 1.0)
        scheduler.tick()
        self.assertTrue(scheduler.remove_camera("B"))
        self.assertEqual(scheduler.status()["next_camera"], "C")
        self.assertTrue(scheduler.remove_camera("C"))
        self.assertEqual(scheduler.status()["next_camera"], "A")
        self.assertFalse(scheduler.remove_camera("Z"))

    def test_closing_last_surface_stops_session(self) -> None:
        scheduler = self._build(["A"])
        scheduler.start(["A"], 1.0)
        self.display.record("A").surface.request_close()
        self.display.pump()
        self.assertFalse(scheduler.running)
        self.assertTrue(self.triggers.current.cancelled)
        self.assertEqual(self.display.camera_ids(), [])

    def test_display_failure_does_not_count_against_camera(self) -> None:
        scheduler = self._build(["A", "B"], display_cls=_BrokenDisplay)
        scheduler.start(["A", "B"], 1.0)
        scheduler.tick()
        self.assertEqual(scheduler.health.failures("A"), 0)
        self.assertEqual(scheduler.status()["next_camera"], "B")
        self.assertIn("display_update_failed", self.logger.names())

    def test_frames_and_status_published_on_bus(self) -> None:
        scheduler = self._build(["A", "B"])
        frames = self.bus.subscribe("capture.frames.A")
        statuses = self.bus.subscribe("capture.status")
        scheduler.start(["A", "B"], 1.0)
        scheduler.tick()
        msg = frames.get_nowait()
        self.assertEqual(msg["camera_id"], "A")
        self.assertEqual((msg["width"], msg["height"]), (64, 48))
        latest = None
        while not statuses.empty():
            latest = statuses.get_nowait()
        self.assertEqual(latest["next_camera"], "B")

    def test_timer_fault_stops_session(self) -> None:
        scheduler = self._build(["A", "B"])
        scheduler.start(["A", "B"], 1.0)
        self.triggers.current.on_fault(TimerFault("trigger died"))
        self.assertFalse(scheduler.running)
        self.assertIn("timer_fault", self.logger.names())
        self.assertEqual(self.display.camera_ids(), [])

    def test_capture_timeout_marks_camera_busy_until_worker_returns(self) -> None:
        scheduler = self._build(["A"], capture_timeout_s=0.05)
        self.backend.capture_delay_s = 0.3
        scheduler.start(["A"], 1.0)
        scheduler.tick()
        scheduler.tick()
        reasons = [p["reason"] for _, _, event, p in self.logger.events if event == "capture_failed"]
        self.assertEqual(reasons, ["capture_timeout", "device_busy"])
        self.assertEqual(scheduler.health.failures("A"), 2)
        time.sleep(0.4)
        self.assertEqual(self.backend.held_cameras(), [])

        self.backend.capture_delay_s = 0.0
        scheduler.tick()
        self.assertEqual(scheduler.health.failures("A"), 0)

    def test_start_stops_live_preview_first(self) -> None:
        scheduler = self._build(["A", "B"])
        preview = LivePreview(self.backend, "A", self.display, self.logger, fps=100)
        scheduler.register_preview(preview)
        preview.start()
        for _ in range(200):
            if preview.frames:
                break
            time.sleep(0.01)
        self.assertTrue(preview.running)
        self.assertEqual(self.backend.held_cameras(), ["A"])

        scheduler.start(["A", "B"], 1.0)
        self.assertFalse(preview.running)
        self.assertIn("preview_stopped", self.logger.names())
        scheduler.tick()
        self.assertEqual(scheduler.health.failures("A"), 0)
        self.assertEqual(self.display.states()["A"], "live")

    def test_start_refuses_while_slow_preview_still_holds_camera(self) -> None:
        scheduler = self._build(["A", "B"], preview_stop_timeout_s=0.05)
        preview = LivePreview(self.backend, "A", self.display, self.logger, fps=100)
        scheduler.register_preview(preview)
        preview.start()
        for _ in range(200):
            if preview.frames:
                break
            time.sleep(0.01)
        self.backend.capture_delay_s = 0.5
        time.sleep(0.05)

        with self.assertRaises(DeviceBusy):
            scheduler.start(["A", "B"], 1.0)
        self.assertIn("preview_stop_timeout", self.logger.names())
        self.assertFalse(scheduler.running)
        self.assertTrue(preview.running)
        self.assertEqual(self.backend.held_cameras(), ["A"])
        self.assertEqual(self.triggers.triggers, [])

        for _ in range(200):
            if not preview.running:
                break
            time.sleep(0.01)
        self.assertEqual(self.backend.held_cameras(), [])
        self.backend.capture_delay_s = 0.0
        scheduler.start(["A", "B"], 1.0)
        scheduler.tick()
        self.assertEqual(scheduler.health.failures("A"), 0)
        self.assertNotIn("capture_failed", self.logger.names())


class ConcurrentCloseTests(unittest.TestCase):
    def test_user_closes_during_live_ticks_keep_rotation_consistent(self) -> None:
        logger = _DummyLogger()
        backend = SimulatedCameraBackend(list("ABCDE"), logger=logger, width=32, height=24, capture_delay_s=0.002)
        display = _CountingRegistry(HeadlessSurface, logger=logger, tile_size=(160, 120))
        scheduler = CaptureScheduler(backend, display, logger)
        display.set_close_handler(scheduler.remove_camera)
        inconsistent = []

        def _run_ticks(count: int) -> None:
            target = scheduler.status()["ticks"] + count
            deadline = time.monotonic() + 3.0
            while time.monotonic() < deadline:
                status = scheduler.status()
                working = status["working_set"]
                if working and (status["cursor"] not in range(len(working)) or status["next_camera"] != working[status["cursor"]]):
                    inconsistent.append(status)
                if status["ticks"] >= target:
                    return
                time.sleep(0.002)
            self.fail("periodic trigger stalled")

        scheduler.start(list("ABCDE"), 0.01)
        try:
            _run_ticks(5)
            display.record("B").surface.request_close()
            self.assertEqual(display.pump(), ["B"])
            after_b = len(backend.events)
            _run_ticks(5)
            display.record("D").surface.request_close()
            self.assertEqual(display.pump(), ["D"])
            after_d = len(backend.events)
            _run_ticks(6)
        finally:
            scheduler.stop()

        self.assertEqual(inconsistent, [])
        self.assertNotIn(("capture", "B"), backend.events[after_b:])
        self.assertNotIn(("capture", "D"), backend.events[after_d:])
        self.assertEqual(set(cid for kind, cid in backend.events[after_d:] if kind == "capture"), {"A", "C", "E"})
        self.assertEqual(sorted(display.destroyed), ["A", "C", "E"])
        self.assertEqual(display.camera_ids(), [])
        self.assertEqual(backend.held_cameras(), [])
        removed = [p["camera_id"] for _, _, event, p in logger.events if event == "camera_removed"]
        self.assertEqual(removed, ["B", "D"])


if __name__ == "__main__":
    unittest.main()
