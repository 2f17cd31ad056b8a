import logging
import threading
import time
import unittest

from archiver_errors import Interrupted
from task_engine import Engine, EngineOptions, Task, TaskState, conflicts_on, cooldown

LOGGER = logging.getLogger("archiver.tests")


def make_engine(**overrides) -> Engine:
    opts = dict(name="Test", max_concurrent=2, max_retry=2, should_run_again=None, dispatch_interval=0.01, status_log_interval=0)
    opts.update(overrides)
    return Engine(EngineOptions(**opts), logger=LOGGER)


class EngineSubmissionTest(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine()

    def tearDown(self):
        self.engine.quit(timeout=5)

    def test_same_key_submitted_twice_runs_once(self):
        runs = []
        release = threading.Event()

        def body(task):
            runs.append(task.id)
            release.wait(2)

        self.engine.start()
        self.assertTrue(self.engine.submit(Task("k1").add_process(body)))
        self.assertFalse(self.engine.submit(Task("k1").add_process(body)))
        time.sleep(0.1)
        # still running: a new submission is ignored too
        self.assertFalse(self.engine.submit(Task("k1").add_process(body)))
        release.set()
        self.assertTrue(self.engine.wait_until_idle(5))
        self.assertEqual(runs, ["k1"])
        self.assertEqual(self.engine.counts()["completed"], 1)

    def test_processes_run_in_order_with_steps_and_stats(self):
        order = []

        def first(task):
            task.add_step("one")
            task.set_stat_value("rows", 10)
            order.append(1)

        def second(task):
            task.add_step("two")
            task.increment_stat_value("rows", 5)
            task.set_size(current=3, max=4)
            order.append(2)

        t = Task("ordered").add_process(first).add_process(second)
        self.engine.start()
        self.engine.submit(t)
        self.assertTrue(self.engine.wait_until_idle(5))
        self.assertEqual(order, [1, 2])
        self.assertEqual(t.state, TaskState.COMPLETED)
        self.assertEqual([s for s, _ in t.steps], ["one", "two"])
        self.assertEqual(t.stat_value("rows"), 15)
        self.assertEqual(t.size, (3, 4))
        self.assertEqual(t.to_dict()["stats"], {"rows": 15})

    def test_success_callback_can_submit_follow_up(self):
        done = []
        follow = Task("follow").add_process(lambda t: done.append(t.id))
        first = Task("first").add_process(lambda t: None).on_success(lambda t: self.engine.submit(follow))
        self.engine.start()
        self.engine.submit(first)
        deadline = time.time() + 5
        while not done and time.time() < deadline:
            time.sleep(0.01)
        self.assertEqual(done, ["follow"])

    def test_invalid_concurrency(self):
        with self.assertRaises(ValueError):
            make_engine(max_concurrent=0)


class EngineExclusionTest(unittest.TestCase):
    def _run_overlap_check(self, max_concurrent: int):
        engine = make_engine(max_concurrent=max_concurrent)
        lock = threading.Lock()
        active = {}
        overlaps = []

        def body(task):
            key = (task.args["set_id"], task.args["date"], task.args["archive_type"])
            with lock:
                if active.get(key):
                    overlaps.append(key)
                active[key] = active.get(key, 0) + 1
            time.sleep(0.02)
            with lock:
                active[key] -= 1

        flt = conflicts_on("set_id", "date", "archive_type")
        engine.start()
        for i in range(12):
            for kind in ("dl", "fg"):
                args = {"set_id": "BTCUSDT", "date": f"2024-01-0{i % 3 + 1}", "archive_type": "binance_spot_trades"}
                engine.submit(Task(f"{kind}-{i}", args).add_running_filter(flt).add_process(body))
        self.assertTrue(engine.wait_until_idle(20))
        engine.quit(timeout=5)
        self.assertEqual(overlaps, [])
        self.assertEqual(engine.counts()["completed"], 24)

    def test_same_unit_never_overlaps(self):
        for n in (1, 2, 4):
            with self.subTest(max_concurrent=n):
                self._run_overlap_check(n)

    def test_unrelated_units_run_concurrently(self):
        engine = make_engine(max_concurrent=2)
        barrier = threading.Barrier(2, timeout=2)
        results = []

        def body(task):
            barrier.wait()
            results.append(task.id)

        flt = conflicts_on("set_id")
        engine.start()
        engine.submit(Task("a", {"set_id": "A"}).add_running_filter(flt).add_process(body))
        engine.submit(Task("b", {"set_id": "B"}).add_running_filter(flt).add_process(body))
        self.assertTrue(engine.wait_until_idle(5))
        engine.quit(timeout=5)
        self.assertEqual(sorted(results), ["a", "b"])


class EngineRetryTest(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine(max_retry=2)

    def tearDown(self):
        self.engine.quit(timeout=5)

    def test_failure_is_retried_until_max_retry(self):
        attempts = []

        def body(task):
            attempts.append(task.retry_count)
            raise RuntimeError("boom")

        t = Task("flaky").add_process(body)
        self.engine.start()
        self.engine.submit(t)
        self.assertTrue(self.engine.wait_until_idle(5))
        self.assertEqual(attempts, [0, 1, 2])
        self.assertEqual(t.state, TaskState.FAILED)
        self.assertIsInstance(t.last_error, RuntimeError)
        counts = self.engine.counts()
        self.assertEqual((counts["failed"], counts["retried"]), (1, 2))

    def test_recovers_on_retry(self):
        def body(task):
            if task.retry_count == 0:
                raise RuntimeError("first time")

        t = Task("recovers").add_process(body)
        self.engine.start()
        self.engine.submit(t)
        self.assertTrue(self.engine.wait_until_idle(5))
        self.assertEqual(t.state, TaskState.COMPLETED)
        self.assertEqual(t.retry_count, 1)

    def test_disable_retry_is_terminal(self):
        attempts = []

        def body(task):
            attempts.append(1)
            task.disable_retry()
            raise RuntimeError("permanent")

        t = Task("terminal").add_process(body)
        self.engine.start()
        self.engine.submit(t)
        self.assertTrue(self.engine.wait_until_idle(5))
        self.assertEqual(len(attempts), 1)
        self.assertEqual(t.state, TaskState.FAILED)

    def test_interrupted_is_not_a_failure(self):
        def body(task):
            raise Interrupted("stop")

        t = Task("interrupted").add_process(body)
        self.engine.start()
        self.engine.submit(t)
        self.assertTrue(self.engine.wait_until_idle(5))
        self.assertEqual(t.state, TaskState.INTERRUPTED)
        self.assertEqual(t.retry_count, 0)
        counts = self.engine.counts()
        self.assertEqual((counts["failed"], counts["retried"], counts["interrupted"]), (0, 0, 1))
        # no success recorded, so the key can run again right away
        self.assertIsNone(self.engine.last_success("interrupted"))


class EnginePauseAndCooldownTest(unittest.TestCase):
    def test_pause_blocks_admission(self):
        engine = make_engine()
        ran = threading.Event()
        engine.start()
        engine.pause(0.5)
        self.assertTrue(engine.is_paused())
        started = time.time()
        engine.submit(Task("paused").add_process(lambda t: ran.set()))
        time.sleep(0.2)
        self.assertFalse(ran.is_set())
        self.assertTrue(ran.wait(3))
        self.assertGreaterEqual(time.time() - started, 0.45)
        engine.quit(timeout=5)

    def test_overlapping_pause_keeps_latest_end(self):
        engine = make_engine()
        engine.pause(60)
        until = engine.paused_until
        engine.pause(1)
        self.assertEqual(engine.paused_until, until)
        engine.resume()
        self.assertIsNone(engine.paused_until)

    def test_cooldown_refuses_recent_success(self):
        engine = make_engine(should_run_again=cooldown(6))
        engine.start()
        self.assertTrue(engine.submit(Task("settled").add_process(lambda t: None)))
        self.assertTrue(engine.wait_until_idle(5))
        self.assertIsNotNone(engine.last_success("settled"))
        self.assertFalse(engine.submit(Task("settled").add_process(lambda t: None)))
        engine.quit(timeout=5)

    def test_expired_successes_are_forgotten(self):
        engine = make_engine(should_run_again=cooldown(6))
        engine._last_success["expired"] = time.time() - 7 * 3600
        engine.start()
        self.assertTrue(engine.submit(Task("fresh").add_process(lambda t: None)))
        self.assertTrue(engine.wait_until_idle(5))
        self.assertIsNone(engine.last_success("expired"))
        self.assertIsNotNone(engine.last_success("fresh"))
        engine.quit(timeout=5)

    def test_success_memory_is_bounded_without_cooldown(self):
        engine = make_engine(history_size=2)
        engine.start()
        for key in ("a", "b", "c"):
            self.assertTrue(engine.submit(Task(key).add_process(lambda t: None)))
            self.assertTrue(engine.wait_until_idle(5))
        self.assertIsNone(engine.last_success("a"))
        self.assertIsNotNone(engine.last_success("b"))
        self.assertIsNotNone(engine.last_success("c"))
        engine.quit(timeout=5)

    def test_cooldown_predicate(self):
        pred = cooldown(6)
        self.assertFalse(pred("k", time.time() - 3600))
        self.assertTrue(pred("k", time.time() - 7 * 3600))


class EngineCancelAndQuitTest(unittest.TestCase):
    def test_cancel_by_prefix(self):
        engine = make_engine(max_concurrent=1)
        started = threading.Event()

        def long_body(task):
            started.set()
            while not task.must_interrupt():
                time.sleep(0.01)
            raise Interrupted("canceled")

        running = Task("dl-BTCUSDT-2024-01-01").add_process(long_body)
        queued = Task("fg-BTCUSDT-2024-01-01").add_process(lambda t: None)
        other = Task("dl-ETHUSDT-2024-01-01").add_process(lambda t: None)
        engine.start()
        engine.submit(running)
        self.assertTrue(started.wait(2))
        engine.submit(queued)
        engine.submit(other)
        canceled = engine.cancel_by_prefix("dl-BTCUSDT-", "fg-BTCUSDT-")
        self.assertEqual(canceled, 2)
        self.assertTrue(engine.wait_until_idle(5))
        self.assertEqual(running.state, TaskState.INTERRUPTED)
        self.assertEqual(queued.state, TaskState.INTERRUPTED)
        self.assertEqual(other.state, TaskState.COMPLETED)
        engine.quit(timeout=5)

    def test_quit_interrupts_running_tasks(self):
        engine = make_engine()
        started = threading.Event()
        observed = []

        def body(task):
            started.set()
            while not task.must_interrupt():
                time.sleep(0.01)
            observed.append(task.id)
            raise Interrupted("quit")

        engine.start()
        engine.submit(Task("long").add_process(body))
        engine.submit(Task("never", {}).add_process(lambda t: observed.append("never")))
        self.assertTrue(started.wait(2))
        self.assertTrue(engine.quit(timeout=5))
        self.assertIn("long", observed)
        self.assertTrue(engine.is_quitting())
        self.assertFalse(engine.submit(Task("late").add_process(lambda t: None)))

    def test_snapshot_lists_tasks(self):
        engine = make_engine()
        engine.start()
        engine.submit(Task("snap", {"date": "2024-01-01"}).add_process(lambda t: None))
        self.assertTrue(engine.wait_until_idle(5))
        snap = engine.snapshot()
        self.assertEqual(snap[0]["id"], "snap")
        self.assertEqual(snap[0]["state"], "completed")
        self.assertEqual(snap[0]["args"], {"date": "2024-01-01"})
        engine.quit(timeout=5)


if __name__ == "__main__":
    unittest.main(verbosity=2)
