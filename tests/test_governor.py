import threading
import time
import unittest


class _FakeClock:
    """Clock advanced only by the governor's own sleeps."""

    def __init__(self):
        self.now = 100.0
        self.sleeps = []
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def sleep(self, seconds):
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


class CallGovernorTests(unittest.TestCase):
    def test_calls_complete_in_fifo_order_with_spacing(self):
        from jirasync.services.governor import CallGovernor

        clock = _FakeClock()
        governor = CallGovernor(0.5, clock=clock, sleep=clock.sleep)
        dispatched = []
        gate = threading.Event()

        def work(n):
            gate.wait(5)
            dispatched.append((n, clock()))
            return n * 10

        futures = [governor.submit(work, n) for n in range(5)]
        gate.set()
        results = [f.result(timeout=5) for f in futures]

        self.assertEqual(results, [0, 10, 20, 30, 40])
        self.assertEqual([n for n, _ in dispatched], [0, 1, 2, 3, 4])
        for (_, earlier), (_, later) in zip(dispatched, dispatched[1:]):
            self.assertGreaterEqual(later - earlier, 0.5 - 1e-9)

    def test_gap_measured_from_dispatch_not_completion(self):
        from jirasync.services.governor import CallGovernor

        clock = _FakeClock()
        governor = CallGovernor(1.0, clock=clock, sleep=clock.sleep)

        def slow():
            # The call itself consumes 0.75s of the 1s interval.
            clock.now += 0.75

        governor.call(slow)
        governor.call(slow)

        self.assertEqual(len(clock.sleeps), 1)
        self.assertAlmostEqual(clock.sleeps[0], 0.25)

    def test_exceptions_reach_the_caller_unchanged(self):
        from jirasync.services.governor import CallGovernor

        governor = CallGovernor(0)

        class Boom(Exception):
            pass

        def fail():
            raise Boom("nope")

        with self.assertRaises(Boom):
            governor.call(fail)

        # A failure does not block later calls.
        self.assertEqual(governor.call(lambda a, b=0: a + b, 1, b=2), 3)

    def test_real_clock_spacing(self):
        from jirasync.services.governor import CallGovernor

        governor = CallGovernor(0.02)
        stamps = []

        futures = [governor.submit(lambda: stamps.append(time.monotonic())) for _ in range(4)]
        for f in futures:
            f.result(timeout=5)

        self.assertEqual(len(stamps), 4)
        for earlier, later in zip(stamps, stamps[1:]):
            self.assertGreaterEqual(later - earlier, 0.02 - 0.005)

    def test_negative_interval_rejected(self):
        from jirasync.services.governor import CallGovernor

        with self.assertRaises(ValueError):
            CallGovernor(-1)


if __name__ == "__main__":
    unittest.main()
