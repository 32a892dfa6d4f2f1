import unittest

from loadwarden.services.scheduler import ScheduledTask, Scheduler


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class SchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.scheduler = Scheduler(clock=self.clock)

    def test_timers_fire_in_due_order(self):
        fired = []
        self.scheduler.call_later(2.0, lambda: fired.append("late"))
        self.scheduler.call_later(1.0, lambda: fired.append("early"))
        self.assertEqual(self.scheduler.run_due(), 0)
        self.clock.now = 2.0
        self.assertEqual(self.scheduler.run_due(), 2)
        self.assertEqual(fired, ["early", "late"])

    def test_cancelled_timer_does_not_fire(self):
        fired = []
        handle = self.scheduler.call_later(1.0, lambda: fired.append("x"))
        self.assertTrue(self.scheduler.cancel(handle))
        self.assertFalse(self.scheduler.cancel(handle))
        self.clock.now = 5.0
        self.assertEqual(self.scheduler.run_due(), 0)
        self.assertEqual(fired, [])
        self.assertIsNone(self.scheduler.next_due())

    def test_zero_interval_task_runs_once_per_call(self):
        runs = []
        self.scheduler.add_task(ScheduledTask("poll", 0.0, lambda: runs.append(self.clock.now)))
        self.assertEqual(self.scheduler.run_due(), 1)
        self.assertEqual(self.scheduler.run_due(), 1)
        self.assertEqual(len(runs), 2)
        self.assertEqual(self.scheduler.pending(), 1)

    def test_stopped_scheduler_does_not_reschedule(self):
        runs = []
        self.scheduler.add_task(ScheduledTask("poll", 1.0, lambda: runs.append(1)))
        self.scheduler.stop()
        self.clock.now = 1.0
        self.scheduler.run_due()
        self.assertEqual(runs, [1])
        self.assertEqual(self.scheduler.pending(), 0)


if __name__ == "__main__":
    unittest.main()
