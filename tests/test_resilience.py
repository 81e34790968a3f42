from __future__ import annotations

import threading

import pytest

from git_reporter import CircuitBreaker, CircuitOpenError, CircuitState, CommandRunner


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def fail():
    raise RuntimeError("network unreachable")


def trip(breaker: CircuitBreaker, times: int = 4) -> None:
    for _ in range(times):
        with pytest.raises(RuntimeError):
            breaker.call(fail)


class TestCircuitBreaker:
    def test_stays_closed_up_to_threshold(self):
        breaker = CircuitBreaker(clock=FakeClock())
        trip(breaker, 3)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 3

    def test_success_resets_consecutive_failures(self):
        breaker = CircuitBreaker(clock=FakeClock())
        trip(breaker, 3)
        assert breaker.call(lambda: "ok") == "ok"
        trip(breaker, 3)
        assert breaker.state == CircuitState.CLOSED

    def test_opens_after_more_than_three_failures_and_rejects_without_running(self):
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock)
        trip(breaker, 4)
        assert breaker.state == CircuitState.OPEN
        assert breaker.opened_at == clock.now

        calls = []
        with pytest.raises(CircuitOpenError):
            breaker.call(lambda: calls.append("ran"))
        assert calls == []

    def test_half_open_after_timeout(self):
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock, timeout=60.0)
        trip(breaker)

        clock.advance(59.0)
        assert breaker.state == CircuitState.OPEN
        clock.advance(1.0)
        assert breaker.state == CircuitState.HALF_OPEN

    def test_half_open_closes_after_enough_successes(self):
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock, max_requests=5)
        trip(breaker)
        clock.advance(60.0)

        for _ in range(4):
            breaker.call(lambda: None)
            assert breaker.state == CircuitState.HALF_OPEN
        breaker.call(lambda: None)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.opened_at is None

    def test_half_open_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock)
        trip(breaker)
        clock.advance(60.0)

        breaker.call(lambda: None)
        with pytest.raises(RuntimeError):
            breaker.call(fail)
        assert breaker.state == CircuitState.OPEN
        assert breaker.opened_at == clock.now

    def test_half_open_limits_concurrent_probes(self):
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock, max_requests=5)
        trip(breaker)
        clock.advance(60.0)

        def nested(depth: int) -> None:
            if depth:
                breaker.call(nested, depth - 1)

        # Six calls in flight at once; the sixth is refused.
        with pytest.raises(CircuitOpenError, match="too many requests"):
            breaker.call(nested, 5)

    def test_interval_clears_counts_while_closed(self):
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock, interval=60.0)
        trip(breaker, 3)
        clock.advance(61.0)
        trip(breaker, 1)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 1

    def test_failures_from_all_threads_are_counted_together(self):
        breaker = CircuitBreaker(clock=FakeClock())
        barrier = threading.Barrier(8)
        errors = []

        def worker():
            barrier.wait()
            try:
                breaker.call(fail)
            except (RuntimeError, CircuitOpenError) as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(errors) == 8
        assert breaker.state == CircuitState.OPEN


class Invocation:
    """Scripted invocation returning the given results in order."""

    def __init__(self, *results: bool):
        self.results = list(results)
        self.calls = 0

    def __call__(self) -> tuple[bool, str]:
        self.calls += 1
        success = self.results.pop(0) if self.results else False
        return success, "" if success else "fatal: could not read from remote repository"


class TestCommandRunner:
    def make_runner(self, breaker: CircuitBreaker | None = None, **kwargs):
        sleeps: list[float] = []
        runner = CommandRunner(
            breaker or CircuitBreaker(clock=FakeClock()), sleep=sleeps.append, **kwargs
        )
        return runner, sleeps

    def test_returns_immediately_on_success(self):
        runner, sleeps = self.make_runner()
        invocation = Invocation(True)
        assert runner.run(invocation, max_attempts=5) == (True, "")
        assert invocation.calls == 1
        assert sleeps == []

    def test_retries_with_exponential_backoff_and_jitter(self):
        runner, sleeps = self.make_runner()
        invocation = Invocation(False, False, True)
        assert runner.run(invocation, max_attempts=5) == (True, "")
        assert invocation.calls == 3
        assert len(sleeps) == 2
        assert 0.100 <= sleeps[0] < 0.200
        assert 0.200 <= sleeps[1] < 0.300

    def test_exhausted_attempts_use_failure_description(self):
        runner, sleeps = self.make_runner()
        invocation = Invocation()
        success, message = runner.run(
            invocation,
            max_attempts=3,
            describe_failure=lambda error: f"described: {error}",
        )
        assert not success
        assert message == "described: fatal: could not read from remote repository"
        assert invocation.calls == 3
        assert len(sleeps) == 2

    def test_exhausted_attempts_without_description(self):
        runner, _ = self.make_runner()
        success, message = runner.run(Invocation(), max_attempts=2)
        assert not success
        assert message.startswith("Command failed after 2 attempts.")

    def test_each_exhausted_run_is_one_breaker_failure(self):
        breaker = CircuitBreaker(clock=FakeClock())
        runner, _ = self.make_runner(breaker)
        for _ in range(4):
            assert runner.run(Invocation(), max_attempts=2)[0] is False
        assert breaker.state == CircuitState.OPEN

        invocation = Invocation(True)
        success, message = runner.run(invocation, max_attempts=2)
        assert not success
        assert "open" in message
        assert invocation.calls == 0

    def test_backoff_is_capped(self):
        runner, _ = self.make_runner(max_delay_ms=1000, max_jitter_ms=0)
        assert runner.backoff_delay(1) == 0.1
        assert runner.backoff_delay(25) == 1.0
