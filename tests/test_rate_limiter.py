import threading

import pytest

from core.rate_limiter import RateLimiter


class ManualTime:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps = []

    def clock(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_allows_up_to_limit_within_window() -> None:
    t = ManualTime()
    limiter = RateLimiter(max_calls=3, window_ms=1000, clock=t.clock, sleep=t.sleep)

    outcomes = [limiter.try_acquire() for _ in range(4)]

    assert [allowed for allowed, _ in outcomes] == [True, True, True, False]
    assert outcomes[2][1]['remaining'] == 0
    assert outcomes[3][1]['reset_in'] == pytest.approx(1.0)


def test_window_slides() -> None:
    t = ManualTime()
    limiter = RateLimiter(max_calls=2, window_ms=1000, clock=t.clock, sleep=t.sleep)

    limiter.try_acquire()
    t.now += 0.6
    limiter.try_acquire()
    assert limiter.try_acquire()[0] is False

    t.now += 0.5
    allowed, info = limiter.try_acquire()
    assert allowed is True
    assert info['current'] == 2
    assert limiter.try_acquire()[1]['reset_in'] == pytest.approx(0.5)


def test_acquire_blocks_until_a_slot_frees() -> None:
    t = ManualTime()
    limiter = RateLimiter(max_calls=1, window_ms=1000, clock=t.clock, sleep=t.sleep)

    assert limiter.acquire() is True
    assert limiter.acquire() is True
    assert sum(t.sleeps) == pytest.approx(1.0)


def test_acquire_gives_up_after_timeout() -> None:
    t = ManualTime()
    limiter = RateLimiter(max_calls=1, window_ms=1000, clock=t.clock, sleep=t.sleep)
    limiter.acquire()

    assert limiter.acquire(timeout=0.5) is False
    assert sum(t.sleeps) == pytest.approx(0.5)


def test_ceiling_holds_across_threads() -> None:
    limiter = RateLimiter(max_calls=5, window_ms=60000)
    allowed = []
    lock = threading.Lock()

    def worker():
        for _ in range(5):
            ok, _ = limiter.try_acquire()
            with lock:
                allowed.append(ok)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert allowed.count(True) == 5


@pytest.mark.parametrize('max_calls, window_ms', [(0, 1000), (1, 0)])
def test_rejects_invalid_configuration(max_calls, window_ms) -> None:
    with pytest.raises(ValueError):
        RateLimiter(max_calls=max_calls, window_ms=window_ms)
