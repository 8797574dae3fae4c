"""Unit tests for core.pool.manager.ConnectionPool (acquire/release, FIFO, sweep, shutdown)."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from sqlbridge.core.errors import (
    ConnectionFailedError,
    ErrorKind,
    PoolClosedError,
    PoolExhaustedError,
)
from sqlbridge.core.pool import ConnectionPool
from tests.utils.clock import FakeClock, wait_until
from tests.utils.driver import FakeDriver


def _pool(driver: FakeDriver, **kwargs) -> ConnectionPool:
    kwargs.setdefault("max_size", 3)
    kwargs.setdefault("acquire_timeout", 5.0)
    return ConnectionPool(driver, **kwargs)


def test_concurrent_acquires_up_to_max_succeed() -> None:
    """N <= max concurrent acquires all get distinct connections without deadlock."""
    driver = FakeDriver()
    pool = _pool(driver, max_size=4)
    with ThreadPoolExecutor(max_workers=4) as ex:
        conns = list(ex.map(lambda _: pool.acquire(), range(4)))
    assert len({id(c) for c in conns}) == 4
    stats = pool.stats()
    assert stats.in_use == 4
    assert stats.total == 4
    assert stats.idle == 0


def test_acquire_beyond_max_blocks_until_release() -> None:
    """The (max+1)-th acquire waits and gets the released connection right after release."""
    driver = FakeDriver()
    pool = _pool(driver, max_size=2)
    c1 = pool.acquire()
    pool.acquire()
    got: list = []
    t = threading.Thread(target=lambda: got.append(pool.acquire()))
    t.start()
    assert wait_until(lambda: pool.stats().waiting == 1)
    assert got == []

    pool.release(c1)
    t.join(2)
    assert got == [c1]
    assert len(driver.connections) == 2


def test_acquire_times_out_with_pool_exhausted() -> None:
    driver = FakeDriver()
    pool = _pool(driver, max_size=1)
    pool.acquire()
    with pytest.raises(PoolExhaustedError) as exc_info:
        pool.acquire(timeout=0.05)
    assert exc_info.value.kind == ErrorKind.POOL_EXHAUSTED
    assert pool.stats().waiting == 0


def test_waiters_are_served_in_fifo_order() -> None:
    driver = FakeDriver()
    pool = _pool(driver, max_size=1)
    held = pool.acquire()
    order: list[str] = []

    def waiter(name: str) -> None:
        conn = pool.acquire()
        order.append(name)
        pool.release(conn)

    first = threading.Thread(target=waiter, args=("first",))
    first.start()
    assert wait_until(lambda: pool.stats().waiting == 1)
    second = threading.Thread(target=waiter, args=("second",))
    second.start()
    assert wait_until(lambda: pool.stats().waiting == 2)

    pool.release(held)
    first.join(2)
    second.join(2)
    assert order == ["first", "second"]


def test_release_returns_connection_to_idle_and_reuses_it() -> None:
    driver = FakeDriver()
    pool = _pool(driver)
    conn = pool.acquire()
    pool.release(conn)
    assert pool.stats().idle == 1
    assert conn.rollbacks == 1
    assert pool.acquire() is conn
    assert len(driver.connections) == 1


def test_release_unknown_connection_is_noop() -> None:
    driver = FakeDriver()
    pool = _pool(driver)
    conn = pool.acquire()
    pool.release(conn)
    pool.release(conn)  # double release
    assert pool.stats().idle == 1
    assert pool.stats().in_use == 0


def test_release_discard_closes_connection() -> None:
    driver = FakeDriver()
    pool = _pool(driver)
    conn = pool.acquire()
    pool.release(conn, discard=True)
    assert conn.closed is True
    assert pool.stats().total == 0


def test_failing_reset_discards_connection() -> None:
    driver = FakeDriver()
    pool = _pool(driver)
    conn = pool.acquire()
    conn.closed = True  # rollback() now raises
    pool.release(conn)
    assert pool.stats().total == 0


def test_connect_failure_is_classified_and_frees_slot() -> None:
    driver = FakeDriver()
    driver.fail_with = RuntimeError("boom")
    pool = _pool(driver, max_size=1)
    with pytest.raises(ConnectionFailedError):
        pool.acquire()
    assert pool.stats().total == 0

    driver.fail_with = None
    conn = pool.acquire(timeout=0.5)
    assert conn is driver.connections[0]


def test_dead_idle_connection_is_replaced_on_checkout() -> None:
    driver = FakeDriver()
    clock = FakeClock()
    pool = _pool(driver, clock=clock, ping_threshold=5.0)
    conn = pool.acquire()
    pool.release(conn)
    conn.responses = {"SELECT 1": ConnectionError("server closed the connection")}
    clock.advance(10)

    fresh = pool.acquire()
    assert fresh is not conn
    assert conn.closed is True
    assert pool.stats().total == 1


def test_connection_past_max_lifetime_is_recycled_on_release() -> None:
    driver = FakeDriver()
    clock = FakeClock()
    pool = _pool(driver, clock=clock, max_lifetime=60.0)
    conn = pool.acquire()
    clock.advance(61)
    pool.release(conn)
    assert conn.closed is True
    assert pool.stats().idle == 0


def test_sweep_idle_closes_stale_connections_but_keeps_min() -> None:
    driver = FakeDriver()
    clock = FakeClock()
    pool = _pool(driver, clock=clock, min_size=1, idle_timeout=10.0)
    conns = [pool.acquire() for _ in range(3)]
    for c in conns:
        pool.release(c)
    assert pool.stats().idle == 3

    clock.advance(5)
    assert pool.sweep_idle() == 0

    clock.advance(6)
    assert pool.sweep_idle() == 2
    stats = pool.stats()
    assert stats.total == 1
    assert stats.idle == 1
    assert len(driver.open_connections) == 1


def test_sweep_never_touches_checked_out_connections() -> None:
    driver = FakeDriver()
    clock = FakeClock()
    pool = _pool(driver, clock=clock, idle_timeout=1.0)
    conn = pool.acquire()
    clock.advance(100)
    assert pool.sweep_idle() == 0
    assert conn.closed is False
    assert pool.stats().in_use == 1


def test_prefill_opens_min_connections() -> None:
    driver = FakeDriver()
    pool = _pool(driver, min_size=2)
    assert pool.prefill() == 2
    stats = pool.stats()
    assert stats.idle == 2
    assert stats.total == 2
    assert pool.prefill() == 0


def test_hooks_track_live_connections() -> None:
    driver = FakeDriver()
    live: list[int] = [0]
    pool = _pool(
        driver,
        on_connect=lambda c: live.__setitem__(0, live[0] + 1),
        on_remove=lambda c: live.__setitem__(0, live[0] - 1),
    )
    a = pool.acquire()
    pool.acquire()
    assert live[0] == 2
    pool.release(a, discard=True)
    assert live[0] == 1


def test_shutdown_closes_idle_and_rejects_new_acquires() -> None:
    driver = FakeDriver()
    pool = _pool(driver)
    idle = pool.acquire()
    busy = pool.acquire()
    pool.release(idle)

    pool.shutdown(timeout=0.5)
    assert idle.closed is True
    assert busy.closed is False
    with pytest.raises(PoolClosedError):
        pool.acquire()

    pool.release(busy)
    assert busy.closed is True
    assert pool.stats().total == 0

    pool.shutdown()  # idempotent


def test_shutdown_fails_queued_acquire_after_grace_period() -> None:
    driver = FakeDriver()
    pool = _pool(driver, max_size=1, acquire_timeout=10.0)
    pool.acquire()
    errors: list[BaseException] = []

    def waiter() -> None:
        try:
            pool.acquire()
        except Exception as e:  # noqa: BLE001
            errors.append(e)

    t = threading.Thread(target=waiter)
    t.start()
    assert wait_until(lambda: pool.stats().waiting == 1)
    pool.shutdown(timeout=0.05)
    t.join(2)
    assert len(errors) == 1
    assert isinstance(errors[0], PoolClosedError)


def test_connection_context_manager_releases() -> None:
    driver = FakeDriver()
    pool = _pool(driver)
    with pytest.raises(ValueError):
        with pool.connection() as conn:
            assert pool.stats().in_use == 1
            raise ValueError("statement failed")
    assert pool.stats().in_use == 0
    assert pool.stats().idle == 1
    assert conn.closed is False


def test_min_greater_than_max_rejected() -> None:
    with pytest.raises(ValueError, match="min"):
        ConnectionPool(FakeDriver(), min_size=5, max_size=2)
