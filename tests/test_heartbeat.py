"""Tests for heartbeat probing and stale-client eviction."""

import asyncio
import time

import pytest

from emergency_hub.broadcast.heartbeat import HeartbeatMonitor


def _age(registry, client_id, seconds):
    with registry._lock:
        registry._clients[client_id].last_seen_at = time.time() - seconds


class TestSweep:
    def test_fresh_clients_are_pinged(self, registry, make_transport):
        t = make_transport()
        cid = registry.register(t)
        monitor = HeartbeatMonitor(registry, interval=30)

        probed, evicted = asyncio.run(monitor.sweep())

        assert (probed, evicted) == (1, 0)
        assert t.pings == 1
        assert cid in registry

    def test_one_missed_cycle_is_tolerated(self, registry, make_transport):
        t = make_transport()
        cid = registry.register(t)
        _age(registry, cid, 45)
        monitor = HeartbeatMonitor(registry, interval=30)

        asyncio.run(monitor.sweep())

        assert cid in registry
        assert t.terminated is False

    def test_silent_client_evicted_after_two_intervals(self, registry, make_transport):
        stale = make_transport()
        fresh = make_transport()
        stale_id = registry.register(stale)
        fresh_id = registry.register(fresh)
        _age(registry, stale_id, 61)
        evicted = []
        monitor = HeartbeatMonitor(registry, interval=30,
                                   on_evict=lambda cid, idle: evicted.append(cid))

        probed, count = asyncio.run(monitor.sweep())

        assert (probed, count) == (1, 1)
        assert stale.terminated is True
        assert stale.pings == 0
        assert stale_id not in registry
        assert fresh_id in registry
        assert evicted == [stale_id]
        assert monitor.stats["evictions"] == 1

    def test_eviction_via_future_clock(self, registry, make_transport):
        cid = registry.register(make_transport())
        monitor = HeartbeatMonitor(registry, interval=1)
        asyncio.run(monitor.sweep(now=time.time() + 10))
        assert cid not in registry

    def test_pong_refreshes_last_seen(self, registry, make_transport):
        t = make_transport()
        cid = registry.register(t)
        _age(registry, cid, 50)
        monitor = HeartbeatMonitor(registry, interval=30)

        async def scenario():
            await monitor.sweep()
            t.pong_waiters[0].set_result(0.01)
            await asyncio.sleep(0)

        asyncio.run(scenario())
        assert time.time() - registry.get(cid).last_seen_at < 5

    def test_unanswered_ping_does_not_refresh(self, registry, make_transport):
        t = make_transport()
        cid = registry.register(t)
        _age(registry, cid, 50)
        monitor = HeartbeatMonitor(registry, interval=30)

        async def scenario():
            await monitor.sweep()
            t.pong_waiters[0].cancel()
            await asyncio.sleep(0)

        asyncio.run(scenario())
        assert time.time() - registry.get(cid).last_seen_at >= 49

    def test_ping_failure_is_not_counted(self, registry, make_transport):
        cid = registry.register(make_transport(fail_ping=True))
        monitor = HeartbeatMonitor(registry, interval=30)
        assert asyncio.run(monitor.sweep()) == (0, 0)
        assert cid in registry


class TestLifecycle:
    def test_invalid_interval(self, registry):
        with pytest.raises(ValueError):
            HeartbeatMonitor(registry, interval=0)

    def test_stale_after_is_two_intervals(self, registry):
        assert HeartbeatMonitor(registry, interval=15).stale_after == 30

    def test_run_loop_sweeps_periodically(self, registry, make_transport):
        t = make_transport()
        registry.register(t)
        monitor = HeartbeatMonitor(registry, interval=0.05)

        async def scenario():
            monitor.start()
            assert monitor.running
            await asyncio.sleep(0.12)
            monitor.stop()

        asyncio.run(scenario())
        assert monitor.running is False
        assert monitor.stats["sweeps"] >= 1
        assert t.pings >= 1
