"""
Emergency Hub - Heartbeat Monitor

Periodically probes every registered connection and evicts the ones that
stopped answering.

Per-connection state machine:

    fresh --ping--> probed --pong--> fresh
                           \\--(no signal for 2 intervals)--> evicted

A single missed cycle is tolerated; a connection whose last liveness
signal (pong or any inbound frame) is older than two heartbeat intervals
is terminated and removed on the next sweep.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from .registry import ClientConnection, ConnectionRegistry

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 30.0  # seconds

# Called with (client_id, idle_seconds) after an eviction
EvictionCallback = Callable[[str, float], None]


class HeartbeatMonitor:
    """Ping/evict sweeps over a ConnectionRegistry on the hub event loop.

    Args:
        registry: Connections to probe.
        interval: Sweep period in seconds.
        on_evict: Optional callback fired for each evicted client.
    """

    def __init__(self, registry: ConnectionRegistry,
                 interval: float = DEFAULT_HEARTBEAT_INTERVAL,
                 on_evict: Optional[EvictionCallback] = None) -> None:
        if interval <= 0:
            raise ValueError("heartbeat interval must be positive")
        self._registry = registry
        self.interval = interval
        self._on_evict = on_evict
        self._task: Optional[asyncio.Task] = None
        self._sweeps = 0
        self._evictions = 0

    @property
    def stale_after(self) -> float:
        return self.interval * 2

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the periodic sweep. Must be called on the hub loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self.run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Heartbeat sweep failed")

    async def sweep(self, now: Optional[float] = None) -> Tuple[int, int]:
        """One pass over the registry. Returns (probed, evicted) counts."""
        if now is None:
            now = time.time()
        probed = evicted = 0
        for client in self._registry.all():
            idle = now - client.last_seen_at
            if idle > self.stale_after:
                if self._evict(client, idle):
                    evicted += 1
            elif client.transport.is_open:
                if await self._probe(client):
                    probed += 1
        self._sweeps += 1
        if evicted:
            logger.info("Heartbeat: %d active, %d stale clients removed",
                        probed, evicted)
        return probed, evicted

    def _evict(self, client: ClientConnection, idle: float) -> bool:
        logger.info("Removing stale client %s (silent for %.0fs)",
                    client.client_id, idle)
        try:
            client.transport.terminate()
        except Exception as e:
            logger.debug("Terminate failed for %s: %s", client.client_id, e)
        if self._registry.remove(client.client_id) is None:
            return False
        self._evictions += 1
        if self._on_evict is not None:
            self._on_evict(client.client_id, idle)
        return True

    async def _probe(self, client: ClientConnection) -> bool:
        """Send a protocol ping; the pong (if any) touches the client."""
        try:
            waiter = await client.transport.ping()
        except Exception as e:
            logger.debug("Ping to %s failed: %s", client.client_id, e)
            return False
        if waiter is not None and hasattr(waiter, "add_done_callback"):
            client_id = client.client_id
            waiter.add_done_callback(
                lambda fut: self._on_pong(client_id, fut))
        return True

    def _on_pong(self, client_id: str, fut: Any) -> None:
        if fut.cancelled() or fut.exception() is not None:
            return
        self._registry.touch(client_id)

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "interval_seconds": self.interval,
            "sweeps": self._sweeps,
            "evictions": self._evictions,
            "running": self.running,
        }
