"""
Emergency Hub - Hub Service

Top-level lifecycle for the real-time emergency broadcast hub and the only
entry point external collaborators (HTTP routes, the MQTT trigger bridge,
operator tools) use.

Runs a ``websockets`` server in a background thread with its own asyncio
event loop. All transport I/O, heartbeat sweeps and fan-outs happen on
that loop; the public methods below are thread-safe and block the caller
only until the fan-out they requested has finished (bounded by
``broadcast_timeout_seconds``).

Usage:
    hub = EmergencyHubService(HubConfig())
    hub.start()                           # non-blocking, spawns thread
    hub.broadcast_emergency({"patientName": "A. Rao", "bloodGroup": "O-"})
    hub.send_targeted_notifications({"bloodType": "O-"}, {"message": "..."})
    hub.stop()
"""

import asyncio
import concurrent.futures
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from .broadcast.engine import BroadcastEngine, DeliveryReport, PayloadLike
from .broadcast.envelope import (
    BroadcastEnvelope,
    ClientRegistration,
    Heartbeat,
    MalformedMessage,
    MessageType,
    PayloadError,
    SystemStatus,
    UserType,
    format_timestamp,
    parse_inbound,
)
from .broadcast.heartbeat import HeartbeatMonitor
from .broadcast.registry import ClientConnection, ConnectionRegistry, TargetCriteria
from .broadcast.replay_buffer import ReplayBuffer
from .utils.config import HubConfig
from .utils.event_bus import BroadcastEvent, ClientEvent, EventBus, ServerEvent

logger = logging.getLogger(__name__)

try:
    import websockets
    import websockets.asyncio.server
    from websockets.exceptions import ConnectionClosed
    from websockets.protocol import State
    HAS_WEBSOCKETS = True
except ImportError:
    HAS_WEBSOCKETS = False

NORMAL_CLOSURE = 1000

# Seconds to wait for the server thread to bind / exit / close clients
_BIND_TIMEOUT = 5.0
_JOIN_TIMEOUT = 3.0
_CLOSE_TIMEOUT = 2.0


def _now_iso() -> str:
    return format_timestamp(datetime.now(timezone.utc))


class WebSocketTransport:
    """Adapts a ``websockets`` server connection to the registry transport."""

    def __init__(self, websocket: Any) -> None:
        self._ws = websocket

    @property
    def is_open(self) -> bool:
        return self._ws.state is State.OPEN

    async def send(self, text: str) -> None:
        await self._ws.send(text)

    async def ping(self) -> Any:
        """Send a ping frame; returns the pong waiter future."""
        return await self._ws.ping()

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        await self._ws.close(code, reason)

    def terminate(self) -> None:
        self._ws.transport.abort()


class EmergencyHubService:
    """WebSocket emergency broadcast hub.

    Args:
        config: Hub settings (defaults loaded from the settings file).
        event_bus: Bus that lifecycle and delivery events are published to.
            Subscribe before calling ``start()``.
        host: Bind address override.
        port: Listening port override (0 picks a free port).
    """

    def __init__(self, config: Optional[HubConfig] = None,
                 event_bus: Optional[EventBus] = None,
                 host: Optional[str] = None,
                 port: Optional[int] = None) -> None:
        self._config = config if config is not None else HubConfig()
        self.host = host if host is not None else self._config.get("host")
        self.port = int(port if port is not None else self._config.get("port"))
        self.event_bus = event_bus if event_bus is not None else EventBus()

        self._replay_count = int(self._config.get("replay_count"))
        self._default_radius_km = float(self._config.get("default_radius_km"))
        self._broadcast_timeout = float(self._config.get("broadcast_timeout_seconds"))

        self.registry = ConnectionRegistry()
        self.replay_buffer = ReplayBuffer(int(self._config.get("max_queue_size")))
        self.engine = BroadcastEngine(self.registry, self.replay_buffer,
                                      on_drop=self._on_send_failure)
        self.heartbeat = HeartbeatMonitor(
            self.registry,
            interval=self._config.heartbeat_interval,
            on_evict=self._on_evict,
        )

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._server: Optional[Any] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._started = threading.Event()
        self._bind_error: Optional[str] = None
        self._running = False
        self._started_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Lifecycle (called from any thread)
    # ------------------------------------------------------------------

    def start(self, port: Optional[int] = None) -> bool:
        """Bind the listening socket and start accepting clients.

        Returns False (and stays stopped) if websockets is unavailable,
        the port cannot be bound, or the hub is already running.
        """
        if not HAS_WEBSOCKETS:
            logger.warning(
                "websockets library not installed -- "
                "emergency hub disabled (pip install websockets)"
            )
            return False

        if self._thread and self._thread.is_alive():
            logger.debug("Emergency hub already running")
            return False

        if port is not None:
            self.port = int(port)
        self._bind_error = None
        self._started.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="emergency-hub",
            daemon=True,
        )
        self._thread.start()
        self._started.wait(timeout=_BIND_TIMEOUT)

        if not self._started.is_set() or self._bind_error is not None:
            reason = self._bind_error or "timed out waiting for bind"
            self._join_thread()
            self.event_bus.publish(ServerEvent.error(self.port, reason=reason))
            return False

        self._running = True
        self._started_at = time.time()
        self.event_bus.publish(ServerEvent.started(self.port, host=self.host))
        return True

    def stop(self) -> None:
        """Close every client with a normal closure and stop the server.

        Idempotent: a no-op when the hub is already stopped.
        """
        thread = self._thread
        if thread is None:
            return

        was_running = self._running
        self._running = False
        loop = self._loop
        if loop is not None and loop.is_running():
            if threading.current_thread() is thread:
                loop.create_task(self._shutdown_async())
                return
            try:
                future = asyncio.run_coroutine_threadsafe(self._shutdown_async(), loop)
                future.result(timeout=_BIND_TIMEOUT)
            except concurrent.futures.TimeoutError:
                logger.warning("Emergency hub shutdown timed out, forcing loop stop")
                loop.call_soon_threadsafe(loop.stop)
            except RuntimeError:
                pass  # Loop closed between the check and the call

        self._join_thread()
        self.registry.clear()
        self._started_at = None
        if was_running:
            logger.info("Emergency hub stopped")
            self.event_bus.publish(ServerEvent.stopped(self.port))

    def _join_thread(self) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout=_JOIN_TIMEOUT)
            if thread.is_alive():
                logger.warning("Emergency hub thread did not exit within %.0fs",
                               _JOIN_TIMEOUT)
        self._thread = None
        self._loop = None
        self._server = None
        self._stop_event = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Public broadcast API (called from any thread)
    # ------------------------------------------------------------------

    def broadcast_emergency(self, payload: PayloadLike) -> DeliveryReport:
        """Push an EMERGENCY_ALERT to every connected client.

        The alert is recorded for replay even while the hub is stopped, so
        clients registering after the next ``start()`` still receive it.
        """
        self._check_caller_thread()
        envelope, recipients = self.engine.prepare_all(MessageType.EMERGENCY_ALERT, payload)
        logger.info("Broadcasting emergency: %s",
                    getattr(envelope.payload, "headline", ""))
        report = self._deliver_and_wait(envelope, recipients)
        self.event_bus.publish(BroadcastEvent.emergency(
            report.success_count, report.failure_count,
            pending=report.pending, client_count=len(recipients),
        ))
        return report

    def broadcast_weather_warning(self, payload: PayloadLike) -> DeliveryReport:
        """Push a WEATHER_WARNING to every connected client."""
        self._check_caller_thread()
        envelope, recipients = self.engine.prepare_all(MessageType.WEATHER_WARNING, payload)
        logger.info("Broadcasting weather warning: %s",
                    getattr(envelope.payload, "location_name", ""))
        report = self._deliver_and_wait(envelope, recipients)
        self.event_bus.publish(BroadcastEvent.weather(
            report.success_count, report.failure_count,
            pending=report.pending, client_count=len(recipients),
        ))
        return report

    def send_targeted_notifications(self, criteria: Union[TargetCriteria, Dict[str, Any]],
                                    payload: PayloadLike) -> int:
        """Push an URGENT_REQUEST to matching clients; returns the match count.

        The count is fixed when recipients are selected and does not depend
        on how many sends finish within ``broadcast_timeout_seconds``.
        """
        self._check_caller_thread()
        target = TargetCriteria.from_dict(criteria, self._default_radius_km)
        envelope, recipients = self.engine.prepare_targeted(
            MessageType.URGENT_REQUEST, payload, target)
        self._deliver_and_wait(envelope, recipients)
        self.event_bus.publish(BroadcastEvent.targeted(
            len(recipients), len(self.registry), criteria=target.to_dict(),
        ))
        return len(recipients)

    def _check_caller_thread(self) -> None:
        if self._thread is not None and threading.current_thread() is self._thread:
            raise RuntimeError(
                "blocking hub API called from the hub loop; await the engine instead")

    def _deliver_and_wait(self, envelope: BroadcastEnvelope,
                          recipients: List[ClientConnection]) -> DeliveryReport:
        """Run the fan-out on the hub loop and wait up to the broadcast timeout.

        Recipients whose send has not completed by then are reported as
        pending.
        """
        loop = self._loop
        if not self._running or loop is None or not loop.is_running():
            logger.warning("Emergency hub not running; %s not delivered",
                           envelope.type.value)
            return DeliveryReport(failure_count=len(recipients))
        if not recipients:
            return DeliveryReport()
        try:
            future = asyncio.run_coroutine_threadsafe(
                self.engine.deliver(envelope, recipients), loop)
        except RuntimeError:
            # Loop closed between the check and the call
            return DeliveryReport(failure_count=len(recipients))
        try:
            return future.result(timeout=self._broadcast_timeout)
        except concurrent.futures.TimeoutError:
            logger.warning("%s to %d clients still in flight after %.1fs; not waiting",
                           envelope.type.value, len(recipients),
                           self._broadcast_timeout)
            return DeliveryReport(pending=len(recipients))
        except concurrent.futures.CancelledError:
            return DeliveryReport(failure_count=len(recipients))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        engine_stats = self.engine.stats
        started_at = self._started_at
        return {
            "isRunning": self._running,
            "connectedCount": len(self.registry),
            "queuedMessageCount": len(self.replay_buffer),
            "port": self.port,
            "uptimeSeconds": time.time() - started_at if started_at else 0.0,
            "totalConnections": self.registry.total_registered,
            "totalMessagesSent": engine_stats["total_messages_sent"],
        }

    def get_client_info(self) -> List[Dict[str, Any]]:
        return self.registry.snapshot()

    # ------------------------------------------------------------------
    # Async internals (run on the hub loop thread)
    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        """Entry point for the background thread."""
        loop = asyncio.new_event_loop()
        self._loop = loop
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self._serve())
        except Exception:
            logger.exception("Emergency hub loop error")
        finally:
            pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(
                    asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            if not self._started.is_set():
                self._bind_error = "server loop exited before binding"
                self._started.set()

    async def _serve(self) -> None:
        try:
            self._server = await websockets.asyncio.server.serve(
                self._handler,
                self.host,
                self.port,
                # Liveness is handled by HeartbeatMonitor
                ping_interval=None,
                compression=None,
            )
        except OSError as e:
            logger.error("Emergency hub failed to bind %s:%d: %s",
                         self.host, self.port, e)
            self._bind_error = str(e) or type(e).__name__
            self._started.set()
            return

        if self.port == 0:
            self.port = self._server.sockets[0].getsockname()[1]
        self._stop_event = asyncio.Event()
        self.heartbeat.start()
        logger.info("Emergency hub listening on ws://%s:%d", self.host, self.port)
        self._started.set()
        await self._stop_event.wait()

    async def _shutdown_async(self) -> None:
        self.heartbeat.stop()
        clients = self.registry.clear()
        if clients:
            await asyncio.gather(*(self._close_client(c) for c in clients))
        server = self._server
        if server is not None:
            server.close()
            try:
                await asyncio.wait_for(server.wait_closed(), timeout=_CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Emergency hub server did not close within %.0fs",
                               _CLOSE_TIMEOUT)
        if self._stop_event is not None:
            self._stop_event.set()

    @staticmethod
    async def _close_client(client: ClientConnection,
                            reason: str = "Server shutdown") -> None:
        try:
            await asyncio.wait_for(
                client.transport.close(NORMAL_CLOSURE, reason),
                timeout=_CLOSE_TIMEOUT,
            )
        except Exception as e:
            logger.debug("Close failed for %s: %s, aborting", client.client_id, e)
            client.transport.terminate()

    async def _handler(self, websocket: Any) -> None:
        """Handle a single client connection."""
        remote = websocket.remote_address
        ip = str(remote[0]) if remote else "Unknown"
        request = getattr(websocket, "request", None)
        user_agent = ""
        if request is not None:
            user_agent = request.headers.get("User-Agent", "")

        client_id = self.registry.register(
            WebSocketTransport(websocket), user_agent=user_agent, remote_address=ip)
        logger.info("Client connected: %s from %s (total: %d)",
                    client_id, ip, len(self.registry))
        self.event_bus.publish(ClientEvent.connected(client_id, ip=ip))

        await self.engine.send_to_client(client_id, BroadcastEnvelope.build(
            MessageType.SYSTEM_STATUS,
            SystemStatus(
                message="Connected to Emergency Broadcast System",
                client_id=client_id,
                server_time=_now_iso(),
            ),
        ))

        try:
            async for raw in websocket:
                self.registry.touch(client_id)
                await self._handle_frame(client_id, raw)
        except ConnectionClosed as e:
            logger.debug("Client %s connection error: %s", client_id, e)
        finally:
            # Evicted, unregistered and shut-down clients were already removed
            if self.registry.remove(client_id) is not None:
                logger.info("Client disconnected: %s (code: %s, total: %d)",
                            client_id, websocket.close_code, len(self.registry))
                self.event_bus.publish(ClientEvent.disconnected(
                    client_id, code=websocket.close_code,
                    reason=websocket.close_reason or "",
                ))

    async def _handle_frame(self, client_id: str, raw: Union[str, bytes]) -> None:
        try:
            message = parse_inbound(raw)
        except MalformedMessage as e:
            logger.warning("Invalid message from client %s: %s", client_id, e)
            await self.engine.send_error(client_id, "Invalid message format")
            return
        except PayloadError as e:
            logger.warning("Undecodable payload from client %s: %s", client_id, e)
            await self.engine.send_error(client_id, "Message processing error")
            return

        if message.type is MessageType.CLIENT_REGISTER:
            await self._register_client(client_id, message.payload)
        elif message.type is MessageType.HEARTBEAT:
            await self.engine.send_to_client(client_id, BroadcastEnvelope.build(
                MessageType.HEARTBEAT, Heartbeat(timestamp=_now_iso())))
        elif message.type is MessageType.CLIENT_UNREGISTER:
            client = self.registry.remove(client_id)
            if client is not None:
                logger.info("Client %s unregistered", client_id)
                await self._close_client(client, "Client unregistered")
                self.event_bus.publish(ClientEvent.disconnected(
                    client_id, code=NORMAL_CLOSURE, reason="Client unregistered"))
        else:
            logger.debug("Received %s from %s", message.raw_type or "<untyped>",
                         client_id)

    async def _register_client(self, client_id: str,
                               registration: Optional[Any]) -> None:
        if not isinstance(registration, ClientRegistration):
            registration = ClientRegistration()
        if not self.registry.update_metadata(
                client_id,
                user_type=registration.user_type,
                location=registration.location,
                preferences=registration.preferences):
            return

        user_type = (registration.user_type or UserType.GUEST).value
        logger.info("Client %s registered as %s", client_id, user_type)
        await self.engine.send_to_client(client_id, BroadcastEnvelope.build(
            MessageType.SYSTEM_STATUS,
            SystemStatus(message="Registration successful",
                         client_id=client_id, user_type=user_type),
        ))

        recent = self.replay_buffer.recent(self._replay_count)
        for envelope in recent:
            if not await self.engine.send_to_client(client_id, envelope):
                break
        if recent:
            logger.debug("Sent %d recent messages to %s", len(recent), client_id)
        self.event_bus.publish(ClientEvent.registered(
            client_id, user_type=user_type, replayed=len(recent)))

    def _on_evict(self, client_id: str, idle_seconds: float) -> None:
        self.event_bus.publish(ClientEvent.evicted(client_id, idle_seconds=idle_seconds))

    def _on_send_failure(self, client_id: str, reason: str) -> None:
        self.event_bus.publish(ClientEvent.disconnected(client_id, reason=reason))
