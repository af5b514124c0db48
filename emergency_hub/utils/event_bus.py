"""Thread-safe publish-subscribe bus for hub lifecycle and delivery events.

The hub service publishes here instead of calling consumers directly, so
analytics, logging sinks and dashboards can observe connections and
broadcasts without coupling to the transport.

Typed events:
    ServerEvent    - hub started/stopped/failed
    ClientEvent    - client connected/registered/disconnected/evicted
    BroadcastEvent - emergency/weather/targeted fan-out completed
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class HubEventType(str, Enum):
    """Event categories for subscription filtering."""
    SERVER_STARTED = "server.started"
    SERVER_STOPPED = "server.stopped"
    SERVER_ERROR = "server.error"
    CLIENT_CONNECTED = "client.connected"
    CLIENT_REGISTERED = "client.registered"
    CLIENT_DISCONNECTED = "client.disconnected"
    CLIENT_EVICTED = "client.evicted"
    BROADCAST_EMERGENCY = "broadcast.emergency"
    BROADCAST_WEATHER = "broadcast.weather"
    BROADCAST_TARGETED = "broadcast.targeted"


@dataclass
class Event:
    """Base event with type, timestamp, and arbitrary payload."""
    event_type: HubEventType
    timestamp: float = field(default_factory=time.time)
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ServerEvent(Event):
    port: int = 0

    @classmethod
    def started(cls, port: int, **extra) -> "ServerEvent":
        return cls(event_type=HubEventType.SERVER_STARTED, port=port, data=extra)

    @classmethod
    def stopped(cls, port: int, **extra) -> "ServerEvent":
        return cls(event_type=HubEventType.SERVER_STOPPED, port=port, data=extra)

    @classmethod
    def error(cls, port: int, reason: str = "", **extra) -> "ServerEvent":
        extra["reason"] = reason
        return cls(event_type=HubEventType.SERVER_ERROR, port=port, data=extra)


@dataclass
class ClientEvent(Event):
    """Event for a single client connection changing state."""
    client_id: str = ""

    @classmethod
    def connected(cls, client_id: str, **extra) -> "ClientEvent":
        return cls(event_type=HubEventType.CLIENT_CONNECTED,
                   client_id=client_id, data=extra)

    @classmethod
    def registered(cls, client_id: str, **extra) -> "ClientEvent":
        return cls(event_type=HubEventType.CLIENT_REGISTERED,
                   client_id=client_id, data=extra)

    @classmethod
    def disconnected(cls, client_id: str, code: Optional[int] = None,
                     reason: str = "", **extra) -> "ClientEvent":
        extra["code"] = code
        extra["reason"] = reason
        return cls(event_type=HubEventType.CLIENT_DISCONNECTED,
                   client_id=client_id, data=extra)

    @classmethod
    def evicted(cls, client_id: str, idle_seconds: float = 0.0,
                **extra) -> "ClientEvent":
        extra["idle_seconds"] = idle_seconds
        return cls(event_type=HubEventType.CLIENT_EVICTED,
                   client_id=client_id, data=extra)


@dataclass
class BroadcastEvent(Event):
    """Event emitted after a fan-out finishes."""
    message_type: str = ""

    @classmethod
    def emergency(cls, success_count: int, failure_count: int,
                  **extra) -> "BroadcastEvent":
        extra.update(success_count=success_count, failure_count=failure_count)
        return cls(event_type=HubEventType.BROADCAST_EMERGENCY,
                   message_type="EMERGENCY_ALERT", data=extra)

    @classmethod
    def weather(cls, success_count: int, failure_count: int,
                **extra) -> "BroadcastEvent":
        extra.update(success_count=success_count, failure_count=failure_count)
        return cls(event_type=HubEventType.BROADCAST_WEATHER,
                   message_type="WEATHER_WARNING", data=extra)

    @classmethod
    def targeted(cls, target_count: int, total_clients: int,
                 **extra) -> "BroadcastEvent":
        extra.update(target_count=target_count, total_clients=total_clients)
        return cls(event_type=HubEventType.BROADCAST_TARGETED,
                   message_type="URGENT_REQUEST", data=extra)


Subscriber = Callable[[Event], None]
Topic = Union[HubEventType, str, None]


def _resolve_topic(topic: Topic) -> Optional[HubEventType]:
    if topic is None or isinstance(topic, HubEventType):
        return topic
    try:
        return HubEventType(topic)
    except ValueError:
        raise ValueError(f"unknown hub event {topic!r}") from None


class EventBus:
    """Observer list for hub lifecycle and delivery events.

    Callbacks run synchronously on the publishing thread, which is the hub
    loop thread for client events and the caller's thread for server and
    broadcast events. A callback that raises is logged and skipped; it
    never affects the hub or the other observers.

        bus = EventBus()
        cancel = bus.subscribe("client.evicted", on_evicted)
        bus.subscribe(None, audit_log)   # every event
        cancel()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # Replaced wholesale on change so publish can iterate without the lock
        self._observers: Tuple[Tuple[Optional[HubEventType], Subscriber], ...] = ()

    def subscribe(self, topic: Topic, callback: Subscriber) -> Callable[[], None]:
        """Observe one event type (enum or its dotted value) or, with None, all.

        Returns a callable that removes this subscription.
        """
        entry = (_resolve_topic(topic), callback)
        with self._lock:
            self._observers = self._observers + (entry,)

        def cancel() -> None:
            with self._lock:
                self._observers = tuple(o for o in self._observers if o is not entry)

        return cancel

    def publish(self, event: Event) -> int:
        """Deliver ``event`` to its observers; returns how many accepted it."""
        delivered = 0
        for topic, callback in self._observers:
            if topic is not None and topic is not event.event_type:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("Hub event observer %s failed on %s",
                                 getattr(callback, "__name__", repr(callback)),
                                 event.event_type.value)
                continue
            delivered += 1
        return delivered

    def __len__(self) -> int:
        return len(self._observers)
