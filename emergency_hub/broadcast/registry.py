"""
Emergency Hub - Connection Registry

Single source of truth for who is online and what they care about. Each
entry owns its client transport; no other component keeps a reference to
a transport outside a snapshot taken from here.

Entries are mutated on the hub event loop but read from caller threads
(status endpoints, dashboards), so every operation takes the registry
lock and enumeration always returns copies. The lock is never held
across an ``await``.
"""

import logging
import random
import string
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Protocol

from ..utils.geo import GeoPoint, within_radius
from .envelope import PayloadError, UserType

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_KM = 50.0

_ID_ALPHABET = string.digits + string.ascii_lowercase


class ClientTransport(Protocol):
    """Send capability held by a registry entry."""

    @property
    def is_open(self) -> bool: ...

    async def send(self, text: str) -> None: ...

    async def ping(self) -> Any: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...

    def terminate(self) -> None: ...


def generate_client_id() -> str:
    """``client_<epoch millis>_<9 base36 chars>``; unique per accept."""
    suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(9))
    return f"client_{int(time.time() * 1000)}_{suffix}"


@dataclass
class ClientConnection:
    """Registry entry for one live transport connection."""
    client_id: str
    transport: ClientTransport
    connected_at: float = field(default_factory=time.time)
    last_seen_at: float = field(default_factory=time.time)
    user_type: Optional[UserType] = None
    location: Optional[GeoPoint] = None
    preferences: Optional[Dict[str, Any]] = None
    user_agent: str = ""
    remote_address: str = ""

    @property
    def blood_type(self) -> Optional[str]:
        if not self.preferences:
            return None
        return self.preferences.get("bloodType")

    def to_dict(self) -> Dict[str, Any]:
        """Dashboard view of the entry (no transport)."""
        return {
            "id": self.client_id,
            "connectedAt": self.connected_at,
            "lastSeenAt": self.last_seen_at,
            "userType": (self.user_type or UserType.GUEST).value,
            "location": self.location.to_dict() if self.location else None,
            "preferences": dict(self.preferences) if self.preferences else None,
            "userAgent": self.user_agent or "Unknown",
            "ip": self.remote_address or "Unknown",
            "isConnected": self.transport.is_open,
        }


@dataclass(frozen=True)
class TargetCriteria:
    """Filter for a targeted send. Unset fields match every client."""
    blood_type: Optional[str] = None
    location: Optional[GeoPoint] = None
    radius_km: float = DEFAULT_RADIUS_KM
    user_type: Optional[UserType] = None

    @classmethod
    def from_dict(cls, data: Any,
                  default_radius_km: float = DEFAULT_RADIUS_KM) -> "TargetCriteria":
        """Build criteria from a route/wire dict.

        Accepts ``bloodType``, ``location`` ({lat, lng}), ``radiusKm`` (or
        the legacy ``radius``) and ``userType``.
        """
        if isinstance(data, TargetCriteria):
            return data
        if not isinstance(data, dict):
            raise PayloadError("criteria must be an object")

        location = None
        if data.get("location") is not None:
            location = GeoPoint.from_dict(data["location"])
            if location is None:
                raise PayloadError("criteria location must be {lat, lng} within range")

        radius = data.get("radiusKm", data.get("radius"))
        if radius is None:
            radius_km = default_radius_km
        else:
            try:
                radius_km = float(radius)
            except (TypeError, ValueError):
                raise PayloadError(f"invalid radius {radius!r}") from None
            if radius_km < 0:
                raise PayloadError("radius must not be negative")

        user_type = data.get("userType")
        if user_type is not None:
            try:
                user_type = UserType(str(user_type).lower())
            except ValueError:
                raise PayloadError(f"unknown userType {user_type!r}") from None

        return cls(
            blood_type=data.get("bloodType") or None,
            location=location,
            radius_km=radius_km,
            user_type=user_type,
        )

    def matches(self, client: ClientConnection) -> bool:
        if self.blood_type is not None and client.blood_type != self.blood_type:
            return False
        if self.location is not None:
            if client.location is None:
                return False
            if not within_radius(self.location, client.location, self.radius_km):
                return False
        if self.user_type is not None and client.user_type != self.user_type:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.blood_type is not None:
            out["bloodType"] = self.blood_type
        if self.location is not None:
            out["location"] = self.location.to_dict()
            out["radiusKm"] = self.radius_km
        if self.user_type is not None:
            out["userType"] = self.user_type.value
        return out


class ConnectionRegistry:
    """Thread-safe map of client id -> ClientConnection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._clients: Dict[str, ClientConnection] = {}
        self._total_registered = 0

    def register(self, transport: ClientTransport, user_agent: str = "",
                 remote_address: str = "") -> str:
        """Store a freshly accepted transport and return its new id."""
        with self._lock:
            client_id = generate_client_id()
            while client_id in self._clients:
                client_id = generate_client_id()
            now = time.time()
            self._clients[client_id] = ClientConnection(
                client_id=client_id,
                transport=transport,
                connected_at=now,
                last_seen_at=now,
                user_agent=user_agent,
                remote_address=remote_address,
            )
            self._total_registered += 1
            return client_id

    def update_metadata(self, client_id: str,
                        user_type: Optional[UserType] = None,
                        location: Optional[GeoPoint] = None,
                        preferences: Optional[Dict[str, Any]] = None) -> bool:
        """Merge registration fields; returns False if the client is gone."""
        with self._lock:
            client = self._clients.get(client_id)
            if client is None:
                return False
            if user_type is not None:
                client.user_type = user_type
            if location is not None:
                client.location = location
            if preferences is not None:
                merged = dict(client.preferences or {})
                merged.update(preferences)
                client.preferences = merged
            return True

    def touch(self, client_id: str) -> None:
        with self._lock:
            client = self._clients.get(client_id)
            if client is not None:
                client.last_seen_at = time.time()

    def remove(self, client_id: str) -> Optional[ClientConnection]:
        """Drop an entry. Idempotent; returns the removed entry if any."""
        with self._lock:
            return self._clients.pop(client_id, None)

    def get(self, client_id: str) -> Optional[ClientConnection]:
        with self._lock:
            client = self._clients.get(client_id)
            return replace(client) if client is not None else None

    def all(self) -> List[ClientConnection]:
        """Point-in-time copies of every entry, in registration order."""
        with self._lock:
            return [replace(c) for c in self._clients.values()]

    def matching(self, criteria: TargetCriteria) -> List[ClientConnection]:
        with self._lock:
            return [
                replace(c) for c in self._clients.values()
                if c.transport.is_open and criteria.matches(c)
            ]

    def snapshot(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [c.to_dict() for c in self._clients.values()]

    def clear(self) -> List[ClientConnection]:
        """Remove every entry and return them for closing."""
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
            return clients

    @property
    def total_registered(self) -> int:
        with self._lock:
            return self._total_registered

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def __contains__(self, client_id: object) -> bool:
        with self._lock:
            return client_id in self._clients
