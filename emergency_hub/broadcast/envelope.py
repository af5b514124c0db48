"""
Emergency Hub - Envelope and wire codec

Every frame exchanged with a client is a JSON envelope:

    {"type": "EMERGENCY_ALERT", "data": {...}, "timestamp": "...Z",
     "urgency": "HIGH"}

``data`` is decoded into one payload dataclass per message type at the
protocol boundary. Wire keys are camelCase; keys a payload does not know
about are kept in ``extra`` and written back unchanged, so upstream
producers can add fields without a hub release.
"""

import json
import logging
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Type, Union

from ..utils.geo import GeoPoint

logger = logging.getLogger(__name__)

DEFAULT_URGENCY = "HIGH"
DEFAULT_SEVERITY = "MEDIUM"


class MessageType(str, Enum):
    """Closed catalogue of envelope types."""
    EMERGENCY_ALERT = "EMERGENCY_ALERT"
    WEATHER_WARNING = "WEATHER_WARNING"
    URGENT_REQUEST = "URGENT_REQUEST"
    SYSTEM_STATUS = "SYSTEM_STATUS"
    HEARTBEAT = "HEARTBEAT"
    CLIENT_REGISTER = "CLIENT_REGISTER"
    CLIENT_UNREGISTER = "CLIENT_UNREGISTER"
    ERROR = "ERROR"


class UserType(str, Enum):
    GUEST = "guest"
    DONOR = "donor"
    HOSPITAL = "hospital"
    ADMIN = "admin"


class PayloadError(ValueError):
    """Raised when envelope data cannot be decoded into its payload type."""


class MalformedMessage(PayloadError):
    """Raised when an inbound frame is not a JSON object."""


def _wire(name: str) -> Dict[str, str]:
    return {"wire": name}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    return value.astimezone(timezone.utc).isoformat(
        timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class Payload:
    """Base payload: only the passthrough ``extra`` mapping."""
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def _wire_fields(cls) -> Dict[str, str]:
        return {f.metadata["wire"]: f.name for f in fields(cls) if "wire" in f.metadata}

    @classmethod
    def from_dict(cls, data: Any) -> "Payload":
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise PayloadError(
                f"{cls.__name__} data must be an object, got {type(data).__name__}")
        known = cls._wire_fields()
        kwargs: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in data.items():
            if key in known:
                kwargs[known[key]] = value
            else:
                extra[key] = value
        return cls(extra=extra, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.extra)
        for f in fields(self):
            wire = f.metadata.get("wire")
            if wire is None:
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, GeoPoint):
                value = value.to_dict()
            out[wire] = value
        return out


@dataclass(frozen=True)
class EmergencyAlert(Payload):
    """Critical blood request pushed to every client."""
    patient_name: Optional[str] = field(default=None, metadata=_wire("patientName"))
    blood_group: Optional[str] = field(default=None, metadata=_wire("bloodGroup"))
    required_units: Optional[int] = field(default=None, metadata=_wire("requiredUnits"))
    urgency: Optional[str] = field(default=None, metadata=_wire("urgency"))
    hospital_name: Optional[str] = field(default=None, metadata=_wire("hospitalName"))
    hospital_phone: Optional[str] = field(default=None, metadata=_wire("hospitalPhone"))
    location: Any = field(default=None, metadata=_wire("location"))
    hours_left: Optional[float] = field(default=None, metadata=_wire("hoursLeft"))
    additional_notes: Optional[str] = field(default=None, metadata=_wire("additionalNotes"))
    title: Optional[str] = field(default=None, metadata=_wire("title"))

    @property
    def headline(self) -> str:
        return self.patient_name or self.title or "emergency"


@dataclass(frozen=True)
class WeatherWarning(Payload):
    location: Any = field(default=None, metadata=_wire("location"))
    weather: Any = field(default=None, metadata=_wire("weather"))
    severity: Optional[str] = field(default=None, metadata=_wire("severity"))
    message: Optional[str] = field(default=None, metadata=_wire("message"))

    @property
    def location_name(self) -> str:
        if isinstance(self.location, dict):
            return str(self.location.get("name", "unknown"))
        return str(self.location or "unknown")


@dataclass(frozen=True)
class UrgentRequest(Payload):
    message: Optional[str] = field(default=None, metadata=_wire("message"))
    blood_type: Optional[str] = field(default=None, metadata=_wire("bloodType"))
    location: Any = field(default=None, metadata=_wire("location"))


@dataclass(frozen=True)
class SystemStatus(Payload):
    message: Optional[str] = field(default=None, metadata=_wire("message"))
    client_id: Optional[str] = field(default=None, metadata=_wire("clientId"))
    user_type: Optional[str] = field(default=None, metadata=_wire("userType"))
    server_time: Optional[str] = field(default=None, metadata=_wire("serverTime"))


@dataclass(frozen=True)
class Heartbeat(Payload):
    timestamp: Optional[str] = field(default=None, metadata=_wire("timestamp"))


@dataclass(frozen=True)
class ErrorPayload(Payload):
    message: Optional[str] = field(default=None, metadata=_wire("message"))


@dataclass(frozen=True)
class ClientRegistration(Payload):
    """Client-supplied targeting metadata sent with CLIENT_REGISTER."""
    user_type: Optional[UserType] = field(default=None, metadata=_wire("userType"))
    location: Optional[GeoPoint] = field(default=None, metadata=_wire("location"))
    preferences: Optional[Dict[str, Any]] = field(default=None, metadata=_wire("preferences"))

    @classmethod
    def from_dict(cls, data: Any) -> "ClientRegistration":
        reg = super().from_dict(data)
        user_type = reg.user_type
        if user_type is not None and not isinstance(user_type, UserType):
            try:
                user_type = UserType(str(user_type).lower())
            except ValueError:
                raise PayloadError(f"unknown userType {user_type!r}") from None
        location = reg.location
        if location is not None:
            location = GeoPoint.from_dict(location)
            if location is None:
                raise PayloadError("location must be {lat, lng} within range")
        if reg.preferences is not None and not isinstance(reg.preferences, dict):
            raise PayloadError("preferences must be an object")
        return replace(reg, user_type=user_type, location=location)


PAYLOAD_TYPES: Dict[MessageType, Type[Payload]] = {
    MessageType.EMERGENCY_ALERT: EmergencyAlert,
    MessageType.WEATHER_WARNING: WeatherWarning,
    MessageType.URGENT_REQUEST: UrgentRequest,
    MessageType.SYSTEM_STATUS: SystemStatus,
    MessageType.HEARTBEAT: Heartbeat,
    MessageType.CLIENT_REGISTER: ClientRegistration,
    MessageType.CLIENT_UNREGISTER: Payload,
    MessageType.ERROR: ErrorPayload,
}


def decode_payload(message_type: MessageType,
                   data: Union[Payload, Dict[str, Any], None]) -> Payload:
    """Coerce ``data`` into the payload class registered for ``message_type``."""
    payload_cls = PAYLOAD_TYPES[message_type]
    if isinstance(data, payload_cls):
        return data
    if isinstance(data, Payload):
        raise PayloadError(
            f"{message_type.value} expects {payload_cls.__name__}, "
            f"got {type(data).__name__}")
    return payload_cls.from_dict(data)


@dataclass(frozen=True)
class BroadcastEnvelope:
    """Immutable unit of delivery."""
    type: MessageType
    payload: Payload
    timestamp: datetime = field(default_factory=_utcnow)
    urgency: Optional[str] = None
    severity: Optional[str] = None
    target_criteria: Optional[Dict[str, Any]] = None
    is_replay: bool = False

    @classmethod
    def build(cls, message_type: MessageType,
              payload: Union[Payload, Dict[str, Any], None],
              target_criteria: Optional[Dict[str, Any]] = None) -> "BroadcastEnvelope":
        """Decode the payload and derive the type-specific classifier."""
        decoded = decode_payload(message_type, payload)
        urgency = severity = None
        if message_type is MessageType.EMERGENCY_ALERT:
            urgency = getattr(decoded, "urgency", None) or DEFAULT_URGENCY
        elif message_type is MessageType.WEATHER_WARNING:
            severity = getattr(decoded, "severity", None) or DEFAULT_SEVERITY
        return cls(
            type=message_type,
            payload=decoded,
            urgency=urgency,
            severity=severity,
            target_criteria=target_criteria,
        )

    def as_replay(self) -> "BroadcastEnvelope":
        return replace(self, is_replay=True)

    def to_wire(self) -> Dict[str, Any]:
        msg: Dict[str, Any] = {
            "type": self.type.value,
            "data": self.payload.to_dict(),
            "timestamp": format_timestamp(self.timestamp),
        }
        if self.urgency is not None:
            msg["urgency"] = self.urgency
        if self.severity is not None:
            msg["severity"] = self.severity
        if self.target_criteria is not None:
            msg["targetCriteria"] = self.target_criteria
        if self.is_replay:
            msg["isHistoric"] = True
        return msg

    def to_json(self) -> str:
        return json.dumps(self.to_wire())


@dataclass(frozen=True)
class InboundMessage:
    """A decoded client frame. ``type`` is None for unknown type names."""
    raw_type: str
    type: Optional[MessageType] = None
    payload: Optional[Payload] = None


def parse_inbound(raw: Union[str, bytes]) -> InboundMessage:
    """Decode a client frame.

    Raises MalformedMessage for non-JSON or non-object frames and
    PayloadError when a known type carries undecodable data.
    """
    try:
        message = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
        raise MalformedMessage(str(e)) from e
    if not isinstance(message, dict):
        raise MalformedMessage("frame is not a JSON object")

    raw_type = str(message.get("type", ""))
    try:
        message_type = MessageType(raw_type)
    except ValueError:
        return InboundMessage(raw_type=raw_type)
    return InboundMessage(
        raw_type=raw_type,
        type=message_type,
        payload=decode_payload(message_type, message.get("data")),
    )
