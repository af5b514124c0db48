"""Tests for envelope construction and the wire codec."""

import dataclasses
import json

import pytest

from emergency_hub.broadcast.envelope import (
    BroadcastEnvelope,
    ClientRegistration,
    EmergencyAlert,
    MalformedMessage,
    MessageType,
    Payload,
    PayloadError,
    UserType,
    WeatherWarning,
    decode_payload,
    parse_inbound,
)
from emergency_hub.utils.geo import GeoPoint


class TestBuild:
    def test_emergency_default_urgency(self):
        env = BroadcastEnvelope.build(MessageType.EMERGENCY_ALERT,
                                      {"patientName": "A", "bloodGroup": "O-"})
        assert env.urgency == "HIGH"
        assert env.severity is None
        assert isinstance(env.payload, EmergencyAlert)
        assert env.payload.blood_group == "O-"

    def test_emergency_caller_urgency(self, sample_emergency):
        env = BroadcastEnvelope.build(MessageType.EMERGENCY_ALERT, sample_emergency)
        assert env.urgency == "Critical"

    def test_weather_default_severity(self):
        env = BroadcastEnvelope.build(MessageType.WEATHER_WARNING, {"message": "rain"})
        assert env.severity == "MEDIUM"
        assert env.urgency is None

    def test_weather_caller_severity(self, sample_weather):
        env = BroadcastEnvelope.build(MessageType.WEATHER_WARNING, sample_weather)
        assert env.severity == "HIGH"
        assert env.payload.location_name == "Test City"

    def test_status_has_no_classifier(self):
        env = BroadcastEnvelope.build(MessageType.SYSTEM_STATUS, {"message": "hi"})
        assert env.urgency is None and env.severity is None

    def test_typed_payload_accepted(self):
        alert = EmergencyAlert(patient_name="B")
        env = BroadcastEnvelope.build(MessageType.EMERGENCY_ALERT, alert)
        assert env.payload is alert

    def test_wrong_payload_class_rejected(self):
        with pytest.raises(PayloadError):
            decode_payload(MessageType.EMERGENCY_ALERT, WeatherWarning(message="x"))

    def test_non_object_payload_rejected(self):
        with pytest.raises(PayloadError):
            BroadcastEnvelope.build(MessageType.EMERGENCY_ALERT, ["not", "a", "dict"])

    def test_immutable(self):
        env = BroadcastEnvelope.build(MessageType.EMERGENCY_ALERT, {})
        with pytest.raises(dataclasses.FrozenInstanceError):
            env.is_replay = True


class TestWire:
    def test_emergency_wire_shape(self, sample_emergency):
        wire = BroadcastEnvelope.build(
            MessageType.EMERGENCY_ALERT, sample_emergency).to_wire()
        assert wire["type"] == "EMERGENCY_ALERT"
        assert wire["data"] == sample_emergency
        assert wire["urgency"] == "Critical"
        assert wire["timestamp"].endswith("Z")
        assert "isHistoric" not in wire
        assert "severity" not in wire

    def test_unknown_keys_round_trip(self):
        env = BroadcastEnvelope.build(MessageType.URGENT_REQUEST,
                                      {"message": "m", "requestId": "r-1"})
        assert env.payload.extra == {"requestId": "r-1"}
        assert env.to_wire()["data"] == {"message": "m", "requestId": "r-1"}

    def test_replay_copy_flags_historic(self):
        env = BroadcastEnvelope.build(MessageType.WEATHER_WARNING, {"message": "m"})
        replay = env.as_replay()
        assert replay.to_wire()["isHistoric"] is True
        assert env.is_replay is False
        assert replay.timestamp == env.timestamp

    def test_target_criteria_on_wire(self):
        env = BroadcastEnvelope.build(MessageType.URGENT_REQUEST, {"message": "m"},
                                      target_criteria={"bloodType": "A+"})
        assert env.to_wire()["targetCriteria"] == {"bloodType": "A+"}

    def test_to_json_is_valid(self):
        env = BroadcastEnvelope.build(MessageType.HEARTBEAT, {"timestamp": "t"})
        assert json.loads(env.to_json())["data"] == {"timestamp": "t"}


class TestParseInbound:
    def test_non_json(self):
        with pytest.raises(MalformedMessage):
            parse_inbound("not json at all")

    def test_non_object(self):
        with pytest.raises(MalformedMessage):
            parse_inbound("[1, 2, 3]")

    def test_malformed_is_payload_error(self):
        assert issubclass(MalformedMessage, PayloadError)

    def test_unknown_type(self):
        msg = parse_inbound(json.dumps({"type": "evil_command"}))
        assert msg.type is None
        assert msg.raw_type == "evil_command"

    def test_heartbeat(self):
        msg = parse_inbound(json.dumps({"type": "HEARTBEAT"}))
        assert msg.type is MessageType.HEARTBEAT

    def test_register(self):
        msg = parse_inbound(json.dumps({
            "type": "CLIENT_REGISTER",
            "data": {
                "userType": "donor",
                "location": {"lat": 19.07, "lng": 72.87},
                "preferences": {"bloodType": "O+"},
            },
        }))
        reg = msg.payload
        assert isinstance(reg, ClientRegistration)
        assert reg.user_type is UserType.DONOR
        assert reg.location == GeoPoint(19.07, 72.87)
        assert reg.preferences == {"bloodType": "O+"}

    def test_register_bytes(self):
        msg = parse_inbound(b'{"type": "CLIENT_REGISTER", "data": {}}')
        assert msg.payload == ClientRegistration()

    def test_register_unknown_user_type(self):
        with pytest.raises(PayloadError):
            parse_inbound(json.dumps({"type": "CLIENT_REGISTER",
                                      "data": {"userType": "pirate"}}))

    def test_register_bad_location(self):
        with pytest.raises(PayloadError):
            parse_inbound(json.dumps({"type": "CLIENT_REGISTER",
                                      "data": {"location": "Mumbai"}}))

    def test_register_bad_preferences(self):
        with pytest.raises(PayloadError):
            parse_inbound(json.dumps({"type": "CLIENT_REGISTER",
                                      "data": {"preferences": "O+"}}))

    def test_unregister_payload(self):
        msg = parse_inbound(json.dumps({"type": "CLIENT_UNREGISTER"}))
        assert type(msg.payload) is Payload


class TestRegistrationWire:
    def test_to_dict_serializes_enum_and_point(self):
        reg = ClientRegistration(user_type=UserType.HOSPITAL,
                                 location=GeoPoint(1.0, 2.0))
        assert reg.to_dict() == {
            "userType": "hospital",
            "location": {"lat": 1.0, "lng": 2.0},
        }
