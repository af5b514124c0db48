"""Tests for the connection registry and target matching."""

import re
import threading
import time

import pytest

from emergency_hub.broadcast.envelope import PayloadError, UserType
from emergency_hub.broadcast.registry import (
    DEFAULT_RADIUS_KM,
    TargetCriteria,
    generate_client_id,
)
from emergency_hub.utils.geo import GeoPoint, haversine_km

MUMBAI = GeoPoint(19.07, 72.87)
DELHI = GeoPoint(28.6, 77.2)


class TestRegister:
    def test_defaults(self, registry, make_transport):
        before = time.time()
        cid = registry.register(make_transport(), user_agent="UA", remote_address="10.0.0.1")
        client = registry.get(cid)
        assert client.connected_at >= before
        assert client.last_seen_at == client.connected_at
        assert client.user_type is None
        assert client.location is None
        assert client.preferences is None
        assert client.user_agent == "UA"

    def test_ids_unique(self, registry, make_transport):
        ids = {registry.register(make_transport()) for _ in range(200)}
        assert len(ids) == 200
        assert len(registry) == 200

    def test_id_format(self):
        assert re.match(r"^client_\d+_[0-9a-z]{9}$", generate_client_id())

    def test_total_registered_survives_removal(self, registry, make_transport):
        cid = registry.register(make_transport())
        registry.remove(cid)
        assert registry.total_registered == 1
        assert len(registry) == 0


class TestMetadata:
    def test_update_merges(self, registry, make_transport):
        cid = registry.register(make_transport())
        assert registry.update_metadata(cid, user_type=UserType.DONOR,
                                        preferences={"bloodType": "O+"})
        assert registry.update_metadata(cid, location=MUMBAI,
                                        preferences={"language": "hi"})
        client = registry.get(cid)
        assert client.user_type is UserType.DONOR
        assert client.location == MUMBAI
        assert client.preferences == {"bloodType": "O+", "language": "hi"}

    def test_update_missing_client_is_noop(self, registry):
        assert registry.update_metadata("client_gone", user_type=UserType.ADMIN) is False
        assert len(registry) == 0

    def test_touch_updates_last_seen(self, registry, make_transport):
        cid = registry.register(make_transport())
        with registry._lock:
            registry._clients[cid].last_seen_at -= 100
        registry.touch(cid)
        assert time.time() - registry.get(cid).last_seen_at < 5

    def test_touch_missing_client_is_noop(self, registry):
        registry.touch("client_gone")


class TestRemove:
    def test_remove_idempotent(self, registry, make_transport):
        cid = registry.register(make_transport())
        assert registry.remove(cid) is not None
        assert registry.remove(cid) is None
        assert cid not in registry

    def test_clear_returns_entries(self, registry, make_transport):
        for _ in range(3):
            registry.register(make_transport())
        assert len(registry.clear()) == 3
        assert len(registry) == 0


class TestEnumeration:
    def test_all_returns_copies(self, registry, make_transport):
        cid = registry.register(make_transport())
        snapshot = registry.all()
        snapshot[0].user_type = UserType.ADMIN
        assert registry.get(cid).user_type is None

    def test_snapshot_stable_during_mutation(self, registry, make_transport):
        for _ in range(5):
            registry.register(make_transport())
        snapshot = registry.all()
        for client in snapshot:
            registry.remove(client.client_id)
            registry.register(make_transport())
        assert len(snapshot) == 5
        assert len(registry) == 5

    def test_concurrent_register_and_enumerate(self, registry, make_transport):
        errors = []

        def writer():
            for _ in range(200):
                cid = registry.register(make_transport())
                registry.remove(cid)

        def reader():
            try:
                for _ in range(200):
                    registry.all()
                    registry.snapshot()
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []

    def test_snapshot_dashboard_fields(self, registry, make_transport):
        cid = registry.register(make_transport())
        info = registry.snapshot()[0]
        assert info["id"] == cid
        assert info["userType"] == "guest"
        assert info["ip"] == "Unknown"
        assert info["isConnected"] is True


class TestMatching:
    @pytest.fixture
    def population(self, registry, make_transport):
        a = registry.register(make_transport())
        registry.update_metadata(a, preferences={"bloodType": "O+"}, location=MUMBAI,
                                 user_type=UserType.DONOR)
        b = registry.register(make_transport())
        registry.update_metadata(b, preferences={"bloodType": "A+"}, location=MUMBAI,
                                 user_type=UserType.DONOR)
        c = registry.register(make_transport())
        registry.update_metadata(c, preferences={"bloodType": "O+"}, location=DELHI,
                                 user_type=UserType.HOSPITAL)
        anon = registry.register(make_transport())
        return {"A": a, "B": b, "C": c, "anon": anon}

    def _ids(self, registry, criteria):
        return {c.client_id for c in registry.matching(criteria)}

    def test_blood_type_and_radius(self, registry, population):
        criteria = TargetCriteria(blood_type="O+", location=MUMBAI, radius_km=50)
        assert self._ids(registry, criteria) == {population["A"]}

    def test_empty_criteria_matches_everyone(self, registry, population):
        assert self._ids(registry, TargetCriteria()) == set(population.values())

    def test_blood_type_only(self, registry, population):
        assert self._ids(registry, TargetCriteria(blood_type="O+")) == {
            population["A"], population["C"]}

    def test_location_excludes_clients_without_location(self, registry, population):
        ids = self._ids(registry, TargetCriteria(location=MUMBAI, radius_km=20000))
        assert population["anon"] not in ids
        assert len(ids) == 3

    def test_user_type(self, registry, population):
        assert self._ids(registry, TargetCriteria(user_type=UserType.HOSPITAL)) == {
            population["C"]}

    def test_closed_transport_skipped(self, registry, population):
        with registry._lock:
            registry._clients[population["A"]].transport.open = False
        assert self._ids(registry, TargetCriteria(blood_type="O+")) == {population["C"]}

    def test_radius_boundary_is_inclusive(self, registry, make_transport):
        cid = registry.register(make_transport())
        registry.update_metadata(cid, location=DELHI)
        distance = haversine_km(MUMBAI, DELHI)
        assert {c.client_id for c in registry.matching(
            TargetCriteria(location=MUMBAI, radius_km=distance))} == {cid}
        assert registry.matching(
            TargetCriteria(location=MUMBAI, radius_km=distance - 1)) == []


class TestTargetCriteriaFromDict:
    def test_default_radius(self):
        criteria = TargetCriteria.from_dict({"location": {"lat": 1, "lng": 2}})
        assert criteria.radius_km == DEFAULT_RADIUS_KM == 50.0

    def test_custom_default_radius(self):
        assert TargetCriteria.from_dict({}, default_radius_km=25).radius_km == 25

    def test_radius_km_and_legacy_radius(self):
        assert TargetCriteria.from_dict({"radiusKm": 10}).radius_km == 10.0
        assert TargetCriteria.from_dict({"radius": 12}).radius_km == 12.0

    def test_all_fields(self):
        criteria = TargetCriteria.from_dict({
            "bloodType": "A+",
            "location": {"lat": 19.07, "lng": 72.87},
            "radiusKm": 5,
            "userType": "Donor",
        })
        assert criteria == TargetCriteria("A+", MUMBAI, 5.0, UserType.DONOR)
        assert criteria.to_dict() == {
            "bloodType": "A+",
            "location": {"lat": 19.07, "lng": 72.87},
            "radiusKm": 5.0,
            "userType": "donor",
        }

    @pytest.mark.parametrize("data", [
        "O+",
        {"location": "Mumbai"},
        {"radius": "far"},
        {"radiusKm": -1},
        {"userType": "pirate"},
    ])
    def test_invalid(self, data):
        with pytest.raises(PayloadError):
            TargetCriteria.from_dict(data)
