"""Tests for offline trace replay."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from engine.models import ViolationKind
from fleetctl.replay import alerts_to_geojson, load_trace, replay_trace, save_alerts
from fleetctl.simulate import circle_geofence, generate_crossing, make_trace
from shared.geo_math import GeoPoint

CENTER = GeoPoint(lat=-6.2088, lon=106.8456)
START = datetime(2025, 6, 1, 8, 0, tzinfo=timezone.utc)


def _crossing_trace(rule: str) -> dict:
    track = generate_crossing(CENTER, 500, speed_mps=12, dt=15)
    return make_trace(track, circle_geofence(CENTER, 500, rule_type=rule), start_time=START)


class TestReplayRules:
    def test_forbidden_crossing(self):
        result = replay_trace(_crossing_trace("FORBIDDEN"))
        assert [a.alert_type for a in result.alerts] == [ViolationKind.VIOLATION_ENTER]
        assert result.alerts[0].timestamp == START + timedelta(seconds=30)
        assert result.stats.ticks == 9
        assert result.stats.vehicles_evaluated == 9

    def test_standard_crossing(self):
        result = replay_trace(_crossing_trace("STANDARD"))
        assert [a.alert_type for a in result.alerts] == [
            ViolationKind.VIOLATION_ENTER,
            ViolationKind.VIOLATION_EXIT,
        ]
        assert result.stats.alerts_by_type == {"violation_enter": 1, "violation_exit": 1}

    def test_stay_in_crossing(self):
        result = replay_trace(_crossing_trace("STAY_IN"))
        assert [a.alert_type for a in result.alerts] == [ViolationKind.VIOLATION_EXIT]
        assert result.alerts[0].timestamp == START + timedelta(seconds=120)
        assert result.stats.events_by_type == {"enter": 1, "violation_exit": 1}
        assert "Geofence events: 2" in result.stats.summary()


class TestReplayTicks:
    def _vehicle(self, lat, lng, at):
        return {
            "vehicle_id": 1, "name": "V1", "geofence_id": 1,
            "lastPosition": {"lat": lat, "lng": lng, "timestamp": at},
        }

    def test_cooldown_suppression_counted(self):
        g = circle_geofence(CENTER, 500)
        inside, outside = (CENTER.lat, CENTER.lon), (CENTER.lat + 0.05, CENTER.lon)
        seq = [outside, inside, outside, inside]
        ticks = []
        for i, (lat, lng) in enumerate(seq):
            at = (START + timedelta(seconds=15 * i)).isoformat()
            ticks.append({"at": at, "vehicles": [self._vehicle(lat, lng, at)]})
        result = replay_trace({"geofences": [g], "ticks": ticks})
        assert result.stats.alerts == 1
        assert result.stats.suppressed == 1

    def test_tick_can_replace_geofences(self):
        at0 = START.isoformat()
        at1 = (START + timedelta(seconds=15)).isoformat()
        trace = {
            "geofences": [circle_geofence(CENTER, 500)],
            "ticks": [
                {"at": at0, "vehicles": [self._vehicle(CENTER.lat, CENTER.lon, at0)]},
                {"at": at1, "vehicles": [self._vehicle(CENTER.lat, CENTER.lon, at1)],
                 "geofences": [circle_geofence(CENTER, 500, geofence_id=2)]},
            ],
        }
        result = replay_trace(trace)
        assert result.stats.skip_reasons == {"unknown_geofence": 1}

    def test_stale_positions_skipped(self):
        stale = (START - timedelta(hours=1)).isoformat()
        trace = {
            "geofences": [circle_geofence(CENTER, 500)],
            "ticks": [{"at": START.isoformat(),
                       "vehicles": [self._vehicle(CENTER.lat, CENTER.lon, stale)]}],
        }
        result = replay_trace(trace)
        assert result.stats.vehicles_skipped == 1
        assert result.stats.skip_reasons == {"offline": 1}
        assert "skipped (offline): 1" in result.stats.summary()

    def test_bad_tick_timestamp(self):
        with pytest.raises(ValueError, match="Tick 0"):
            replay_trace({"geofences": [], "ticks": [{"at": "yesterday", "vehicles": []}]})


class TestTraceFiles:
    def test_load_trace(self, tmp_path):
        path = tmp_path / "trace.json"
        path.write_text(json.dumps(_crossing_trace("FORBIDDEN")))
        assert len(load_trace(path)["ticks"]) == 9

    def test_load_rejects_non_trace(self, tmp_path):
        path = tmp_path / "trace.json"
        path.write_text(json.dumps([1, 2, 3]))
        with pytest.raises(ValueError):
            load_trace(path)

    def test_geojson(self):
        result = replay_trace(_crossing_trace("STANDARD"))
        gj = alerts_to_geojson(result.alerts)
        assert gj["type"] == "FeatureCollection"
        assert len(gj["features"]) == 2
        lng, lat = gj["features"][0]["geometry"]["coordinates"]
        assert lat == pytest.approx(CENTER.lat, abs=0.01)
        assert lng == pytest.approx(CENTER.lon, abs=0.01)
        assert gj["features"][0]["properties"]["alert_type"] == "violation_enter"

    def test_save_alerts(self, tmp_path):
        result = replay_trace(_crossing_trace("FORBIDDEN"))
        out = tmp_path / "alerts.json"
        save_alerts(result.alerts, out)
        with open(out) as f:
            data = json.load(f)
        assert data[0]["vehicle_id"] == 1
        assert data[0]["message"].startswith("VIOLATION:")


class TestReplayCooldown:
    def test_short_window_lets_reentry_alert(self):
        g = circle_geofence(CENTER, 500)
        outside = (CENTER.lat + 0.05, CENTER.lon)
        inside = (CENTER.lat, CENTER.lon)
        ticks = []
        for i, (lat, lng) in enumerate([outside, inside, outside, inside]):
            at = (START + timedelta(seconds=15 * i)).isoformat()
            ticks.append({"at": at, "vehicles": [{
                "vehicle_id": 1, "geofence_id": 1,
                "lastPosition": {"lat": lat, "lng": lng, "timestamp": at},
            }]})
        trace = {"geofences": [g], "ticks": ticks}

        assert replay_trace(trace).stats.alerts == 1
        short = replay_trace(trace, cooldown_window=timedelta(seconds=20))
        assert short.stats.alerts == 2
        assert short.stats.suppressed == 0
