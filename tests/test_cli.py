"""Tests for the fleetctl command line."""

import json
from datetime import datetime, timezone

import pytest
from click.testing import CliRunner

from fleetctl.cli import cli


@pytest.fixture
def runner(monkeypatch):
    monkeypatch.delenv("GEOFENCE_CONFIG", raising=False)
    return CliRunner()


def _roster(tmp_path):
    now = datetime.now(timezone.utc).isoformat()
    roster = {
        "geofences": {"data": [
            {"geofence_id": 1, "name": "Depot", "rule_type": "STAY_IN", "status": "active",
             "type": "circle", "definition": {"center": [106.8456, -6.2088], "radius": 500}},
            {"geofence_id": 2, "name": "Broken", "rule_type": "FORBIDDEN", "status": "active",
             "type": "polygon", "definition": {"coordinates": [[[0, 0], [1, 1]]]}},
        ]},
        "vehicles": [
            {"vehicle_id": 1, "name": "Truck 1", "geofence_id": 1,
             "lastPosition": {"lat": -6.2088, "lng": 106.8456, "timestamp": now, "speed": 20}},
            {"vehicle_id": 2, "name": "Truck 2"},
        ],
    }
    path = tmp_path / "roster.json"
    path.write_text(json.dumps(roster))
    return path


class TestSimulateReplay:
    def test_simulate_then_replay(self, runner, tmp_path):
        trace = tmp_path / "trace.json"
        res = runner.invoke(cli, [
            "simulate", "--center", "-6.2088,106.8456", "--radius-m", "500",
            "--rule", "STANDARD", "--speed", "12", "-o", str(trace),
        ])
        assert res.exit_code == 0, res.output
        assert "Generated 9 ticks" in res.output

        alerts = tmp_path / "alerts.geojson"
        res = runner.invoke(cli, ["replay", str(trace), "--geojson", "-o", str(alerts)])
        assert res.exit_code == 0, res.output
        assert "violation_enter" in res.output
        assert "violation_exit" in res.output
        assert "Alerts: 2" in res.output
        with open(alerts) as f:
            assert len(json.load(f)["features"]) == 2

    def test_bad_center(self, runner, tmp_path):
        res = runner.invoke(cli, ["simulate", "--center", "nowhere", "-o", str(tmp_path / "t.json")])
        assert res.exit_code != 0
        assert "LAT,LON" in res.output

    @pytest.mark.parametrize("option", ["--speed", "--interval", "--radius-m"])
    def test_rejects_non_positive_values(self, runner, tmp_path, option):
        out = tmp_path / "t.json"
        res = runner.invoke(cli, ["simulate", "--center", "-6.2,106.8", option, "0", "-o", str(out)])
        assert res.exit_code == 2
        assert not out.exists()

    def test_replay_rejects_bad_trace(self, runner, tmp_path):
        path = tmp_path / "trace.json"
        path.write_text("{}")
        res = runner.invoke(cli, ["replay", str(path)])
        assert res.exit_code != 0
        assert "ticks" in res.output


class TestCheck:
    def test_reports_roster(self, runner, tmp_path):
        res = runner.invoke(cli, ["check", str(_roster(tmp_path))])
        assert res.exit_code == 0, res.output
        assert "geofence 1 'Depot' circle STAY_IN: ok" in res.output
        assert "geofence 2 'Broken' polygon FORBIDDEN: INVALID" in res.output
        assert "vehicle 1 'Truck 1': moving, inside geofence 1" in res.output
        assert "vehicle 2 'Truck 2': offline, no geofence" in res.output

    def test_unreadable_roster(self, runner, tmp_path):
        path = tmp_path / "roster.json"
        path.write_text("not json")
        res = runner.invoke(cli, ["check", str(path)])
        assert res.exit_code != 0


class TestRun:
    def test_bounded_run_from_roster_file(self, runner, tmp_path):
        res = runner.invoke(cli, [
            "run", "--config", str(tmp_path / "missing.json"),
            "--roster-file", str(_roster(tmp_path)),
            "--interval", "1", "--max-ticks", "2",
        ])
        assert res.exit_code == 0, res.output
        assert "Evaluating every 1s" in res.output
        assert "Ran 2 ticks: 0 alerts" in res.output
