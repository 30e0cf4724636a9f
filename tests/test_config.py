"""Tests for configuration loading and engine wiring."""

import asyncio
import json
import os
from datetime import timedelta

import pytest
from pydantic import ValidationError

from engine.config import EngineConfig, load_config
from engine.main import build_engine, build_event_sinks, build_sinks
from engine.roster import StaticRosterSource
from engine.sinks import CsvAlertLog, HttpSink, LogSink, MemorySink


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("GEOFENCE_"):
            monkeypatch.delenv(key)


class TestEngineConfig:
    def test_defaults(self):
        cfg = EngineConfig()
        assert cfg.evaluation_interval_seconds == 15.0
        assert cfg.freshness == timedelta(minutes=15)
        assert cfg.cooldown_window == timedelta(minutes=5)
        assert cfg.endpoints.alerts_url.endswith("/api/alerts")
        assert cfg.alert_log_dir is None

    def test_rejects_zero_interval(self):
        with pytest.raises(ValidationError):
            EngineConfig(evaluation_interval_seconds=0)

    def test_rejects_negative_cooldown(self):
        with pytest.raises(ValidationError):
            EngineConfig(cooldown_window_minutes=-1)

    def test_zero_cooldown_allowed(self):
        assert EngineConfig(cooldown_window_minutes=0).cooldown_window == timedelta(0)

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("GEOFENCE_COOLDOWN_WINDOW_MINUTES", "10")
        monkeypatch.setenv("GEOFENCE_ENDPOINTS__AUTH_TOKEN", "tok")
        cfg = EngineConfig()
        assert cfg.cooldown_window_minutes == 10.0
        assert cfg.endpoints.auth_token == "tok"


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "nope.json")
        assert cfg.evaluation_interval_seconds == 15.0

    def test_none_gives_defaults(self):
        assert load_config(None).online_freshness_minutes == 15.0

    def test_file_values(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "evaluation_interval_seconds": 30,
            "endpoints": {"alerts_url": "http://backend/api/alerts", "auth_token": "abc"},
        }))
        cfg = load_config(path)
        assert cfg.evaluation_interval_seconds == 30.0
        assert cfg.endpoints.alerts_url == "http://backend/api/alerts"
        assert cfg.endpoints.vehicles_url.endswith("/api/vehicles")

    def test_env_beats_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "cooldown_window_minutes": 2,
            "endpoints": {"alerts_url": "http://file/api/alerts", "auth_token": "file"},
        }))
        monkeypatch.setenv("GEOFENCE_COOLDOWN_WINDOW_MINUTES", "7")
        monkeypatch.setenv("GEOFENCE_ENDPOINTS__AUTH_TOKEN", "env")
        cfg = load_config(path)
        assert cfg.cooldown_window_minutes == 7.0
        assert cfg.endpoints.auth_token == "env"
        # rest of the nested block still comes from the file
        assert cfg.endpoints.alerts_url == "http://file/api/alerts"

    def test_invalid_file_value(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"online_freshness_minutes": -5}))
        with pytest.raises(ValidationError):
            load_config(path)


class TestWiring:
    def test_default_sinks(self):
        sinks = build_sinks(EngineConfig())
        assert isinstance(sinks[0], HttpSink)
        assert sinks[0].name == "alerts-api"
        assert isinstance(sinks[1], LogSink)
        assert len(sinks) == 2

    def test_notify_and_csv_sinks(self, tmp_path):
        cfg = EngineConfig(
            endpoints={"notify_url": "http://hooks/notify"},
            alert_log_dir=tmp_path / "alerts",
        )
        sinks = build_sinks(cfg)
        assert [s.name for s in sinks] == ["alerts-api", "notify", "csv"]
        assert isinstance(sinks[2], CsvAlertLog)
        assert sinks[2].path.exists()
        asyncio.run(sinks[2].close())

    def test_build_engine_uses_config(self):
        cfg = EngineConfig(evaluation_interval_seconds=1, cooldown_window_minutes=1)
        evaluator, scheduler = build_engine(cfg, source=StaticRosterSource(), sinks=[MemorySink()])
        assert evaluator.cooldown.window == timedelta(minutes=1)
        asyncio.run(scheduler.run(max_ticks=1))
        assert scheduler.ticks == 1
        assert evaluator.health.status.ticks_total == 1

    def test_no_event_sinks_by_default(self):
        assert build_event_sinks(EngineConfig()) == []
        evaluator, _ = build_engine(EngineConfig(), source=StaticRosterSource(), sinks=[])
        assert not evaluator.events.has_sinks

    def test_events_url_wires_event_sink(self):
        cfg = EngineConfig(endpoints={"events_url": "http://backend/api/geofence-events"})
        sinks = build_event_sinks(cfg)
        assert [s.name for s in sinks] == ["events-api"]
        assert isinstance(sinks[0], HttpSink)
        evaluator, _ = build_engine(cfg, source=StaticRosterSource(), sinks=[])
        assert evaluator.events.has_sinks
