"""Tests for the telemetry sink."""

import json

import pytest

from cafcoop.errors import ProfileLoadFailed
from cafcoop.models.enums import TelemetryCategory, TelemetryLevel
from cafcoop.telemetry import Telemetry


def test_events_are_buffered_and_filterable(telemetry):
    telemetry.auth.session_start("auth-1", "awa@cafcoop.bf")
    telemetry.profile.load_attempt("auth-1")
    telemetry.profile.load_failure("auth-1", ProfileLoadFailed("Erreur chargement profil"))

    profile_events = telemetry.get_events(category=TelemetryCategory.PROFILE)
    errors = telemetry.get_events(level=TelemetryLevel.ERROR)

    assert [e.message for e in profile_events] == ["Loading profile", "Profile load failed"]
    assert len(errors) == 1
    assert errors[0].data["error"] == "Erreur chargement profil"


def test_min_level_filters_low_priority_events(logger):
    telemetry = Telemetry(logger=logger, min_level=TelemetryLevel.WARN)

    assert telemetry.emit(TelemetryLevel.DEBUG, TelemetryCategory.AUTH, "noise") is None
    assert telemetry.emit(TelemetryLevel.ERROR, TelemetryCategory.AUTH, "kept") is not None
    assert [e.message for e in telemetry.get_events()] == ["kept"]


def test_buffer_keeps_most_recent_events(logger):
    telemetry = Telemetry(logger=logger, buffer_size=2)

    for index in range(3):
        telemetry.emit(TelemetryLevel.INFO, TelemetryCategory.AUTH, f"event {index}")

    assert [e.message for e in telemetry.get_events()] == ["event 1", "event 2"]


def test_context_is_attached_and_export_is_json(telemetry):
    telemetry.set_context(page="/profil")
    telemetry.auth.logout("auth-1")

    exported = json.loads(telemetry.export_json())

    assert exported[-1]["context"] == {"page": "/profil"}
    assert exported[-1]["message"] == "User logged out"


def test_measure_records_duration_even_when_block_raises(logger):
    telemetry = Telemetry(logger=logger, slow_threshold_s=0.0)

    with pytest.raises(RuntimeError):
        with telemetry.perf.measure("load_profile"):
            raise RuntimeError("boom")

    assert telemetry.count("load_profile completed") == 1
    assert telemetry.count("Slow operation: load_profile") == 1
