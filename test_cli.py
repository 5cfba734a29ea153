"""
Test Detour CLI
===============

Argument parsing and command payloads (nothing is sent).

Usage:
    pytest test_cli.py
"""

import pytest

from detour_cli.cli import build_command, build_parser, format_event
from detour_mqtt import DetourClearedEvent, DetourUpdatedEvent


def parse(*argv):
    return build_parser().parse_args(list(argv))


def test_simple_commands():
    assert build_command(parse("status")) == {"command": "status"}
    assert build_command(parse("list-detours")) == {"command": "list_detours"}
    assert build_command(parse("pause")) == {"command": "pause"}


def test_history_command():
    assert build_command(parse("history")) == {"command": "detour_history", "limit": 50}
    assert build_command(parse("history", "--limit", "20", "--route", "8A")) == {
        "command": "detour_history",
        "limit": 20,
        "route_id": "8A",
    }


def test_evidence_command():
    args = parse("--service-id", "barrie", "evidence", "8A")

    assert args.service_id == "barrie"
    assert build_command(args) == {"command": "route_evidence", "route_id": "8A"}


def test_watch_is_not_a_control_command():
    with pytest.raises(ValueError):
        build_command(parse("watch"))


def test_global_defaults():
    args = parse("status")
    assert args.broker == "localhost"
    assert args.port == 1883
    assert args.service_id == "detour_processor"
    assert args.no_wait is False


def test_format_event():
    updated = DetourUpdatedEvent(
        route_id="8A",
        occurred_at_ms=0,
        detected_at_ms=0,
        last_seen_at_ms=0,
        trigger_vehicle_id="bus-2",
        previous_trigger_vehicle_id="bus-1",
        vehicle_count=2,
        previous_vehicle_count=1,
        changed_fields=("vehicleCount", "confidence"),
        confidence="high",
    )
    line = format_event(updated)
    assert line.startswith("1970-01-01T00:00:00+00:00")
    assert "DETOUR_UPDATED" in line
    assert "route=8A" in line
    assert "changed=vehicleCount,confidence" in line
    assert "confidence=high" in line

    cleared = DetourClearedEvent(
        route_id="8A",
        occurred_at_ms=600_000,
        detected_at_ms=0,
        cleared_at_ms=600_000,
        duration_ms=600_000,
        trigger_vehicle_id="bus-1",
        vehicle_count=2,
    )
    assert "duration=600s" in format_event(cleared)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
