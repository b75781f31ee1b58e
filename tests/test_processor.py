import threading
from datetime import timedelta

import pytest
import sqlalchemy as sa

import processor
from database import gps_points, purge_old_points, save_location, stationary_clusters, trip_gps_points, trips
from models import Location
from processor import ShiftNotFoundError, detect, main, process_active_shifts
from config import RETENCAO_PONTOS_DIAS
from conftest import T0, Track, a_to_b_track, offset


def rows(engine, table, order_by=None):
    query = sa.select(table)
    if order_by is not None:
        query = query.order_by(order_by)
    with engine.connect() as conn:
        return [dict(r._mapping) for r in conn.execute(query)]


def test_unknown_shift_is_an_error(engine):
    with pytest.raises(ShiftNotFoundError):
        detect("missing", engine)


def test_completed_shift_full_detection(engine, add_shift, add_fixes):
    track = a_to_b_track()
    add_shift(status="completed")
    add_fixes(track.fixes)
    with engine.begin() as conn:
        save_location(conn, Location("office", "Office", *offset(0, 0), 100))

    result = detect("shift-1", engine)

    assert not result.incremental
    assert result.points_scanned == len(track.fixes)
    stored_clusters = rows(engine, stationary_clusters, stationary_clusters.c.started_at)
    stored_trips = rows(engine, trips)
    assert len(stored_clusters) == 2
    assert len(stored_trips) == 1

    trip = stored_trips[0]
    assert trip["match_status"] == "pending"
    assert trip["transport_mode"] == "driving"
    assert trip["distance_km"] == pytest.approx(10.4, abs=0.01)
    assert trip["start_location_id"] == "office"
    assert trip["start_location_match_method"] == "auto"
    assert trip["end_location_id"] is None
    assert trip["start_cluster_id"] == stored_clusters[0]["id"]
    assert stored_clusters[0]["matched_location_id"] == "office"
    assert stored_clusters[0]["duration_seconds"] == 196

    links = rows(engine, trip_gps_points, trip_gps_points.c.sequence_order)
    assert [link["sequence_order"] for link in links] == list(range(19))

    with engine.connect() as conn:
        tagged = conn.execute(
            sa.select(sa.func.count()).select_from(gps_points).where(gps_points.c.stationary_cluster_id.is_not(None))
        ).scalar()
    assert tagged == 75


def test_rerunning_completed_shift_is_idempotent(engine, add_shift, add_fixes):
    add_shift(status="completed")
    add_fixes(a_to_b_track().fixes)

    detect("shift-1", engine)
    first = rows(engine, trips)
    detect("shift-1", engine)

    assert rows(engine, trips) == first
    assert len(rows(engine, stationary_clusters)) == 2


def test_active_shift_keeps_confirmed_trip(engine, add_shift, add_fixes):
    track = a_to_b_track()
    add_shift(status="active")
    add_fixes(track.fixes)

    result = detect("shift-1", engine)
    assert result.incremental
    assert len(result.trips) == 1
    assert rows(engine, stationary_clusters) == []

    # O casamento com ruas consome a viagem
    with engine.begin() as conn:
        conn.execute(sa.update(trips).values(match_status="matched", distance_km=11.2))
    confirmed = rows(engine, trips)[0]

    seen = len(track.fixes)
    track.move(16000, 0, duration_s=600, count=19)
    track.stay(16000, 0, duration_s=240, count=25)
    add_fixes(track.fixes[seen:])

    result = detect("shift-1", engine)

    stored = {t["id"]: t for t in rows(engine, trips)}
    assert len(stored) == 2
    assert stored[confirmed["id"]] == confirmed
    new_trip = result.trips[0]
    assert new_trip.started_at > confirmed["ended_at"]
    assert new_trip.start_cluster_id is None
    assert result.preserved_trips == 1


def test_active_shift_replaces_pending_trips(engine, add_shift, add_fixes):
    add_shift(status="active")
    add_fixes(a_to_b_track().fixes)

    detect("shift-1", engine)
    result = detect("shift-1", engine)

    assert result.replaced_trips == 1
    assert len(rows(engine, trips)) == 1
    assert len(rows(engine, trip_gps_points)) == 19


def test_completing_shift_does_not_duplicate_consumed_trip(engine, add_shift, add_fixes):
    add_shift(status="active")
    add_fixes(a_to_b_track().fixes)
    detect("shift-1", engine)
    with engine.begin() as conn:
        conn.execute(sa.update(trips).values(match_status="failed"))
        conn.execute(sa.text("UPDATE shifts SET status = 'completed'"))

    result = detect("shift-1", engine)

    assert result.trips == []
    assert len(result.clusters) == 2
    assert [t["match_status"] for t in rows(engine, trips)] == ["failed"]


def test_failed_write_leaves_nothing_behind(engine, add_shift, add_fixes, monkeypatch):
    add_shift(status="completed")
    add_fixes(a_to_b_track().fixes)
    original = processor.save_trip

    def broken_save(conn, trip):
        original(conn, trip)
        raise RuntimeError("connection lost")

    monkeypatch.setattr(processor, "save_trip", broken_save)

    with pytest.raises(RuntimeError):
        detect("shift-1", engine)

    assert rows(engine, trips) == []
    assert rows(engine, trip_gps_points) == []
    assert rows(engine, stationary_clusters) == []


def test_sweep_processes_only_active_shifts(engine, add_shift, add_fixes):
    add_shift("shift-1", "emp-1", status="active")
    add_shift("shift-2", "emp-2", status="completed")
    add_fixes(a_to_b_track().fixes)

    results = process_active_shifts(engine)

    assert [r.shift_id for r in results] == ["shift-1"]


def test_sweep_continues_after_a_failure(engine, add_shift, add_fixes, monkeypatch):
    add_shift("shift-1", "emp-1", status="active")
    add_shift("shift-2", "emp-2", status="active")
    original = processor.detect

    def flaky(shift_id, eng=None):
        if shift_id == "shift-1":
            raise RuntimeError("boom")
        return original(shift_id, eng)

    monkeypatch.setattr(processor, "detect", flaky)

    results = process_active_shifts(engine)

    assert [r.shift_id for r in results] == ["shift-2"]


def test_purge_removes_only_old_points(engine, add_fixes):
    track = Track()
    track.fix(0, 0, at=T0 - timedelta(days=120))
    track.fix(0, 0, at=T0 - timedelta(days=10))
    add_fixes(track.fixes)

    removed = purge_old_points(engine, retention_days=90, now=T0)

    assert removed == 1
    assert [p["id"] for p in rows(engine, gps_points)] == [2]


def test_cli_reports_unknown_shift(engine, monkeypatch, capsys):
    monkeypatch.setattr(processor, "get_engine", lambda url=None: engine)

    assert main(["missing"]) == 1
    assert "missing" in capsys.readouterr().out


def test_cli_help(capsys):
    assert main(["--help"]) == 0
    assert "--carpools" in capsys.readouterr().out


def test_detections_of_the_same_shift_run_one_at_a_time(engine, add_shift, add_fixes, monkeypatch):
    add_shift(status="completed")
    add_fixes(a_to_b_track().fixes)
    original = processor.load_fixes
    entered = []
    first_inside = threading.Event()
    release = threading.Event()

    def blocking_load(conn, shift_id, after=None):
        entered.append(threading.current_thread().name)
        if len(entered) == 1:
            first_inside.set()
            release.wait(5)
        return original(conn, shift_id, after=after)

    monkeypatch.setattr(processor, "load_fixes", blocking_load)
    errors = []

    def run():
        try:
            detect("shift-1", engine)
        except Exception as e:
            errors.append(e)

    first = threading.Thread(target=run, name="first")
    second = threading.Thread(target=run, name="second")
    first.start()
    assert first_inside.wait(5)
    second.start()
    second.join(0.3)

    assert entered == ["first"]

    release.set()
    first.join(5)
    second.join(5)

    assert errors == []
    assert entered == ["first", "second"]
    assert len(rows(engine, trips)) == 1
    assert len(rows(engine, trip_gps_points)) == 19
    assert processor._shift_locks == {}


def test_shift_lock_registry_is_emptied_after_use(engine, add_shift):
    add_shift(status="completed")

    detect("shift-1", engine)
    with pytest.raises(ShiftNotFoundError):
        detect("missing", engine)

    assert processor._shift_locks == {}


def test_cli_purge_uses_configured_retention(monkeypatch):
    calls = []
    monkeypatch.setattr(processor, "purge_old_points", lambda **kwargs: calls.append(kwargs))

    assert main(["--purge"]) == 0
    assert main(["--purge", "30"]) == 0
    assert main(["--purge", "abc"]) == 0

    assert [c["retention_days"] for c in calls] == [RETENCAO_PONTOS_DIAS, 30, RETENCAO_PONTOS_DIAS]
