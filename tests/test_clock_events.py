from datetime import timedelta

import sqlalchemy as sa

from database import save_location, shifts, stationary_clusters
from location_matcher import LocationMatcher
from models import ClockLink, Location, StationaryCluster
from processor import clock_link, detect
from conftest import T0, a_to_b_track, offset


def clock_coords(prefix, north_m, east_m=0.0):
    lat, lng = offset(north_m, east_m)
    return {f"{prefix}_latitude": lat, f"{prefix}_longitude": lng}


def shift_row(engine):
    with engine.connect() as conn:
        return conn.execute(sa.select(shifts)).one()


def cluster_ids(engine):
    with engine.connect() as conn:
        return list(conn.execute(
            sa.select(stationary_clusters.c.id).order_by(stationary_clusters.c.started_at)
        ).scalars())


def test_clock_events_link_to_the_stops_they_happened_at(engine, add_shift, add_fixes):
    with engine.begin() as conn:
        save_location(conn, Location("office", "Office", *offset(0, 0), 100))
    add_shift(
        status="completed",
        clock_out_at=T0 + timedelta(minutes=20),
        **clock_coords("clock_in", 10),
        **clock_coords("clock_out", 8000, 20),
    )
    add_fixes(a_to_b_track().fixes)

    result = detect("shift-1", engine)

    first, second = cluster_ids(engine)
    assert result.clock_in == ClockLink(first, "office")
    assert result.clock_out == ClockLink(second, None)
    row = shift_row(engine)
    assert (row.clock_in_cluster_id, row.clock_in_location_id) == (first, "office")
    assert (row.clock_out_cluster_id, row.clock_out_location_id) == (second, None)


def test_clock_event_away_from_stops_falls_back_to_locations(engine, add_shift, add_fixes):
    with engine.begin() as conn:
        save_location(conn, Location("depot", "Depot", *offset(0, 3000), 100))
    add_shift(
        status="completed",
        clock_in_accuracy=None,
        **clock_coords("clock_in", 0, 3110),
        **clock_coords("clock_out", 8000, 0),
    )
    add_fixes(a_to_b_track().fixes)

    detect("shift-1", engine)

    row = shift_row(engine)
    # Sem precisão informada, vale a tolerância padrão de 20 m
    assert (row.clock_in_cluster_id, row.clock_in_location_id) == (None, "depot")
    # Sem horário de saída, a coordenada de saída é ignorada
    assert (row.clock_out_cluster_id, row.clock_out_location_id) == (None, None)


def test_active_shift_leaves_clock_events_unlinked(engine, add_shift, add_fixes):
    add_shift(status="active", **clock_coords("clock_in", 0))
    add_fixes(a_to_b_track().fixes)

    result = detect("shift-1", engine)

    assert result.clock_in is None
    assert shift_row(engine).clock_in_cluster_id is None


def test_rerun_relinks_to_the_new_clusters(engine, add_shift, add_fixes):
    add_shift(status="completed", **clock_coords("clock_in", 0))
    add_fixes(a_to_b_track().fixes)

    detect("shift-1", engine)
    detect("shift-1", engine)

    assert shift_row(engine).clock_in_cluster_id == cluster_ids(engine)[0]


def make_cluster(cluster_id, north_m, location_id=None):
    lat, lng = offset(north_m, 0)
    return StationaryCluster(
        id=cluster_id, shift_id="shift-1", employee_id="emp-1",
        centroid_latitude=lat, centroid_longitude=lng, centroid_accuracy=5.0,
        started_at=T0, ended_at=T0 + timedelta(minutes=5), gps_point_count=10,
        matched_location_id=location_id,
    )


def test_nearest_cluster_within_fifty_meters_wins():
    clusters = [make_cluster("far", 45, "a"), make_cluster("near", -20, "b")]
    matcher = LocationMatcher([])

    assert clock_link(*offset(0, 0), 5.0, clusters, matcher) == ClockLink("near", "b")
    assert clock_link(*offset(120, 0), 5.0, clusters, matcher) == ClockLink()
    assert clock_link(None, None, None, clusters, matcher) == ClockLink()
