import sqlalchemy as sa

from database import save_location, stationary_clusters, trips
from models import Location, StationaryCluster
from processor import detect, save_cluster
from services.rematch import rematch_location_created, rematch_location_updated
from conftest import T0, Track, a_to_b_track, offset


def put_location(engine, loc_id, north_m, east_m=0.0, radius_m=100.0, is_active=True):
    with engine.begin() as conn:
        save_location(conn, Location(loc_id, loc_id.title(), *offset(north_m, east_m), radius_m, is_active))


def detected_shift(engine, add_shift, add_fixes):
    add_shift(status="completed")
    add_fixes(a_to_b_track().fixes)
    detect("shift-1", engine)


def trip_row(engine):
    with engine.connect() as conn:
        return conn.execute(sa.select(trips)).one()


def cluster_rows(engine):
    with engine.connect() as conn:
        return conn.execute(sa.select(stationary_clusters).order_by(stationary_clusters.c.started_at)).all()


def test_new_location_matches_existing_trips_and_clusters(engine, add_shift, add_fixes):
    detected_shift(engine, add_shift, add_fixes)
    put_location(engine, "client", 8000)

    counts = rematch_location_created("client", engine)

    assert counts == {"matched_start": 0, "matched_end": 1, "matched_clusters": 1}
    trip = trip_row(engine)
    assert trip.end_location_id == "client"
    assert trip.end_location_match_method == "auto"
    assert [c.matched_location_id for c in cluster_rows(engine)] == [None, "client"]


def test_rematch_is_idempotent(engine, add_shift, add_fixes):
    detected_shift(engine, add_shift, add_fixes)
    put_location(engine, "client", 8000)

    rematch_location_created("client", engine)
    counts = rematch_location_created("client", engine)

    assert counts == {"matched_start": 0, "matched_end": 0, "matched_clusters": 0}


def test_inactive_location_changes_nothing(engine, add_shift, add_fixes):
    detected_shift(engine, add_shift, add_fixes)
    put_location(engine, "client", 8000, is_active=False)

    assert rematch_location_created("client", engine) == {
        "matched_start": 0, "matched_end": 0, "matched_clusters": 0,
    }
    assert rematch_location_created("unknown", engine)["matched_end"] == 0
    assert trip_row(engine).end_location_id is None


def test_moving_location_away_unmatches(engine, add_shift, add_fixes):
    put_location(engine, "office", 0)
    detected_shift(engine, add_shift, add_fixes)
    assert trip_row(engine).start_location_id == "office"

    put_location(engine, "office", 0, east_m=2000)
    counts = rematch_location_updated("office", engine)

    assert counts["unmatched_start"] == 1
    assert counts["unmatched_clusters"] == 1
    assert counts["matched_start"] == 0
    trip = trip_row(engine)
    assert trip.start_location_id is None
    assert trip.start_location_match_method is None


def test_moving_location_onto_a_stop_matches_it(engine, add_shift, add_fixes):
    put_location(engine, "office", 0, east_m=2000)
    detected_shift(engine, add_shift, add_fixes)

    put_location(engine, "office", 8000)
    counts = rematch_location_updated("office", engine)

    assert counts == {
        "unmatched_start": 0, "unmatched_end": 0, "unmatched_clusters": 0,
        "matched_start": 0, "matched_end": 1, "matched_clusters": 1,
    }


def test_manual_assignments_are_never_touched(engine, add_shift, add_fixes):
    put_location(engine, "office", 0)
    detected_shift(engine, add_shift, add_fixes)
    with engine.begin() as conn:
        conn.execute(sa.update(trips).values(start_location_match_method="manual"))

    put_location(engine, "office", 0, east_m=2000)
    counts = rematch_location_updated("office", engine)

    assert counts["unmatched_start"] == 0
    trip = trip_row(engine)
    assert (trip.start_location_id, trip.start_location_match_method) == ("office", "manual")


def voting_cluster(engine, add_fixes, inside_count, total=20):
    """Cluster com centróide a 120 m do centro de uma cerca de 50 m na origem."""
    track = Track()
    for i in range(total):
        track.fix(0 if i < inside_count else 250, 0, accuracy=5)
    add_fixes(track.fixes)
    lat, lng = offset(0, 120)
    with engine.begin() as conn:
        save_cluster(conn, StationaryCluster(
            id="cluster-1", shift_id="shift-1", employee_id="emp-1",
            centroid_latitude=lat, centroid_longitude=lng, centroid_accuracy=5.0,
            started_at=T0, ended_at=T0, gps_point_count=total,
            point_ids=tuple(f.id for f in track.fixes),
        ))


def test_point_voting_matches_cluster_near_new_location(engine, add_fixes):
    voting_cluster(engine, add_fixes, inside_count=7)
    put_location(engine, "client", 0, radius_m=50)

    assert rematch_location_created("client", engine)["matched_clusters"] == 1


def test_point_voting_threshold(engine, add_fixes):
    voting_cluster(engine, add_fixes, inside_count=5)
    put_location(engine, "client", 0, radius_m=50)

    assert rematch_location_created("client", engine)["matched_clusters"] == 0


def test_point_voting_keeps_cluster_when_location_edited(engine, add_fixes):
    voting_cluster(engine, add_fixes, inside_count=7)
    put_location(engine, "client", 0, radius_m=50)
    rematch_location_created("client", engine)

    put_location(engine, "client", 10, radius_m=50)
    assert rematch_location_updated("client", engine)["unmatched_clusters"] == 0

    put_location(engine, "client", 0, east_m=3000, radius_m=50)
    assert rematch_location_updated("client", engine)["unmatched_clusters"] == 1
