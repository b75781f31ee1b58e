"""
Rematch de Locais
=================
Quando um local é criado, editado ou movido, reavalia os extremos de
viagens e os clusters já gravados.

- Criação: casa extremos/clusters sem local que agora caem na cerca.
- Edição/movimento: (1) desfaz casamentos automáticos que ficaram fora da
  cerca, mantendo clusters que ainda passam no voto por pontos;
  (2) casa o que ficou sem local, como na criação.

Casamentos manuais nunca são tocados. Toda alteração é um UPDATE
condicional; as contagens vêm das linhas afetadas.
"""

import logging

import numpy as np
import pandas as pd
import sqlalchemy as sa

from config import POINT_VOTING_MIN_RATIO, REMATCH_VOTING_RADIUS_FACTOR
from database import get_engine, get_location, gps_points, stationary_clusters, trips, trip_gps_points
from geometry import haversine_m_array
from location_matcher import inside_geofence
from models import METHOD_AUTO, METHOD_MANUAL

logger = logging.getLogger(__name__)

# Colunas de cada extremo da viagem e a ordem do ponto que dá a precisão
_ENDPOINTS = {
    "start": (trips.c.start_latitude, trips.c.start_longitude, trips.c.start_location_id,
              trips.c.start_location_match_method, trip_gps_points.c.sequence_order.asc()),
    "end": (trips.c.end_latitude, trips.c.end_longitude, trips.c.end_location_id,
            trips.c.end_location_match_method, trip_gps_points.c.sequence_order.desc()),
}


def _not_manual(method_col):
    return sa.or_(method_col.is_(None), method_col != METHOD_MANUAL)


def _endpoint_frame(conn, side, condition):
    lat_col, lng_col, _, _, order = _ENDPOINTS[side]
    endpoint_accuracy = (
        sa.select(gps_points.c.accuracy)
        .select_from(trip_gps_points.join(gps_points, gps_points.c.id == trip_gps_points.c.gps_point_id))
        .where(trip_gps_points.c.trip_id == trips.c.id)
        .order_by(order)
        .limit(1)
        .scalar_subquery()
    )
    query = sa.select(
        trips.c.id,
        lat_col.label("latitude"),
        lng_col.label("longitude"),
        endpoint_accuracy.label("accuracy"),
    ).where(condition)
    return pd.read_sql(query, conn)


def _cluster_frame(conn, condition):
    query = sa.select(
        stationary_clusters.c.id,
        stationary_clusters.c.centroid_latitude.label("latitude"),
        stationary_clusters.c.centroid_longitude.label("longitude"),
        stationary_clusters.c.centroid_accuracy.label("accuracy"),
        stationary_clusters.c.gps_point_count,
    ).where(condition)
    return pd.read_sql(query, conn)


def _vote_ratios(conn, location, clusters_df):
    """Fração dos pontos brutos de cada cluster dentro da cerca."""
    if clusters_df.empty:
        return pd.Series(dtype=float)

    points = pd.read_sql(
        sa.select(
            gps_points.c.stationary_cluster_id,
            gps_points.c.latitude,
            gps_points.c.longitude,
            gps_points.c.accuracy,
        ).where(gps_points.c.stationary_cluster_id.in_(clusters_df["id"].tolist())),
        conn,
    )
    totals = clusters_df.set_index("id")["gps_point_count"].clip(lower=1)
    if points.empty:
        return pd.Series(0.0, index=totals.index)

    points["inside"] = inside_geofence(location, points["latitude"], points["longitude"], points["accuracy"])
    inside = points.groupby("stationary_cluster_id")["inside"].sum()
    return inside.reindex(totals.index, fill_value=0) / totals


def _inside_mask(location, df):
    if df.empty:
        return np.zeros(0, dtype=bool)
    return inside_geofence(location, df["latitude"], df["longitude"], df["accuracy"])


def _match_endpoints(conn, location, side):
    _, _, loc_col, method_col, _ = _ENDPOINTS[side]
    eligible = sa.and_(loc_col.is_(None), _not_manual(method_col))

    df = _endpoint_frame(conn, side, eligible)
    matched = 0
    for trip_id in df.loc[_inside_mask(location, df), "id"]:
        matched += conn.execute(
            sa.update(trips)
            .where(trips.c.id == trip_id, eligible)
            .values({loc_col.name: location.id, method_col.name: METHOD_AUTO})
        ).rowcount
    return matched


def _unmatch_endpoints(conn, location, side):
    _, _, loc_col, method_col, _ = _ENDPOINTS[side]
    assigned = sa.and_(loc_col == location.id, method_col == METHOD_AUTO)

    df = _endpoint_frame(conn, side, assigned)
    unmatched = 0
    for trip_id in df.loc[~_inside_mask(location, df), "id"]:
        unmatched += conn.execute(
            sa.update(trips)
            .where(trips.c.id == trip_id, assigned)
            .values({loc_col.name: None, method_col.name: None})
        ).rowcount
    return unmatched


def _match_clusters(conn, location):
    eligible = sa.and_(
        stationary_clusters.c.matched_location_id.is_(None),
        _not_manual(stationary_clusters.c.match_method),
    )
    df = _cluster_frame(conn, eligible)
    if df.empty:
        return 0

    inside = _inside_mask(location, df)
    selected = set(df.loc[inside, "id"])

    # Voto por pontos para os centróides próximos que ficaram de fora
    dist = haversine_m_array(df["latitude"].to_numpy(), df["longitude"].to_numpy(),
                             location.latitude, location.longitude)
    near = df[~inside & (dist <= location.radius_m * REMATCH_VOTING_RADIUS_FACTOR)]
    ratios = _vote_ratios(conn, location, near)
    selected.update(ratios[ratios >= POINT_VOTING_MIN_RATIO].index)

    matched = 0
    for cluster_id in sorted(selected):
        matched += conn.execute(
            sa.update(stationary_clusters)
            .where(stationary_clusters.c.id == cluster_id, eligible)
            .values(matched_location_id=location.id, match_method=METHOD_AUTO)
        ).rowcount
    return matched


def _unmatch_clusters(conn, location):
    assigned = sa.and_(
        stationary_clusters.c.matched_location_id == location.id,
        _not_manual(stationary_clusters.c.match_method),
    )
    df = _cluster_frame(conn, assigned)
    if df.empty:
        return 0

    outside = df[~_inside_mask(location, df)]
    ratios = _vote_ratios(conn, location, outside)
    # Centróide saiu, mas a maioria dos pontos ainda está dentro: mantém
    doomed = ratios[ratios < POINT_VOTING_MIN_RATIO].index

    unmatched = 0
    for cluster_id in sorted(doomed):
        unmatched += conn.execute(
            sa.update(stationary_clusters)
            .where(stationary_clusters.c.id == cluster_id, assigned)
            .values(matched_location_id=None, match_method=None)
        ).rowcount
    return unmatched


def _match_all(conn, location):
    return {
        "matched_start": _match_endpoints(conn, location, "start"),
        "matched_end": _match_endpoints(conn, location, "end"),
        "matched_clusters": _match_clusters(conn, location),
    }


def rematch_location_created(location_id, engine=None):
    """Casa extremos e clusters sem local com o local recém-criado."""
    engine = engine or get_engine()
    with engine.begin() as conn:
        location = get_location(conn, location_id)
        if location is None or not location.is_active:
            logger.warning("Local %s inexistente ou inativo; rematch ignorado", location_id)
            return {"matched_start": 0, "matched_end": 0, "matched_clusters": 0}
        counts = _match_all(conn, location)

    logger.info("Rematch (criação) do local %s: %s", location_id, counts)
    return counts


def rematch_location_updated(location_id, engine=None):
    """Desfaz casamentos que saíram da cerca e casa os que entraram."""
    engine = engine or get_engine()
    with engine.begin() as conn:
        location = get_location(conn, location_id)
        if location is None or not location.is_active:
            logger.warning("Local %s inexistente ou inativo; rematch ignorado", location_id)
            return {
                "unmatched_start": 0, "unmatched_end": 0, "unmatched_clusters": 0,
                "matched_start": 0, "matched_end": 0, "matched_clusters": 0,
            }
        counts = {
            "unmatched_start": _unmatch_endpoints(conn, location, "start"),
            "unmatched_end": _unmatch_endpoints(conn, location, "end"),
            "unmatched_clusters": _unmatch_clusters(conn, location),
        }
        counts.update(_match_all(conn, location))

    logger.info("Rematch (edição) do local %s: %s", location_id, counts)
    return counts
