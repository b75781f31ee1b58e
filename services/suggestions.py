"""
Sugestão de Novos Locais
========================
Paradas sem local casado e marcações de ponto sem vínculo que se repetem no
mesmo lugar viram candidatas a cadastro.

- ocorrências a até 30 m umas das outras formam uma sugestão (encadeamento
  transitivo, como um DBSCAN com mínimo de 1 ponto)
- centróide da sugestão: média dos centróides ponderada por 1 / precisão
- marcações só dos últimos 90 dias e com precisão de até 50 m
"""

import logging
from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd
import sqlalchemy as sa

from config import (
    DEFAULT_ACCURACY_M, SUGGESTION_GROUP_RADIUS_M,
    SUGGESTION_LOOKBACK_DAYS, SUGGESTION_MAX_CLOCK_ACCURACY_M,
)
from database import get_engine, employee_profiles, shifts, stationary_clusters
from geometry import haversine_m_array
from models import LocationSuggestion
from services.carpool import DisjointSet

logger = logging.getLogger(__name__)

SOURCE_CLUSTER = "cluster"
SOURCE_CLOCK_IN = "clock_in"
SOURCE_CLOCK_OUT = "clock_out"

COLUMNS = ["source", "latitude", "longitude", "accuracy", "employee_id", "seen_at", "duration_seconds"]


def _unmatched_clusters(conn):
    c = stationary_clusters.c
    query = sa.select(
        sa.literal(SOURCE_CLUSTER).label("source"),
        c.centroid_latitude.label("latitude"),
        c.centroid_longitude.label("longitude"),
        sa.func.coalesce(c.centroid_accuracy, DEFAULT_ACCURACY_M).label("accuracy"),
        c.employee_id,
        c.started_at.label("seen_at"),
        sa.func.coalesce(c.duration_seconds, 0).label("duration_seconds"),
    ).where(c.matched_location_id.is_(None))
    return pd.read_sql(query, conn)


def _unlinked_clock_events(conn, side, since):
    """``side``: 'clock_in' ou 'clock_out' (prefixo das colunas em shifts)."""
    s = shifts.c
    at = s[f"{side}_at"]
    lat = s[f"{side}_latitude"]
    lng = s[f"{side}_longitude"]

    accuracy = sa.func.coalesce(s[f"{side}_accuracy"], DEFAULT_ACCURACY_M)
    query = sa.select(
        sa.literal(side).label("source"),
        lat.label("latitude"),
        lng.label("longitude"),
        accuracy.label("accuracy"),
        s.employee_id,
        at.label("seen_at"),
        sa.literal(0).label("duration_seconds"),
    ).where(
        lat.is_not(None),
        lng.is_not(None),
        at >= since,
        s[f"{side}_cluster_id"].is_(None),
        s[f"{side}_location_id"].is_(None),
        accuracy <= SUGGESTION_MAX_CLOCK_ACCURACY_M,
    )
    return pd.read_sql(query, conn)


def group_occurrences(lats, lngs, radius_m=SUGGESTION_GROUP_RADIUS_M):
    """Rótulo de grupo por ocorrência: pares a até ``radius_m`` ficam juntos."""
    lats = np.asarray(lats, dtype=float)
    lngs = np.asarray(lngs, dtype=float)
    groups = DisjointSet()
    for i in range(len(lats)):
        groups.find(i)

    dist = haversine_m_array(lats[:, None], lngs[:, None], lats[None, :], lngs[None, :])
    for i, j in np.argwhere(np.triu(dist <= radius_m, k=1)):
        groups.union(int(i), int(j))
    return [groups.find(i) for i in range(len(lats))]


def _summarize(group, names):
    weights = 1.0 / np.maximum(group["accuracy"].to_numpy(dtype=float), 0.1)
    employee_names = sorted({names[e] for e in group["employee_id"] if e in names})
    return LocationSuggestion(
        latitude=float(np.sum(group["latitude"] * weights) / np.sum(weights)),
        longitude=float(np.sum(group["longitude"] * weights) / np.sum(weights)),
        occurrence_count=len(group),
        employee_names=tuple(employee_names),
        first_seen=pd.Timestamp(group["seen_at"].min()).to_pydatetime(),
        last_seen=pd.Timestamp(group["seen_at"].max()).to_pydatetime(),
        total_duration_seconds=int(group["duration_seconds"].sum()),
        avg_accuracy=float(group["accuracy"].mean()),
        sources=tuple(sorted(set(group["source"]))),
    )


def suggest_locations(engine=None, min_occurrences=1, now=None):
    """
    Sugestões de novos locais, das mais frequentes para as menos.

    Args:
        min_occurrences: mínimo de ocorrências para a sugestão aparecer
        now: referência para a janela das marcações (default: agora, UTC)
    """
    engine = engine or get_engine()
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    since = now - timedelta(days=SUGGESTION_LOOKBACK_DAYS)

    with engine.connect() as conn:
        frames = [
            _unmatched_clusters(conn),
            _unlinked_clock_events(conn, SOURCE_CLOCK_IN, since),
            _unlinked_clock_events(conn, SOURCE_CLOCK_OUT, since),
        ]
        names = dict(conn.execute(sa.select(employee_profiles.c.id, employee_profiles.c.name)).all())

    frames = [f for f in frames if not f.empty]
    if not frames:
        return []
    df = pd.concat(frames, ignore_index=True)[COLUMNS]
    df["seen_at"] = pd.to_datetime(df["seen_at"])

    df["group"] = group_occurrences(df["latitude"], df["longitude"])
    suggestions = [
        _summarize(group, names)
        for _, group in df.groupby("group", sort=False)
        if len(group) >= min_occurrences
    ]
    suggestions.sort(key=lambda s: (-s.occurrence_count, s.first_seen))

    logger.info("%d sugestões de local a partir de %d ocorrências", len(suggestions), len(df))
    return suggestions
