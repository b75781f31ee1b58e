"""
Detecção de Caronas (lote diário)
=================================
Agrupa viagens de carro de funcionários diferentes que saíram e chegaram
juntos (inícios a < 200 m, fins a < 200 m, sobreposição >= 80% da viagem
mais curta). Os pares são unidos transitivamente (union-find).

Motorista: quem tem período de veículo PARTICULAR ativo na data.
- exatamente um: motorista definido, sem revisão
- nenhum: sem motorista, marcado para revisão
- vários: o primeiro por nome, ainda marcado para revisão
"""

import logging
import uuid

import pandas as pd
import sqlalchemy as sa

from config import CARPOOL_MAX_ENDPOINT_KM, CARPOOL_MIN_OVERLAP
from database import (
    get_engine, trips, carpool_groups, carpool_members,
    employee_profiles, employee_vehicle_periods,
)
from geometry import haversine_km
from models import (
    CarpoolGroup, CarpoolMember,
    MODE_DRIVING, ROLE_DRIVER, ROLE_PASSENGER, ROLE_UNASSIGNED,
)
from trip_builder import ID_NAMESPACE

logger = logging.getLogger(__name__)

PERSONAL_VEHICLE = "personal"


class DisjointSet:
    def __init__(self):
        self.parent = {}

    def find(self, item):
        self.parent.setdefault(item, item)
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a, b):
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            # Raiz determinística: a menor chave
            if rb < ra:
                ra, rb = rb, ra
            self.parent[rb] = ra


def is_carpool_pair(a, b):
    """``a``/``b``: linhas com employee_id, started_at, ended_at e coordenadas dos extremos."""
    if a.employee_id == b.employee_id:
        return False
    if haversine_km(a.start_latitude, a.start_longitude, b.start_latitude, b.start_longitude) >= CARPOOL_MAX_ENDPOINT_KM:
        return False
    if haversine_km(a.end_latitude, a.end_longitude, b.end_latitude, b.end_longitude) >= CARPOOL_MAX_ENDPOINT_KM:
        return False

    overlap = (min(a.ended_at, b.ended_at) - max(a.started_at, b.started_at)).total_seconds()
    shorter = min((a.ended_at - a.started_at).total_seconds(), (b.ended_at - b.started_at).total_seconds())
    if overlap <= 0 or shorter <= 0:
        return False
    return overlap / shorter >= CARPOOL_MIN_OVERLAP


def group_trips(day_trips):
    """Lista de grupos (listas de linhas), cada um com 2+ viagens, em ordem de saída."""
    rows = list(day_trips)
    groups = DisjointSet()
    for i, a in enumerate(rows):
        for b in rows[i + 1:]:
            if is_carpool_pair(a, b):
                groups.union(a.id, b.id)

    members = {}
    for row in rows:
        if row.id in groups.parent:
            members.setdefault(groups.find(row.id), []).append(row)

    result = [sorted(m, key=lambda r: (r.started_at, r.id)) for m in members.values()]
    return sorted(result, key=lambda m: (m[0].started_at, m[0].id))


def choose_driver(employee_ids, has_personal_vehicle, name_of):
    """(motorista ou None, precisa_revisão)."""
    candidates = sorted({e for e in employee_ids if has_personal_vehicle(e)}, key=lambda e: (name_of(e) or "", e))
    if len(candidates) == 1:
        return candidates[0], False
    if not candidates:
        return None, True
    return candidates[0], True


def _load_day_trips(conn, trip_date):
    start = pd.Timestamp(trip_date).to_pydatetime()
    end = (pd.Timestamp(trip_date) + pd.Timedelta(days=1)).to_pydatetime()
    query = (
        sa.select(
            trips.c.id, trips.c.employee_id, trips.c.started_at, trips.c.ended_at,
            trips.c.start_latitude, trips.c.start_longitude,
            trips.c.end_latitude, trips.c.end_longitude,
        )
        .where(
            trips.c.transport_mode == MODE_DRIVING,
            trips.c.duration_minutes > 0,
            trips.c.started_at >= start,
            trips.c.started_at < end,
        )
        .order_by(trips.c.started_at, trips.c.id)
    )
    return list(pd.read_sql(query, conn).itertuples(index=False))


def _personal_vehicle_holders(conn, employee_ids, trip_date):
    rows = conn.execute(
        sa.select(employee_vehicle_periods.c.employee_id).where(
            employee_vehicle_periods.c.employee_id.in_(employee_ids),
            employee_vehicle_periods.c.vehicle_type == PERSONAL_VEHICLE,
            employee_vehicle_periods.c.started_at <= trip_date,
            sa.or_(employee_vehicle_periods.c.ended_at.is_(None), employee_vehicle_periods.c.ended_at >= trip_date),
        )
    )
    return set(rows.scalars())


def _employee_names(conn, employee_ids):
    rows = conn.execute(
        sa.select(employee_profiles.c.id, employee_profiles.c.name).where(employee_profiles.c.id.in_(employee_ids))
    )
    return {row.id: row.name for row in rows}


def _clear_day(conn, trip_date):
    day_groups = sa.select(carpool_groups.c.id).where(carpool_groups.c.trip_date == trip_date)
    conn.execute(sa.delete(carpool_members).where(carpool_members.c.carpool_group_id.in_(day_groups)))
    return conn.execute(sa.delete(carpool_groups).where(carpool_groups.c.trip_date == trip_date)).rowcount


def detect_carpools(trip_date, engine=None):
    """Recria os grupos de carona de uma data. Retorna os grupos criados."""
    engine = engine or get_engine()

    with engine.begin() as conn:
        removed = _clear_day(conn, trip_date)
        day_trips = _load_day_trips(conn, trip_date)

        employee_ids = sorted({t.employee_id for t in day_trips})
        holders = _personal_vehicle_holders(conn, employee_ids, trip_date) if employee_ids else set()
        names = _employee_names(conn, employee_ids) if employee_ids else {}

        created = []
        for members in group_trips(day_trips):
            driver, review = choose_driver(
                [m.employee_id for m in members], lambda e: e in holders, names.get
            )
            group_id = str(uuid.uuid5(ID_NAMESPACE, f"carpool:{trip_date.isoformat()}:{members[0].id}"))
            group = CarpoolGroup(
                id=group_id,
                trip_date=trip_date,
                driver_employee_id=driver,
                review_needed=review,
                members=tuple(
                    CarpoolMember(
                        trip_id=m.id,
                        employee_id=m.employee_id,
                        role=(ROLE_UNASSIGNED if driver is None
                              else ROLE_DRIVER if m.employee_id == driver
                              else ROLE_PASSENGER),
                    )
                    for m in members
                ),
            )

            conn.execute(sa.insert(carpool_groups).values(
                id=group.id,
                trip_date=trip_date,
                driver_employee_id=driver,
                review_needed=review,
            ))
            conn.execute(sa.insert(carpool_members), [
                {"carpool_group_id": group.id, "trip_id": m.trip_id, "employee_id": m.employee_id, "role": m.role}
                for m in group.members
            ])
            created.append(group)

    logger.info(
        "Caronas %s: %d grupos (%d removidos), %d viagens de carro analisadas",
        trip_date, len(created), removed, len(day_trips),
    )
    return created
