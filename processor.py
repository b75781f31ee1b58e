"""
Processador de Paradas e Viagens
================================
Ponto de entrada ``detect(shift_id)``:
- Turno ENCERRADO: detecção completa e final (clusters + viagens)
- Turno ATIVO: detecção INCREMENTAL a partir do último ponto já usado por
  uma viagem consumida pelo casamento com ruas
- Viagens consumidas (matched / failed / anomalous) nunca são apagadas,
  alteradas ou duplicadas
- Tudo numa transação: viagem e seus pontos entram juntos ou não entram
"""

import sys
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Optional

import pandas as pd
import sqlalchemy as sa

from config import CLOCK_CLUSTER_RADIUS_M, RETENCAO_PONTOS_DIAS
from cluster_detector import ClusterClosed, TripFound, detect_segments
from database import (
    get_engine, init_db, is_postgres, get_locations, purge_old_points,
    shifts, gps_points, stationary_clusters, trips, trip_gps_points, carpool_members,
)
from geometry import effective_accuracy, haversine_m
from location_matcher import LocationMatcher
from models import (
    ClockLink, GpsFix, Shift, StationaryCluster, Trip,
    METHOD_AUTO, REPLACEABLE_MATCH_STATUSES, SHIFT_ACTIVE,
)

logger = logging.getLogger(__name__)


class ShiftNotFoundError(LookupError):
    """Turno inexistente: erro de quem chamou, nada é alterado."""


@dataclass
class DetectionResult:
    shift_id: str
    incremental: bool
    points_scanned: int = 0
    replaced_trips: int = 0
    preserved_trips: int = 0
    clusters: list = field(default_factory=list)
    trips: list = field(default_factory=list)
    clock_in: Optional[ClockLink] = None
    clock_out: Optional[ClockLink] = None


# ==========================================
# SERIALIZAÇÃO POR TURNO
# ==========================================
# Duas detecções simultâneas no mesmo turno disputariam o corte incremental

_locks_guard = threading.Lock()
_shift_locks = {}  # shift_id -> [lock, usuários]


@contextmanager
def shift_lock(shift_id):
    with _locks_guard:
        entry = _shift_locks.setdefault(shift_id, [threading.Lock(), 0])
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        # Sem ninguém esperando, a entrada sai do registro
        with _locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                del _shift_locks[shift_id]


# ==========================================
# LEITURA
# ==========================================

def _optional(value, cast):
    if value is None or pd.isna(value):
        return None
    return cast(value)


def fixes_from_frame(df):
    """Converte o DataFrame de gps_points em GpsFix, na ordem do DataFrame."""
    return [
        GpsFix(
            id=int(row.id),
            shift_id=row.shift_id,
            employee_id=row.employee_id,
            latitude=float(row.latitude),
            longitude=float(row.longitude),
            accuracy=_optional(row.accuracy, float),
            captured_at=pd.Timestamp(row.captured_at).to_pydatetime(),
            speed=_optional(row.speed, float),
            heading=_optional(row.heading, float),
            altitude=_optional(row.altitude, float),
            activity_type=_optional(row.activity_type, str),
            is_mocked=_optional(row.is_mocked, bool),
        )
        for row in df.itertuples(index=False)
    ]


def load_shift(conn, shift_id):
    row = conn.execute(sa.select(shifts).where(shifts.c.id == shift_id)).first()
    if row is None:
        raise ShiftNotFoundError(f"Turno não encontrado: {shift_id}")
    return Shift(
        id=row.id,
        employee_id=row.employee_id,
        status=row.status,
        clock_in_at=row.clock_in_at,
        clock_out_at=row.clock_out_at,
        clock_in_latitude=row.clock_in_latitude,
        clock_in_longitude=row.clock_in_longitude,
        clock_in_accuracy=row.clock_in_accuracy,
        clock_out_latitude=row.clock_out_latitude,
        clock_out_longitude=row.clock_out_longitude,
        clock_out_accuracy=row.clock_out_accuracy,
    )


def load_fixes(conn, shift_id, after=None):
    """Pontos do turno em ordem de captura; ``after`` limita aos posteriores ao corte."""
    query = (
        sa.select(
            gps_points.c.id, gps_points.c.shift_id, gps_points.c.employee_id,
            gps_points.c.latitude, gps_points.c.longitude, gps_points.c.accuracy,
            gps_points.c.captured_at, gps_points.c.speed, gps_points.c.heading,
            gps_points.c.altitude, gps_points.c.activity_type, gps_points.c.is_mocked,
        )
        .where(gps_points.c.shift_id == shift_id)
        .order_by(gps_points.c.captured_at, gps_points.c.id)
    )
    if after is not None:
        query = query.where(gps_points.c.captured_at > after)

    df = pd.read_sql(query, conn)
    return fixes_from_frame(df)


def _replaceable(shift_id):
    return sa.and_(trips.c.shift_id == shift_id, trips.c.match_status.in_(REPLACEABLE_MATCH_STATUSES))


def _consumed(shift_id):
    return sa.and_(trips.c.shift_id == shift_id, trips.c.match_status.not_in(REPLACEABLE_MATCH_STATUSES))


def latest_consumed_point(conn, shift_id) -> Optional[datetime]:
    """Horário do último ponto referenciado por uma viagem já consumida."""
    query = (
        sa.select(sa.func.max(gps_points.c.captured_at))
        .select_from(
            trip_gps_points
            .join(trips, trips.c.id == trip_gps_points.c.trip_id)
            .join(gps_points, gps_points.c.id == trip_gps_points.c.gps_point_id)
        )
        .where(_consumed(shift_id))
    )
    return conn.execute(query).scalar()


def _consumed_windows(conn, shift_id):
    rows = conn.execute(sa.select(trips.c.started_at, trips.c.ended_at).where(_consumed(shift_id)))
    return [(row.started_at, row.ended_at) for row in rows]


# ==========================================
# ESCRITA
# ==========================================

def _delete_replaceable_trips(conn, shift_id):
    doomed = sa.select(trips.c.id).where(_replaceable(shift_id))
    conn.execute(sa.delete(carpool_members).where(carpool_members.c.trip_id.in_(doomed)))
    conn.execute(sa.delete(trip_gps_points).where(trip_gps_points.c.trip_id.in_(doomed)))
    return conn.execute(sa.delete(trips).where(_replaceable(shift_id))).rowcount


def _reset_clusters(conn, shift_id):
    conn.execute(
        sa.update(shifts)
        .where(shifts.c.id == shift_id)
        .values(clock_in_cluster_id=None, clock_out_cluster_id=None)
    )
    conn.execute(
        sa.update(gps_points)
        .where(gps_points.c.shift_id == shift_id, gps_points.c.stationary_cluster_id.is_not(None))
        .values(stationary_cluster_id=None)
    )
    return conn.execute(
        sa.delete(stationary_clusters).where(stationary_clusters.c.shift_id == shift_id)
    ).rowcount


def save_cluster(conn, cluster: StationaryCluster):
    conn.execute(sa.insert(stationary_clusters).values(
        id=cluster.id,
        shift_id=cluster.shift_id,
        employee_id=cluster.employee_id,
        centroid_latitude=cluster.centroid_latitude,
        centroid_longitude=cluster.centroid_longitude,
        centroid_accuracy=cluster.centroid_accuracy,
        started_at=cluster.started_at,
        ended_at=cluster.ended_at,
        duration_seconds=cluster.duration_seconds,
        gps_point_count=cluster.gps_point_count,
        matched_location_id=cluster.matched_location_id,
        match_method=METHOD_AUTO if cluster.matched_location_id else None,
    ))
    if cluster.point_ids:
        conn.execute(
            sa.update(gps_points)
            .where(gps_points.c.id.in_(cluster.point_ids))
            .values(stationary_cluster_id=cluster.id)
        )


def save_trip(conn, trip: Trip):
    """Insere a viagem e os vínculos com seus pontos (mesma transação)."""
    conn.execute(sa.insert(trips).values(
        id=trip.id,
        shift_id=trip.shift_id,
        employee_id=trip.employee_id,
        started_at=trip.started_at,
        ended_at=trip.ended_at,
        start_latitude=trip.start_latitude,
        start_longitude=trip.start_longitude,
        end_latitude=trip.end_latitude,
        end_longitude=trip.end_longitude,
        distance_km=trip.distance_km,
        duration_minutes=trip.duration_minutes,
        classification=trip.classification,
        transport_mode=trip.transport_mode,
        confidence_score=trip.confidence_score,
        gps_point_count=trip.gps_point_count,
        low_accuracy_segments=trip.low_accuracy_segments,
        start_cluster_id=trip.start_cluster_id,
        end_cluster_id=trip.end_cluster_id,
        start_location_id=trip.start_location_id,
        end_location_id=trip.end_location_id,
        start_location_match_method=METHOD_AUTO if trip.start_location_id else None,
        end_location_match_method=METHOD_AUTO if trip.end_location_id else None,
        detection_method=trip.detection_method,
        match_status=trip.match_status,
    ))
    if trip.point_ids:
        conn.execute(
            sa.insert(trip_gps_points),
            [
                {"trip_id": trip.id, "gps_point_id": point_id, "sequence_order": seq}
                for seq, point_id in enumerate(trip.point_ids)
            ],
        )


# ==========================================
# MARCAÇÕES DE PONTO
# ==========================================

def clock_link(latitude, longitude, accuracy, clusters, matcher) -> ClockLink:
    """
    Parada mais próxima (até 50 m do centróide) e o local dela; sem parada
    por perto, o local vem direto da cerca que contém a marcação.
    """
    if latitude is None or longitude is None:
        return ClockLink()

    nearby = [
        (haversine_m(latitude, longitude, c.centroid_latitude, c.centroid_longitude), c)
        for c in clusters
    ]
    nearby = [(dist, c) for dist, c in nearby if dist <= CLOCK_CLUSTER_RADIUS_M]
    if nearby:
        _, cluster = min(nearby, key=lambda item: item[0])
        return ClockLink(cluster.id, cluster.matched_location_id)

    return ClockLink(location_id=matcher.match(latitude, longitude, effective_accuracy(accuracy)))


def link_clock_events(conn, shift: Shift, clusters, matcher):
    """Grava o vínculo de entrada e saída do turno. Retorna (entrada, saída)."""
    clock_in = clock_link(
        shift.clock_in_latitude, shift.clock_in_longitude, shift.clock_in_accuracy, clusters, matcher,
    )
    if shift.clock_out_at is not None:
        clock_out = clock_link(
            shift.clock_out_latitude, shift.clock_out_longitude, shift.clock_out_accuracy, clusters, matcher,
        )
    else:
        clock_out = ClockLink()

    conn.execute(
        sa.update(shifts)
        .where(shifts.c.id == shift.id)
        .values(
            clock_in_cluster_id=clock_in.cluster_id,
            clock_in_location_id=clock_in.location_id,
            clock_out_cluster_id=clock_out.cluster_id,
            clock_out_location_id=clock_out.location_id,
        )
    )
    return clock_in, clock_out


# ==========================================
# DETECÇÃO
# ==========================================

def _overlaps(trip, windows):
    return any(trip.started_at < end and trip.ended_at > start for start, end in windows)


def detect(shift_id, engine=None):
    """
    Detecta paradas e viagens de um turno e grava o resultado.

    Levanta ShiftNotFoundError se o turno não existe (nada é alterado).
    """
    engine = engine or get_engine()

    with shift_lock(shift_id), engine.begin() as conn:
        if is_postgres(engine):
            # Garante uma detecção por turno também entre processos
            conn.execute(sa.text("SELECT pg_advisory_xact_lock(hashtext(:shift_id))"), {"shift_id": shift_id})

        shift = load_shift(conn, shift_id)
        result = DetectionResult(shift_id=shift_id, incremental=shift.is_active)

        result.replaced_trips = _delete_replaceable_trips(conn, shift_id)
        preserved = _consumed_windows(conn, shift_id)
        result.preserved_trips = len(preserved)

        if shift.is_active:
            cutoff = latest_consumed_point(conn, shift_id)
        else:
            cutoff = None
            _reset_clusters(conn, shift_id)

        fixes = load_fixes(conn, shift_id, after=cutoff)
        result.points_scanned = len(fixes)
        matcher = LocationMatcher(get_locations(conn))

        events = list(detect_segments(
            fixes,
            shift_id=shift.id,
            employee_id=shift.employee_id,
            matcher=matcher,
            finalize=not shift.is_active,
        ))

        for event in events:
            if isinstance(event, ClusterClosed) and not shift.is_active:
                result.clusters.append(event.cluster)
            elif isinstance(event, TripFound):
                trip = event.trip
                if shift.is_active:
                    # Clusters só são gravados quando o turno encerra
                    trip = replace(trip, start_cluster_id=None, end_cluster_id=None)
                if _overlaps(trip, preserved):
                    logger.debug("Viagem %s sobreposta a uma viagem já consumida; ignorada", trip.id)
                    continue
                result.trips.append(trip)

        # Clusters antes das viagens que os referenciam
        for cluster in result.clusters:
            save_cluster(conn, cluster)
        for trip in result.trips:
            save_trip(conn, trip)

        if not shift.is_active:
            result.clock_in, result.clock_out = link_clock_events(conn, shift, result.clusters, matcher)

    logger.info(
        "Turno %s (%s): %d pontos, %d paradas, %d viagens (%d substituídas, %d preservadas)",
        shift_id, "incremental" if result.incremental else "completo",
        result.points_scanned, len(result.clusters), len(result.trips),
        result.replaced_trips, result.preserved_trips,
    )
    return result


def process_active_shifts(engine=None):
    """Varredura periódica dos turnos ativos. Falha em um turno não interrompe os demais."""
    engine = engine or get_engine()
    with engine.connect() as conn:
        shift_ids = list(conn.execute(
            sa.select(shifts.c.id).where(shifts.c.status == SHIFT_ACTIVE).order_by(shifts.c.id)
        ).scalars())

    results = []
    for shift_id in shift_ids:
        try:
            results.append(detect(shift_id, engine))
        except Exception:
            logger.exception("Erro ao processar turno %s", shift_id)
    return results


# ==========================================
# LINHA DE COMANDO
# ==========================================

AJUDA = f"""
Processador de Paradas e Viagens
================================
Uso: python processor.py [opção]

Opções:
  (sem opção)                  Processa todos os turnos ativos
  <shift_id>                   Detecta paradas e viagens de um turno
  --active                     Processa todos os turnos ativos
  --carpools AAAA-MM-DD        Detecta caronas do dia
  --rematch-created <loc_id>   Reavalia viagens/paradas após criar um local
  --rematch-updated <loc_id>   Reavalia viagens/paradas após editar/mover um local
  --suggestions [mínimo]       Lista sugestões de novos locais
  --purge [dias]               Remove pontos GPS antigos (default: {RETENCAO_PONTOS_DIAS} dias)
  --init                       Cria as tabelas
  --help                       Mostra esta ajuda
"""


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    comando = argv[0] if argv else "--active"

    if comando == "--help":
        print(AJUDA)
    elif comando == "--init":
        init_db()
    elif comando == "--active":
        resultados = process_active_shifts()
        print(f"✅ {len(resultados)} turnos ativos processados")
    elif comando == "--carpools":
        from services.carpool import detect_carpools
        if len(argv) < 2:
            print("⚠️ Informe a data: --carpools AAAA-MM-DD")
            return 2
        grupos = detect_carpools(date.fromisoformat(argv[1]))
        print(f"🚗 {len(grupos)} grupos de carona em {argv[1]}")
    elif comando in ("--rematch-created", "--rematch-updated"):
        from services.rematch import rematch_location_created, rematch_location_updated
        if len(argv) < 2:
            print(f"⚠️ Informe o id do local: {comando} <loc_id>")
            return 2
        if comando == "--rematch-created":
            contagem = rematch_location_created(argv[1])
        else:
            contagem = rematch_location_updated(argv[1])
        for nome, valor in contagem.items():
            print(f"   - {nome}: {valor}")
    elif comando == "--suggestions":
        from services.suggestions import suggest_locations
        minimo = int(argv[1]) if len(argv) > 1 and argv[1].isdigit() else 1
        sugestoes = suggest_locations(min_occurrences=minimo)
        print(f"📍 {len(sugestoes)} sugestões de local")
        for s in sugestoes:
            nomes = ", ".join(s.employee_names) or "-"
            print(f"   - ({s.latitude:.6f}, {s.longitude:.6f}): {s.occurrence_count} ocorrências [{nomes}]")
    elif comando == "--purge":
        dias = RETENCAO_PONTOS_DIAS
        if len(argv) > 1:
            try:
                dias = int(argv[1])
            except ValueError:
                print(f"⚠️ Retenção inválida: {argv[1]}. Usando {dias} dias.")
        purge_old_points(retention_days=dias)
    elif comando.startswith("--"):
        print(f"Opção desconhecida: {comando}")
        print("Use --help para ver as opções disponíveis")
        return 2
    else:
        try:
            resultado = detect(comando)
        except ShiftNotFoundError as e:
            print(f"❌ {e}")
            return 1
        print(f"✅ {len(resultado.clusters)} paradas, {len(resultado.trips)} viagens")
    return 0


if __name__ == "__main__":
    sys.exit(main())
