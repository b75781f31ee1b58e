import os
import logging
from datetime import datetime, timedelta, timezone

import sqlalchemy as sa
from dotenv import load_dotenv

from config import DEFAULT_DATABASE_URL, RETENCAO_PONTOS_DIAS
from models import Location

# Variáveis de ambiente locais (.env)
load_dotenv()

logger = logging.getLogger(__name__)

metadata = sa.MetaData()

# ==========================================
# TABELAS
# ==========================================

shifts = sa.Table(
    "shifts", metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("employee_id", sa.String(36), nullable=False),
    sa.Column("status", sa.String(16), nullable=False, server_default="active"),
    sa.Column("clock_in_at", sa.DateTime),
    sa.Column("clock_out_at", sa.DateTime),
    sa.Column("clock_in_latitude", sa.Float),
    sa.Column("clock_in_longitude", sa.Float),
    sa.Column("clock_out_latitude", sa.Float),
    sa.Column("clock_out_longitude", sa.Float),
    sa.Column("clock_in_accuracy", sa.Float),
    sa.Column("clock_out_accuracy", sa.Float),
    # Vínculo das marcações com a parada / local onde ocorreram
    sa.Column("clock_in_cluster_id", sa.String(36)),
    sa.Column("clock_out_cluster_id", sa.String(36)),
    sa.Column("clock_in_location_id", sa.String(36)),
    sa.Column("clock_out_location_id", sa.String(36)),
)

gps_points = sa.Table(
    "gps_points", metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("shift_id", sa.String(36), nullable=False),
    sa.Column("employee_id", sa.String(36), nullable=False),
    sa.Column("latitude", sa.Float, nullable=False),
    sa.Column("longitude", sa.Float, nullable=False),
    sa.Column("accuracy", sa.Float),
    sa.Column("speed", sa.Float),
    sa.Column("heading", sa.Float),
    sa.Column("altitude", sa.Float),
    sa.Column("activity_type", sa.String(32)),
    sa.Column("is_mocked", sa.Boolean),
    sa.Column("captured_at", sa.DateTime, nullable=False),
    sa.Column("stationary_cluster_id", sa.String(36)),
    sa.Index("idx_gps_points_shift_captured", "shift_id", "captured_at"),
)

locations = sa.Table(
    "locations", metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("name", sa.Text, nullable=False),
    sa.Column("latitude", sa.Float, nullable=False),
    sa.Column("longitude", sa.Float, nullable=False),
    sa.Column("radius_meters", sa.Float, nullable=False, server_default="100"),
    sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
)

stationary_clusters = sa.Table(
    "stationary_clusters", metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("shift_id", sa.String(36), nullable=False),
    sa.Column("employee_id", sa.String(36), nullable=False),
    sa.Column("centroid_latitude", sa.Float, nullable=False),
    sa.Column("centroid_longitude", sa.Float, nullable=False),
    sa.Column("centroid_accuracy", sa.Float),
    sa.Column("started_at", sa.DateTime, nullable=False),
    sa.Column("ended_at", sa.DateTime, nullable=False),
    sa.Column("duration_seconds", sa.Integer),
    sa.Column("gps_point_count", sa.Integer, nullable=False, server_default="0"),
    sa.Column("matched_location_id", sa.String(36)),
    # 'auto' | 'manual'
    sa.Column("match_method", sa.String(16)),
    sa.Index("idx_clusters_shift", "shift_id", "started_at"),
)

trips = sa.Table(
    "trips", metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("shift_id", sa.String(36), nullable=False),
    sa.Column("employee_id", sa.String(36), nullable=False),
    sa.Column("started_at", sa.DateTime, nullable=False),
    sa.Column("ended_at", sa.DateTime, nullable=False),
    sa.Column("start_latitude", sa.Float, nullable=False),
    sa.Column("start_longitude", sa.Float, nullable=False),
    sa.Column("end_latitude", sa.Float, nullable=False),
    sa.Column("end_longitude", sa.Float, nullable=False),
    sa.Column("distance_km", sa.Float, nullable=False),
    sa.Column("duration_minutes", sa.Integer, nullable=False),
    sa.Column("classification", sa.String(16), nullable=False, server_default="business"),
    sa.Column("transport_mode", sa.String(16), nullable=False, server_default="unknown"),
    sa.Column("confidence_score", sa.Float),
    sa.Column("gps_point_count", sa.Integer, nullable=False, server_default="0"),
    sa.Column("low_accuracy_segments", sa.Integer, nullable=False, server_default="0"),
    sa.Column("start_cluster_id", sa.String(36)),
    sa.Column("end_cluster_id", sa.String(36)),
    sa.Column("start_location_id", sa.String(36)),
    sa.Column("end_location_id", sa.String(36)),
    sa.Column("start_location_match_method", sa.String(16)),
    sa.Column("end_location_match_method", sa.String(16)),
    sa.Column("detection_method", sa.String(16), nullable=False, server_default="auto"),
    sa.Column("match_status", sa.String(16), nullable=False, server_default="pending"),
    sa.CheckConstraint("ended_at > started_at", name="ck_trips_time_order"),
    sa.CheckConstraint("distance_km >= 0", name="ck_trips_distance"),
    sa.Index("idx_trips_shift_status", "shift_id", "match_status"),
)

trip_gps_points = sa.Table(
    "trip_gps_points", metadata,
    sa.Column("trip_id", sa.String(36), sa.ForeignKey("trips.id"), primary_key=True),
    sa.Column("gps_point_id", sa.Integer, primary_key=True),
    sa.Column("sequence_order", sa.Integer, nullable=False),
)

employee_profiles = sa.Table(
    "employee_profiles", metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("name", sa.Text, nullable=False),
)

employee_vehicle_periods = sa.Table(
    "employee_vehicle_periods", metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("employee_id", sa.String(36), nullable=False),
    # 'personal' | 'company'
    sa.Column("vehicle_type", sa.String(16), nullable=False),
    sa.Column("started_at", sa.Date, nullable=False),
    sa.Column("ended_at", sa.Date),
)

carpool_groups = sa.Table(
    "carpool_groups", metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("trip_date", sa.Date, nullable=False),
    sa.Column("status", sa.String(16), nullable=False, server_default="auto_detected"),
    sa.Column("driver_employee_id", sa.String(36)),
    sa.Column("review_needed", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Index("idx_carpool_groups_date", "trip_date"),
)

carpool_members = sa.Table(
    "carpool_members", metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("carpool_group_id", sa.String(36), sa.ForeignKey("carpool_groups.id"), nullable=False),
    sa.Column("trip_id", sa.String(36), sa.ForeignKey("trips.id"), nullable=False, unique=True),
    sa.Column("employee_id", sa.String(36), nullable=False),
    sa.Column("role", sa.String(16), nullable=False),
)


# ==========================================
# CONEXÃO
# ==========================================

def get_database_url():
    """URL do banco: DATABASE_URL (ambiente ou .env) ou SQLite local."""
    return os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL


_engine = None


def get_engine(url=None):
    """
    Engine SQLAlchemy. Sem ``url`` reutiliza a engine padrão do processo
    (criada na primeira chamada a partir de DATABASE_URL).
    """
    global _engine
    if url is not None:
        return sa.create_engine(url)
    if _engine is None:
        _engine = sa.create_engine(get_database_url())
    return _engine


def is_postgres(engine):
    return engine.dialect.name == "postgresql"


def init_db(engine=None):
    """Cria as tabelas e índices que ainda não existem. Pode rodar várias vezes."""
    engine = engine or get_engine()
    metadata.create_all(engine)
    logger.info("Banco inicializado (%s).", engine.dialect.name)


# ==========================================
# DADOS DE REFERÊNCIA
# ==========================================

def _location_from_row(row):
    return Location(
        id=row.id,
        name=row.name,
        latitude=row.latitude,
        longitude=row.longitude,
        radius_m=row.radius_meters,
        is_active=bool(row.is_active),
    )


def get_locations(conn, active_only=True):
    """Locais cadastrados (por padrão só os ativos)."""
    query = sa.select(locations)
    if active_only:
        query = query.where(locations.c.is_active.is_(True))
    return [_location_from_row(row) for row in conn.execute(query)]


def get_location(conn, location_id):
    row = conn.execute(sa.select(locations).where(locations.c.id == location_id)).first()
    return _location_from_row(row) if row else None


def save_location(conn, location):
    """Insere ou atualiza um local (cadastro feito fora deste módulo)."""
    values = {
        "name": location.name,
        "latitude": location.latitude,
        "longitude": location.longitude,
        "radius_meters": location.radius_m,
        "is_active": location.is_active,
    }
    updated = conn.execute(
        sa.update(locations).where(locations.c.id == location.id).values(**values)
    ).rowcount
    if not updated:
        conn.execute(sa.insert(locations).values(id=location.id, **values))


# ==========================================
# MANUTENÇÃO
# ==========================================

def purge_old_points(engine=None, retention_days=RETENCAO_PONTOS_DIAS, now=None):
    """
    Remove pontos GPS brutos mais antigos que a janela de retenção.
    Retorna a quantidade removida.
    """
    engine = engine or get_engine()
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    data_limite = now - timedelta(days=retention_days)

    logger.info("[MANUTENÇÃO] Limpeza de pontos anteriores a %s", data_limite.strftime("%d/%m/%Y"))

    with engine.begin() as conn:
        removidos = conn.execute(
            sa.delete(gps_points).where(gps_points.c.captured_at < data_limite)
        ).rowcount

    # Em PG o autovacuum cuida disso; no SQLite é manual
    if removidos and engine.dialect.name == "sqlite":
        with engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            conn.exec_driver_sql("VACUUM")

    logger.info("[MANUTENÇÃO] %d pontos removidos.", removidos)
    return removidos


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    init_db()
