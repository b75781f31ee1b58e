"""
Registros do domínio: pontos GPS, turnos, locais, paradas, viagens e caronas.
Todos imutáveis; o detector produz novos registros em vez de alterar os existentes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Final, Optional

SHIFT_ACTIVE: Final[str] = "active"
SHIFT_COMPLETED: Final[str] = "completed"

MATCH_PENDING: Final[str] = "pending"
MATCH_PROCESSING: Final[str] = "processing"
MATCH_MATCHED: Final[str] = "matched"
MATCH_FAILED: Final[str] = "failed"
MATCH_ANOMALOUS: Final[str] = "anomalous"

# Viagens nesses estados ainda não foram consumidas pelo casamento com ruas
REPLACEABLE_MATCH_STATUSES: Final[tuple[str, ...]] = (MATCH_PENDING, MATCH_PROCESSING)

MODE_DRIVING: Final[str] = "driving"
MODE_WALKING: Final[str] = "walking"
MODE_UNKNOWN: Final[str] = "unknown"

METHOD_AUTO: Final[str] = "auto"
METHOD_MANUAL: Final[str] = "manual"

ROLE_DRIVER: Final[str] = "driver"
ROLE_PASSENGER: Final[str] = "passenger"
ROLE_UNASSIGNED: Final[str] = "unassigned"


@dataclass(frozen=True, slots=True)
class GpsFix:
    """Uma amostra do sensor.

    Attributes:
        accuracy: Raio de incerteza em metros (menor = melhor). None quando o
            aparelho não informa.
        captured_at: Horário da captura (UTC, sem fuso).
    """

    id: int
    shift_id: str
    employee_id: str
    latitude: float
    longitude: float
    accuracy: Optional[float]
    captured_at: datetime
    speed: Optional[float] = None
    heading: Optional[float] = None
    altitude: Optional[float] = None
    activity_type: Optional[str] = None
    is_mocked: Optional[bool] = None


@dataclass(frozen=True, slots=True)
class Shift:
    id: str
    employee_id: str
    status: str
    clock_in_at: Optional[datetime] = None
    clock_out_at: Optional[datetime] = None
    clock_in_latitude: Optional[float] = None
    clock_in_longitude: Optional[float] = None
    clock_in_accuracy: Optional[float] = None
    clock_out_latitude: Optional[float] = None
    clock_out_longitude: Optional[float] = None
    clock_out_accuracy: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.status == SHIFT_ACTIVE


@dataclass(frozen=True, slots=True)
class Location:
    """Cerca de referência: centro + raio em metros."""

    id: str
    name: str
    latitude: float
    longitude: float
    radius_m: float
    is_active: bool = True


@dataclass(frozen=True, slots=True)
class StationaryCluster:
    id: str
    shift_id: str
    employee_id: str
    centroid_latitude: float
    centroid_longitude: float
    centroid_accuracy: float
    started_at: datetime
    ended_at: datetime
    gps_point_count: int
    matched_location_id: Optional[str] = None
    point_ids: tuple[int, ...] = field(default=(), repr=False)

    @property
    def duration_seconds(self) -> int:
        return int((self.ended_at - self.started_at).total_seconds())


@dataclass(frozen=True, slots=True)
class Trip:
    """Deslocamento entre duas paradas.

    ``point_ids`` guarda os pontos de trânsito na ordem de captura; eles viram
    as linhas de ``trip_gps_points`` junto com a viagem.
    """

    id: str
    shift_id: str
    employee_id: str
    started_at: datetime
    ended_at: datetime
    start_latitude: float
    start_longitude: float
    end_latitude: float
    end_longitude: float
    distance_km: float
    duration_minutes: int
    transport_mode: str
    confidence_score: float
    gps_point_count: int
    low_accuracy_segments: int
    start_cluster_id: Optional[str] = None
    end_cluster_id: Optional[str] = None
    start_location_id: Optional[str] = None
    end_location_id: Optional[str] = None
    classification: str = "business"
    match_status: str = MATCH_PENDING
    detection_method: str = METHOD_AUTO
    point_ids: tuple[int, ...] = field(default=(), repr=False)


@dataclass(frozen=True, slots=True)
class CarpoolMember:
    trip_id: str
    employee_id: str
    role: str


@dataclass(frozen=True, slots=True)
class CarpoolGroup:
    id: str
    trip_date: date
    driver_employee_id: Optional[str]
    review_needed: bool
    members: tuple[CarpoolMember, ...]


@dataclass(frozen=True, slots=True)
class ClockLink:
    """Parada e local associados a uma marcação de ponto."""

    cluster_id: Optional[str] = None
    location_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class LocationSuggestion:
    latitude: float
    longitude: float
    occurrence_count: int
    employee_names: tuple[str, ...]
    first_seen: datetime
    last_seen: datetime
    total_duration_seconds: int
    avg_accuracy: float
    sources: tuple[str, ...]
