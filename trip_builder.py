"""
Construção de viagens
=====================
Toda viagem (parada->parada, divisão por coerência, trânsito final) passa
por ``finalize_trip``: distância corrigida, filtro de distância mínima,
classificação do meio de transporte, filtros de viagem fantasma, confiança
e casamento dos extremos com locais.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from config import (
    DISTANCE_CORRECTION_FACTOR, MIN_TRIP_DISTANCE_KM, MIN_DRIVING_DISTANCE_KM,
    MIN_WALKING_DISPLACEMENT_KM, MIN_DRIVING_DISPLACEMENT_KM,
    STRAIGHTNESS_MAX_POINTS, MIN_STRAIGHTNESS_RATIO,
    LOW_ACCURACY_M, DEFAULT_CONFIDENCE, CONTINUITY_RADIUS_M,
)
from geometry import haversine_km, haversine_m
from location_matcher import LocationMatcher
from models import GpsFix, Trip, MODE_DRIVING, MODE_WALKING
from transport import classify_transport_mode

logger = logging.getLogger(__name__)

ID_NAMESPACE = uuid.UUID("6f1c3f4e-2b7a-4d4e-9a51-0c8e8c1d2b10")


@dataclass(frozen=True, slots=True)
class Anchor:
    """Extremo de uma viagem: centróide de parada ou ponto bruto."""

    latitude: float
    longitude: float
    accuracy: float
    at: datetime
    cluster_id: Optional[str] = None

    @classmethod
    def from_fix(cls, fix: GpsFix) -> "Anchor":
        return cls(fix.latitude, fix.longitude, fix.accuracy or 0.0, fix.captured_at)


@dataclass(frozen=True, slots=True)
class TripEnd:
    """Onde a viagem anterior terminou (para a continuidade de locais)."""

    location_id: Optional[str]
    latitude: float
    longitude: float


def record_id(kind: str, shift_id: str, *moments: datetime) -> str:
    """Identificador estável: a mesma entrada gera sempre o mesmo id."""
    key = ":".join([kind, str(shift_id)] + [m.isoformat() for m in moments])
    return str(uuid.uuid5(ID_NAMESPACE, key))


def ghost_trip_reason(
    transport_mode: str,
    distance_km: float,
    displacement_km: float,
    point_count: int,
) -> Optional[str]:
    """Motivo da rejeição como viagem fantasma, ou None se a viagem é válida."""
    if transport_mode == MODE_WALKING and displacement_km < MIN_WALKING_DISPLACEMENT_KM:
        return "caminhada sem deslocamento"
    if transport_mode == MODE_DRIVING:
        if distance_km < MIN_DRIVING_DISTANCE_KM:
            return "carro com distância curta"
        if displacement_km < MIN_DRIVING_DISPLACEMENT_KM:
            return "carro volta ao ponto de partida"
        if 0 < point_count <= STRAIGHTNESS_MAX_POINTS and distance_km > 0:
            if displacement_km / distance_km < MIN_STRAIGHTNESS_RATIO:
                return "deriva circular"
    return None


def confidence_score(points: Sequence[GpsFix]) -> tuple[float, int]:
    """(confiança, quantidade de pontos com precisão ruim)."""
    if not points:
        return DEFAULT_CONFIDENCE, 0
    low = sum(1 for p in points if p.accuracy is not None and p.accuracy > LOW_ACCURACY_M)
    return round(max(0.0, 1.0 - low / len(points)), 2), low


def _start_location(start: Anchor, matcher: LocationMatcher, previous_end: Optional[TripEnd]) -> Optional[str]:
    # Evita alternar entre duas cercas vizinhas numa mesma parada
    if previous_end is not None and previous_end.location_id is not None:
        gap_m = haversine_m(previous_end.latitude, previous_end.longitude, start.latitude, start.longitude)
        if gap_m < CONTINUITY_RADIUS_M:
            return previous_end.location_id
    return matcher.match(start.latitude, start.longitude, start.accuracy)


def finalize_trip(
    start: Anchor,
    end: Anchor,
    transit_points: Sequence[GpsFix],
    *,
    shift_id: str,
    employee_id: str,
    matcher: LocationMatcher,
    previous_end: Optional[TripEnd] = None,
) -> Optional[Trip]:
    """
    Monta a viagem entre ``start`` e ``end`` ou retorna None quando ela é
    descartada (duração não positiva, distância mínima ou viagem fantasma).
    """
    if end.at <= start.at:
        logger.debug("Viagem descartada: fim %s não é posterior ao início %s", end.at, start.at)
        return None

    displacement_km = haversine_km(start.latitude, start.longitude, end.latitude, end.longitude)
    distance_km = displacement_km * DISTANCE_CORRECTION_FACTOR

    if distance_km < MIN_TRIP_DISTANCE_KM:
        logger.debug("Viagem descartada: %.3f km abaixo do mínimo", distance_km)
        return None

    # Meio minuto arredonda para cima
    duration_minutes = max(1, int((end.at - start.at).total_seconds() / 60 + 0.5))
    mode = classify_transport_mode(distance_km, duration_minutes, transit_points)

    reason = ghost_trip_reason(mode, distance_km, displacement_km, len(transit_points))
    if reason:
        logger.debug("Viagem fantasma descartada (%s): %s -> %s", reason, start.at, end.at)
        return None

    confidence, low_accuracy = confidence_score(transit_points)

    return Trip(
        id=record_id("trip", shift_id, start.at, end.at),
        shift_id=shift_id,
        employee_id=employee_id,
        started_at=start.at,
        ended_at=end.at,
        start_latitude=start.latitude,
        start_longitude=start.longitude,
        end_latitude=end.latitude,
        end_longitude=end.longitude,
        distance_km=round(distance_km, 3),
        duration_minutes=duration_minutes,
        transport_mode=mode,
        confidence_score=confidence,
        gps_point_count=len(transit_points),
        low_accuracy_segments=low_accuracy,
        start_cluster_id=start.cluster_id,
        end_cluster_id=end.cluster_id,
        start_location_id=_start_location(start, matcher, previous_end),
        end_location_id=matcher.match(end.latitude, end.longitude, end.accuracy),
        point_ids=tuple(p.id for p in transit_points),
    )
