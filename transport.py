"""
Classificação do meio de transporte de uma viagem (driving / walking / unknown).
"""

from typing import Optional, Sequence

from config import (
    DRIVING_MIN_AVG_KMH, WALKING_MAX_AVG_KMH, TIEBREAK_AVG_KMH,
    SLOW_SEGMENT_KMH, MAX_SEGMENT_KMH, SLOW_SEGMENT_RATIO, WALKING_MAX_DISTANCE_KM,
)
from geometry import haversine_km
from models import GpsFix, MODE_DRIVING, MODE_UNKNOWN, MODE_WALKING


def segment_speeds_kmh(points: Sequence[GpsFix]) -> list[float]:
    """
    Velocidades entre pontos consecutivos (km/h).
    Pares com tempo zero e segmentos >= 200 km/h (falha do sensor) são ignorados.
    """
    speeds = []
    for prev, cur in zip(points, points[1:]):
        elapsed_h = (cur.captured_at - prev.captured_at).total_seconds() / 3600.0
        if elapsed_h <= 0:
            continue
        speed = haversine_km(prev.latitude, prev.longitude, cur.latitude, cur.longitude) / elapsed_h
        if speed < MAX_SEGMENT_KMH:
            speeds.append(speed)
    return speeds


def classify_transport_mode(
    distance_km: Optional[float],
    duration_minutes: Optional[float],
    points: Sequence[GpsFix] = (),
) -> str:
    """
    Regras:
    - velocidade média > 10 km/h: driving
    - velocidade média < 4 km/h: walking
    - zona cinzenta: walking só se mais de 80% dos segmentos estão abaixo de
      5 km/h e a distância é menor que 1 km; senão driving (trânsito urbano
      com muitas paradas). Com menos de 2 segmentos, desempata em 6 km/h.
    """
    if distance_km is None or duration_minutes is None:
        return MODE_UNKNOWN
    if distance_km <= 0 or duration_minutes <= 0:
        return MODE_UNKNOWN

    avg_kmh = distance_km * 60.0 / duration_minutes

    if avg_kmh > DRIVING_MIN_AVG_KMH:
        return MODE_DRIVING
    if avg_kmh < WALKING_MAX_AVG_KMH:
        return MODE_WALKING

    speeds = segment_speeds_kmh(points)
    if len(speeds) < 2:
        return MODE_DRIVING if avg_kmh >= TIEBREAK_AVG_KMH else MODE_WALKING

    slow_ratio = sum(1 for s in speeds if s < SLOW_SEGMENT_KMH) / len(speeds)
    if slow_ratio > SLOW_SEGMENT_RATIO and distance_km < WALKING_MAX_DISTANCE_KM:
        return MODE_WALKING
    return MODE_DRIVING
