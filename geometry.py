"""
Primitivas geométricas: distância de grande círculo e centróide ponderado
pela precisão (inverso da variância).
"""

from __future__ import annotations

import math
from typing import Iterable, Optional

import numpy as np

from config import DEFAULT_ACCURACY_M

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distância em metros entre dois pontos lat/lon (graus)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_M * c


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_m(lat1, lon1, lat2, lon2) / 1000.0


def haversine_m_array(lat1, lon1, lat2, lon2) -> np.ndarray:
    """
    Versão vetorizada do haversine (metros).
    Aceita escalares ou arrays com formatos compatíveis para broadcasting,
    ex: pontos (n, 1) contra locais (1, m) -> matriz (n, m).
    """
    phi1 = np.radians(lat1)
    phi2 = np.radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = np.radians(np.asarray(lon2) - np.asarray(lon1))

    a = np.sin(d_phi / 2.0) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(d_lambda / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_M * np.arctan2(np.sqrt(a), np.sqrt(1.0 - a))


def effective_accuracy(accuracy: Optional[float]) -> float:
    """Precisão usada na segmentação; pontos sem precisão assumem o padrão."""
    if accuracy is None or math.isnan(accuracy):
        return DEFAULT_ACCURACY_M
    return float(accuracy)


def adjusted_distance_m(lat1: float, lon1: float, lat2: float, lon2: float, accuracy: float) -> float:
    """Distância descontada da incerteza do ponto, nunca negativa."""
    return max(haversine_m(lat1, lon1, lat2, lon2) - accuracy, 0.0)


class CentroidAccumulator:
    """
    Centróide ponderado incremental.

    Mantém somas corridas de v/acc e 1/acc (coordenadas) e 1/acc² (precisão
    resultante), com precisão mínima de 1 m. Cada ``add`` é O(1).
    Também acumula a média simples, usada na verificação de coerência.
    """

    __slots__ = ("count", "_sum_lat_w", "_sum_lng_w", "_sum_w", "_sum_w2", "_sum_lat", "_sum_lng")

    def __init__(self):
        self.count = 0
        self._sum_lat_w = 0.0
        self._sum_lng_w = 0.0
        self._sum_w = 0.0
        self._sum_w2 = 0.0
        self._sum_lat = 0.0
        self._sum_lng = 0.0

    def add(self, latitude: float, longitude: float, accuracy: float) -> None:
        acc = max(accuracy, 1.0)
        self.count += 1
        self._sum_lat_w += latitude / acc
        self._sum_lng_w += longitude / acc
        self._sum_w += 1.0 / acc
        self._sum_w2 += 1.0 / max(accuracy * accuracy, 1.0)
        self._sum_lat += latitude
        self._sum_lng += longitude

    @property
    def latitude(self) -> float:
        return self._sum_lat_w / self._sum_w

    @property
    def longitude(self) -> float:
        return self._sum_lng_w / self._sum_w

    @property
    def accuracy(self) -> float:
        return 1.0 / math.sqrt(self._sum_w2)

    def mean(self) -> tuple[float, float]:
        """Centróide sem peso (média simples das coordenadas)."""
        return self._sum_lat / self.count, self._sum_lng / self.count


def weighted_centroid(points: Iterable[tuple[float, float, float]]) -> tuple[float, float, float]:
    """Centróide (lat, lng, precisão) de tuplas (lat, lng, precisão)."""
    acc = CentroidAccumulator()
    for lat, lng, accuracy in points:
        acc.add(lat, lng, accuracy)
    if acc.count == 0:
        raise ValueError("centróide de conjunto vazio")
    return acc.latitude, acc.longitude, acc.accuracy
