"""
Casamento de coordenadas com locais cadastrados (cercas circulares).

Regra principal: distância ao centro <= raio + precisão do ponto; vence o
local mais próximo. Para clusters existe o voto por pontos: quando o
centróide cai fora de todas as cercas, conta-se a fração dos pontos brutos
que ficam dentro de cada uma.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

import numpy as np

from config import DEFAULT_ACCURACY_M, POINT_VOTING_MIN_RATIO
from geometry import haversine_m_array
from models import GpsFix, Location

logger = logging.getLogger(__name__)


def _point_arrays(
    fixes: Sequence[GpsFix],
    missing_accuracy: float = 0.0,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    lats = np.array([f.latitude for f in fixes], dtype=float)
    lngs = np.array([f.longitude for f in fixes], dtype=float)
    accs = np.array([f.accuracy if f.accuracy is not None else np.nan for f in fixes], dtype=float)
    return lats, lngs, np.nan_to_num(accs, nan=missing_accuracy)


def inside_geofence(location: Location, lats, lngs, accs) -> np.ndarray:
    """Máscara dos pontos dentro da cerca, cada um com sua própria precisão (NaN = 0)."""
    dist = haversine_m_array(np.asarray(lats, dtype=float), np.asarray(lngs, dtype=float),
                             location.latitude, location.longitude)
    return dist <= location.radius_m + np.nan_to_num(np.asarray(accs, dtype=float))


def count_points_inside(location: Location, fixes: Sequence[GpsFix]) -> int:
    if not fixes:
        return 0
    return int(np.count_nonzero(inside_geofence(location, *_point_arrays(fixes))))


class LocationMatcher:
    """Conjunto de locais ativos pré-carregado para uma execução."""

    def __init__(self, locations: Iterable[Location]):
        self.locations = [loc for loc in locations if loc.is_active]
        self._lat = np.array([loc.latitude for loc in self.locations], dtype=float)
        self._lng = np.array([loc.longitude for loc in self.locations], dtype=float)
        self._radius = np.array([loc.radius_m for loc in self.locations], dtype=float)

    def __len__(self):
        return len(self.locations)

    def match(self, latitude: float, longitude: float, accuracy: Optional[float] = 0.0) -> Optional[str]:
        """Local mais próximo cuja cerca (ajustada pela precisão) contém o ponto."""
        if not self.locations:
            return None
        dist = haversine_m_array(latitude, longitude, self._lat, self._lng)
        inside = dist <= self._radius + (accuracy or 0.0)
        if not inside.any():
            return None
        candidates = np.flatnonzero(inside)
        best = candidates[np.argmin(dist[candidates])]
        return self.locations[best].id

    def vote(self, fixes: Sequence[GpsFix]) -> Optional[str]:
        """
        Voto por pontos.

        Um local se qualifica quando pelo menos 30% dos pontos caem na sua
        cerca. Vence a maior fração; empate vai para o local mais perto do
        centróide simples dos pontos.
        """
        if not self.locations or not fixes:
            return None

        # Na segmentação, ponto sem precisão vale o padrão de 20 m
        lats, lngs, accs = _point_arrays(fixes, missing_accuracy=DEFAULT_ACCURACY_M)
        dist = haversine_m_array(lats[:, None], lngs[:, None], self._lat[None, :], self._lng[None, :])
        inside = dist <= self._radius[None, :] + accs[:, None]
        ratios = inside.sum(axis=0) / len(fixes)

        qualified = np.flatnonzero(ratios >= POINT_VOTING_MIN_RATIO)
        if qualified.size == 0:
            return None

        center_dist = haversine_m_array(lats.mean(), lngs.mean(), self._lat, self._lng)
        best = min(qualified, key=lambda i: (-ratios[i], center_dist[i]))
        logger.debug(
            "Voto por pontos: local %s com %.0f%% dos pontos",
            self.locations[best].id, ratios[best] * 100,
        )
        return self.locations[best].id

    def match_cluster(
        self,
        latitude: float,
        longitude: float,
        accuracy: float,
        fixes: Sequence[GpsFix],
    ) -> Optional[str]:
        """Centróide primeiro; voto por pontos só quando o centróide não casa."""
        return self.match(latitude, longitude, accuracy) or self.vote(fixes)
