"""
Detector de Paradas (clusters estacionários)
============================================
Varredura única, em ordem de captura, sobre os pontos de um turno:

- um cluster ATUAL acumula os pontos a até 50 m (descontada a precisão do
  ponto) do seu centróide ponderado;
- pontos fora dele formam um cluster TENTATIVO; se o tentativo atingir 3 min
  de permanência, o atual é fechado, a viagem entre os dois é montada com os
  pontos de TRÂNSITO e o tentativo vira o novo atual;
- intervalos sem sinal (> 15 min) fecham o cluster confirmado e descartam o
  tentativo sem gerar viagem; se os dados acabarem sem nova parada, o
  movimento depois do intervalo sai dessa última parada.

O estado da varredura é um de ``Idle``, ``Growing`` ou
``GrowingWithTentative``. Os resultados saem como eventos (``ClusterClosed``
e ``TripFound``) à medida que a varredura avança.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, Iterator, Optional, Union

from config import (
    CLUSTER_RADIUS_M, MIN_DWELL_SECONDS, MAX_ACCURACY_M,
    GPS_GAP_MINUTES, COHERENCE_MIN_MEMBERS,
)
from geometry import CentroidAccumulator, adjusted_distance_m, effective_accuracy
from location_matcher import LocationMatcher
from models import GpsFix, StationaryCluster, Trip
from trip_builder import Anchor, TripEnd, finalize_trip, record_id

logger = logging.getLogger(__name__)

GPS_GAP = timedelta(minutes=GPS_GAP_MINUTES)


class _Cluster:
    """Pontos de um cluster em formação e seu centróide incremental."""

    __slots__ = ("fixes", "centroid", "confirmed")

    def __init__(self, fix: GpsFix):
        self.fixes = []
        self.centroid = CentroidAccumulator()
        self.confirmed = False
        self.add(fix)

    def add(self, fix: GpsFix) -> None:
        self.fixes.append(fix)
        self.centroid.add(fix.latitude, fix.longitude, effective_accuracy(fix.accuracy))

    @property
    def count(self):
        return len(self.fixes)

    @property
    def started_at(self):
        return self.fixes[0].captured_at

    @property
    def last_at(self):
        return self.fixes[-1].captured_at

    @property
    def span_seconds(self) -> float:
        return (self.last_at - self.started_at).total_seconds()

    @property
    def dwell_met(self) -> bool:
        return self.span_seconds >= MIN_DWELL_SECONDS

    def distance_to(self, fix: GpsFix) -> float:
        return adjusted_distance_m(
            self.centroid.latitude, self.centroid.longitude,
            fix.latitude, fix.longitude, effective_accuracy(fix.accuracy),
        )

    def mean_distance_to(self, fix: GpsFix) -> float:
        lat, lng = self.centroid.mean()
        return adjusted_distance_m(lat, lng, fix.latitude, fix.longitude, effective_accuracy(fix.accuracy))


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Growing:
    cluster: _Cluster


@dataclass(frozen=True)
class GrowingWithTentative:
    cluster: _Cluster
    tentative: _Cluster


ScanState = Union[Idle, Growing, GrowingWithTentative]


@dataclass(frozen=True, slots=True)
class ClusterClosed:
    cluster: StationaryCluster


@dataclass(frozen=True, slots=True)
class TripFound:
    trip: Trip


Event = Union[ClusterClosed, TripFound]


def _chronological(fixes: Iterable[GpsFix]) -> list[GpsFix]:
    return sorted(fixes, key=lambda f: (f.captured_at, f.id))


class ClusterDetector:
    """
    Máquina de estados da varredura de um turno.

    ``feed`` recebe um ponto por vez e ``finish`` fecha o que estiver
    pendente no fim dos dados; ambos produzem eventos.
    """

    def __init__(self, shift_id: str, employee_id: str, matcher: LocationMatcher):
        self.shift_id = shift_id
        self.employee_id = employee_id
        self.matcher = matcher
        self.state: ScanState = Idle()
        self.transit: list[GpsFix] = []
        self.previous_end: Optional[TripEnd] = None
        self.last_fix: Optional[GpsFix] = None
        # Última parada confirmada já fechada: origem do trânsito final
        self.departure: Optional[Anchor] = None

    # ------------------------------------------------------------------
    # Fechamento de clusters e montagem de viagens
    # ------------------------------------------------------------------

    def _close(self, cluster: _Cluster) -> tuple[Anchor, Optional[ClusterClosed], list[GpsFix]]:
        """
        Fecha o cluster atual.

        Retorna o ponto de partida da próxima viagem, o evento do cluster
        (None se não atingiu a permanência mínima) e os pontos que voltam
        para o trânsito por não formarem parada.
        """
        if not (cluster.confirmed or cluster.dwell_met):
            # Parada curta demais: a viagem sai do primeiro ponto bruto
            return Anchor.from_fix(cluster.fixes[0]), None, list(cluster.fixes)

        c = cluster.centroid
        cluster_id = record_id("cluster", self.shift_id, cluster.started_at)
        closed = StationaryCluster(
            id=cluster_id,
            shift_id=self.shift_id,
            employee_id=self.employee_id,
            centroid_latitude=c.latitude,
            centroid_longitude=c.longitude,
            centroid_accuracy=c.accuracy,
            started_at=cluster.started_at,
            ended_at=cluster.last_at,
            gps_point_count=cluster.count,
            matched_location_id=self.matcher.match_cluster(c.latitude, c.longitude, c.accuracy, cluster.fixes),
            point_ids=tuple(f.id for f in cluster.fixes),
        )
        logger.debug(
            "Parada %s: %d pontos, %ds", cluster_id, closed.gps_point_count, closed.duration_seconds
        )
        departure = Anchor(c.latitude, c.longitude, c.accuracy, cluster.last_at, cluster_id)
        self.departure = departure
        return departure, ClusterClosed(closed), []

    def _emit_trip(self, start: Anchor, end: Anchor, points: list[GpsFix]) -> Iterator[Event]:
        trip = finalize_trip(
            start, end, points,
            shift_id=self.shift_id,
            employee_id=self.employee_id,
            matcher=self.matcher,
            previous_end=self.previous_end,
        )
        if trip is None:
            return
        self.previous_end = TripEnd(trip.end_location_id, trip.end_latitude, trip.end_longitude)
        yield TripFound(trip)

    # ------------------------------------------------------------------
    # Transições
    # ------------------------------------------------------------------

    def _promote(self, cluster: _Cluster, tentative: _Cluster) -> Iterator[Event]:
        departure, closed, leftover = self._close(cluster)
        if closed:
            yield closed

        tentative.confirmed = True
        c = tentative.centroid
        arrival = Anchor(
            c.latitude, c.longitude, c.accuracy, tentative.started_at,
            record_id("cluster", self.shift_id, tentative.started_at),
        )
        yield from self._emit_trip(departure, arrival, _chronological(leftover + self.transit))

        self.transit = []
        self.state = Growing(tentative)

    def _split(self, cluster: _Cluster, tentative: Optional[_Cluster], fix: GpsFix) -> Iterator[Event]:
        """O centróide ponderado derivou para um ponto médio falso: fecha e recomeça."""
        logger.debug("Divisão por coerência espacial em %s", fix.captured_at)
        departure, closed, leftover = self._close(cluster)
        if closed:
            yield closed

        unclaimed = leftover + self.transit
        if tentative is not None:
            unclaimed += tentative.fixes
        if unclaimed:
            yield from self._emit_trip(departure, Anchor.from_fix(fix), _chronological(unclaimed))

        # O trânsito até aqui já virou viagem
        self.departure = None
        self.transit = []
        self.state = Growing(_Cluster(fix))

    def _gap(self) -> Iterator[Event]:
        """
        Perda de sinal: fecha o cluster confirmado e descarta o resto sem viagem.

        A parada fechada continua como origem de um eventual trânsito final.
        """
        if not isinstance(self.state, Idle) and self.state.cluster.confirmed:
            _, closed, _ = self._close(self.state.cluster)
            yield closed
        self.transit = []
        self.state = Idle()

    def feed(self, fix: GpsFix) -> Iterator[Event]:
        if self.last_fix is not None and fix.captured_at - self.last_fix.captured_at > GPS_GAP:
            logger.debug("Intervalo sem sinal entre %s e %s", self.last_fix.captured_at, fix.captured_at)
            yield from self._gap()
        self.last_fix = fix

        state = self.state
        if isinstance(state, Idle):
            self.state = Growing(_Cluster(fix))
            return

        cluster = state.cluster
        tentative = state.tentative if isinstance(state, GrowingWithTentative) else None

        if cluster.distance_to(fix) <= CLUSTER_RADIUS_M:
            if cluster.count >= COHERENCE_MIN_MEMBERS and cluster.mean_distance_to(fix) > CLUSTER_RADIUS_M:
                yield from self._split(cluster, tentative, fix)
                return
            cluster.add(fix)
            if not cluster.confirmed and cluster.dwell_met:
                cluster.confirmed = True
            if tentative is not None:
                # Excursão curta que voltou: vira trânsito
                self.transit.extend(tentative.fixes)
            self.state = Growing(cluster)
            return

        if tentative is None:
            self.state = GrowingWithTentative(cluster, _Cluster(fix))
            return

        if tentative.distance_to(fix) <= CLUSTER_RADIUS_M:
            tentative.add(fix)
            if tentative.dwell_met:
                yield from self._promote(cluster, tentative)
            return

        self.transit.extend(tentative.fixes)
        self.state = GrowingWithTentative(cluster, _Cluster(fix))

    def finish(self) -> Iterator[Event]:
        """Fim dos dados (turno encerrado)."""
        state = self.state
        if isinstance(state, Idle):
            return

        cluster = state.cluster
        trailing = list(self.transit)
        if isinstance(state, GrowingWithTentative):
            trailing += state.tentative.fixes

        if cluster.confirmed or cluster.dwell_met:
            departure, closed, _ = self._close(cluster)
            yield closed
        elif self.departure is not None:
            # Movimento depois de um intervalo sem sinal, sem nova parada
            departure = self.departure
            trailing = cluster.fixes + trailing
        else:
            departure = None

        if departure is not None and trailing and self.last_fix is not None:
            yield from self._emit_trip(departure, Anchor.from_fix(self.last_fix), _chronological(trailing))

        self.departure = None
        self.transit = []
        self.state = Idle()


def detect_segments(
    fixes: Iterable[GpsFix],
    *,
    shift_id: str,
    employee_id: str,
    matcher: LocationMatcher,
    finalize: bool = True,
) -> Iterator[Event]:
    """
    Produz os eventos de parada e viagem de uma sequência de pontos já
    ordenada por horário de captura.

    Pontos com precisão pior que 200 m são descartados. Com
    ``finalize=False`` (turno ativo) o que está em aberto no fim dos dados
    fica para a próxima execução.
    """
    detector = ClusterDetector(shift_id, employee_id, matcher)
    dropped = 0
    for fix in fixes:
        if fix.accuracy is not None and fix.accuracy > MAX_ACCURACY_M:
            dropped += 1
            continue
        yield from detector.feed(fix)
    if dropped:
        logger.debug("%d pontos descartados por precisão acima de %.0f m", dropped, MAX_ACCURACY_M)
    if finalize:
        yield from detector.finish()
