import math
from dataclasses import asdict
from datetime import datetime, timedelta

import pytest
import sqlalchemy as sa

from database import get_engine, init_db, shifts, gps_points
from models import GpsFix

ORIGIN = (-23.5505, -46.6333)
T0 = datetime(2025, 3, 10, 8, 0, 0)
METERS_PER_DEG_LAT = 6_371_000.0 * math.pi / 180.0


def offset(north_m=0.0, east_m=0.0, origin=ORIGIN):
    """Coordenada deslocada em metros a partir da origem."""
    lat0, lng0 = origin
    lat = lat0 + north_m / METERS_PER_DEG_LAT
    lng = lng0 + east_m / (METERS_PER_DEG_LAT * math.cos(math.radians(lat0)))
    return lat, lng


class Track:
    """Gera pontos sintéticos em ordem de captura."""

    JITTER = [(1, 0), (0, 1), (-1, 0), (0, -1)]

    def __init__(self, shift_id="shift-1", employee_id="emp-1", start=T0, first_id=1):
        self.shift_id = shift_id
        self.employee_id = employee_id
        self.clock = start
        self.position = (0.0, 0.0)
        self.fixes = []
        self._next_id = first_id

    def fix(self, north_m, east_m, accuracy=5.0, at=None):
        lat, lng = offset(north_m, east_m)
        f = GpsFix(
            id=self._next_id,
            shift_id=self.shift_id,
            employee_id=self.employee_id,
            latitude=lat,
            longitude=lng,
            accuracy=accuracy,
            captured_at=at or self.clock,
        )
        self._next_id += 1
        self.fixes.append(f)
        return f

    def stay(self, north_m, east_m, duration_s, count, accuracy=5.0, jitter_m=0.0):
        start = self.clock
        for i in range(count):
            dn, de = self.JITTER[i % 4]
            self.clock = start + timedelta(seconds=duration_s * i / (count - 1))
            self.fix(north_m + dn * jitter_m, east_m + de * jitter_m, accuracy)
        self.position = (north_m, east_m)
        return self

    def move(self, north_m, east_m, duration_s, count, accuracy=10.0):
        """``count`` pontos intermediários; o relógio termina na chegada."""
        start = self.clock
        n0, e0 = self.position
        for k in range(1, count + 1):
            frac = k / (count + 1)
            self.clock = start + timedelta(seconds=duration_s * frac)
            self.fix(n0 + (north_m - n0) * frac, e0 + (east_m - e0) * frac, accuracy)
        self.clock = start + timedelta(seconds=duration_s)
        self.position = (north_m, east_m)
        return self

    def wait(self, seconds):
        self.clock += timedelta(seconds=seconds)
        return self


def a_to_b_track(**kwargs):
    """Parada em A (50 pontos, ~3 min), 10 min de carro por 8 km, 4 min em B."""
    track = Track(**kwargs)
    track.stay(0, 0, duration_s=196, count=50, accuracy=5.0)
    track.move(8000, 0, duration_s=600, count=19)
    track.stay(8000, 0, duration_s=240, count=25, accuracy=5.0)
    return track


@pytest.fixture
def track():
    return Track()


@pytest.fixture
def engine(tmp_path):
    eng = get_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def add_shift(engine):
    def _add(shift_id="shift-1", employee_id="emp-1", status="completed", **values):
        values.setdefault("clock_in_at", T0)
        with engine.begin() as conn:
            conn.execute(sa.insert(shifts).values(
                id=shift_id, employee_id=employee_id, status=status, **values,
            ))
    return _add


@pytest.fixture
def add_fixes(engine):
    def _add(fixes):
        with engine.begin() as conn:
            conn.execute(sa.insert(gps_points), [asdict(f) for f in fixes])
    return _add
