"""Moving Goldak double-ellipsoid heat source.

The source is a pure function of (point, time): the torch position comes from
arc-length interpolation along a polyline weld path at the configured travel
speed, and the power density follows Goldak's double ellipsoid

    q = 6 sqrt(3) f eta P / (a b c pi sqrt(pi))
        * exp(-3 dx^2 / c^2 - 3 dy^2 / a^2 - 3 dz^2 / b^2)

with ``f, c = f_front, c_front`` ahead of the torch (dx >= 0) and
``f_rear, c_rear`` behind it.  ``dz`` is measured from the torch plane into
the workpiece along ``depth_direction``; the flux is zero on the air side, so
with f_front + f_rear = 2 the integral over all space is exactly eta * P.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

import numpy as np
from numpy.typing import NDArray

logger = logging.getLogger(__name__)

_GOLDAK_COEFF = 6.0 * math.sqrt(3.0) / (math.pi * math.sqrt(math.pi))


@dataclass(frozen=True)
class WeldPath:
    """Polyline torch path traversed at a constant speed per segment.

    Parameters
    ----------
    points : (P, 3) vertex coordinates in meters.
    travel_speed : float or sequence of P-1 floats, m/s.
    start_time : arc-on time in seconds.
    dwell_time : arc duration for a single-point (stationary) path.
    corner_blend : length over which the travel direction is blended between
        adjacent segments around each interior vertex; 0 switches abruptly to
        the outgoing segment at the vertex.
    """
    points: NDArray[np.float64]
    travel_speed: Union[float, Sequence[float]] = 0.005
    start_time: float = 0.0
    dwell_time: float = 0.0
    corner_blend: float = 0.0
    _seg_dir: NDArray[np.float64] = field(init=False, repr=False, compare=False)
    _seg_len: NDArray[np.float64] = field(init=False, repr=False, compare=False)
    _cum_len: NDArray[np.float64] = field(init=False, repr=False, compare=False)
    _speeds: NDArray[np.float64] = field(init=False, repr=False, compare=False)
    _cum_time: NDArray[np.float64] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        pts = np.atleast_2d(np.asarray(self.points, dtype=float))
        if pts.shape[1] != 3 or pts.shape[0] == 0:
            raise ValueError(f"Weld path points must be (P, 3), got {pts.shape}")
        object.__setattr__(self, "points", pts)

        n_seg = pts.shape[0] - 1
        if n_seg == 0:
            if self.dwell_time <= 0.0:
                raise ValueError("A stationary (single-point) path needs a positive dwell_time")
            seg_vec = np.zeros((0, 3))
            speeds = np.zeros(0)
        else:
            seg_vec = np.diff(pts, axis=0)
            speeds = np.broadcast_to(
                np.asarray(self.travel_speed, dtype=float), (n_seg,)
            ).copy()
            if np.any(speeds <= 0.0):
                raise ValueError("Travel speed must be positive")

        seg_len = np.linalg.norm(seg_vec, axis=1)
        if np.any(seg_len <= 0.0):
            raise ValueError("Weld path contains zero-length segments")
        if self.corner_blend < 0.0:
            raise ValueError("corner_blend must be >= 0")

        seg_dir = seg_vec / seg_len[:, None] if n_seg else seg_vec
        object.__setattr__(self, "_seg_dir", seg_dir)
        object.__setattr__(self, "_seg_len", seg_len)
        object.__setattr__(self, "_cum_len", np.concatenate([[0.0], np.cumsum(seg_len)]))
        object.__setattr__(self, "_speeds", speeds)
        object.__setattr__(
            self, "_cum_time", np.concatenate([[0.0], np.cumsum(seg_len / speeds)]) if n_seg
            else np.array([0.0]),
        )

    @classmethod
    def straight(cls, start, end, travel_speed: float, start_time: float = 0.0) -> "WeldPath":
        return cls(np.array([start, end], dtype=float), travel_speed, start_time)

    @classmethod
    def stationary(cls, point, dwell_time: float, start_time: float = 0.0) -> "WeldPath":
        return cls(np.array([point], dtype=float), 0.0, start_time, dwell_time)

    @property
    def length(self) -> float:
        return float(self._cum_len[-1])

    @property
    def duration(self) -> float:
        if self._seg_len.size == 0:
            return float(self.dwell_time)
        return float(self._cum_time[-1])

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    def is_active(self, time: float) -> bool:
        return self.start_time <= time <= self.end_time

    def arc_length_at(self, time: float) -> float:
        """Distance travelled along the path at ``time`` (clamped to the path)."""
        if self._seg_len.size == 0:
            return 0.0
        i, s = self._locate(time)
        return float(self._cum_len[i] + s)

    def _locate(self, time: float) -> tuple[int, float]:
        local = min(max(time - self.start_time, 0.0), self.duration)
        n_seg = self._seg_len.size
        i = int(np.searchsorted(self._cum_time, local, side="right")) - 1
        i = min(max(i, 0), n_seg - 1)
        s = min(self._speeds[i] * (local - self._cum_time[i]), self._seg_len[i])
        return i, s

    def position_at(self, time: float) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Torch position and unit travel direction at ``time``."""
        if self._seg_len.size == 0:
            return self.points[0].copy(), np.array([1.0, 0.0, 0.0])

        i, s = self._locate(time)
        position = self.points[i] + self._seg_dir[i] * s
        direction = self._seg_dir[i].copy()

        half = 0.5 * self.corner_blend
        if half > 0.0:
            to_end = self._seg_len[i] - s
            if i < self._seg_len.size - 1 and to_end < half:
                w = 0.5 - to_end / self.corner_blend
                direction = (1.0 - w) * direction + w * self._seg_dir[i + 1]
            elif i > 0 and s < half:
                w = 0.5 - s / self.corner_blend
                direction = (1.0 - w) * direction + w * self._seg_dir[i - 1]
            norm = np.linalg.norm(direction)
            if norm > 0.0:
                direction = direction / norm
            else:
                direction = self._seg_dir[i].copy()
        return position, direction


@dataclass(frozen=True)
class HeatSourceSpec:
    """Goldak double-ellipsoid parameters plus the arc and torch path."""
    voltage: float                      # V
    current: float                      # A
    efficiency: float                   # arc efficiency eta in (0, 1]
    a: float                            # half-width (lateral), m
    b: float                            # depth, m
    c_front: float                      # front length, m
    c_rear: float                       # rear length, m
    path: WeldPath
    f_front: float = 0.6
    f_rear: float = 1.4
    depth_direction: tuple = (0.0, 0.0, -1.0)

    @property
    def power(self) -> float:
        """Arc power P = V * I in watts."""
        return self.voltage * self.current

    @property
    def effective_power(self) -> float:
        return self.efficiency * self.power

    def validate(self) -> None:
        if self.voltage <= 0.0 or self.current <= 0.0:
            raise ValueError("Arc voltage and current must be positive")
        if not 0.0 < self.efficiency <= 1.0:
            raise ValueError(f"Arc efficiency must be in (0, 1], got {self.efficiency}")
        if min(self.a, self.b, self.c_front, self.c_rear) <= 0.0:
            raise ValueError("Goldak semi-axes must be positive")
        if self.f_front <= 0.0 or self.f_rear <= 0.0:
            raise ValueError("Goldak fractions must be positive")
        if not math.isclose(self.f_front + self.f_rear, 2.0, rel_tol=1e-9):
            raise ValueError(
                f"f_front + f_rear must equal 2, got {self.f_front + self.f_rear}"
            )
        if np.linalg.norm(self.depth_direction) == 0.0:
            raise ValueError("depth_direction must be non-zero")


class GoldakHeatSource:
    """Volumetric power density of a moving double-ellipsoid source."""

    def __init__(self, spec: HeatSourceSpec) -> None:
        spec.validate()
        self.spec = spec
        depth = np.asarray(spec.depth_direction, dtype=float)
        self._depth = depth / np.linalg.norm(depth)
        q = spec.effective_power * _GOLDAK_COEFF / (spec.a * spec.b)
        self._q_front = q * spec.f_front / spec.c_front
        self._q_rear = q * spec.f_rear / spec.c_rear

    @property
    def start_time(self) -> float:
        return self.spec.path.start_time

    @property
    def end_time(self) -> float:
        return self.spec.path.end_time

    def is_active(self, time: float) -> bool:
        return self.spec.path.is_active(time)

    def local_frame(self, time: float) -> tuple[NDArray, NDArray, NDArray, NDArray]:
        """Torch centre and orthonormal (travel, lateral, depth) axes at ``time``."""
        centre, direction = self.spec.path.position_at(time)
        travel = direction - np.dot(direction, self._depth) * self._depth
        norm = np.linalg.norm(travel)
        if norm < 1e-12:
            # path runs along the depth axis; pick any perpendicular
            trial = np.array([1.0, 0.0, 0.0]) if abs(self._depth[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
            travel = trial - np.dot(trial, self._depth) * self._depth
            norm = np.linalg.norm(travel)
        travel = travel / norm
        lateral = np.cross(self._depth, travel)
        return centre, travel, lateral, self._depth

    def flux_at(self, points: NDArray[np.float64], time: float) -> NDArray[np.float64]:
        """Power density (W/m^3) at ``points`` shaped (..., 3)."""
        pts = np.asarray(points, dtype=float)
        if not self.is_active(time):
            return np.zeros(pts.shape[:-1])

        spec = self.spec
        centre, travel, lateral, depth = self.local_frame(time)
        rel = pts - centre
        dx = rel @ travel
        dy = rel @ lateral
        dz = rel @ depth

        front = dx >= 0.0
        c = np.where(front, spec.c_front, spec.c_rear)
        q0 = np.where(front, self._q_front, self._q_rear)
        arg = 3.0 * (dx / c) ** 2 + 3.0 * (dy / spec.a) ** 2 + 3.0 * (dz / spec.b) ** 2
        q = q0 * np.exp(-arg)
        return np.where(dz >= 0.0, q, 0.0)

    def total_power(self, time: float, n_points: int = 40, extent: float = 5.0) -> float:
        """Integrate ``flux_at`` over all space with tensor Gauss-Legendre quadrature.

        Each lobe is integrated separately over ``extent`` semi-axes, which
        truncates a negligible exp(-3 * extent**2) tail.
        """
        if not self.is_active(time):
            return 0.0
        spec = self.spec
        centre, travel, lateral, depth = self.local_frame(time)
        x, w = np.polynomial.legendre.leggauss(n_points)

        def _axis(lo: float, hi: float) -> tuple[NDArray, NDArray]:
            return 0.5 * (hi - lo) * x + 0.5 * (hi + lo), 0.5 * (hi - lo) * w

        ys, wy = _axis(-extent * spec.a, extent * spec.a)
        zs, wz = _axis(0.0, extent * spec.b)
        total = 0.0
        for lo, hi in ((0.0, extent * spec.c_front), (-extent * spec.c_rear, 0.0)):
            xs, wx = _axis(lo, hi)
            X, Y, Z = np.meshgrid(xs, ys, zs, indexing="ij")
            pts = (centre + X[..., None] * travel + Y[..., None] * lateral
                   + Z[..., None] * depth)
            weights = wx[:, None, None] * wy[None, :, None] * wz[None, None, :]
            total += float(np.sum(self.flux_at(pts, time) * weights))
        return total
