"""
Thermal Engine - Radiation Engine
=================================
View factors between grey diffuse surfaces and the radiosity solve.

View factors come from one of three sources:

- closed forms for axis-aligned rectangles (parallel opposed and
  perpendicular with a common edge) and concentric spheres/cylinders
- Monte Carlo ray tracing with cosine-weighted emission, one seeded random
  stream per emitting surface and a variance-based stopping rule
- a ray-cast hemicube with delta form factors for interactive use

Sampled matrices are balanced so that reciprocity A_i·F_ij = A_j·F_ji and
closure Σ_j F_ij = 1 hold to round-off. Results are cached per geometry.

Author: Thermal Engine Developers
Version: 1.0.0
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import hashlib
import threading

import numpy as np

from ..core.constants import PhysicalConstants, to_kelvin
from ..core.context import NodeSelector
from ..core.errors import SingularMatrixError
from ..utils.logger import get_logger, timed_function

SIGMA = PhysicalConstants.STEFAN_BOLTZMANN


# =============================================================================
# CLOSED-FORM VIEW FACTORS
# =============================================================================

def parallel_rectangles(a: float, b: float, c: float) -> float:
    """Aligned, directly opposed a×b rectangles separated by c."""
    X, Y = a / c, b / c
    x1, y1 = np.sqrt(1 + X * X), np.sqrt(1 + Y * Y)
    return float(2.0 / (np.pi * X * Y) * (
        np.log(x1 * y1 / np.sqrt(1 + X * X + Y * Y))
        + X * y1 * np.arctan(X / y1)
        + Y * x1 * np.arctan(Y / x1)
        - X * np.arctan(X)
        - Y * np.arctan(Y)
    ))


def perpendicular_rectangles(common: float, width_i: float, width_j: float) -> float:
    """
    F_ij between perpendicular rectangles sharing an edge of length
    ``common``; ``width_i`` and ``width_j`` are measured away from the edge.
    """
    H, W = width_j / common, width_i / common
    hw2 = H * H + W * W
    r = np.sqrt(hw2)
    a = (1 + W * W) * (1 + H * H) / (1 + hw2)
    b = (W * W * (1 + hw2) / ((1 + W * W) * hw2)) ** (W * W)
    c = (H * H * (1 + hw2) / ((1 + H * H) * hw2)) ** (H * H)
    return float(1.0 / (np.pi * W) * (
        W * np.arctan(1 / W) + H * np.arctan(1 / H) - r * np.arctan(1 / r)
        + 0.25 * np.log(a * b * c)
    ))


def concentric_spheres(r_inner: float, r_outer: float) -> np.ndarray:
    """2×2 view factors, inner surface first."""
    ratio = (r_inner / r_outer) ** 2
    return np.array([[0.0, 1.0], [ratio, 1.0 - ratio]])


def concentric_cylinders(r_inner: float, r_outer: float) -> np.ndarray:
    """2×2 view factors for infinitely long coaxial cylinders, inner first."""
    ratio = r_inner / r_outer
    return np.array([[0.0, 1.0], [ratio, 1.0 - ratio]])


# =============================================================================
# VIEW FACTOR MATRIX
# =============================================================================

@dataclass
class ViewFactorMatrix:
    """F[i, j]: fraction of radiation leaving surface i that reaches j."""
    F: np.ndarray
    areas: np.ndarray
    names: Tuple[str, ...] = ()
    method: str = "analytic"
    closed: bool = True
    std_error: Optional[np.ndarray] = None
    rays_per_surface: Optional[np.ndarray] = None

    def __post_init__(self):
        self.F = np.asarray(self.F, dtype=np.float64)
        self.areas = np.asarray(self.areas, dtype=np.float64)
        if not self.names:
            self.names = tuple(f"S{i}" for i in range(self.n))

    @property
    def n(self) -> int:
        return self.F.shape[0]

    def reciprocity_error(self) -> float:
        """max |A_i F_ij - A_j F_ji| relative to the largest exchange area."""
        G = self.areas[:, None] * self.F
        scale = max(float(np.abs(G).max()), 1e-300)
        return float(np.abs(G - G.T).max()) / scale

    def summation_error(self) -> float:
        """max |Σ_j F_ij - 1| (zero for open enclosures by definition)."""
        if not self.closed:
            return 0.0
        return float(np.abs(self.F.sum(axis=1) - 1.0).max())

    def enforce_closure(self, tolerance: float = 1e-12,
                        max_iterations: int = 10_000) -> 'ViewFactorMatrix':
        """
        Balanced copy satisfying reciprocity (and summation when closed).

        The exchange-area matrix G = diag(A)·F is symmetrized, then scaled
        symmetrically G ← diag(s)·G·diag(s) with s = sqrt(A / rowsum(G))
        until every row sums to its area.
        """
        A = self.areas
        G = A[:, None] * self.F
        G = 0.5 * (G + G.T)
        if self.closed:
            for iteration in range(max_iterations):
                rows = G.sum(axis=1)
                if np.any(rows <= 0):
                    raise ValueError("A surface of a closed enclosure sees no other surface")
                if np.abs(rows / A - 1.0).max() < tolerance:
                    break
                s = np.sqrt(A / rows)
                G = s[:, None] * G * s[None, :]
            else:
                get_logger().warning(f"View factor closure stopped after {max_iterations} "
                                     f"iterations (error {np.abs(G.sum(axis=1) / A - 1.0).max():.2e})")
            G = 0.5 * (G + G.T)
        return ViewFactorMatrix(G / A[:, None], A.copy(), self.names, self.method,
                                self.closed, self.std_error, self.rays_per_surface)

    def cache_token(self) -> str:
        h = hashlib.sha256(self.F.tobytes())
        h.update(self.areas.tobytes())
        h.update(repr((self.names, self.method, self.closed)).encode())
        return h.hexdigest()


# =============================================================================
# PLANAR SURFACES
# =============================================================================

@dataclass(frozen=True)
class PlanarSurface:
    """
    Convex planar polygon (vertices (k, 3) in metres). The emitting side is
    the one the right-hand-rule normal points to; surfaces are one-sided.
    """
    name: str
    vertices: np.ndarray

    def __post_init__(self):
        v = np.array(self.vertices, dtype=np.float64)
        if v.ndim != 2 or v.shape[1] != 3 or v.shape[0] < 3:
            raise ValueError(f"Surface '{self.name}' needs (k>=3, 3) vertices")
        v.setflags(write=False)
        object.__setattr__(self, 'vertices', v)
        # Newell's method
        nxt = np.roll(v, -1, axis=0)
        n = np.array([
            np.sum((v[:, 1] - nxt[:, 1]) * (v[:, 2] + nxt[:, 2])),
            np.sum((v[:, 2] - nxt[:, 2]) * (v[:, 0] + nxt[:, 0])),
            np.sum((v[:, 0] - nxt[:, 0]) * (v[:, 1] + nxt[:, 1])),
        ])
        norm = np.linalg.norm(n)
        if norm <= 0:
            raise ValueError(f"Surface '{self.name}' is degenerate")
        object.__setattr__(self, '_normal', n / norm)
        object.__setattr__(self, '_area', 0.5 * norm)

    @property
    def normal(self) -> np.ndarray:
        return self._normal

    @property
    def area(self) -> float:
        return self._area

    @property
    def centroid(self) -> np.ndarray:
        return self.vertices.mean(axis=0)

    def frame(self) -> np.ndarray:
        """Orthonormal (u, v, n) rows with u along the first edge."""
        u = self.vertices[1] - self.vertices[0]
        u = u - np.dot(u, self.normal) * self.normal
        u /= np.linalg.norm(u)
        return np.stack([u, np.cross(self.normal, u), self.normal])

    def _triangles(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        v = self.vertices
        origin = np.repeat(v[:1], len(v) - 2, axis=0)
        e1 = v[1:-1] - v[0]
        e2 = v[2:] - v[0]
        areas = 0.5 * np.linalg.norm(np.cross(e1, e2), axis=1)
        return origin, np.stack([e1, e2], axis=1), areas

    def sample_points(self, rng: np.random.Generator, n: int) -> np.ndarray:
        """Uniformly distributed points on the polygon."""
        origin, edges, areas = self._triangles()
        tri = rng.choice(len(areas), size=n, p=areas / areas.sum())
        r = rng.random((n, 2))
        flip = r.sum(axis=1) > 1.0
        r[flip] = 1.0 - r[flip]
        return origin[tri] + r[:, :1] * edges[tri, 0] + r[:, 1:] * edges[tri, 1]

    def subdivision_points(self, subdivisions: int) -> Tuple[np.ndarray, np.ndarray]:
        """Centroids of s² equal sub-triangles per fan triangle, with area weights."""
        s = max(1, int(subdivisions))
        bary = []
        for i in range(s):
            for j in range(s - i):
                bary.append(((i + 1.0 / 3.0) / s, (j + 1.0 / 3.0) / s))
                if i + j <= s - 2:
                    bary.append(((i + 2.0 / 3.0) / s, (j + 2.0 / 3.0) / s))
        bary = np.array(bary)
        origin, edges, areas = self._triangles()
        points, weights = [], []
        for t in range(len(areas)):
            points.append(origin[t] + bary[:, :1] * edges[t, 0] + bary[:, 1:] * edges[t, 1])
            weights.append(np.full(len(bary), areas[t] / len(bary)))
        weights = np.concatenate(weights)
        return np.concatenate(points), weights / weights.sum()

    def contains(self, points: np.ndarray, tol: float = 1e-12) -> np.ndarray:
        """Inside test for points already lying in the plane."""
        v = self.vertices
        inside = np.ones(points.shape[0], dtype=bool)
        scale = tol * max(np.ptp(v, axis=0).max(), 1e-300) ** 2
        for a, b in zip(v, np.roll(v, -1, axis=0)):
            inside &= np.cross(b - a, points - a) @ self.normal >= -scale
        return inside

    def intersect(self, origins: np.ndarray, directions: np.ndarray) -> np.ndarray:
        """Ray parameter of front-side hits (inf where missed)."""
        denom = directions @ self.normal
        t = np.full(origins.shape[0], np.inf)
        front = denom < -1e-14
        if not front.any():
            return t
        tt = ((self.vertices[0] - origins[front]) @ self.normal) / denom[front]
        ok = tt > 1e-12
        hit = np.zeros(front.sum(), dtype=bool)
        if ok.any():
            points = origins[front][ok] + tt[ok, None] * directions[front][ok]
            hit[np.flatnonzero(ok)] = self.contains(points)
        idx = np.flatnonzero(front)[hit]
        t[idx] = tt[hit]
        return t

    def geometry_token(self) -> bytes:
        return self.name.encode() + self.vertices.tobytes()

    # -- axis-aligned rectangle helpers used by the closed-form path --
    def axis(self) -> Optional[int]:
        ax = int(np.argmax(np.abs(self.normal)))
        return ax if abs(abs(self.normal[ax]) - 1.0) < 1e-12 else None

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.vertices.min(axis=0), self.vertices.max(axis=0)

    def is_axis_rectangle(self) -> bool:
        if len(self.vertices) != 4 or self.axis() is None:
            return False
        lo, hi = self.bounds()
        return abs(np.prod(np.delete(hi - lo, self.axis())) - self.area) <= 1e-9 * self.area


def box_surfaces(lx: float, ly: float, lz: float) -> List[PlanarSurface]:
    """Six inward-facing walls of an lx × ly × lz box: x-, x+, y-, y+, z-, z+."""
    p = np.array([[0, 0, 0], [lx, 0, 0], [lx, ly, 0], [0, ly, 0],
                  [0, 0, lz], [lx, 0, lz], [lx, ly, lz], [0, ly, lz]], dtype=np.float64)
    faces = {
        'x-': [0, 3, 7, 4][::-1], 'x+': [1, 2, 6, 5],
        'y-': [0, 1, 5, 4], 'y+': [3, 2, 6, 7][::-1],
        'z-': [0, 1, 2, 3], 'z+': [4, 5, 6, 7][::-1],
    }
    # Orient each face so its normal points into the box
    centre = p.mean(axis=0)
    surfaces = []
    for name, idx in faces.items():
        s = PlanarSurface(name, p[idx])
        if np.dot(centre - s.centroid, s.normal) < 0:
            s = PlanarSurface(name, p[idx[::-1]])
        surfaces.append(s)
    return surfaces


# =============================================================================
# VIEW FACTOR COMPUTATION
# =============================================================================

def _nearest_hits(surfaces: Sequence[PlanarSurface], origins: np.ndarray,
                  directions: np.ndarray) -> np.ndarray:
    """Index of the nearest surface hit by each ray, -1 when it escapes."""
    t = np.stack([s.intersect(origins, directions) for s in surfaces], axis=1)
    nearest = np.argmin(t, axis=1)
    nearest[~np.isfinite(t[np.arange(len(t)), nearest])] = -1
    return nearest


def _rectangle_pair(si: PlanarSurface, sj: PlanarSurface) -> float:
    ci, cj = si.centroid, sj.centroid
    if np.dot(si.normal, cj - ci) <= 1e-12 or np.dot(sj.normal, ci - cj) <= 1e-12:
        return 0.0
    p, q = si.axis(), sj.axis()
    lo_i, hi_i = si.bounds()
    lo_j, hi_j = sj.bounds()
    if p == q:
        others = [a for a in range(3) if a != p]
        if np.allclose(lo_i[others], lo_j[others]) and np.allclose(hi_i[others], hi_j[others]):
            ext = hi_i[others] - lo_i[others]
            return parallel_rectangles(ext[0], ext[1], abs(ci[p] - cj[p]))
    else:
        r = 3 - p - q
        shares_edge = (np.isclose(lo_i[r], lo_j[r]) and np.isclose(hi_i[r], hi_j[r])
                       and (np.isclose(cj[q], lo_i[q]) or np.isclose(cj[q], hi_i[q]))
                       and (np.isclose(ci[p], lo_j[p]) or np.isclose(ci[p], hi_j[p])))
        if shares_edge:
            return perpendicular_rectangles(hi_i[r] - lo_i[r], hi_i[q] - lo_i[q], hi_j[p] - lo_j[p])
    raise ValueError(f"No closed form for surfaces '{si.name}' and '{sj.name}'")


class AnalyticViewFactors:
    """Closed-form view factors for enclosures of axis-aligned rectangles."""

    def compute(self, surfaces: Sequence[PlanarSurface], closed: bool = True) -> ViewFactorMatrix:
        for s in surfaces:
            if not s.is_axis_rectangle():
                raise ValueError(f"Surface '{s.name}' is not an axis-aligned rectangle")
        n = len(surfaces)
        F = np.zeros((n, n))
        for i in range(n):
            for j in range(n):
                if i != j:
                    F[i, j] = _rectangle_pair(surfaces[i], surfaces[j])
        return ViewFactorMatrix(F, np.array([s.area for s in surfaces]),
                                tuple(s.name for s in surfaces), "analytic", closed)


class MonteCarloViewFactors:
    """
    Ray-traced view factors.

    Each emitting surface gets its own random stream spawned from ``seed``,
    so results do not depend on surface order or batch scheduling. Tracing
    from surface i stops once every estimated F_ij has variance
    F(1-F)/N below ``variance_threshold`` or ``n_rays`` is reached.
    """

    def __init__(self, n_rays: int = 200_000, batch_size: int = 20_000,
                 variance_threshold: float = 1e-6, seed: int = 0):
        self.n_rays = int(n_rays)
        self.batch_size = int(batch_size)
        self.variance_threshold = variance_threshold
        self.seed = seed
        self.logger = get_logger()

    @staticmethod
    def cosine_directions(rng: np.random.Generator, n: int, frame: np.ndarray) -> np.ndarray:
        """Lambertian (cosine-weighted) directions about frame[2]."""
        r1, r2 = rng.random(n), rng.random(n)
        phi = 2.0 * np.pi * r1
        sin_t = np.sqrt(r2)
        local = np.stack([np.cos(phi) * sin_t, np.sin(phi) * sin_t, np.sqrt(1.0 - r2)], axis=1)
        return local @ frame

    @timed_function("view_factors_monte_carlo")
    def compute(self, surfaces: Sequence[PlanarSurface], closed: bool = True) -> ViewFactorMatrix:
        n = len(surfaces)
        streams = np.random.SeedSequence(self.seed).spawn(n)
        F = np.zeros((n, n))
        std = np.zeros((n, n))
        used = np.zeros(n, dtype=np.int64)

        for i, surface in enumerate(surfaces):
            rng = np.random.default_rng(streams[i])
            frame = surface.frame()
            hits = np.zeros(n + 1)
            total = 0
            while total < self.n_rays:
                m = min(self.batch_size, self.n_rays - total)
                origins = surface.sample_points(rng, m)
                directions = self.cosine_directions(rng, m, frame)
                target = _nearest_hits(surfaces, origins, directions)
                hits += np.bincount(np.where(target < 0, n, target), minlength=n + 1)
                total += m
                estimate = hits[:n] / total
                if np.max(estimate * (1.0 - estimate) / total) <= self.variance_threshold:
                    break
            F[i] = hits[:n] / total
            std[i] = np.sqrt(F[i] * (1.0 - F[i]) / total)
            used[i] = total
            self.logger.debug(f"MC view factors: '{surface.name}' traced {total} rays, "
                              f"{hits[n] / total:.4f} escaped")

        return ViewFactorMatrix(F, np.array([s.area for s in surfaces]),
                                tuple(s.name for s in surfaces), "monte_carlo", closed,
                                std_error=std, rays_per_surface=used)


class HemicubeViewFactors:
    """
    Hemicube view factors by ray casting through the cell centres.

    Delta form factors are ΔA/(π(x²+y²+1)²) on the top face and
    z·ΔA/(π(y²+z²+1)²) on the side faces, normalized to sum to one. The
    source surface is sampled at ``source_subdivisions``² points per fan
    triangle and averaged by area.
    """

    def __init__(self, resolution: int = 64, source_subdivisions: int = 4):
        self.resolution = max(2, int(resolution) // 2 * 2)
        self.source_subdivisions = source_subdivisions
        self.directions, self.weights = self._cells()
        self.logger = get_logger()

    def _cells(self) -> Tuple[np.ndarray, np.ndarray]:
        res = self.resolution
        half = res // 2
        c = -1.0 + (np.arange(res) + 0.5) * 2.0 / res
        z = (np.arange(half) + 0.5) / half

        x, y = np.meshgrid(c, c)
        x, y = x.ravel(), y.ravel()
        dirs = [np.stack([x, y, np.ones_like(x)], axis=1)]
        weights = [(2.0 / res) ** 2 / (np.pi * (x * x + y * y + 1.0) ** 2)]

        a, h = np.meshgrid(c, z)
        a, h = a.ravel(), h.ravel()
        side_w = h * (2.0 / res) * (1.0 / half) / (np.pi * (a * a + h * h + 1.0) ** 2)
        one = np.ones_like(a)
        for d in (np.stack([one, a, h], axis=1), np.stack([-one, a, h], axis=1),
                  np.stack([a, one, h], axis=1), np.stack([a, -one, h], axis=1)):
            dirs.append(d)
            weights.append(side_w)

        dirs = np.concatenate(dirs)
        dirs /= np.linalg.norm(dirs, axis=1)[:, None]
        weights = np.concatenate(weights)
        return dirs, weights / weights.sum()

    @timed_function("view_factors_hemicube")
    def compute(self, surfaces: Sequence[PlanarSurface], closed: bool = True) -> ViewFactorMatrix:
        n = len(surfaces)
        F = np.zeros((n, n))
        for i, surface in enumerate(surfaces):
            world = self.directions @ surface.frame()
            points, point_weights = surface.subdivision_points(self.source_subdivisions)
            for p, pw in zip(points, point_weights):
                origins = np.repeat(p[None, :], len(world), axis=0)
                target = _nearest_hits(surfaces, origins, world)
                seen = target >= 0
                F[i] += pw * np.bincount(target[seen], weights=self.weights[seen], minlength=n)
        return ViewFactorMatrix(F, np.array([s.area for s in surfaces]),
                                tuple(s.name for s in surfaces), "hemicube", closed)


class ViewFactorCache:
    """Thread-safe LRU of view-factor matrices keyed by geometry hash."""

    def __init__(self, max_entries: int = 16):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, ViewFactorMatrix]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def geometry_key(surfaces: Sequence[PlanarSurface], method: str, params: Tuple) -> str:
        h = hashlib.sha256(method.encode())
        h.update(repr(params).encode())
        for s in surfaces:
            h.update(s.geometry_token())
        return h.hexdigest()

    def get_or_compute(self, key: str, compute: Callable[[], ViewFactorMatrix]) -> ViewFactorMatrix:
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
                self.hits += 1
                return self._entries[key]
            self.misses += 1
        # Computed outside the lock; concurrent misses on one key both compute
        value = compute()
        with self._lock:
            self._entries[key] = value
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        return value

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


_view_factor_cache = ViewFactorCache()


def get_view_factor_cache() -> ViewFactorCache:
    return _view_factor_cache


def compute_view_factors(surfaces: Sequence[PlanarSurface], config=None, closed: bool = True,
                         cache: Optional[ViewFactorCache] = None) -> ViewFactorMatrix:
    """
    View factors for a set of surfaces using ``config.method``.

    Args:
        surfaces: Enclosure walls
        config: RadiationConfig (defaults apply when None)
        closed: Whether the surfaces form a closed enclosure
        cache: Cache to use (the module cache by default)
    """
    from ..core.config import RadiationConfig

    config = config or RadiationConfig()
    cache = cache if cache is not None else _view_factor_cache

    if config.method == "analytic":
        engine, params = AnalyticViewFactors(), ()
    elif config.method == "monte_carlo":
        engine = MonteCarloViewFactors(config.n_rays, config.batch_size,
                                       config.variance_threshold, config.seed)
        params = (config.n_rays, config.batch_size, config.variance_threshold, config.seed)
    elif config.method == "hemicube":
        engine = HemicubeViewFactors(config.hemicube_resolution, config.source_subdivisions)
        params = (config.hemicube_resolution, config.source_subdivisions)
    else:
        raise ValueError(f"Unknown view factor method: {config.method}")

    params = params + (closed, config.enforce_closure, config.closure_tolerance)
    key = cache.geometry_key(surfaces, config.method, params)

    def _compute() -> ViewFactorMatrix:
        vf = engine.compute(surfaces, closed=closed)
        if config.enforce_closure:
            vf = vf.enforce_closure(config.closure_tolerance, config.max_closure_iterations)
        get_logger().debug(f"View factors ({config.method}): {vf.n} surfaces, "
                           f"reciprocity={vf.reciprocity_error():.2e}, "
                           f"summation={vf.summation_error():.2e}")
        return vf

    return cache.get_or_compute(key, _compute)


# =============================================================================
# RADIOSITY
# =============================================================================

@dataclass
class RadiosityResult:
    """Per-surface radiosity, irradiation and net flux (positive = leaving)."""
    radiosity: np.ndarray  # J [W/m²]
    irradiation: np.ndarray  # H [W/m²]
    net_flux: np.ndarray  # q = J - H [W/m²]
    areas: np.ndarray

    @property
    def net_power(self) -> np.ndarray:
        return self.net_flux * self.areas


class RadiositySolver:
    """
    Solves [I - (1-ε)·F]·J = ε·σ·T⁴ + (1-ε)·(1-Σ_j F_ij)·σ·Ts⁴.

    The last term is the surroundings seen through the openings of an open
    enclosure (Ts = 0 K when no surroundings temperature is given).

    Raises:
        SingularMatrixError: If a group of perfect reflectors (ε = 0) only
            sees itself, so that its radiosity is undetermined.
    """

    
    @staticmethod
    def unanchored_surfaces(F: np.ndarray, eps: np.ndarray, opening: np.ndarray) -> np.ndarray:
        """Surfaces that reach no emitter and no opening through F."""
        anchored = (eps > 0.0) | (opening > 1e-12)
        while True:
            grown = anchored | (F[:, anchored] > 0.0).any(axis=1)
            if grown.sum() == anchored.sum():
                return np.flatnonzero(~anchored)
            anchored = grown

    def solve(self, vf: ViewFactorMatrix, emissivity, temperatures_c,
              surroundings_c: Optional[float] = None) -> RadiosityResult:
        n = vf.n
        eps = np.broadcast_to(np.asarray(emissivity, dtype=np.float64), (n,))
        eb = SIGMA * to_kelvin(np.broadcast_to(np.asarray(temperatures_c, dtype=np.float64), (n,))) ** 4
        opening = np.clip(1.0 - vf.F.sum(axis=1), 0.0, None) if not vf.closed else np.zeros(n)
        e_sur = 0.0 if surroundings_c is None else SIGMA * float(to_kelvin(surroundings_c)) ** 4

        floating = self.unanchored_surfaces(vf.F, eps, opening)
        if floating.size:
            names = [vf.names[i] for i in floating]
            raise SingularMatrixError(
                f"Radiosity of reflecting surfaces {names} is undetermined: they have zero "
                f"emissivity and exchange only with each other",
                n_components=1, unanchored_components=[names])

        A = np.eye(n) - (1.0 - eps)[:, None] * vf.F
        rhs = eps * eb + (1.0 - eps) * opening * e_sur
        try:
            J = np.linalg.solve(A, rhs)
        except np.linalg.LinAlgError as e:
            raise SingularMatrixError(f"Radiosity system is singular: {e}", n_components=None) from e
        H = vf.F @ J + opening * e_sur
        return RadiosityResult(J, H, J - H, vf.areas.copy())


# =============================================================================
# ENCLOSURES COUPLED TO THE MESH
# =============================================================================

@dataclass(frozen=True)
class EnclosureSurface:
    """
    One enclosure wall: either attached to mesh nodes (its temperature is
    their area-weighted mean) or held at a fixed temperature.
    """
    name: str
    emissivity: Optional[float] = None  # None = from adjacent mesh elements
    nodes: Optional[NodeSelector] = None
    temperature_c: Optional[float] = None

    def __post_init__(self):
        if (self.nodes is None) == (self.temperature_c is None):
            raise ValueError(f"Enclosure surface '{self.name}' needs exactly one of nodes or temperature_c")
        if self.nodes is None and self.emissivity is None:
            raise ValueError(f"Fixed-temperature surface '{self.name}' needs an emissivity")
        if self.nodes is not None and not isinstance(self.nodes, str):
            object.__setattr__(self, 'nodes', tuple(int(i) for i in self.nodes))


@dataclass(frozen=True)
class RadiationEnclosure:
    """Surfaces (in view-factor order) exchanging radiation through F."""
    surfaces: Tuple[EnclosureSurface, ...]
    view_factors: ViewFactorMatrix
    surroundings_c: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, 'surfaces', tuple(self.surfaces))
        if len(self.surfaces) != self.view_factors.n:
            raise ValueError(f"Enclosure has {len(self.surfaces)} surfaces but the view factor "
                             f"matrix is {self.view_factors.n}×{self.view_factors.n}")

    def cache_token(self) -> str:
        h = hashlib.sha256(self.view_factors.cache_token().encode())
        h.update(repr((self.surfaces, self.surroundings_c)).encode())
        return h.hexdigest()


__all__ = [
    'SIGMA',
    'parallel_rectangles',
    'perpendicular_rectangles',
    'concentric_spheres',
    'concentric_cylinders',
    'ViewFactorMatrix',
    'PlanarSurface',
    'box_surfaces',
    'AnalyticViewFactors',
    'MonteCarloViewFactors',
    'HemicubeViewFactors',
    'ViewFactorCache',
    'get_view_factor_cache',
    'compute_view_factors',
    'RadiosityResult',
    'RadiositySolver',
    'EnclosureSurface',
    'RadiationEnclosure',
]
