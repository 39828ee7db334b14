"""
Thermal Engine - Heat Source Builder
====================================
Converts component power dissipation and resistive (Joule) heating into
per-element volumetric heat density Q [W/m³].

Author: Thermal Engine Developers
Version: 1.0.0
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
import hashlib

import numpy as np

from ..core.constants import PhysicalConstants
from ..core.errors import GeometryError
from ..utils.logger import get_logger


def trace_resistance(length_m: float, width_m: float, thickness_m: float,
                     temp_c: float = PhysicalConstants.REFERENCE_TEMP,
                     resistivity: float = PhysicalConstants.COPPER_RESISTIVITY,
                     tempco: float = PhysicalConstants.COPPER_TEMPCO) -> float:
    """Resistance of a rectangular conductor, corrected to ``temp_c``."""
    if width_m <= 0 or thickness_m <= 0 or length_m <= 0:
        raise GeometryError(f"Conductor dimensions must be positive "
                            f"(L={length_m}, w={width_m}, t={thickness_m})")
    rho = resistivity * (1.0 + tempco * (temp_c - PhysicalConstants.REFERENCE_TEMP))
    return rho * length_m / (width_m * thickness_m)


def joule_power(current_a: float, resistance_ohm: float) -> float:
    """P = I²R [W]."""
    return current_a ** 2 * resistance_ohm


def joule_power_density(current_a: float, resistance_ohm: float, volume_m3: float) -> float:
    """Q = I²R / V [W/m³]."""
    if volume_m3 <= 0:
        raise GeometryError(f"Heated volume must be positive, got {volume_m3}")
    return joule_power(current_a, resistance_ohm) / volume_m3


@dataclass(frozen=True)
class HeatSource:
    """
    Uniform volumetric heat density on a group of elements.

    ``time_table`` holds (time_s, scale) breakpoints interpolated linearly
    and held constant outside the table. ``tempco_per_c`` makes the density
    scale as (1 + α·(T - T_ref)) with the element temperature, which models
    resistive heating at constant current.
    """
    name: str
    element_ids: Tuple[int, ...]
    power_density_w_m3: float
    time_table: Tuple[Tuple[float, float], ...] = ()
    tempco_per_c: float = 0.0
    reference_temp_c: float = PhysicalConstants.REFERENCE_TEMP

    def __post_init__(self):
        object.__setattr__(self, 'element_ids', tuple(int(e) for e in self.element_ids))
        object.__setattr__(self, 'time_table', tuple((float(t), float(s)) for t, s in self.time_table))
        times = [t for t, _ in self.time_table]
        if any(b <= a for a, b in zip(times, times[1:])):
            raise ValueError(f"Heat source '{self.name}': time table must be strictly increasing")

    @property
    def is_time_varying(self) -> bool:
        return len(self.time_table) > 0

    @property
    def is_temperature_dependent(self) -> bool:
        return self.tempco_per_c != 0.0

    def scale_at(self, time_s: float) -> float:
        if not self.time_table:
            return 1.0
        times, scales = zip(*self.time_table)
        return float(np.interp(time_s, times, scales))

    def density_at(self, time_s: float = 0.0) -> float:
        return self.power_density_w_m3 * self.scale_at(time_s)

    def cache_token(self) -> str:
        h = hashlib.sha256(repr((self.name, self.element_ids, self.power_density_w_m3,
                                 self.time_table, self.tempco_per_c,
                                 self.reference_temp_c)).encode())
        return h.hexdigest()


@dataclass
class ComponentPower:
    """Electrical power dissipated by one component over its footprint elements."""
    reference: str
    power_w: float
    element_ids: Sequence[int] = field(default_factory=list)
    time_table: Tuple[Tuple[float, float], ...] = ()


@dataclass
class ConductorSegment:
    """A resistive conductor carrying a DC current (trace, bus bar, bond wire)."""
    reference: str
    current_a: float
    length_m: float
    width_m: float
    thickness_m: float
    element_ids: Sequence[int] = field(default_factory=list)
    resistivity: float = PhysicalConstants.COPPER_RESISTIVITY
    tempco: float = PhysicalConstants.COPPER_TEMPCO


class HeatSourceBuilder:
    """Builds HeatSource objects on a mesh. Never mutates the mesh."""

    def __init__(self, mesh):
        self.mesh = mesh
        self.logger = get_logger()

    def _volume(self, element_ids: Sequence[int]) -> float:
        ids = np.asarray(element_ids, dtype=np.int64)
        if ids.size == 0:
            return 0.0
        if ids.min() < 0 or ids.max() >= self.mesh.n_elements:
            raise GeometryError("Heat source references an element outside the mesh")
        return float(np.sum(self.mesh.element_volumes[ids]))

    def from_power(self, name: str, power_w: float, element_ids: Sequence[int],
                   volume_m3: Optional[float] = None,
                   time_table: Tuple[Tuple[float, float], ...] = ()) -> HeatSource:
        """
        Spread ``power_w`` uniformly as Q = P/V over the given elements.

        ``volume_m3`` defaults to the total element volume.

        Raises:
            GeometryError: If the occupied volume is not positive.
        """
        volume = self._volume(element_ids) if volume_m3 is None else volume_m3
        if volume <= 0:
            raise GeometryError(f"Heat source '{name}' occupies non-positive volume {volume}",
                                {'source': name, 'volume_m3': volume})
        return HeatSource(name, tuple(element_ids), power_w / volume, time_table)

    def from_components(self, components: Sequence[ComponentPower]) -> List[HeatSource]:
        sources = []
        for comp in components:
            if comp.power_w == 0:
                continue
            sources.append(self.from_power(comp.reference, comp.power_w, comp.element_ids,
                                           time_table=comp.time_table))
        total = sum(c.power_w for c in components)
        self.logger.debug(f"Built {len(sources)} component heat sources, total {total:.4f} W")
        return sources

    def from_conductor(self, segment: ConductorSegment,
                       temp_c: float = PhysicalConstants.REFERENCE_TEMP) -> HeatSource:
        """Joule source Q = I²R/V for a conductor; R is evaluated at ``temp_c``."""
        resistance = trace_resistance(segment.length_m, segment.width_m, segment.thickness_m,
                                      temp_c, segment.resistivity, segment.tempco)
        volume = self._volume(segment.element_ids)
        q = joule_power_density(segment.current_a, resistance, volume)
        return HeatSource(segment.reference, tuple(segment.element_ids), q,
                          tempco_per_c=segment.tempco, reference_temp_c=temp_c)

    def point_source(self, name: str, x: float, y: float, power_density_w_m3: float,
                     time_table: Tuple[Tuple[float, float], ...] = ()) -> HeatSource:
        """Source on the single element nearest to (x, y)."""
        element = self.mesh.find_element(x, y)
        return HeatSource(name, (element,), power_density_w_m3, time_table)

    def uniform(self, name: str, power_density_w_m3: float) -> HeatSource:
        return HeatSource(name, tuple(range(self.mesh.n_elements)), power_density_w_m3)

    def from_function(self, name: str, density_fn) -> List[HeatSource]:
        """One source per element with Q = density_fn(x_centroid, y_centroid)."""
        centroids = self.mesh.element_centroids
        values = np.asarray(density_fn(centroids[:, 0], centroids[:, 1]), dtype=np.float64)
        return [HeatSource(f"{name}[{e}]", (e,), float(q))
                for e, q in enumerate(np.broadcast_to(values, (self.mesh.n_elements,))) if q != 0.0]


def element_power_density(mesh, sources: Sequence[HeatSource], time_s: float = 0.0,
                          element_temps_c: Optional[np.ndarray] = None) -> np.ndarray:
    """Per-element Q [W/m³] from a list of sources (overlapping sources add)."""
    q = np.zeros(mesh.n_elements)
    for source in sources:
        ids = np.asarray(source.element_ids, dtype=np.int64)
        value = source.density_at(time_s)
        if source.is_temperature_dependent and element_temps_c is not None:
            value = value * (1.0 + source.tempco_per_c *
                             (np.asarray(element_temps_c)[ids] - source.reference_temp_c))
        np.add.at(q, ids, value)
    return q


def total_power(mesh, sources: Sequence[HeatSource], time_s: float = 0.0) -> float:
    """Integrated source power [W]."""
    return float(np.dot(element_power_density(mesh, sources, time_s), mesh.element_volumes))


__all__ = [
    'HeatSource',
    'ComponentPower',
    'ConductorSegment',
    'HeatSourceBuilder',
    'element_power_density',
    'total_power',
    'trace_resistance',
    'joule_power',
    'joule_power_density',
]
