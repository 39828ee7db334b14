"""
Thermal Engine - Simulation Context
===================================
Everything one solve needs, passed explicitly: mesh, materials, heat sources,
boundary conditions and solver configuration. Contexts are never mutated by
the solvers; UQ samples and refinement levels each build their own.

Author: Thermal Engine Developers
Version: 1.0.0
"""

from dataclasses import dataclass, field, replace, asdict
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union
import hashlib
import json
import threading

import numpy as np

from .config import SolverConfig, CouplingMode
from .constants import ThermalMaterial
from .errors import CancellationError, GeometryError

NodeSelector = Union[str, Tuple[int, ...]]


def _normalize_nodes(nodes) -> NodeSelector:
    if isinstance(nodes, str):
        return nodes
    return tuple(int(n) for n in np.asarray(nodes).ravel())


def resolve_nodes(mesh, nodes: NodeSelector) -> np.ndarray:
    """Node ids for a named node set or an explicit id sequence."""
    if isinstance(nodes, str):
        return mesh.get_node_set(nodes)
    ids = np.asarray(nodes, dtype=np.int64)
    if ids.size and (ids.min() < 0 or ids.max() >= mesh.n_nodes):
        raise GeometryError("Boundary condition references a node outside the mesh")
    return np.unique(ids)


# =============================================================================
# BOUNDARY CONDITIONS
# =============================================================================

@dataclass(frozen=True)
class DirichletBC:
    """Fixed temperature on a node set."""
    nodes: NodeSelector
    temperature_c: float

    def __post_init__(self):
        object.__setattr__(self, 'nodes', _normalize_nodes(self.nodes))


@dataclass(frozen=True)
class ConvectiveBC:
    """
    Newton cooling q = h·(T - T_ambient) on a node set.

    ``surface='edge'`` applies it to the side walls along boundary edges
    (edge length × thickness); ``surface='face'`` applies it to the in-plane
    faces of the nodes, ``sides`` times (2 = top and bottom).
    """
    nodes: NodeSelector
    h: float  # W/(m²·K)
    ambient_c: float
    surface: str = "edge"
    sides: int = 1

    def __post_init__(self):
        object.__setattr__(self, 'nodes', _normalize_nodes(self.nodes))
        if self.surface not in ("edge", "face"):
            raise ValueError(f"Unknown surface type: {self.surface}")
        if self.h < 0:
            raise ValueError(f"Convection coefficient must be >= 0, got {self.h}")


@dataclass(frozen=True)
class RadiativeBC:
    """
    Grey-body exchange with large surroundings, q = εσ(T⁴ - Ts⁴).

    ``emissivity=None`` uses the emissivity of the adjacent elements.
    """
    nodes: NodeSelector
    surroundings_c: float
    emissivity: Optional[float] = None
    surface: str = "face"
    sides: int = 1

    def __post_init__(self):
        object.__setattr__(self, 'nodes', _normalize_nodes(self.nodes))
        if self.surface not in ("edge", "face"):
            raise ValueError(f"Unknown surface type: {self.surface}")
        if self.emissivity is not None and not 0.0 <= self.emissivity <= 1.0:
            raise ValueError(f"Emissivity must be in [0, 1], got {self.emissivity}")


BoundaryCondition = Union[DirichletBC, ConvectiveBC, RadiativeBC]


def robin_areas(mesh, bc) -> Tuple[np.ndarray, np.ndarray]:
    """(node ids, exposed area per node) for a convective or radiative BC."""
    ids = resolve_nodes(mesh, bc.nodes)
    if bc.surface == "face":
        areas = mesh.node_face_areas()[ids] * bc.sides
    else:
        areas = mesh.node_edge_areas(ids)[ids] * bc.sides
    return ids, areas


# =============================================================================
# CANCELLATION
# =============================================================================

class CancellationToken:
    """Cooperative cancellation flag shared with a host job scheduler."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, partial_result: Any = None, completed: int = 0, where: str = ""):
        """Raise CancellationError if cancellation was requested."""
        if self._event.is_set():
            suffix = f" during {where}" if where else ""
            raise CancellationError(f"Cancelled{suffix} after {completed} completed unit(s)",
                                    partial_result=partial_result, completed=completed)


# =============================================================================
# CONTEXT
# =============================================================================

@dataclass(frozen=True)
class SimulationContext:
    """Immutable inputs of one solve."""
    mesh: Any  # ThermalMesh
    materials: Mapping[str, ThermalMaterial]
    heat_sources: Tuple[Any, ...] = ()  # HeatSource
    boundary_conditions: Tuple[BoundaryCondition, ...] = ()
    config: SolverConfig = field(default_factory=SolverConfig)
    enclosure: Any = None  # RadiationEnclosure
    initial_temperature: Optional[np.ndarray] = None  # per-node °C, overrides config

    def __post_init__(self):
        object.__setattr__(self, 'heat_sources', tuple(self.heat_sources))
        object.__setattr__(self, 'boundary_conditions', tuple(self.boundary_conditions))
        object.__setattr__(self, 'materials', dict(self.materials))

    @property
    def has_radiation(self) -> bool:
        return self.enclosure is not None or any(
            isinstance(bc, RadiativeBC) for bc in self.boundary_conditions)

    def bcs_of_type(self, bc_type) -> Tuple:
        return tuple(bc for bc in self.boundary_conditions if isinstance(bc, bc_type))

    def with_changes(self, **changes) -> 'SimulationContext':
        return replace(self, **changes)

    def with_config(self, **changes) -> 'SimulationContext':
        return replace(self, config=replace(self.config, **changes))

    def validate(self):
        """Check the context is solvable; raises GeometryError or ValueError."""
        self.mesh.validate(self.materials)
        self.config.validate()
        mode = self.config.coupling
        if self.has_radiation:
            if mode is None:
                raise ValueError(
                    "Context has radiative boundaries but no coupling mode; "
                    "set SolverConfig.coupling_mode to 'once' or 'per_step'")
            if mode is CouplingMode.DISABLED:
                raise ValueError("Radiative boundaries present but coupling_mode is 'disabled'")
        for source in self.heat_sources:
            ids = np.asarray(source.element_ids)
            if ids.size and (ids.min() < 0 or ids.max() >= self.mesh.n_elements):
                raise GeometryError(f"Heat source '{source.name}' references an element outside the mesh")
        if self.initial_temperature is not None and np.shape(self.initial_temperature) != (self.mesh.n_nodes,):
            raise ValueError("Initial temperature must have one value per node")

    def initial_field(self) -> np.ndarray:
        if self.initial_temperature is not None:
            return np.array(self.initial_temperature, dtype=np.float64)
        return np.full(self.mesh.n_nodes, self.config.initial_temperature_c)

    def cache_key(self) -> str:
        """SHA-256 over mesh, materials, sources, boundary conditions and config."""
        h = hashlib.sha256()
        h.update(self.mesh.content_hash().encode())
        materials = {k: v.to_dict() for k, v in sorted(self.materials.items())}
        h.update(json.dumps(materials, sort_keys=True, default=str).encode())
        for source in self.heat_sources:
            h.update(source.cache_token().encode())
        for bc in self.boundary_conditions:
            h.update(f"{type(bc).__name__}{sorted(asdict(bc).items())}".encode())
        h.update(json.dumps(asdict(self.config), sort_keys=True, default=str).encode())
        if self.enclosure is not None:
            h.update(self.enclosure.cache_token().encode())
        if self.initial_temperature is not None:
            h.update(np.ascontiguousarray(self.initial_temperature, dtype=np.float64).tobytes())
        return h.hexdigest()


__all__ = [
    'DirichletBC',
    'ConvectiveBC',
    'RadiativeBC',
    'BoundaryCondition',
    'CancellationToken',
    'SimulationContext',
    'resolve_nodes',
    'robin_areas',
]
