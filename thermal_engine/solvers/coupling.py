"""
Thermal Engine - Conduction/Radiation Coupling
==============================================
Linearized radiative boundary terms and the fixed-point iteration that
couples the radiosity solve to conduction.

Radiation enters the conduction system as a Robin-type diagonal plus load
per node, re-evaluated from the current temperatures on each pass. Kelvin
is used only inside the radiation formulas; the terms handed back to the
assembler are in °C.

Author: Thermal Engine Developers
Version: 1.0.0
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .radiation import SIGMA, RadiationEnclosure, RadiositySolver
from ..core.config import CouplingMode
from ..core.constants import SimulationDefaults, to_kelvin
from ..core.context import CancellationToken, RadiativeBC, resolve_nodes, robin_areas
from ..core.errors import ConvergenceError
from ..utils.logger import get_logger

BoundaryTerms = Dict[str, Tuple[np.ndarray, np.ndarray]]


@dataclass
class CouplingResult:
    """Outcome of one converged coupling loop."""
    temperatures: np.ndarray
    terms: BoundaryTerms
    iterations: int
    history: List[float] = field(default_factory=list)


class RadiationCoupler:
    """
    Builds radiative boundary terms and iterates them to a fixed point.

    Args:
        mesh: ThermalMesh
        radiative_bcs: RadiativeBC instances (exchange with surroundings)
        enclosure: Optional RadiationEnclosure (surface-to-surface exchange)
        node_emissivity: Per-node emissivity used where a BC or surface
            does not set its own
        mode: CouplingMode (ONCE or PER_STEP)
        tolerance_c: Convergence threshold on max |ΔT| between passes
        max_iterations: Iteration budget per coupling loop
        relaxation: Under-relaxation factor ω in (0, 1]
    """

    def __init__(self, mesh, radiative_bcs: Sequence[RadiativeBC] = (),
                 enclosure: Optional[RadiationEnclosure] = None,
                 node_emissivity: Optional[np.ndarray] = None,
                 mode: CouplingMode = CouplingMode.ONCE,
                 tolerance_c: float = SimulationDefaults.COUPLING_TOLERANCE_C,
                 max_iterations: int = SimulationDefaults.MAX_COUPLING_ITERATIONS,
                 relaxation: float = 1.0):
        self.mesh = mesh
        self.radiative_bcs = tuple(radiative_bcs)
        self.enclosure = enclosure
        self.node_emissivity = (np.ones(mesh.n_nodes) if node_emissivity is None
                                else np.asarray(node_emissivity, dtype=np.float64))
        self.mode = mode
        self.tolerance_c = tolerance_c
        self.max_iterations = max_iterations
        self.relaxation = relaxation
        self.radiosity = RadiositySolver()
        self.logger = get_logger()

        self._bc_geometry = [robin_areas(mesh, bc) for bc in self.radiative_bcs]
        self._surface_nodes: List[Optional[Tuple[np.ndarray, np.ndarray]]] = []
        if enclosure is not None:
            face = mesh.node_face_areas()
            for surface in enclosure.surfaces:
                if surface.nodes is None:
                    self._surface_nodes.append(None)
                    continue
                ids = resolve_nodes(mesh, surface.nodes)
                w = face[ids]
                self._surface_nodes.append((ids, w / w.sum()))

    @property
    def active(self) -> bool:
        return bool(self.radiative_bcs) or self.enclosure is not None

    # ------------------------------------------------------------------
    # Linearized terms
    # ------------------------------------------------------------------
    def radiative_terms(self, T: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """h_r·A and h_r·A·Ts with h_r = εσ(T² + Ts²)(T + Ts) in kelvin."""
        n = self.mesh.n_nodes
        diag = np.zeros(n)
        load = np.zeros(n)
        for bc, (ids, areas) in zip(self.radiative_bcs, self._bc_geometry):
            eps = self.node_emissivity[ids] if bc.emissivity is None else bc.emissivity
            tk = to_kelvin(T[ids])
            ts = float(to_kelvin(bc.surroundings_c))
            h_r = eps * SIGMA * (tk * tk + ts * ts) * (tk + ts)
            np.add.at(diag, ids, h_r * areas)
            np.add.at(load, ids, h_r * areas * bc.surroundings_c)
        return diag, load

    def surface_temperatures(self, T: np.ndarray) -> np.ndarray:
        """Area-weighted mean temperature of each enclosure surface (°C)."""
        temps = []
        for surface, nodes in zip(self.enclosure.surfaces, self._surface_nodes):
            temps.append(surface.temperature_c if nodes is None else float(np.dot(nodes[1], T[nodes[0]])))
        return np.array(temps)

    def surface_emissivities(self) -> np.ndarray:
        eps = []
        for surface, nodes in zip(self.enclosure.surfaces, self._surface_nodes):
            if surface.emissivity is not None:
                eps.append(surface.emissivity)
            else:
                eps.append(float(np.dot(nodes[1], self.node_emissivity[nodes[0]])))
        return np.array(eps)

    def enclosure_terms(self, T: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Net radiosity flux of each mesh-attached surface spread over its
        nodes, stabilized by the self-coupling h = 4εσT³.
        """
        n = self.mesh.n_nodes
        diag = np.zeros(n)
        load = np.zeros(n)
        enclosure = self.enclosure
        t_surf = self.surface_temperatures(T)
        eps = self.surface_emissivities()
        result = self.radiosity.solve(enclosure.view_factors, eps, t_surf, enclosure.surroundings_c)
        areas = enclosure.view_factors.areas
        for i, nodes in enumerate(self._surface_nodes):
            if nodes is None:
                continue
            ids, w = nodes
            node_area = areas[i] * w
            h_self = 4.0 * eps[i] * SIGMA * float(to_kelvin(t_surf[i])) ** 3
            np.add.at(diag, ids, h_self * node_area)
            np.add.at(load, ids, h_self * node_area * T[ids] - result.net_flux[i] * node_area)
        return diag, load

    def boundary_terms(self, T: np.ndarray) -> BoundaryTerms:
        terms: BoundaryTerms = {}
        if self.radiative_bcs:
            terms['radiative'] = self.radiative_terms(T)
        if self.enclosure is not None:
            terms['enclosure'] = self.enclosure_terms(T)
        return terms

    # ------------------------------------------------------------------
    # Fixed-point iteration
    # ------------------------------------------------------------------
    def iterate(self, solve: Callable[[BoundaryTerms, np.ndarray], np.ndarray], T0: np.ndarray,
                token: Optional[CancellationToken] = None) -> CouplingResult:
        """
        Alternate conduction solves and radiation updates until the largest
        temperature change drops below ``tolerance_c``.

        Args:
            solve: Maps (boundary terms, current iterate) to a conduction
                temperature field
            T0: Starting temperatures (°C)
            token: Optional cancellation token checked every pass

        Raises:
            ConvergenceError: With the last iterate and the ΔT history when
                the iteration budget is exhausted.
        """
        T = np.array(T0, dtype=np.float64)
        history: List[float] = []
        for iteration in range(1, self.max_iterations + 1):
            if token is not None:
                token.check(partial_result=T.copy(), completed=iteration - 1,
                            where="radiation coupling")
            terms = self.boundary_terms(T)
            T_new = solve(terms, T)
            change = float(np.max(np.abs(T_new - T))) if T.size else 0.0
            history.append(change)
            self.logger.log_convergence(iteration, change, self.tolerance_c)
            if change < self.tolerance_c:
                return CouplingResult(T_new, terms, iteration, history)
            T = T + self.relaxation * (T_new - T)

        raise ConvergenceError(
            f"Radiation coupling did not converge in {self.max_iterations} iterations "
            f"(last max |dT| = {history[-1]:.3e}°C, target {self.tolerance_c:.1e}°C)",
            iterations=self.max_iterations, residual=history[-1],
            last_iterate=T, history=history)


__all__ = ['BoundaryTerms', 'CouplingMode', 'CouplingResult', 'RadiationCoupler']
