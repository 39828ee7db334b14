"""
Thermal Engine - Transient Integrators
======================================
Explicit (forward Euler, lumped mass) and implicit (backward Euler) time
stepping of M·dT/dt + K·T = f.

Author: Thermal Engine Developers
Version: 1.0.0
"""

from typing import Optional

import numpy as np

from .assembler import AssembledSystem, apply_dirichlet
from .steady_state import LinearSolver
from ..core.constants import SimulationDefaults
from ..core.errors import StabilityError
from ..utils.logger import get_logger


def explicit_stability_limit(system: AssembledSystem) -> float:
    """
    Largest stable forward-Euler step for the free nodes.

    Uses the Gershgorin bound dt < 2·M_ii / (K_ii + Σ_j≠i |K_ij|), so the value
    depends on the discretization. On a uniform grid of spacing h the interior
    bound is h²/(4κ) for the FDM five-point stencil and 3h²/(8κ) for lumped
    Quad4 FEM.
    """
    free = system.free_mask
    if not free.any():
        return np.inf
    K_ff = system.K[free][:, free].tocsr()
    diag = K_ff.diagonal()
    abs_rows = np.asarray(abs(K_ff).sum(axis=1)).ravel()
    spread = diag + (abs_rows - np.abs(diag))
    m = system.lumped_mass[free]
    active = spread > 0
    if not active.any():
        return np.inf
    return float(np.min(2.0 * m[active] / spread[active]))


class ExplicitIntegrator:
    """
    T_new = T + dt·M⁻¹·(f - K·T) with a lumped (diagonal) M.

    Raises:
        StabilityError: At construction (or on a system update) if
            dt is not strictly below the stability limit.
    """

    def __init__(self, system: AssembledSystem, dt: float):
        self.dt = dt
        self.logger = get_logger()
        self.update_system(system)

    def update_system(self, system: AssembledSystem):
        limit = explicit_stability_limit(system)
        if self.dt >= limit:
            raise StabilityError(
                f"Explicit time step dt={self.dt:.6g}s is not below the stability "
                f"limit {limit:.6g}s of this discretization (uniform grid of spacing h: "
                f"h²/(4κ) for FDM, 3h²/(8κ) for lumped Quad4 FEM); "
                f"reduce dt or use the implicit integrator",
                dt=self.dt, dt_limit=limit)
        self.system = system
        self.dt_limit = limit
        self._inv_m = 1.0 / system.lumped_mass

    def step(self, T: np.ndarray) -> np.ndarray:
        s = self.system
        T_new = T + self.dt * self._inv_m * (s.f - s.K @ T)
        T_new[s.dirichlet_nodes] = s.dirichlet_values
        return T_new


class ImplicitIntegrator:
    """
    Backward Euler: (M + dt·K)·T_new = M·T_old + dt·f.

    Unconditionally stable. The matrix is factorized (or preconditioned)
    once per system update, so constant-coefficient runs cost one
    back-substitution per step.
    """

    def __init__(self, system: AssembledSystem, dt: float,
                 linear_solver: str = "direct",
                 tolerance: float = SimulationDefaults.LINEAR_TOLERANCE,
                 max_iterations: int = SimulationDefaults.MAX_LINEAR_ITERATIONS):
        if dt <= 0:
            raise ValueError(f"Time step must be positive, got {dt}")
        self.dt = dt
        self.linear_solver = linear_solver
        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.update_system(system)

    def update_system(self, system: AssembledSystem):
        A = (system.M + self.dt * system.K).tocsr()
        x_d = np.zeros(system.n)
        x_d[system.dirichlet_nodes] = system.dirichlet_values
        self._lift = A @ x_d
        A_bc, _ = apply_dirichlet(A, np.zeros(system.n), system.dirichlet_nodes,
                                  system.dirichlet_values)
        self._solver = LinearSolver(A_bc, self.linear_solver, self.tolerance, self.max_iterations)
        self.system = system

    def step(self, T_old: np.ndarray, f: Optional[np.ndarray] = None) -> np.ndarray:
        s = self.system
        load = s.f if f is None else f
        b = s.M @ T_old + self.dt * load - self._lift
        b[s.dirichlet_nodes] = s.dirichlet_values
        return self._solver.solve(b, x0=T_old)


__all__ = ['explicit_stability_limit', 'ExplicitIntegrator', 'ImplicitIntegrator']
