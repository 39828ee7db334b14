"""
Thermal Engine - Steady-State Solver
====================================
Direct solution of K·T = f for continuous-operation queries, plus the
sparse linear solver shared with the implicit integrator.

Author: Thermal Engine Developers
Version: 1.0.0
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np
from scipy import sparse
from scipy.sparse import linalg as sparse_linalg

from .assembler import AssembledSystem, apply_dirichlet
from ..core.constants import SimulationDefaults
from ..core.errors import ConvergenceError, SingularMatrixError
from ..utils.logger import get_logger, timed_function


class LinearSolver:
    """
    Solves A·x = b for a fixed, Dirichlet-lifted A.

    ``direct`` factorizes once with SuperLU; ``cg`` runs Jacobi-preconditioned
    conjugate gradients and raises ConvergenceError (keeping the last
    iterate) when the tolerance is not met within ``max_iterations``.
    """

    def __init__(self, A: sparse.spmatrix, method: str = "direct",
                 tolerance: float = SimulationDefaults.LINEAR_TOLERANCE,
                 max_iterations: int = SimulationDefaults.MAX_LINEAR_ITERATIONS):
        self.A = A.tocsr()
        self.method = method
        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.last_iterations = 0
        self._lu = None
        self._precond = None

        if method == "direct":
            try:
                self._lu = sparse_linalg.splu(self.A.tocsc())
            except RuntimeError as e:
                raise SingularMatrixError(f"Sparse factorization failed: {e}",
                                          n_components=None) from e
        elif method == "cg":
            diag = self.A.diagonal()
            if np.any(diag <= 0):
                raise SingularMatrixError("Conjugate gradients needs a positive diagonal",
                                          n_components=None)
            self._precond = sparse.diags(1.0 / diag)
        else:
            raise ValueError(f"Unknown linear solver: {method}")

    def solve(self, b: np.ndarray, x0: Optional[np.ndarray] = None) -> np.ndarray:
        if self._lu is not None:
            x = self._lu.solve(np.asarray(b, dtype=np.float64))
            if not np.all(np.isfinite(x)):
                raise SingularMatrixError("Direct solve produced non-finite values",
                                          n_components=None)
            self.last_iterations = 1
            return x

        count = [0]

        def _count(_xk):
            count[0] += 1

        x, info = sparse_linalg.cg(self.A, b, x0=x0, rtol=self.tolerance, atol=0.0,
                                   maxiter=self.max_iterations, M=self._precond,
                                   callback=_count)
        self.last_iterations = count[0]
        if info != 0:
            b_norm = max(float(np.linalg.norm(b)), np.finfo(float).tiny)
            residual = float(np.linalg.norm(b - self.A @ x)) / b_norm
            raise ConvergenceError(
                f"Conjugate gradients did not reach rtol={self.tolerance:.1e} in "
                f"{self.max_iterations} iterations (relative residual {residual:.3e})",
                iterations=count[0], residual=residual, last_iterate=x)
        return x


@dataclass
class EnergyBalance:
    """Integrated source power against boundary outflow at steady state."""
    source_power_w: float
    dirichlet_outflow_w: float
    boundary_outflow_w: Dict[str, float] = field(default_factory=dict)

    @property
    def total_outflow_w(self) -> float:
        return self.dirichlet_outflow_w + sum(self.boundary_outflow_w.values())

    @property
    def imbalance_w(self) -> float:
        return self.source_power_w - self.total_outflow_w

    @property
    def relative_imbalance(self) -> float:
        scale = max(abs(self.source_power_w), abs(self.total_outflow_w), 1e-300)
        return abs(self.imbalance_w) / scale


class SteadyStateSolver:
    """Solves the Poisson form K·T = f with Dirichlet rows pinned."""

    def __init__(self, linear_solver: str = "direct",
                 tolerance: float = SimulationDefaults.LINEAR_TOLERANCE,
                 max_iterations: int = SimulationDefaults.MAX_LINEAR_ITERATIONS):
        self.linear_solver = linear_solver
        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.logger = get_logger()

    @timed_function("steady_state_solve")
    def solve(self, system: AssembledSystem, x0: Optional[np.ndarray] = None) -> np.ndarray:
        A, b = apply_dirichlet(system.K, system.f, system.dirichlet_nodes, system.dirichlet_values)
        solver = LinearSolver(A, self.linear_solver, self.tolerance, self.max_iterations)
        T = solver.solve(b, x0=x0)
        self.logger.debug(f"Steady solve ({self.linear_solver}): Tmax={T.max():.4f}°C, "
                          f"{solver.last_iterations} iteration(s)")
        return T

    @staticmethod
    def energy_balance(system: AssembledSystem, T: np.ndarray) -> EnergyBalance:
        return EnergyBalance(
            source_power_w=float(np.sum(system.source_load)),
            dirichlet_outflow_w=system.dirichlet_outflow(T),
            boundary_outflow_w=system.boundary_outflow(T),
        )


__all__ = ['LinearSolver', 'EnergyBalance', 'SteadyStateSolver']
