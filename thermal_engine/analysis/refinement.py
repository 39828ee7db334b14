"""
Thermal Engine - Mesh Refinement Controller
===========================================
Grid convergence studies with Roache's Grid Convergence Index (GCI).

The pipeline is solved on successively refined meshes (element size divided
by ``ratio`` per level). A scalar quantity of interest, by default the peak
temperature rise above the ambient reference, is compared between
consecutive levels:

    GCI = Fs · |ε| / (r^p - 1),   ε = (f_coarse - f_fine) / f_fine

With two levels the order p is assumed and Fs = 3. From three levels on, p
is observed from the last three solutions and Fs = 1.25. Refinement stops
once the GCI drops below the target (after ``min_levels`` levels) or the
maximum depth is reached, in which case the study is flagged non-converged.

Author: Thermal Engine Developers
Version: 1.0.0
"""

import math
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..core.config import RefinementConfig
from ..core.context import CancellationToken, SimulationContext
from ..core.errors import CancellationError
from ..solvers.fields import TemperatureField
from ..solvers.thermal_solver import ThermalResults, ThermalSolver
from ..utils.logger import get_logger, log_section


def grid_convergence_index(f_fine: float, f_coarse: float, ratio: float,
                           order: float, safety_factor: float) -> float:
    """Fractional GCI of the fine solution."""
    if f_fine == 0.0:
        return math.inf if f_coarse != f_fine else 0.0
    eps = (f_coarse - f_fine) / f_fine
    return safety_factor * abs(eps) / (ratio ** order - 1.0)


def observed_order(f_fine: float, f_medium: float, f_coarse: float, ratio: float) -> Optional[float]:
    """
    Observed order of accuracy from three levels, or None when the
    differences vanish or change sign (oscillatory convergence).
    """
    upper = f_coarse - f_medium
    lower = f_medium - f_fine
    if lower == 0.0 or upper == 0.0 or np.sign(upper) != np.sign(lower):
        return None
    p = math.log(abs(upper / lower)) / math.log(ratio)
    return p if p > 0.0 else None


def richardson_extrapolate(f_fine: float, f_coarse: float, ratio: float, order: float) -> float:
    """Estimate of the grid-independent value."""
    return f_fine + (f_fine - f_coarse) / (ratio ** order - 1.0)


def peak_temperature(results: ThermalResults, mesh) -> float:
    """Default quantity of interest: maximum of the final field."""
    return results.final_field.max_temp


@dataclass
class RefinementLevel:
    """One solved level of a convergence study."""
    level: int
    n_nodes: int
    element_size_m: float
    value: float  # quantity of interest (°C)
    rise: float  # value above the reference temperature
    gci: Optional[float] = None
    order: Optional[float] = None
    safety_factor: Optional[float] = None
    compute_time_s: float = 0.0
    final_field: Optional[TemperatureField] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            'level': self.level,
            'n_nodes': self.n_nodes,
            'element_size_m': self.element_size_m,
            'value_c': self.value,
            'rise_c': self.rise,
            'gci': self.gci,
            'order': self.order,
            'safety_factor': self.safety_factor,
            'compute_time_s': self.compute_time_s,
        }


@dataclass
class ExperimentalComparison:
    """Simulated versus measured temperatures at sensor locations."""
    points: List[Tuple[float, float]]
    measured_c: np.ndarray
    simulated_c: np.ndarray

    @property
    def residuals(self) -> np.ndarray:
        return self.simulated_c - self.measured_c

    @property
    def rms_c(self) -> float:
        return float(np.sqrt(np.mean(self.residuals ** 2)))

    @property
    def max_abs_c(self) -> float:
        return float(np.max(np.abs(self.residuals)))


@dataclass
class RefinementResult:
    """Outcome of a convergence study."""
    levels: List[RefinementLevel]
    converged: bool
    gci_target: float
    reference_c: float
    extrapolated_value: Optional[float] = None
    comparison: Optional[ExperimentalComparison] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def final_level(self) -> RefinementLevel:
        return self.levels[-1]

    @property
    def final_gci(self) -> Optional[float]:
        return self.levels[-1].gci if self.levels else None

    def gci_table(self) -> List[Dict[str, Any]]:
        return [level.to_row() for level in self.levels]


class MeshRefinementController:
    """
    Runs the solve pipeline on successively refined meshes.

    Args:
        context_builder: Builds a complete SimulationContext for a mesh
            (sources and boundary conditions are mesh dependent)
        base_mesh: Structured coarse mesh (level 0)
        config: RefinementConfig
        quantity: ``(results, mesh) -> float`` quantity of interest
        reference_c: Temperature the GCI rise is measured from (defaults to
            the context's ambient temperature)
        token: Cancellation token checked between levels and inside each
            level's solve
    """

    def __init__(self, context_builder: Callable[[Any], SimulationContext], base_mesh,
                 config: Optional[RefinementConfig] = None,
                 quantity: Callable[[ThermalResults, Any], float] = peak_temperature,
                 reference_c: Optional[float] = None,
                 token: Optional[CancellationToken] = None):
        self.context_builder = context_builder
        self.base_mesh = base_mesh
        self.config = config or RefinementConfig()
        self.quantity = quantity
        self.reference_c = reference_c
        self.token = token or CancellationToken()
        self.logger = get_logger()
        if self.config.ratio < 2:
            raise ValueError(f"Refinement ratio must be an integer >= 2, got {self.config.ratio}")

    def mesh_for_level(self, level: int):
        if level == 0:
            return self.base_mesh
        return self.base_mesh.refined(self.config.ratio ** level)

    def _solve_level(self, level: int) -> Tuple[RefinementLevel, float]:
        start = time.time()
        mesh = self.mesh_for_level(level)
        context = self.context_builder(mesh)
        results = ThermalSolver(context, token=self.token).solve()
        value = float(self.quantity(results, mesh))
        reference = (self.reference_c if self.reference_c is not None
                     else context.config.ambient_temp_c)
        hmin, hmax = mesh.characteristic_sizes()
        return RefinementLevel(level, mesh.n_nodes, hmax, value, value - reference,
                               compute_time_s=time.time() - start,
                               final_field=results.final_field), reference

    def _solve_wave(self, wave: List[int], workers: int):
        """
        Solve the levels of one wave.

        Returns the completed levels (in level order, stopping at the first
        cancelled one) and the CancellationError, if any.
        """
        if workers == 1 or len(wave) == 1:
            try:
                return [self._solve_level(wave[0])], None
            except CancellationError as e:
                return [], e

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="refinement") as executor:
            futures = [executor.submit(self._solve_level, level) for level in wave]
        solved = []
        for future in futures:
            error = future.exception()
            if isinstance(error, CancellationError):
                return solved, error
            solved.append(future.result())
        return solved, None

    def _evaluate(self, levels: List[RefinementLevel], warnings: List[str]):
        cfg = self.config
        current = levels[-1]
        r = float(cfg.ratio)
        if len(levels) == 2:
            order, fs = cfg.assumed_order, cfg.safety_factor_two_level
        else:
            p = observed_order(current.rise, levels[-2].rise, levels[-3].rise, r)
            if p is None:
                message = (f"Level {current.level}: observed order unavailable "
                           f"(non-monotone convergence); assuming p={cfg.assumed_order}")
                self.logger.warning(message)
                warnings.append(message)
                order, fs = cfg.assumed_order, cfg.safety_factor_two_level
            else:
                order, fs = p, cfg.safety_factor_multi_level
        current.order = order
        current.safety_factor = fs
        current.gci = grid_convergence_index(current.rise, levels[-2].rise, r, order, fs)

    def run(self, measurements: Optional[Sequence[Tuple[float, float, float]]] = None) -> RefinementResult:
        """
        Refine until the GCI target is met or ``max_depth`` is reached.

        Args:
            measurements: Optional (x_m, y_m, T_c) sensor readings compared against
                the finest level.

        Raises:
            CancellationError: Carrying a RefinementResult with every level
                completed before the cancellation.
        """
        cfg = self.config
        levels: List[RefinementLevel] = []
        warnings: List[str] = []
        reference = 0.0
        converged = False
        workers = max(1, int(cfg.num_workers))
        n_levels = cfg.max_depth + 1

        with log_section("Mesh Refinement Study"):
            next_level = 0
            while next_level < n_levels and not converged:
                if self.token.is_cancelled:
                    partial = RefinementResult(list(levels), False, cfg.gci_target, reference,
                                               warnings=list(warnings))
                    self.token.check(partial_result=partial, completed=len(levels),
                                     where="mesh refinement")
                wave = list(range(next_level, min(next_level + workers, n_levels)))
                solved, cancelled = self._solve_wave(wave, workers)
                next_level = wave[-1] + 1

                for level, reference in solved:
                    levels.append(level)
                    if len(levels) >= 2:
                        self._evaluate(levels, warnings)
                    self.logger.log_refinement_level(level.level, level.n_nodes, level.value, level.gci)
                    if (level.gci is not None and level.gci < cfg.gci_target
                            and len(levels) >= cfg.min_levels):
                        converged = True
                        discarded = solved[-1][0].level - level.level
                        if discarded:
                            self.logger.debug(f"Discarding {discarded} extra level(s) solved in the same wave")
                        break

                if cancelled is not None and not converged:
                    partial = RefinementResult(list(levels), False, cfg.gci_target, reference,
                                               warnings=list(warnings))
                    raise CancellationError(
                        f"Mesh refinement cancelled after {len(levels)} completed level(s)",
                        partial_result=partial, completed=len(levels)) from cancelled

        if not converged:
            message = (f"GCI target {cfg.gci_target:.2%} not met after {len(levels)} level(s)"
                       + (f" (final GCI {levels[-1].gci:.2%})" if levels[-1].gci is not None else ""))
            self.logger.warning(message)
            warnings.append(message)

        result = RefinementResult(levels, converged, cfg.gci_target, reference, warnings=warnings)
        if len(levels) >= 2 and levels[-1].order is not None:
            fine, coarse = levels[-1], levels[-2]
            result.extrapolated_value = reference + richardson_extrapolate(
                fine.rise, coarse.rise, float(cfg.ratio), fine.order)
        if measurements:
            result.comparison = self.compare(levels[-1], measurements)
        return result

    def compare(self, level: RefinementLevel,
                measurements: Sequence[Tuple[float, float, float]]) -> ExperimentalComparison:
        """Nearest-node comparison of a level's field against sensor readings."""
        mesh = self.mesh_for_level(level.level)
        points = [(float(x), float(y)) for x, y, _ in measurements]
        simulated = np.array([level.final_field.at(mesh.find_node(x, y)) for x, y in points])
        measured = np.array([float(t) for _, _, t in measurements])
        return ExperimentalComparison(points, measured, simulated)


__all__ = [
    'grid_convergence_index',
    'observed_order',
    'richardson_extrapolate',
    'peak_temperature',
    'RefinementLevel',
    'ExperimentalComparison',
    'RefinementResult',
    'MeshRefinementController',
]
