"""
Thermal Engine - Thermal Solver
===============================
Runs one SimulationContext through the full pipeline.

Pipeline:
- validate the context and resolve element materials
- build per-element heat sources
- assemble conduction, capacity and boundary terms
- steady-state solve or explicit/implicit time stepping, with radiation
  coupled as requested by the context's coupling mode
- publish immutable temperature snapshots

Temperature-dependent materials and heat sources are lagged: they are
re-evaluated from the previous step (or previous nonlinear iterate).

Author: Thermal Engine Developers
Version: 1.0.0
"""

import numpy as np
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
import copy
import math
import time
import threading
from enum import Enum

from .assembler import AssembledSystem, SystemAssembler
from .coupling import BoundaryTerms, RadiationCoupler
from .fields import FieldSeries, TemperatureField
from .heat_sources import element_power_density
from .steady_state import EnergyBalance, SteadyStateSolver
from .transient import ExplicitIntegrator, ImplicitIntegrator
from ..core.config import CouplingMode
from ..core.constants import SimulationDefaults
from ..core.context import CancellationToken, DirichletBC, RadiativeBC, SimulationContext
from ..core.errors import CancellationError
from ..core.materials import MaterialResolver
from ..utils.logger import format_error_report, get_logger, timed_function, log_section


class SolverState(Enum):
    """Solver execution state."""
    IDLE = 0
    RUNNING = 1
    COMPLETED = 2
    FAILED = 3
    CANCELLED = 4


@dataclass
class ThermalResults:
    """Complete thermal simulation results."""
    # Time series data
    frames: FieldSeries = field(default_factory=FieldSeries)

    # Final state
    final_field: Optional[TemperatureField] = None
    steady_state: bool = False

    # Statistics over stored frames
    min_temp_history: List[float] = field(default_factory=list)
    max_temp_history: List[float] = field(default_factory=list)
    avg_temp_history: List[float] = field(default_factory=list)

    # Simulation info
    steps_completed: int = 0
    simulated_time_s: float = 0.0
    total_compute_time: float = 0.0
    dt_limit_s: Optional[float] = None
    coupling_iterations: int = 0
    convergence_history: List[float] = field(default_factory=list)
    energy_balance: Optional[EnergyBalance] = None
    extrapolated_elements: int = 0

    # Overheat analysis
    halted_on_failure: bool = False
    time_to_failure: Any = None  # TimeToFailureResult

    cache_key: str = ""
    warnings: List[str] = field(default_factory=list)

    @property
    def time_points(self) -> List[float]:
        return self.frames.times

    @property
    def final_temperature(self) -> Optional[np.ndarray]:
        return None if self.final_field is None else self.final_field.values

    def get_frame_at_time(self, t: float) -> Optional[TemperatureField]:
        """Get frame nearest to specified time."""
        return self.frames.at_time(t)

    def get_temperature_at_node(self, node_id: int) -> List[Tuple[float, float]]:
        """Get temperature history for a specific node."""
        return self.frames.node_history(node_id)


class ResultCache:
    """Thread-safe LRU of published results keyed by context hash."""

    def __init__(self, max_entries: int = SimulationDefaults.RESULT_CACHE_SIZE):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, ThermalResults]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[ThermalResults]:
        with self._lock:
            result = self._entries.get(key)
            if result is not None:
                self._entries.move_to_end(key)
            return result

    def put(self, key: str, result: ThermalResults):
        with self._lock:
            self._entries[key] = result
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def _with_terms(system: AssembledSystem, terms: BoundaryTerms) -> AssembledSystem:
    for kind, (diag, load) in terms.items():
        system = system.with_boundary(kind, diag, load)
    return system


class ThermalSolver:
    """
    Thermal solver for one simulation context.

    Args:
        context: Immutable solve inputs
        progress_callback: Called with (fraction, message)
        token: Cooperative cancellation token
        analyzer: Optional OverheatAnalyzer scanning every step
        cache: Optional ResultCache for published results
    """

    def __init__(self, context: SimulationContext,
                 progress_callback: Optional[Callable[[float, str], None]] = None,
                 token: Optional[CancellationToken] = None,
                 analyzer=None,
                 cache: Optional[ResultCache] = None):
        self.context = context
        self.config = context.config
        self.progress_callback = progress_callback
        self.frame_callback: Optional[Callable[[TemperatureField], None]] = None
        self.token = token or CancellationToken()
        self.analyzer = analyzer
        self.cache = cache
        self.logger = get_logger()

        self.state = SolverState.IDLE
        self.progress = 0.0
        self.results = ThermalResults()

    def set_progress_callback(self, callback: Callable[[float, str], None]):
        """Set callback for progress updates."""
        self.progress_callback = callback

    def set_frame_callback(self, callback: Callable[[TemperatureField], None]):
        """Set callback for new frame availability."""
        self.frame_callback = callback

    def cancel(self):
        """Request cancellation at the next checkpoint."""
        self.token.cancel()

    def _update_progress(self, progress: float, message: str = ""):
        self.progress = progress
        if self.progress_callback:
            self.progress_callback(progress, message)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    def _prepare(self):
        ctx = self.context
        ctx.validate()
        mesh = ctx.mesh
        hmin, hmax = mesh.characteristic_sizes()
        self.logger.log_mesh_stats(mesh.n_nodes, mesh.n_elements, hmin, hmax)

        self.resolver = MaterialResolver(ctx.materials, strict=self.config.strict_materials)
        self.materials_vary = self.resolver.is_temperature_dependent(mesh)
        self.sources_vary_with_t = any(s.is_temperature_dependent for s in ctx.heat_sources)
        self.sources_vary_in_time = any(s.is_time_varying for s in ctx.heat_sources)

        self.assembler = SystemAssembler(mesh, self.config.method, self.config.lumped_mass,
                                         self.config.num_threads, self.config.assembly_chunk_size)
        self.mode = self.config.coupling
        self.coupler: Optional[RadiationCoupler] = None
        if ctx.has_radiation:
            props = self.resolver.resolve(mesh)
            self.coupler = RadiationCoupler(
                mesh, ctx.bcs_of_type(RadiativeBC), ctx.enclosure,
                self.resolver.node_emissivity(mesh, props), self.mode,
                self.config.coupling_tolerance_c, self.config.max_coupling_iterations,
                self.config.relaxation)

    def _properties(self, T: Optional[np.ndarray]):
        temps = None if T is None else MaterialResolver.element_temperatures(self.context.mesh, T)
        props = self.resolver.resolve(self.context.mesh, temps)
        for message in props.warnings:
            if message not in self.results.warnings:
                self.results.warnings.append(message)
        return props

    def _heat_density(self, time_s: float, T: Optional[np.ndarray]) -> np.ndarray:
        temps = None
        if T is not None and self.sources_vary_with_t:
            temps = MaterialResolver.element_temperatures(self.context.mesh, T)
        return element_power_density(self.context.mesh, self.context.heat_sources, time_s, temps)

    def _build(self, T: Optional[np.ndarray], time_s: float, terms: Optional[BoundaryTerms] = None,
               require_anchor: bool = False) -> AssembledSystem:
        props = self._properties(T if self.materials_vary else None)
        self.results.extrapolated_elements = int(np.sum(props.extrapolated))
        q = self._heat_density(time_s, T)
        return self.assembler.build(props, q, self.context.boundary_conditions,
                                    extra_boundary=terms, require_anchor=require_anchor)

    def _store_frame(self, T: np.ndarray, time_s: Optional[float], step: int) -> TemperatureField:
        frame = TemperatureField(T, time_s, step)
        self.results.frames.append(frame)
        self.results.min_temp_history.append(frame.min_temp)
        self.results.max_temp_history.append(frame.max_temp)
        self.results.avg_temp_history.append(frame.avg_temp)
        if self.frame_callback:
            self.frame_callback(frame)
        return frame

    def _analyzer_key(self) -> str:
        key = self.context.cache_key()
        if self.analyzer is not None:
            key += self.analyzer.cache_token()
        return key

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def solve(self) -> ThermalResults:
        """Run the analysis selected by ``config.analysis``."""
        key = ""
        if self.cache is not None:
            key = self._analyzer_key()
            cached = self.cache.get(key)
            if cached is not None:
                self.logger.debug(f"Result cache hit {key[:12]}")
                self.results = copy.copy(cached)
                self.results.warnings = list(cached.warnings)
                self.state = SolverState.COMPLETED
                return self.results

        self.state = SolverState.RUNNING
        self.logger.start_run(key[:12] or "solve", {
            'method': self.config.method, 'analysis': self.config.analysis,
            'integrator': self.config.integrator, 'nodes': self.context.mesh.n_nodes,
        })
        try:
            if self.config.analysis == "steady_state":
                results = self.solve_steady_state()
            else:
                results = self.solve_transient()
        except CancellationError:
            self.state = SolverState.CANCELLED
            self.logger.end_run(False, "cancelled")
            raise
        except Exception as e:
            self.state = SolverState.FAILED
            self.logger.debug(format_error_report(e, {'analysis': self.config.analysis,
                                                      'method': self.config.method}))
            self.logger.end_run(False, str(e))
            raise

        self.state = SolverState.COMPLETED
        self.logger.end_run(True, f"Tmax={results.final_field.max_temp:.2f}°C")
        if self.cache is not None:
            results.cache_key = key
            stored = copy.copy(results)
            stored.warnings = list(results.warnings)
            self.cache.put(key, stored)
        return results

    # ------------------------------------------------------------------
    # Steady state
    # ------------------------------------------------------------------
    @timed_function("thermal_solve_steady")
    def solve_steady_state(self) -> ThermalResults:
        """
        Solve K·T = f. Radiation and temperature-dependent inputs are
        handled by a fixed-point loop over complete linear solves.
        """
        start_time = time.time()
        self.results = ThermalResults(steady_state=True)

        with log_section("Steady-State Thermal Simulation"):
            self._prepare()
            self.token.check(partial_result=self.results, completed=0, where="steady-state setup")
            self._update_progress(0.1, "Assembling system...")
            steady = SteadyStateSolver(self.config.linear_solver, self.config.linear_tolerance,
                                       self.config.max_linear_iterations)
            nonlinear = self.coupler is not None or self.materials_vary or self.sources_vary_with_t

            if not nonlinear:
                system = self._build(None, 0.0, require_anchor=True)
                T = steady.solve(system)
            else:
                coupler = self.coupler or RadiationCoupler(
                    self.context.mesh, tolerance_c=self.config.coupling_tolerance_c,
                    max_iterations=self.config.max_coupling_iterations,
                    relaxation=self.config.relaxation)
                last = {}

                def solve_with(terms: BoundaryTerms, T_iter: np.ndarray) -> np.ndarray:
                    last['system'] = self._build(T_iter, 0.0, terms, require_anchor=True)
                    return steady.solve(last['system'], x0=T_iter)

                outcome = coupler.iterate(solve_with, self.context.initial_field(), self.token)
                T = outcome.temperatures
                system = last['system']
                self.results.coupling_iterations = outcome.iterations
                self.results.convergence_history = outcome.history
                self.logger.info(f"Steady-state fixed point converged in {outcome.iterations} iterations")

            self.results.energy_balance = SteadyStateSolver.energy_balance(system, T)
            balance = self.results.energy_balance
            self.logger.info(f"Energy balance: sources {balance.source_power_w:.4g} W, "
                             f"outflow {balance.total_outflow_w:.4g} W "
                             f"(relative imbalance {balance.relative_imbalance:.2e})")

            self.results.final_field = self._store_frame(T, None, 0)
            if self.analyzer is not None:
                self.results.time_to_failure = self.analyzer.evaluate_steady(self.results.final_field)
            self.results.total_compute_time = time.time() - start_time
            self._update_progress(1.0, f"Tmax={T.max():.2f}°C")
            self.logger.info(f"Steady-state simulation complete in {self.results.total_compute_time:.2f}s")

        return self.results

    # ------------------------------------------------------------------
    # Transient
    # ------------------------------------------------------------------
    def _make_integrator(self, system: AssembledSystem):
        if self.config.integrator == "explicit":
            integrator = ExplicitIntegrator(system, self.config.dt_s)
            self.results.dt_limit_s = integrator.dt_limit
            self.logger.info(f"Explicit stability limit {integrator.dt_limit:.4g}s, dt={self.config.dt_s}s")
            return integrator
        return ImplicitIntegrator(system, self.config.dt_s, self.config.linear_solver,
                                  self.config.linear_tolerance, self.config.max_linear_iterations)

    @timed_function("thermal_solve_transient")
    def solve_transient(self) -> ThermalResults:
        """
        March M·dT/dt + K·T = f through ``n_steps`` steps of ``dt_s``.

        Frames are stored every ``output_interval_steps`` (widened so at most
        ``max_frames`` are kept) plus the initial and final states.
        """
        start_time = time.time()
        self.results = ThermalResults()
        cfg = self.config

        with log_section("Transient Thermal Simulation"):
            self._prepare()
            dt, n_steps = cfg.dt_s, cfg.n_steps
            interval = max(cfg.output_interval_steps, math.ceil(n_steps / max(cfg.max_frames, 1)), 1)
            explicit = cfg.integrator == "explicit"

            T = self.context.initial_field()
            d_nodes, d_values = self.assembler.dirichlet(self.context.bcs_of_type(DirichletBC))
            T[d_nodes] = d_values
            terms: BoundaryTerms = {}
            if self.coupler is not None:
                terms = self.coupler.boundary_terms(T)
            base = self._build(T, 0.0)
            system = _with_terms(base, terms)
            integrator = self._make_integrator(system)

            rebuild = self.materials_vary or self.sources_vary_with_t
            frozen = self.mode is CouplingMode.ONCE
            frame = self._store_frame(T, 0.0, 0)
            failed_at_start = self.analyzer is not None and self.analyzer.start(frame)
            if failed_at_start:
                self.results.halted_on_failure = True
                self.logger.warning("Initial field already violates a failure limit; no steps taken")

            self.logger.info(f"Starting transient simulation: {n_steps * dt:g}s, dt={dt}s, "
                             f"{n_steps} steps, {cfg.integrator} {cfg.method.upper()}")

            step = 0
            t = 0.0
            while step < n_steps and not failed_at_start:
                if self.token.is_cancelled:
                    self.token.check(partial_result=self._partial(T, t, step, start_time),
                                     completed=step, where="time stepping")
                t_new = (step + 1) * dt

                if rebuild:
                    base = self._build(T, t_new)
                elif self.sources_vary_in_time:
                    base = base.with_sources(self.assembler.source_load(self._heat_density(t_new, None)))

                if self.coupler is None:
                    system = base
                    if rebuild or self.sources_vary_in_time:
                        self._refresh(integrator, system, rebuild)
                    T_new = integrator.step(T)
                elif explicit:
                    if not frozen:
                        terms = self.coupler.boundary_terms(T)
                    system = _with_terms(base, terms)
                    integrator.update_system(system)
                    T_new = integrator.step(T)
                elif frozen and step > 0:
                    system = _with_terms(base, terms)
                    if rebuild or self.sources_vary_in_time:
                        self._refresh(integrator, system, rebuild)
                    T_new = integrator.step(T)
                else:
                    T_new, terms = self._coupled_implicit_step(integrator, base, T)

                step += 1
                t = t_new
                if not np.all(np.isfinite(T_new)):
                    raise FloatingPointError(f"Non-finite temperatures at step {step} (t={t:g}s)")

                failed = False
                if self.analyzer is not None:
                    failed = self.analyzer.observe(frame, TemperatureField(T_new, t, step))
                T = T_new

                if step % interval == 0 or step == n_steps or failed:
                    frame = self._store_frame(T, t, step)
                elif self.analyzer is not None:
                    frame = TemperatureField(T, t, step)

                self._update_progress(step / max(n_steps, 1), f"t={t:.2f}s, Tmax={np.max(T):.2f}°C")
                if step % 100 == 0:
                    self.logger.log_thermal_step(step, t, float(T.min()), float(T.max()), float(T.mean()))

                if failed:
                    self.results.halted_on_failure = True
                    self.logger.warning(f"Failure limit crossed at step {step}; stopping")
                    break

            self.results.final_field = self.results.frames.final
            self.results.steps_completed = step
            self.results.simulated_time_s = t
            if self.analyzer is not None:
                self.results.time_to_failure = self.analyzer.result()
            self.results.total_compute_time = time.time() - start_time
            self.logger.info(f"Transient simulation complete: {step} steps in "
                             f"{self.results.total_compute_time:.2f}s")

        return self.results

    def _refresh(self, integrator, system: AssembledSystem, rebuild: bool):
        if rebuild:
            integrator.update_system(system)
        else:
            # Only the load changed; keep the factorization
            integrator.system = system

    def _coupled_implicit_step(self, integrator: ImplicitIntegrator, base: AssembledSystem,
                               T_old: np.ndarray) -> Tuple[np.ndarray, BoundaryTerms]:
        def step_with(terms: BoundaryTerms, T_iter: np.ndarray) -> np.ndarray:
            integrator.update_system(_with_terms(base, terms))
            return integrator.step(T_old)

        outcome = self.coupler.iterate(step_with, T_old, self.token)
        self.results.coupling_iterations += outcome.iterations
        self.results.convergence_history.extend(outcome.history)
        integrator.update_system(_with_terms(base, outcome.terms))
        return outcome.temperatures, outcome.terms

    def _partial(self, T: np.ndarray, t: float, step: int, start_time: float) -> ThermalResults:
        partial = self.results
        partial.final_field = TemperatureField(T, t, step)
        partial.steps_completed = step
        partial.simulated_time_s = t
        partial.total_compute_time = time.time() - start_time
        return partial


def run_simulation(context: SimulationContext,
                   progress_callback: Callable = None,
                   token: Optional[CancellationToken] = None,
                   analyzer=None,
                   cache: Optional[ResultCache] = None) -> ThermalResults:
    """
    Convenience function to run thermal simulation.

    Args:
        context: Simulation inputs
        progress_callback: Optional progress callback
        token: Optional cancellation token
        analyzer: Optional OverheatAnalyzer
        cache: Optional result cache

    Returns:
        ThermalResults with complete simulation data
    """
    solver = ThermalSolver(context, progress_callback, token, analyzer, cache)
    return solver.solve()


class ThermalAnalysisEngine:
    """
    High-level engine that runs a context and evaluates it against failure
    limits from a ThermalEngineConfig.
    """

    def __init__(self, config=None, cache: Optional[ResultCache] = None):
        from ..core.config import ThermalEngineConfig

        self.logger = get_logger()
        self.config = config or ThermalEngineConfig()
        self.cache = cache
        self.thermal_result: Optional[ThermalResults] = None
        self.report = None
        self.progress_callback: Optional[Callable[[float, str], None]] = None

    def set_progress_callback(self, callback: Callable[[float, str], None]):
        """Set progress callback function."""
        self.progress_callback = callback

    def _report_progress(self, progress: float, message: str):
        if self.progress_callback:
            self.progress_callback(progress, message)

    def run_analysis(self, context: SimulationContext,
                     token: Optional[CancellationToken] = None):
        """
        Solve ``context`` with an overheat analyzer attached.

        Returns:
            (ThermalResults, OverheatReport)
        """
        from ..analysis.failure import OverheatAnalyzer

        self.logger.info("Starting thermal analysis engine")
        start_time = time.time()

        analyzer = OverheatAnalyzer.from_config(context.mesh, self.config.failure)
        solver = ThermalSolver(context, token=token, analyzer=analyzer, cache=self.cache)
        solver.set_progress_callback(lambda p, m: self._report_progress(0.05 + 0.9 * p, m))
        self._report_progress(0.0, "Starting thermal solver...")
        self.thermal_result = solver.solve()

        self._report_progress(0.97, "Evaluating failure limits...")
        self.report = analyzer.report(self.thermal_result.final_field, self.config.failure.hotspot_count)
        self.thermal_result.warnings.extend(w for w in self.report.warnings
                                            if w not in self.thermal_result.warnings)

        elapsed = time.time() - start_time
        self._report_progress(1.0, f"Analysis complete ({elapsed:.1f}s)")
        self.logger.info(f"Thermal analysis completed in {elapsed:.1f}s")
        return self.thermal_result, self.report


__all__ = [
    'SolverState',
    'ThermalResults',
    'ResultCache',
    'ThermalSolver',
    'ThermalAnalysisEngine',
    'run_simulation',
]
