"""
Thermal Engine - Solvers Module
===============================
Assembly, time integration, radiation and the solve pipeline.
"""

from .fields import TemperatureField, FieldSeries

from .heat_sources import HeatSource, ComponentPower, ConductorSegment, HeatSourceBuilder

from .assembler import AssembledSystem, SystemAssembler

from .steady_state import LinearSolver, EnergyBalance, SteadyStateSolver

from .transient import explicit_stability_limit, ExplicitIntegrator, ImplicitIntegrator

from .radiation import (
    ViewFactorMatrix,
    PlanarSurface,
    box_surfaces,
    ViewFactorCache,
    compute_view_factors,
    RadiositySolver,
    EnclosureSurface,
    RadiationEnclosure,
)

from .coupling import CouplingResult, RadiationCoupler

from .thermal_solver import (
    SolverState,
    ThermalResults,
    ResultCache,
    ThermalSolver,
    ThermalAnalysisEngine,
    run_simulation,
)

__all__ = [
    # Fields
    'TemperatureField',
    'FieldSeries',
    # Sources
    'HeatSource',
    'ComponentPower',
    'ConductorSegment',
    'HeatSourceBuilder',
    # Assembly & integration
    'AssembledSystem',
    'SystemAssembler',
    'LinearSolver',
    'EnergyBalance',
    'SteadyStateSolver',
    'explicit_stability_limit',
    'ExplicitIntegrator',
    'ImplicitIntegrator',
    # Radiation
    'ViewFactorMatrix',
    'PlanarSurface',
    'box_surfaces',
    'ViewFactorCache',
    'compute_view_factors',
    'RadiositySolver',
    'EnclosureSurface',
    'RadiationEnclosure',
    'CouplingResult',
    'RadiationCoupler',
    # Thermal
    'SolverState',
    'ThermalResults',
    'ResultCache',
    'ThermalSolver',
    'ThermalAnalysisEngine',
    'run_simulation',
]
